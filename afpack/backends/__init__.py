"""Disk image, compression and platform backends."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol


@dataclass(frozen=True)
class ImageRef:
    """A disk image file."""

    path: Path


@dataclass(frozen=True)
class MountHandle:
    """An image attached at a mount point."""

    image: ImageRef
    mount_point: Path
    device: Optional[str] = None


class ImageBackend(Protocol):
    """Creates, attaches and removes sparse disk images."""

    def create(self, path: Path, size_bytes: int) -> ImageRef:
        """Create an empty formatted image; InsufficientSpace / Unsupported."""
        ...

    def attach(self, image: ImageRef, mount_point: Path) -> MountHandle:
        """Attach at ``mount_point``; MountConflict / CorruptImage."""
        ...

    def detach(self, handle: MountHandle) -> None:
        """Detach; DeviceBusy when the volume is in use."""
        ...

    def delete(self, image: ImageRef) -> None:
        ...

    def mounted_image(self, mount_point: Path) -> Optional[Path]:
        """Image currently attached at ``mount_point``, if any."""
        ...


class CompressionBackend(Protocol):
    """Applies transparent filesystem compression to single files."""

    def compress(self, path: Path) -> None:
        ...

    def decompress(self, path: Path) -> None:
        ...

    def is_compressed(self, path: Path) -> bool:
        ...


class PlatformProbe(Protocol):
    """Capability checks gating image creation and compressed reads."""

    def supports_image_creation(self) -> bool:
        ...

    def supports_compressed_read(self) -> bool:
        ...


def get_backends(settings, compression: Optional[str] = None):
    """Return the host's (image backend, compression backend, probe)."""
    from .afsc import AfscCompressionBackend
    from .diskutil import DiskutilImageBackend
    from .platform import MacPlatformProbe

    image_backend = DiskutilImageBackend(
        image_format=settings.image_format,
        filesystem=settings.filesystem,
    )
    compression_backend = AfscCompressionBackend(algorithm=compression or settings.compression)
    return image_backend, compression_backend, MacPlatformProbe()


__all__ = [
    "CompressionBackend",
    "ImageBackend",
    "ImageRef",
    "MountHandle",
    "PlatformProbe",
    "get_backends",
]
