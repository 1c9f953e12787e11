"""Application bootstrap with dependency injection."""

from __future__ import annotations

from typing import Optional

from .backends import CompressionBackend, ImageBackend, PlatformProbe, get_backends
from .core.compression import CompressionController
from .core.migrator import AtomicMigrator
from .core.orchestrator import Orchestrator
from .infrastructure.ledger import StateLedger
from .infrastructure.locks import MountLock
from .infrastructure.mounts import MountManager
from .settings import Settings


class AfpackApp:
    """Wires the ledger, backends and orchestrator for one invocation."""

    def __init__(
        self,
        settings: Settings,
        *,
        compression: Optional[str] = None,
        image_backend: Optional[ImageBackend] = None,
        compression_backend: Optional[CompressionBackend] = None,
        probe: Optional[PlatformProbe] = None,
        disk_usage=None,
    ):
        """Initialize the application.

        Args:
            settings: Resolved settings
            compression: Compression algorithm override (lzfse, lzvn, zlib)
            image_backend: Image backend; defaults to diskutil
            compression_backend: Compression backend; defaults to afsctool
            probe: Platform probe; defaults to the macOS probe
            disk_usage: Free-space function, injectable for tests
        """
        self.settings = settings
        if image_backend is None or compression_backend is None or probe is None:
            default_image, default_compression, default_probe = get_backends(settings, compression)
            image_backend = image_backend or default_image
            compression_backend = compression_backend or default_compression
            probe = probe or default_probe

        self.ledger = StateLedger(settings.ledger_path)
        self.mounts = MountManager(
            image_backend,
            MountLock(settings.state_dir / "mount.lock", timeout=settings.mount_lock_timeout),
        )
        migrator_kwargs = {"disk_usage": disk_usage} if disk_usage is not None else {}
        self.migrator = AtomicMigrator(self.mounts, image_backend, settings, **migrator_kwargs)
        self.compressor = CompressionController(
            self.mounts,
            compression_backend,
            batch_size=settings.copy_batch_size,
        )
        self.orchestrator = Orchestrator(
            ledger=self.ledger,
            migrator=self.migrator,
            compressor=self.compressor,
            mounts=self.mounts,
            probe=probe,
            settings=settings,
        )

    def close(self) -> None:
        """Clean up resources."""
        self.ledger.close()

    def __enter__(self) -> AfpackApp:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
