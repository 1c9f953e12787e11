"""macOS disk image backend built on diskutil / hdiutil."""

from __future__ import annotations

import logging
import math
import os
from pathlib import Path
import plistlib
import re
import shutil
import subprocess
from typing import Callable, Optional, Sequence

from afpack.backends import ImageRef, MountHandle
from afpack.errors import (
    CorruptImage,
    DeviceBusy,
    InsufficientSpace,
    IOFailure,
    MountConflict,
    Unsupported,
)

logger = logging.getLogger(__name__)

_MIB = 1024**2
_DEVICE_PATTERN = re.compile(r"/dev/disk\d+(?:s\d+)?")

Runner = Callable[..., subprocess.CompletedProcess]


def size_argument(size_bytes: int) -> str:
    """diskutil size argument, rounded up to whole MiB."""
    return f"{max(1, math.ceil(size_bytes / _MIB))}M"


class DiskutilImageBackend:
    """ASIF sparse images via ``diskutil image``."""

    def __init__(
        self,
        *,
        image_format: str = "ASIF",
        filesystem: str = "APFS",
        runner: Optional[Runner] = None,
    ) -> None:
        self.image_format = image_format
        self.filesystem = filesystem
        self._run = runner or subprocess.run

    def _execute(self, cmd: Sequence[str]) -> subprocess.CompletedProcess:
        logger.debug("Executing: %s", " ".join(cmd))
        try:
            result = self._run(list(cmd), capture_output=True, text=True, check=False)
        except FileNotFoundError as exc:
            raise Unsupported(f"{cmd[0]} command not found") from exc
        return result

    def create(self, path: Path, size_bytes: int) -> ImageRef:
        if path.exists():
            raise FileExistsError(f"Image already exists: {path}")
        cmd = [
            "diskutil",
            "image",
            "create",
            "blank",
            "--fs",
            self.filesystem.lower(),
            "--format",
            self.image_format,
            "--size",
            size_argument(size_bytes),
            str(path),
        ]
        result = self._execute(cmd)
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip()
            lowered = message.lower()
            if "no space" in lowered or "not enough" in lowered:
                raise InsufficientSpace(f"Cannot create {path}: {message}")
            if "unrecognized" in lowered or "unknown verb" in lowered or "usage" in lowered:
                raise Unsupported(f"diskutil cannot create {self.image_format} images: {message}")
            raise IOFailure(f"Image creation failed for {path}: {message}")
        return ImageRef(path)

    def attach(self, image: ImageRef, mount_point: Path) -> MountHandle:
        if not image.path.exists():
            raise CorruptImage(f"Image missing: {image.path}")
        mount_point.mkdir(parents=True, exist_ok=True)
        cmd = [
            "diskutil",
            "image",
            "attach",
            "--mountPoint",
            str(mount_point),
            str(image.path),
        ]
        result = self._execute(cmd)
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip()
            lowered = message.lower()
            if "busy" in lowered or "already" in lowered:
                raise MountConflict(f"Cannot attach at {mount_point}: {message}")
            if "corrupt" in lowered or "not recognized" in lowered or "invalid" in lowered:
                raise CorruptImage(f"Cannot attach {image.path}: {message}")
            raise IOFailure(f"Attach failed for {image.path}: {message}")
        match = _DEVICE_PATTERN.search(result.stdout or "")
        return MountHandle(image=image, mount_point=mount_point, device=match.group(0) if match else None)

    def detach(self, handle: MountHandle) -> None:
        target = handle.device or str(handle.mount_point)
        result = self._execute(["diskutil", "eject", target])
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip()
            if "busy" in message.lower() or "dissent" in message.lower():
                raise DeviceBusy(f"Volume at {handle.mount_point} is in use: {message}")
            raise IOFailure(f"Detach failed for {handle.mount_point}: {message}")

    def delete(self, image: ImageRef) -> None:
        try:
            image.path.unlink()
        except FileNotFoundError:
            return
        except IsADirectoryError:
            shutil.rmtree(image.path)

    def mounted_image(self, mount_point: Path) -> Optional[Path]:
        result = self._execute(["hdiutil", "info", "-plist"])
        if result.returncode != 0:
            raise IOFailure(f"hdiutil info failed: {(result.stderr or '').strip()}")
        try:
            info = plistlib.loads(result.stdout.encode("utf-8"))
        except plistlib.InvalidFileException as exc:
            raise IOFailure(f"Unreadable hdiutil info output: {exc}") from exc
        wanted = os.path.realpath(mount_point)
        for image in info.get("images", []):
            for entity in image.get("system-entities", []):
                mounted_at = entity.get("mount-point")
                if mounted_at and os.path.realpath(mounted_at) == wanted:
                    return Path(image.get("image-path", ""))
        return None
