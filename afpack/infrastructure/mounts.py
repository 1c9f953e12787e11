"""Serialized attach/detach of images against the host mount namespace."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from afpack.backends import ImageBackend, ImageRef, MountHandle
from afpack.errors import MountConflict
from afpack.infrastructure.locks import MountLock

logger = logging.getLogger(__name__)


def _same_path(left: Path, right: Path) -> bool:
    return os.path.realpath(left) == os.path.realpath(right)


class MountManager:
    """Owns every attach/detach call made by the orchestrator.

    ``attach`` is idempotent for the same image at the same mount point and
    ``detach`` is a no-op on an unmounted path. Both run inside the global
    mount lock; ``is_mounted`` is a lock-free snapshot read.
    """

    def __init__(self, backend: ImageBackend, lock: MountLock) -> None:
        self._backend = backend
        self._lock = lock

    def is_mounted(self, path: Path, image_path: Optional[Path] = None) -> bool:
        current = self._backend.mounted_image(path)
        if current is None:
            return False
        return image_path is None or _same_path(current, image_path)

    def attach(self, image_path: Path, mount_point: Path) -> MountHandle:
        with self._lock:
            current = self._backend.mounted_image(mount_point)
            if current is not None:
                if _same_path(current, image_path):
                    logger.debug("%s already attached at %s", image_path, mount_point)
                    return MountHandle(image=ImageRef(image_path), mount_point=mount_point)
                raise MountConflict(
                    f"{mount_point} is already a mount of {current}",
                    path=mount_point,
                )
            if os.path.ismount(mount_point):
                raise MountConflict(f"{mount_point} is already a mount point", path=mount_point)
            if mount_point.is_symlink() or (mount_point.exists() and not mount_point.is_dir()):
                raise MountConflict(f"{mount_point} is not a directory", path=mount_point)
            if mount_point.exists() and any(mount_point.iterdir()):
                raise MountConflict(f"Mount point {mount_point} is not empty", path=mount_point)
            handle = self._backend.attach(ImageRef(image_path), mount_point)
            logger.info("Attached %s at %s", image_path, mount_point)
            return handle

    def ensure_attached(self, image_path: Path, mount_point: Path) -> MountHandle:
        """Attach ``image_path`` at ``mount_point``, creating the directory if needed."""
        if not mount_point.exists() and not mount_point.is_symlink():
            mount_point.mkdir(parents=True)
        return self.attach(image_path, mount_point)

    def detach(self, handle: MountHandle) -> None:
        with self._lock:
            current = self._backend.mounted_image(handle.mount_point)
            if current is None:
                logger.debug("Nothing attached at %s", handle.mount_point)
                return
            if not _same_path(current, handle.image.path):
                raise MountConflict(
                    f"{handle.mount_point} holds {current}, not {handle.image.path}",
                    path=handle.mount_point,
                )
            self._backend.detach(handle)
            logger.info("Detached %s from %s", handle.image.path, handle.mount_point)
