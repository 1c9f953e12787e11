"""Atomic migration of a directory into a disk image and back.

Each public step is idempotent so a crashed or failed operation can be
resumed from the step recorded in the ledger. The logical path only ever
holds the original directory, a live mount of the verified image, or (for
the instant between two renames) nothing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
import shutil
import stat
from typing import Any, Callable, Optional

from afpack.backends import ImageBackend, ImageRef, MountHandle, PlatformProbe
from afpack.core.cancel import CancellationToken
from afpack.core.fingerprint import (
    IGNORED_ROOT_NAMES,
    TreeEntry,
    TreeSummary,
    fingerprint_tree,
    measure_tree,
    walk_tree,
)
from afpack.core.state import ManagedPath
from afpack.errors import (
    AfpackError,
    InsufficientSpace,
    PartialMigration,
    Unsupported,
    ValidationError,
    VerificationFailed,
)
from afpack.infrastructure.mounts import MountManager
from afpack.settings import Settings, format_size

logger = logging.getLogger(__name__)

Checkpoint = Callable[[dict[str, Any]], None]


@dataclass(frozen=True)
class MigrationPaths:
    """Every on-disk location a migration of one logical path touches."""

    logical: Path
    image: Path
    partial_image: Path
    staging: Path
    trash: Path
    restore: Path

    @classmethod
    def for_path(cls, logical: Path, image_suffix: str = ".asif") -> MigrationPaths:
        parent = logical.parent
        name = logical.name
        return cls(
            logical=logical,
            image=parent / f"{name}{image_suffix}",
            partial_image=parent / f".{name}.afpack-partial{image_suffix}",
            staging=parent / f".{name}.afpack-staging",
            trash=parent / f".{name}.afpack-trash",
            restore=parent / f".{name}.afpack-restore",
        )


@dataclass
class StepContext:
    entry: ManagedPath
    paths: MigrationPaths
    cancel: CancellationToken
    checkpoint: Checkpoint = field(default=lambda _detail: None)


@dataclass(frozen=True)
class CopyStats:
    copied: int
    skipped: int
    directories: int


def _is_empty_dir(path: Path) -> bool:
    if path.is_symlink() or not path.is_dir():
        return False
    return not any(path.iterdir())


def _rmdir_if_empty(path: Path) -> None:
    if _is_empty_dir(path):
        path.rmdir()


def _make_writable(root: Path) -> None:
    pending = [root]
    while pending:
        current = pending.pop()
        mode = stat.S_IMODE(os.lstat(current).st_mode)
        os.chmod(current, mode | stat.S_IRWXU)
        with os.scandir(current) as iterator:
            for child in iterator:
                if child.is_dir(follow_symlinks=False):
                    pending.append(Path(child.path))


def force_rmtree(path: Path) -> None:
    """Remove a tree, including directories left read-only by package managers."""
    if not path.exists() and not path.is_symlink():
        return
    try:
        shutil.rmtree(path)
    except PermissionError:
        _make_writable(path)
        shutil.rmtree(path)


def _remove_node(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        force_rmtree(path)


def _file_matches(destination: Path, entry: TreeEntry) -> bool:
    try:
        info = os.lstat(destination)
    except FileNotFoundError:
        return False
    return (
        stat.S_ISREG(info.st_mode)
        and info.st_size == entry.size
        and info.st_mtime_ns == entry.mtime_ns
        and stat.S_IMODE(info.st_mode) == entry.mode
    )


def _symlink_matches(destination: Path, target: Optional[str]) -> bool:
    return destination.is_symlink() and os.readlink(destination) == target


def _copy_owner(entry: TreeEntry, destination: Path) -> None:
    info = os.lstat(destination)
    if (info.st_uid, info.st_gid) == (entry.uid, entry.gid):
        return
    try:
        os.chown(destination, entry.uid, entry.gid, follow_symlinks=False)
    except PermissionError:
        logger.debug("Cannot preserve ownership of %s", destination)


def _copy_dir_metadata(source: Path, destination: Path) -> None:
    try:
        shutil.copystat(source, destination, follow_symlinks=False)
        info = os.lstat(source)
        if (os.lstat(destination).st_uid, os.lstat(destination).st_gid) != (info.st_uid, info.st_gid):
            os.chown(destination, info.st_uid, info.st_gid, follow_symlinks=False)
    except PermissionError:
        logger.debug("Cannot preserve directory metadata of %s", destination)


def copy_tree(
    source: Path,
    destination: Path,
    *,
    cancel: CancellationToken,
    checkpoint: Optional[Checkpoint] = None,
    batch_size: int = 500,
    source_is_volume: bool = False,
) -> CopyStats:
    """Copy ``source`` into the existing directory ``destination``.

    Preserves permissions, timestamps, symlinks and (where permitted)
    ownership. Files already present with matching size, mtime and mode are
    skipped, so an interrupted copy resumes where it stopped. Cancellation
    is honoured between files.
    """
    directories: list[tuple[Path, Path]] = [(source, destination)]
    copied = skipped = seen = 0
    for entry in walk_tree(source, volume_root=source_is_volume):
        cancel.raise_if_cancelled()
        src = source / entry.relative_path
        dst = destination / entry.relative_path
        if entry.kind == "dir":
            if dst.is_symlink() or (dst.exists() and not dst.is_dir()):
                _remove_node(dst)
            dst.mkdir(exist_ok=True)
            if not os.access(dst, os.W_OK | os.X_OK):
                os.chmod(dst, stat.S_IMODE(os.lstat(dst).st_mode) | stat.S_IRWXU)
            directories.append((src, dst))
            continue
        seen += 1
        if entry.kind == "symlink":
            if _symlink_matches(dst, entry.link_target):
                skipped += 1
            else:
                if dst.exists() or dst.is_symlink():
                    _remove_node(dst)
                os.symlink(entry.link_target, dst)
                if os.utime in os.supports_follow_symlinks:
                    os.utime(dst, ns=(entry.mtime_ns, entry.mtime_ns), follow_symlinks=False)
                _copy_owner(entry, dst)
                copied += 1
        elif entry.kind == "file":
            if _file_matches(dst, entry):
                skipped += 1
            else:
                if dst.exists() or dst.is_symlink():
                    _remove_node(dst)
                shutil.copy2(src, dst, follow_symlinks=False)
                _copy_owner(entry, dst)
                copied += 1
        else:
            raise ValidationError(f"Unsupported file type in tree: {src}")
        if checkpoint is not None and seen % batch_size == 0:
            checkpoint(
                {
                    "copied": copied,
                    "skipped": skipped,
                    "last_path": entry.relative_path.as_posix(),
                }
            )
    # Deepest first so read-only directories are sealed after their children.
    for src_dir, dst_dir in reversed(directories):
        _copy_dir_metadata(src_dir, dst_dir)
    return CopyStats(copied=copied, skipped=skipped, directories=len(directories) - 1)


def _top_level_names(path: Path, volume_root: bool) -> list[str]:
    names = sorted(child.name for child in path.iterdir())
    if volume_root:
        names = [name for name in names if name not in IGNORED_ROOT_NAMES]
    return names


class AtomicMigrator:
    """Pack and unpack steps plus their stabilization and rollback."""

    def __init__(
        self,
        mounts: MountManager,
        image_backend: ImageBackend,
        settings: Settings,
        *,
        disk_usage: Callable[[Path], Any] = shutil.disk_usage,
    ) -> None:
        self._mounts = mounts
        self._backend = image_backend
        self._settings = settings
        self._disk_usage = disk_usage

    def paths_for(self, logical: Path) -> MigrationPaths:
        return MigrationPaths.for_path(logical, self._settings.image_suffix)

    # -- preflight ---------------------------------------------------------

    def preflight_pack(self, logical: Path, probe: PlatformProbe) -> TreeSummary:
        """Validate a path for packing; makes no changes anywhere."""
        if not probe.supports_image_creation():
            raise Unsupported("This platform cannot create sparse disk images", path=logical)
        if logical.is_symlink():
            raise ValidationError(f"{logical} is a symlink, not a plain directory", path=logical)
        if not logical.exists():
            raise ValidationError(f"{logical} does not exist", path=logical)
        if not logical.is_dir():
            raise ValidationError(f"{logical} is not a directory", path=logical)
        if os.path.ismount(logical) or self._mounts.is_mounted(logical):
            raise ValidationError(f"{logical} is already a mount point", path=logical)
        paths = self.paths_for(logical)
        for leftover in (paths.image, paths.partial_image, paths.staging, paths.trash, paths.restore):
            if leftover.exists() or leftover.is_symlink():
                raise ValidationError(
                    f"{leftover} already exists; move it away before packing {logical}",
                    path=logical,
                )
        return self._check_pack_space(paths)

    def _check_pack_space(self, paths: MigrationPaths) -> TreeSummary:
        summary = measure_tree(paths.logical)
        required = self._settings.required_bytes(summary.allocated_bytes)
        free = self._disk_usage(paths.image.parent).free
        if free < required:
            raise InsufficientSpace(
                f"Packing {paths.logical} needs {format_size(required)} but only "
                f"{format_size(free)} is free on {paths.image.parent}",
                path=paths.logical,
            )
        return summary

    def _check_unpack_space(self, paths: MigrationPaths) -> TreeSummary:
        summary = measure_tree(paths.logical, volume_root=True)
        free = self._disk_usage(paths.logical.parent).free
        if free < summary.allocated_bytes:
            raise InsufficientSpace(
                f"Unpacking {paths.logical} needs {format_size(summary.allocated_bytes)} but "
                f"only {format_size(free)} is free on {paths.logical.parent}",
                path=paths.logical,
            )
        return summary

    # -- pack --------------------------------------------------------------

    def run_pack_step(self, step: str, ctx: StepContext) -> dict[str, Any]:
        handler = getattr(self, f"_pack_{step}")
        return handler(ctx) or {}

    def _pack_check_space(self, ctx: StepContext) -> dict[str, Any]:
        summary = self._check_pack_space(ctx.paths)
        return {"size_bytes": summary.total_bytes, "file_count": summary.file_count}

    def _pack_create_image(self, ctx: StepContext) -> None:
        paths = ctx.paths
        if self._mounts.is_mounted(paths.staging):
            self._mounts.detach(MountHandle(ImageRef(paths.partial_image), paths.staging))
        if paths.partial_image.exists():
            logger.info("Discarding partial image %s from an earlier attempt", paths.partial_image)
            self._backend.delete(ImageRef(paths.partial_image))
        size = self._settings.image_size_for(measure_tree(paths.logical).allocated_bytes)
        self._backend.create(paths.partial_image, size)
        logger.info("Created %s (%s)", paths.partial_image, format_size(size))

    def _pack_attach_staging(self, ctx: StepContext) -> None:
        self._mounts.ensure_attached(ctx.paths.partial_image, ctx.paths.staging)

    def _pack_copy(self, ctx: StepContext) -> dict[str, Any]:
        self._mounts.ensure_attached(ctx.paths.partial_image, ctx.paths.staging)
        stats = copy_tree(
            ctx.paths.logical,
            ctx.paths.staging,
            cancel=ctx.cancel,
            checkpoint=ctx.checkpoint,
            batch_size=self._settings.copy_batch_size,
        )
        logger.info(
            "Copied %s into image (%d copied, %d already present)",
            ctx.paths.logical,
            stats.copied,
            stats.skipped,
        )
        return {}

    def _pack_verify(self, ctx: StepContext) -> dict[str, Any]:
        self._mounts.ensure_attached(ctx.paths.partial_image, ctx.paths.staging)
        copy_fp = fingerprint_tree(ctx.paths.staging, ctx.cancel, volume_root=True)
        original_fp = fingerprint_tree(ctx.paths.logical, ctx.cancel)
        if copy_fp.digest != original_fp.digest:
            raise VerificationFailed(
                f"Image copy of {ctx.paths.logical} does not match the original "
                f"({copy_fp.file_count} vs {original_fp.file_count} files); "
                "the original was left untouched",
                path=ctx.paths.logical,
            )
        return {
            "content_fingerprint": original_fp.digest,
            "size_bytes": original_fp.total_bytes,
            "file_count": original_fp.file_count,
        }

    def _pack_detach_staging(self, ctx: StepContext) -> None:
        self._mounts.detach(MountHandle(ImageRef(ctx.paths.partial_image), ctx.paths.staging))
        _rmdir_if_empty(ctx.paths.staging)

    def _pack_finalize_image(self, ctx: StepContext) -> dict[str, Any]:
        paths = ctx.paths
        if paths.partial_image.exists():
            os.replace(paths.partial_image, paths.image)
        elif not paths.image.exists():
            raise PartialMigration(
                f"Neither {paths.partial_image} nor {paths.image} exists",
                path=paths.logical,
                retry_safe=False,
            )
        return {"backing_image_path": paths.image}

    def _pack_trash_original(self, ctx: StepContext) -> None:
        paths = ctx.paths
        if self._mounts.is_mounted(paths.logical, paths.image):
            return
        if paths.trash.exists():
            if paths.logical.exists() and not _is_empty_dir(paths.logical):
                raise PartialMigration(
                    f"Both {paths.logical} and {paths.trash} hold data; resolve manually",
                    path=paths.logical,
                    retry_safe=False,
                )
            return
        os.rename(paths.logical, paths.trash)

    def _pack_attach_logical(self, ctx: StepContext) -> None:
        self._mounts.ensure_attached(ctx.paths.image, ctx.paths.logical)

    def _pack_confirm(self, ctx: StepContext) -> None:
        paths = ctx.paths
        if not self._mounts.is_mounted(paths.logical, paths.image):
            raise PartialMigration(f"{paths.image} is not attached at {paths.logical}", path=paths.logical)
        if paths.trash.exists():
            mounted = _top_level_names(paths.logical, volume_root=True)
            original = _top_level_names(paths.trash, volume_root=False)
            if mounted != original:
                raise VerificationFailed(
                    f"Mounted image at {paths.logical} does not list the original's entries",
                    path=paths.logical,
                )

    def _pack_purge_trash(self, ctx: StepContext) -> None:
        force_rmtree(ctx.paths.trash)

    def stabilize_pack(self, step: str, paths: MigrationPaths) -> str:
        """Leave a failed pack in a consistent state; return the step to resume at."""
        if step in ("attach_staging", "copy", "verify"):
            self._quiet_detach(paths.partial_image, paths.staging)
            return "attach_staging"
        if step in ("trash_original", "attach_logical", "confirm"):
            self._restore_original(paths)
            return "trash_original"
        return step

    def rollback_pack(self, paths: MigrationPaths) -> None:
        """Return to the pre-pack state: original directory in place, no image."""
        self._quiet_detach(paths.partial_image, paths.staging)
        self._restore_original(paths)
        _rmdir_if_empty(paths.staging)
        if paths.partial_image.exists():
            self._backend.delete(ImageRef(paths.partial_image))
        original_in_place = (
            paths.logical.is_dir()
            and not paths.logical.is_symlink()
            and not paths.trash.exists()
            and not self._mounts.is_mounted(paths.logical)
        )
        if paths.image.exists():
            if original_in_place:
                self._backend.delete(ImageRef(paths.image))
            else:
                logger.error("Keeping %s: %s is not back in place", paths.image, paths.logical)

    def _restore_original(self, paths: MigrationPaths) -> None:
        if self._mounts.is_mounted(paths.logical):
            self._mounts.detach(MountHandle(ImageRef(paths.image), paths.logical))
        if not paths.trash.exists():
            return
        if paths.logical.exists() or paths.logical.is_symlink():
            if not _is_empty_dir(paths.logical):
                raise PartialMigration(
                    f"Cannot restore {paths.trash}: {paths.logical} is not empty",
                    path=paths.logical,
                    retry_safe=False,
                )
            paths.logical.rmdir()
        os.rename(paths.trash, paths.logical)
        logger.warning("Restored original directory %s", paths.logical)

    def _quiet_detach(self, image: Path, mount_point: Path) -> None:
        try:
            self._mounts.detach(MountHandle(ImageRef(image), mount_point))
        except (AfpackError, OSError) as exc:
            logger.warning("Could not detach %s: %s", mount_point, exc)

    # -- unpack ------------------------------------------------------------

    def run_unpack_step(self, step: str, ctx: StepContext) -> dict[str, Any]:
        handler = getattr(self, f"_unpack_{step}")
        return handler(ctx) or {}

    def _unpack_check_space(self, ctx: StepContext) -> None:
        self._mounts.ensure_attached(ctx.paths.image, ctx.paths.logical)
        self._check_unpack_space(ctx.paths)

    def _unpack_copy_out(self, ctx: StepContext) -> None:
        paths = ctx.paths
        self._mounts.ensure_attached(paths.image, paths.logical)
        paths.restore.mkdir(exist_ok=True)
        stats = copy_tree(
            paths.logical,
            paths.restore,
            cancel=ctx.cancel,
            checkpoint=ctx.checkpoint,
            batch_size=self._settings.copy_batch_size,
            source_is_volume=True,
        )
        logger.info(
            "Copied %s out of its image (%d copied, %d already present)",
            paths.logical,
            stats.copied,
            stats.skipped,
        )

    def _unpack_verify(self, ctx: StepContext) -> dict[str, Any]:
        paths = ctx.paths
        self._mounts.ensure_attached(paths.image, paths.logical)
        mounted_fp = fingerprint_tree(paths.logical, ctx.cancel, volume_root=True)
        restored_fp = fingerprint_tree(paths.restore, ctx.cancel)
        if mounted_fp.digest != restored_fp.digest:
            raise VerificationFailed(
                f"Restored copy of {paths.logical} does not match the image content "
                f"({restored_fp.file_count} vs {mounted_fp.file_count} files); "
                "the image was left untouched",
                path=paths.logical,
            )
        return {
            "content_fingerprint": restored_fp.digest,
            "size_bytes": restored_fp.total_bytes,
            "file_count": restored_fp.file_count,
        }

    def _unpack_detach_logical(self, ctx: StepContext) -> None:
        self._mounts.detach(MountHandle(ImageRef(ctx.paths.image), ctx.paths.logical))

    def _unpack_swap_in(self, ctx: StepContext) -> None:
        paths = ctx.paths
        if paths.restore.exists():
            if self._mounts.is_mounted(paths.logical):
                raise PartialMigration(f"{paths.logical} is still mounted", path=paths.logical)
            if paths.logical.exists() or paths.logical.is_symlink():
                if not _is_empty_dir(paths.logical):
                    raise PartialMigration(
                        f"Cannot move {paths.restore} into place: {paths.logical} is not empty",
                        path=paths.logical,
                        retry_safe=False,
                    )
                paths.logical.rmdir()
            os.rename(paths.restore, paths.logical)
            return
        if not paths.logical.is_dir() or self._mounts.is_mounted(paths.logical):
            raise PartialMigration(
                f"Restored directory {paths.restore} is missing",
                path=paths.logical,
                retry_safe=False,
            )

    def _unpack_delete_image(self, ctx: StepContext) -> None:
        self._backend.delete(ImageRef(ctx.paths.image))

    def stabilize_unpack(self, step: str, paths: MigrationPaths) -> str:
        """Leave a failed unpack in a consistent state; return the step to resume at."""
        if step == "swap_in" and paths.restore.exists() and not self._mounts.is_mounted(paths.logical):
            if not (paths.logical.exists() and not _is_empty_dir(paths.logical)):
                self._mounts.ensure_attached(paths.image, paths.logical)
                return "detach_logical"
        return step

    def unpack_swapped(self, paths: MigrationPaths) -> bool:
        """True once the restored directory has replaced the mount."""
        return (
            not paths.restore.exists()
            and paths.logical.is_dir()
            and not paths.logical.is_symlink()
            and not _is_empty_dir(paths.logical)
            and not self._mounts.is_mounted(paths.logical)
        )

    def rollback_unpack(self, paths: MigrationPaths) -> None:
        """Return to the packed state: image mounted at the logical path, no restore copy."""
        if not self._mounts.is_mounted(paths.logical, paths.image):
            if paths.logical.exists() and not _is_empty_dir(paths.logical):
                raise PartialMigration(
                    f"Cannot remount {paths.image}: {paths.logical} is not empty",
                    path=paths.logical,
                    retry_safe=False,
                )
            self._mounts.ensure_attached(paths.image, paths.logical)
        force_rmtree(paths.restore)

    def remount(self, paths: MigrationPaths) -> MountHandle:
        return self._mounts.ensure_attached(paths.image, paths.logical)
