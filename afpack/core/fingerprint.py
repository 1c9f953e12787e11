"""Directory tree manifests and content fingerprints."""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import json
import os
from pathlib import Path, PurePosixPath
import stat
from typing import Iterator, Optional

from afpack.core.cancel import CancellationToken
from afpack.errors import ValidationError

# Volume metadata created by the OS at the root of a freshly mounted image.
IGNORED_ROOT_NAMES = frozenset(
    {".fseventsd", ".Spotlight-V100", ".Trashes", ".TemporaryItems", ".DocumentRevisions-V100"}
)

_BLOCK = 4096
_CHUNK = 1024 * 1024


@dataclass(frozen=True)
class TreeEntry:
    """One node below a tree root (the root itself is never yielded)."""

    relative_path: PurePosixPath
    kind: str  # 'file', 'dir', 'symlink', 'special'
    mode: int
    size: int
    mtime_ns: int
    uid: int
    gid: int
    link_target: Optional[str] = None


@dataclass(frozen=True)
class TreeSummary:
    """Sizes of a tree, gathered from metadata only."""

    file_count: int
    dir_count: int
    symlink_count: int
    total_bytes: int
    allocated_bytes: int


@dataclass(frozen=True)
class TreeFingerprint:
    """Content digest of a tree plus the totals it was computed over."""

    digest: str
    file_count: int
    dir_count: int
    symlink_count: int
    total_bytes: int


def walk_tree(root: Path, *, volume_root: bool = False) -> Iterator[TreeEntry]:
    """Yield every node below ``root`` in a deterministic order.

    Symlinks are reported, never followed. Children of a directory are
    yielded (sorted by name) before descending into them.
    """
    pending = [PurePosixPath()]
    while pending:
        relative = pending.pop()
        base = root / relative if relative.parts else root
        with os.scandir(base) as iterator:
            children = sorted(iterator, key=lambda item: item.name)
        subdirs: list[PurePosixPath] = []
        for child in children:
            if volume_root and not relative.parts and child.name in IGNORED_ROOT_NAMES:
                continue
            child_relative = relative / child.name
            info = child.stat(follow_symlinks=False)
            mode = info.st_mode
            link_target = None
            if stat.S_ISLNK(mode):
                kind = "symlink"
                link_target = os.readlink(child.path)
            elif stat.S_ISDIR(mode):
                kind = "dir"
                subdirs.append(child_relative)
            elif stat.S_ISREG(mode):
                kind = "file"
            else:
                kind = "special"
            yield TreeEntry(
                relative_path=child_relative,
                kind=kind,
                mode=stat.S_IMODE(mode),
                size=info.st_size if kind == "file" else 0,
                mtime_ns=info.st_mtime_ns,
                uid=info.st_uid,
                gid=info.st_gid,
                link_target=link_target,
            )
        pending.extend(reversed(subdirs))


def measure_tree(root: Path, *, volume_root: bool = False) -> TreeSummary:
    """Count and size a tree without reading file content.

    Raises ValidationError for sockets, FIFOs and device nodes, which cannot
    be carried into an image.
    """
    files = dirs = links = 0
    total = allocated = 0
    for entry in walk_tree(root, volume_root=volume_root):
        if entry.kind == "special":
            raise ValidationError(f"Unsupported file type in tree: {root / entry.relative_path}")
        if entry.kind == "file":
            files += 1
            total += entry.size
            allocated += -(-entry.size // _BLOCK) * _BLOCK
        elif entry.kind == "dir":
            dirs += 1
            allocated += _BLOCK
        else:
            links += 1
            allocated += _BLOCK
    return TreeSummary(
        file_count=files,
        dir_count=dirs,
        symlink_count=links,
        total_bytes=total,
        allocated_bytes=allocated,
    )


def file_digest(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def fingerprint_tree(
    root: Path,
    cancel: Optional[CancellationToken] = None,
    *,
    volume_root: bool = False,
) -> TreeFingerprint:
    """Compute a deterministic fingerprint of the tree below ``root``.

    The manifest covers relative path, node type, permission bits, file
    content and symlink targets. Ownership and timestamps are excluded: they
    are copied on a best-effort basis and directory mtimes change while a
    copy is being built.

    With ``volume_root`` the OS metadata directories at the top of a mounted
    volume are left out.
    """
    digest = hashlib.sha256()
    files = dirs = links = 0
    total = 0
    for entry in walk_tree(root, volume_root=volume_root):
        if cancel is not None:
            cancel.raise_if_cancelled()
        record: dict[str, object] = {
            "path": entry.relative_path.as_posix(),
            "kind": entry.kind,
        }
        if entry.kind == "symlink":
            links += 1
            record["target"] = entry.link_target
        else:
            record["mode"] = entry.mode
        if entry.kind == "file":
            files += 1
            total += entry.size
            record["size"] = entry.size
            record["sha256"] = file_digest(root / entry.relative_path)
        elif entry.kind == "dir":
            dirs += 1
        serialized = json.dumps(record, sort_keys=True, separators=(",", ":"))
        digest.update(serialized.encode("utf-8"))
        digest.update(b"\n")
    return TreeFingerprint(
        digest=digest.hexdigest(),
        file_count=files,
        dir_count=dirs,
        symlink_count=links,
        total_bytes=total,
    )
