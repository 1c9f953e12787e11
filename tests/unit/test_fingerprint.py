"""Unit tests for tree walking, measuring and fingerprinting."""

from __future__ import annotations

import os
from pathlib import Path, PurePosixPath

import pytest

from afpack.core.cancel import CancellationToken
from afpack.core.fingerprint import fingerprint_tree, measure_tree, walk_tree
from afpack.errors import OperationCancelled, ValidationError
from tests.helpers import build_node_modules


def _tree(tmp_path: Path) -> Path:
    return build_node_modules(tmp_path / "node_modules", packages=2, files_per_package=2)


def test_walk_is_deterministic_and_does_not_follow_symlinks(tmp_path: Path) -> None:
    root = _tree(tmp_path)
    first = [entry.relative_path for entry in walk_tree(root)]
    second = [entry.relative_path for entry in walk_tree(root)]
    assert first == second
    kinds = {entry.relative_path: entry.kind for entry in walk_tree(root)}
    assert kinds[PurePosixPath(".bin/pkg-0")] == "symlink"
    assert kinds[PurePosixPath("dangling")] == "symlink"
    assert kinds[PurePosixPath("pkg-0/lib")] == "dir"


def test_walk_yields_parents_before_children(tmp_path: Path) -> None:
    root = _tree(tmp_path)
    seen: set[PurePosixPath] = set()
    for entry in walk_tree(root):
        parent = entry.relative_path.parent
        assert parent == PurePosixPath(".") or parent in seen
        seen.add(entry.relative_path)


def test_measure_counts_files_and_bytes(tmp_path: Path) -> None:
    root = tmp_path / "tree"
    (root / "a").mkdir(parents=True)
    (root / "a" / "one.txt").write_bytes(b"x" * 10)
    (root / "two.txt").write_bytes(b"y" * 5000)
    (root / "link").symlink_to("two.txt")
    summary = measure_tree(root)
    assert summary.file_count == 2
    assert summary.dir_count == 1
    assert summary.symlink_count == 1
    assert summary.total_bytes == 5010
    assert summary.allocated_bytes >= summary.total_bytes


def test_measure_rejects_special_files(tmp_path: Path) -> None:
    root = tmp_path / "tree"
    root.mkdir()
    os.mkfifo(root / "pipe")
    with pytest.raises(ValidationError):
        measure_tree(root)


def test_fingerprint_equal_for_identical_copies(tmp_path: Path) -> None:
    root = _tree(tmp_path)
    assert fingerprint_tree(root).digest == fingerprint_tree(root).digest


def test_fingerprint_ignores_timestamps(tmp_path: Path) -> None:
    root = _tree(tmp_path)
    before = fingerprint_tree(root).digest
    os.utime(root / "pkg-0" / "package.json", ns=(0, 0))
    assert fingerprint_tree(root).digest == before


@pytest.mark.parametrize(
    "mutate",
    [
        lambda root: (root / "pkg-1" / "lib" / "mod0.js").write_text("changed\n"),
        lambda root: (root / "pkg-0" / "cli.js").chmod(0o644),
        lambda root: (root / "new-file").write_text(""),
        lambda root: (root / "empty-dir").rmdir(),
    ],
    ids=["content", "mode", "added", "removed"],
)
def test_fingerprint_detects_changes(tmp_path: Path, mutate) -> None:
    root = _tree(tmp_path)
    before = fingerprint_tree(root).digest
    mutate(root)
    assert fingerprint_tree(root).digest != before


def test_fingerprint_detects_symlink_retarget(tmp_path: Path) -> None:
    root = _tree(tmp_path)
    before = fingerprint_tree(root).digest
    (root / "dangling").unlink()
    (root / "dangling").symlink_to("somewhere-else")
    assert fingerprint_tree(root).digest != before


def test_volume_root_skips_os_metadata_only_at_top(tmp_path: Path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()
    (plain / "file").write_text("data")
    volume = tmp_path / "volume"
    volume.mkdir()
    (volume / "file").write_text("data")
    (volume / ".fseventsd").mkdir()
    (volume / ".fseventsd" / "log").write_text("noise")
    assert fingerprint_tree(volume, volume_root=True).digest == fingerprint_tree(plain).digest
    assert fingerprint_tree(volume).digest != fingerprint_tree(plain).digest

    nested = tmp_path / "nested"
    (nested / "sub" / ".Trashes").mkdir(parents=True)
    counted = [entry.relative_path.as_posix() for entry in walk_tree(nested, volume_root=True)]
    assert "sub/.Trashes" in counted


def test_fingerprint_reports_counts(tmp_path: Path) -> None:
    root = tmp_path / "tree"
    root.mkdir()
    (root / "a.txt").write_text("abc")
    (root / "b").symlink_to("a.txt")
    fingerprint = fingerprint_tree(root)
    assert fingerprint.file_count == 1
    assert fingerprint.symlink_count == 1
    assert fingerprint.total_bytes == 3
    assert len(fingerprint.digest) == 64


def test_fingerprint_honours_cancellation(tmp_path: Path) -> None:
    root = _tree(tmp_path)
    token = CancellationToken()
    token.cancel("test")
    with pytest.raises(OperationCancelled):
        fingerprint_tree(root, token)


def test_fingerprint_empty_tree(tmp_path: Path) -> None:
    root = tmp_path / "empty"
    root.mkdir()
    fingerprint = fingerprint_tree(root)
    assert fingerprint.file_count == 0
    assert fingerprint.digest == fingerprint_tree(root).digest

