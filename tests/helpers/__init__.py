"""Test helper utilities."""

from .backends import (
    BusyOnceImageBackend,
    FakeCompressionBackend,
    FakeDiskUsage,
    FakeImageBackend,
    FakeProbe,
)
from .trees import build_many_files, build_node_modules, digest, leftovers

__all__ = [
    "BusyOnceImageBackend",
    "FakeCompressionBackend",
    "FakeDiskUsage",
    "FakeImageBackend",
    "FakeProbe",
    "build_many_files",
    "build_node_modules",
    "digest",
    "leftovers",
]
