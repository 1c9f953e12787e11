"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Generator

import pytest

from afpack.app import AfpackApp
from afpack.settings import Settings
from tests.helpers import FakeCompressionBackend, FakeDiskUsage, FakeImageBackend, FakeProbe


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = os.getenv("RUN_SLOW", "").lower() in {"1", "true", "yes"}
    for item in items:
        if "slow" in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason="slow test"))


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A working directory that holds the trees under test."""
    project = tmp_path / "project"
    project.mkdir()
    return project.resolve()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        state_dir=tmp_path / "state",
        max_size="1M",
        min_headroom_bytes=0,
        copy_batch_size=5,
        mount_lock_timeout=5.0,
    )


@pytest.fixture
def image_backend() -> FakeImageBackend:
    return FakeImageBackend()


@pytest.fixture
def compression_backend() -> FakeCompressionBackend:
    return FakeCompressionBackend()


@pytest.fixture
def disk_usage() -> FakeDiskUsage:
    return FakeDiskUsage()


@pytest.fixture
def make_app(
    settings: Settings,
    image_backend: FakeImageBackend,
    compression_backend: FakeCompressionBackend,
    disk_usage: FakeDiskUsage,
) -> Generator[Callable[..., AfpackApp], None, None]:
    """Factory for apps sharing one state dir, like successive CLI runs."""
    apps: list[AfpackApp] = []

    def _make(**overrides) -> AfpackApp:
        app = AfpackApp(
            overrides.pop("settings", settings),
            image_backend=overrides.pop("image_backend", image_backend),
            compression_backend=overrides.pop("compression_backend", compression_backend),
            probe=overrides.pop("probe", FakeProbe()),
            disk_usage=overrides.pop("disk_usage", disk_usage),
        )
        apps.append(app)
        return app

    yield _make
    for app in apps:
        app.close()


@pytest.fixture
def app(make_app: Callable[..., AfpackApp]) -> AfpackApp:
    return make_app()
