"""Integration tests for crash recovery behavior.

A crash is simulated by raising a BaseException from inside a step: the
orchestrator's error handling does not see it, so the ledger is left in the
transitional state exactly as a killed process would leave it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from afpack.app import AfpackApp
from afpack.core.state import (
    COMPRESS_STEPS,
    DECOMPRESS_STEPS,
    PACK_STEPS,
    UNPACK_STEPS,
    ManagedState,
    OperationKind,
)
from afpack.errors import InvalidState, PartialMigration, VerificationFailed
from tests.helpers import FakeCompressionBackend, build_node_modules, digest, leftovers


class SimulatedCrash(BaseException):
    """Stands in for SIGKILL or power loss."""


def _crash_pack_at(
    monkeypatch: pytest.MonkeyPatch, app: AfpackApp, target: str, *, after: bool
) -> None:
    real = app.migrator.run_pack_step

    def run_pack_step(step, ctx):
        if step == target and not after:
            raise SimulatedCrash(step)
        result = real(step, ctx)
        if step == target:
            raise SimulatedCrash(step)
        return result

    monkeypatch.setattr(app.migrator, "run_pack_step", run_pack_step)


def _crash_unpack_at(
    monkeypatch: pytest.MonkeyPatch, app: AfpackApp, target: str, *, after: bool
) -> None:
    real = app.migrator.run_unpack_step

    def run_unpack_step(step, ctx):
        if step == target and not after:
            raise SimulatedCrash(step)
        result = real(step, ctx)
        if step == target:
            raise SimulatedCrash(step)
        return result

    monkeypatch.setattr(app.migrator, "run_unpack_step", run_unpack_step)


def _crash_compression_at(
    monkeypatch: pytest.MonkeyPatch, app: AfpackApp, target: str, *, after: bool
) -> None:
    real = app.compressor.run_step

    def run_step(kind, step, ctx):
        if step == target and not after:
            raise SimulatedCrash(step)
        result = real(kind, step, ctx)
        if step == target:
            raise SimulatedCrash(step)
        return result

    monkeypatch.setattr(app.compressor, "run_step", run_step)


@pytest.mark.parametrize("after", [False, True], ids=["before", "after"])
@pytest.mark.parametrize("step", PACK_STEPS)
def test_rerunning_pack_after_crash_converges(
    make_app: Callable[..., AfpackApp],
    project_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
    step: str,
    after: bool,
) -> None:
    logical = build_node_modules(project_dir / "node_modules")
    before = digest(logical)
    crashing = make_app()
    _crash_pack_at(monkeypatch, crashing, step, after=after)
    with pytest.raises(SimulatedCrash):
        crashing.orchestrator.pack(logical)
    assert crashing.ledger.get(logical).state == ManagedState.PACKING

    report = make_app().orchestrator.pack(logical)

    assert report.state == ManagedState.PACKED
    assert digest(logical, volume_root=True) == before
    assert leftovers(project_dir, "node_modules") == []


@pytest.mark.parametrize("after", [False, True], ids=["before", "after"])
@pytest.mark.parametrize("step", PACK_STEPS)
def test_abort_after_pack_crash_converges(
    make_app: Callable[..., AfpackApp],
    project_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
    step: str,
    after: bool,
) -> None:
    logical = build_node_modules(project_dir / "node_modules")
    before = digest(logical)
    crashing = make_app()
    _crash_pack_at(monkeypatch, crashing, step, after=after)
    with pytest.raises(SimulatedCrash):
        crashing.orchestrator.pack(logical)

    recovering = make_app()
    report = recovering.orchestrator.abort(logical)

    assert leftovers(project_dir, "node_modules") == []
    if step == "purge_trash":
        # Past the commit point: abort completes the pack instead.
        assert report.state == ManagedState.PACKED
        assert digest(logical, volume_root=True) == before
    else:
        assert report.state == ManagedState.UNPACKED
        assert recovering.ledger.get(logical) is None
        assert not logical.is_symlink()
        assert digest(logical) == before
        assert not (project_dir / "node_modules.asif").exists()


@pytest.mark.parametrize("after", [False, True], ids=["before", "after"])
@pytest.mark.parametrize("step", UNPACK_STEPS)
def test_rerunning_unpack_after_crash_converges(
    make_app: Callable[..., AfpackApp],
    project_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
    step: str,
    after: bool,
) -> None:
    logical = build_node_modules(project_dir / "node_modules")
    before = digest(logical)
    crashing = make_app()
    crashing.orchestrator.pack(logical)
    _crash_unpack_at(monkeypatch, crashing, step, after=after)
    with pytest.raises(SimulatedCrash):
        crashing.orchestrator.unpack(logical)

    recovering = make_app()
    report = recovering.orchestrator.unpack(logical)

    assert report.state == ManagedState.UNPACKED
    assert recovering.ledger.get(logical) is None
    assert digest(logical) == before
    assert not (project_dir / "node_modules.asif").exists()
    assert leftovers(project_dir, "node_modules") == []


@pytest.mark.parametrize("after", [False, True], ids=["before", "after"])
@pytest.mark.parametrize("step", UNPACK_STEPS)
def test_abort_after_unpack_crash_converges(
    make_app: Callable[..., AfpackApp],
    project_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
    step: str,
    after: bool,
) -> None:
    logical = build_node_modules(project_dir / "node_modules")
    before = digest(logical)
    crashing = make_app()
    crashing.orchestrator.pack(logical)
    _crash_unpack_at(monkeypatch, crashing, step, after=after)
    with pytest.raises(SimulatedCrash):
        crashing.orchestrator.unpack(logical)

    recovering = make_app()
    report = recovering.orchestrator.abort(logical)

    assert leftovers(project_dir, "node_modules") == []
    swapped = step == "delete_image" or (step == "swap_in" and after)
    if swapped:
        assert report.state == ManagedState.UNPACKED
        assert recovering.ledger.get(logical) is None
        assert digest(logical) == before
    else:
        assert report.state == ManagedState.PACKED
        assert recovering.orchestrator.status(logical).mounted
        assert digest(logical, volume_root=True) == before


def test_crash_mid_copy_resumes_without_recopying(
    make_app: Callable[..., AfpackApp],
    project_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    logical = build_node_modules(project_dir / "node_modules", packages=4)
    before = digest(logical)
    crashing = make_app()
    real = crashing.migrator.run_pack_step

    def run_pack_step(step, ctx):
        if step == "copy":
            def checkpoint(detail):
                raise SimulatedCrash(detail["last_path"])

            ctx.checkpoint = checkpoint
        return real(step, ctx)

    monkeypatch.setattr(crashing.migrator, "run_pack_step", run_pack_step)
    with pytest.raises(SimulatedCrash):
        crashing.orchestrator.pack(logical)

    report = make_app().orchestrator.pack(logical)

    assert report.resumed_from == "attach_staging"
    assert digest(logical, volume_root=True) == before


def test_crash_then_reboot_resumes_pack(
    make_app: Callable[..., AfpackApp],
    project_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
    image_backend,
) -> None:
    logical = build_node_modules(project_dir / "node_modules")
    before = digest(logical)
    crashing = make_app()
    _crash_pack_at(monkeypatch, crashing, "attach_logical", after=True)
    with pytest.raises(SimulatedCrash):
        crashing.orchestrator.pack(logical)
    image_backend.simulate_reboot()

    report = make_app().orchestrator.pack(logical)

    assert report.resumed_from == "trash_original"
    assert digest(logical, volume_root=True) == before
    assert leftovers(project_dir, "node_modules") == []


def test_status_reports_interrupted_operation(
    make_app: Callable[..., AfpackApp],
    project_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    logical = build_node_modules(project_dir / "node_modules")
    crashing = make_app()
    _crash_pack_at(monkeypatch, crashing, "copy", after=False)
    with pytest.raises(SimulatedCrash):
        crashing.orchestrator.pack(logical)

    status = make_app().orchestrator.status(logical)

    assert status.state == ManagedState.PACKING
    assert status.interrupted
    assert status.pending_operation.step == "copy"


def test_recover_resumes_every_interrupted_path(
    make_app: Callable[..., AfpackApp],
    project_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    packing = build_node_modules(project_dir / "a" / "node_modules")
    unpacking = build_node_modules(project_dir / "b" / "node_modules")
    crashing = make_app()
    crashing.orchestrator.pack(unpacking)
    _crash_pack_at(monkeypatch, crashing, "verify", after=False)
    _crash_unpack_at(monkeypatch, crashing, "copy_out", after=True)
    with pytest.raises(SimulatedCrash):
        crashing.orchestrator.pack(packing)
    with pytest.raises(SimulatedCrash):
        crashing.orchestrator.unpack(unpacking)

    recovering = make_app()
    results = recovering.orchestrator.recover()

    assert all(result.ok for result in results)
    assert recovering.orchestrator.status(packing).state == ManagedState.PACKED
    assert recovering.ledger.get(unpacking) is None
    assert recovering.orchestrator.recover() == []


@pytest.mark.parametrize("after", [False, True], ids=["before", "after"])
@pytest.mark.parametrize(
    ("kind", "step"),
    [(OperationKind.COMPRESS, step) for step in COMPRESS_STEPS]
    + [(OperationKind.DECOMPRESS, step) for step in DECOMPRESS_STEPS],
)
def test_rerunning_compression_after_crash_converges(
    make_app: Callable[..., AfpackApp],
    project_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
    compression_backend: FakeCompressionBackend,
    kind: OperationKind,
    step: str,
    after: bool,
) -> None:
    logical = build_node_modules(project_dir / "node_modules")
    before = digest(logical)
    crashing = make_app()
    crashing.orchestrator.pack(logical, compress=kind == OperationKind.DECOMPRESS)
    operation = kind.value
    _crash_compression_at(monkeypatch, crashing, step, after=after)
    with pytest.raises(SimulatedCrash):
        getattr(crashing.orchestrator, operation)(logical)
    in_flight = ManagedState.COMPRESSING if kind == OperationKind.COMPRESS else ManagedState.DECOMPRESSING
    assert crashing.ledger.get(logical).state == in_flight

    recovering = make_app()
    report = getattr(recovering.orchestrator, operation)(logical)

    target = kind == OperationKind.COMPRESS
    assert report.state == ManagedState.PACKED
    assert report.compressed is target
    assert recovering.orchestrator.status(logical).compressed is target
    assert bool(compression_backend.compressed) is target
    assert digest(logical, volume_root=True) == before


def test_crash_mid_compression_resumes_only_the_remainder(
    make_app: Callable[..., AfpackApp],
    project_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
    compression_backend: FakeCompressionBackend,
) -> None:
    logical = build_node_modules(project_dir / "node_modules")
    before = digest(logical)
    crashing = make_app()
    crashing.orchestrator.pack(logical)
    real = crashing.compressor.run_step

    def run_step(kind, step, ctx):
        if step == "compress":
            def checkpoint(detail):
                raise SimulatedCrash(detail["processed"])

            ctx.checkpoint = checkpoint
        return real(kind, step, ctx)

    monkeypatch.setattr(crashing.compressor, "run_step", run_step)
    with pytest.raises(SimulatedCrash):
        crashing.orchestrator.compress(logical)
    done_before_crash = len(compression_backend.calls)
    assert done_before_crash == crashing.settings.copy_batch_size

    report = make_app().orchestrator.compress(logical)

    assert report.resumed_from == "compress"
    assert report.compressed is True
    assert len(compression_backend.calls) > done_before_crash
    # Every call compressed a distinct file: nothing was compressed twice.
    assert len(compression_backend.compressed) == len(compression_backend.calls)
    assert digest(logical, volume_root=True) == before


def test_crash_during_integrity_rollback_keeps_entry_blocked(
    make_app: Callable[..., AfpackApp],
    project_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    logical = build_node_modules(project_dir / "node_modules")
    crashing = make_app()
    real = crashing.migrator.run_pack_step

    def run_pack_step(step, ctx):
        result = real(step, ctx)
        if step == "copy":
            (logical / "pkg-0" / "late.js").write_text("written during copy")
        return result

    def rollback_pack(paths):
        raise SimulatedCrash("rollback")

    monkeypatch.setattr(crashing.migrator, "run_pack_step", run_pack_step)
    monkeypatch.setattr(crashing.migrator, "rollback_pack", rollback_pack)
    with pytest.raises(SimulatedCrash):
        crashing.orchestrator.pack(logical)
    before = digest(logical)

    recovering = make_app()
    entry = recovering.ledger.get(logical)
    assert entry.state == ManagedState.FAILED
    assert entry.failure.error_type == VerificationFailed.__name__
    assert entry.failure.retryable is False
    assert entry.failure.resume_step is None
    with pytest.raises(InvalidState):
        recovering.orchestrator.pack(logical)
    assert isinstance(recovering.orchestrator.recover()[0].error, InvalidState)

    report = recovering.orchestrator.abort(logical)

    assert report.state == ManagedState.UNPACKED
    assert recovering.ledger.get(logical) is None
    assert digest(logical) == before
    assert leftovers(project_dir, "node_modules") == []


def test_conflicting_reinstall_during_pack_needs_manual_review(
    make_app: Callable[..., AfpackApp],
    project_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    logical = build_node_modules(project_dir / "node_modules")
    before = digest(logical)
    crashing = make_app()
    _crash_pack_at(monkeypatch, crashing, "trash_original", after=True)
    with pytest.raises(SimulatedCrash):
        crashing.orchestrator.pack(logical)
    # A package manager recreated the directory while the original sat in the trash.
    logical.mkdir()
    (logical / "reinstalled.js").write_text("fresh install")

    recovering = make_app()
    with pytest.raises(PartialMigration) as excinfo:
        recovering.orchestrator.pack(logical)

    assert excinfo.value.retry_safe is False
    entry = recovering.ledger.get(logical)
    assert entry.state == ManagedState.FAILED
    assert entry.failure.retryable is False
    with pytest.raises(InvalidState):
        recovering.orchestrator.pack(logical)
    assert isinstance(recovering.orchestrator.recover()[0].error, InvalidState)
    assert (logical / "reinstalled.js").read_text() == "fresh install"

    (logical / "reinstalled.js").unlink()
    recovering.orchestrator.abort(logical)
    assert digest(logical) == before
    assert leftovers(project_dir, "node_modules") == []
