"""Orchestrator - public lifecycle operations over managed paths."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
import logging
import os
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from afpack.backends import PlatformProbe
from afpack.core.cancel import CancellationToken
from afpack.core.compression import CompressionController
from afpack.core.fingerprint import measure_tree
from afpack.core.migrator import AtomicMigrator, MigrationPaths, StepContext
from afpack.core.state import (
    Failure,
    ManagedPath,
    ManagedState,
    OperationKind,
    OperationRecord,
    PendingOperation,
    TRANSITIONAL_STATES,
    in_flight_state,
    is_past_commit,
    steps_for,
)
from afpack.errors import (
    INTEGRITY_ERRORS,
    AfpackError,
    Busy,
    InvalidState,
    IOFailure,
    PathNotManaged,
    RuntimeFailure,
    Unsupported,
    ValidationError,
)
from afpack.infrastructure.ledger import StateLedger
from afpack.infrastructure.locks import PathLock, read_holder
from afpack.infrastructure.mounts import MountManager
from afpack.settings import Settings

logger = logging.getLogger(__name__)


class OperationStatus(str, Enum):
    """Outcome of a lifecycle command."""

    COMPLETED = "COMPLETED"
    NOOP = "NOOP"
    DRY_RUN = "DRY_RUN"


@dataclass(frozen=True)
class OperationReport:
    logical_path: Path
    kind: OperationKind
    status: OperationStatus
    state: ManagedState
    steps: tuple[str, ...] = ()
    resumed_from: Optional[str] = None
    image_path: Optional[Path] = None
    image_size_bytes: Optional[int] = None
    size_bytes: int = 0
    file_count: int = 0
    compressed: bool = False
    message: str = ""


@dataclass(frozen=True)
class PathStatus:
    """Snapshot read of one path; never takes the path lock."""

    logical_path: Path
    state: ManagedState
    managed: bool
    compressed: bool = False
    size_bytes: int = 0
    file_count: int = 0
    content_fingerprint: Optional[str] = None
    backing_image_path: Optional[Path] = None
    mounted: Optional[bool] = None
    pending_operation: Optional[PendingOperation] = None
    failure: Optional[Failure] = None
    holder: Optional[dict] = None

    @property
    def interrupted(self) -> bool:
        return self.state in TRANSITIONAL_STATES and self.holder is None


@dataclass(frozen=True)
class BatchResult:
    logical_path: Path
    report: Optional[OperationReport] = None
    error: Optional[AfpackError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def normalize_path(path: Path | str) -> Path:
    """Absolute form of ``path`` with its parent resolved but not the leaf.

    The leaf may be a mount point or a symlink the caller wants rejected,
    so it is never followed.
    """
    absolute = Path(os.path.abspath(Path(path).expanduser()))
    if not absolute.name:
        raise ValidationError(f"Refusing to manage filesystem root {absolute}")
    return Path(os.path.realpath(absolute.parent)) / absolute.name


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _as_afpack_error(exc: Exception) -> AfpackError:
    if isinstance(exc, AfpackError):
        return exc
    if isinstance(exc, OSError):
        return IOFailure(str(exc))
    return RuntimeFailure(f"{exc.__class__.__name__}: {exc}")


class Orchestrator:
    """Sequences pack, unpack, compress and decompress under the ledger.

    Every step is preceded by a durable ledger write naming it, so a crash
    leaves a record of what was about to happen. Failures become a FAILED
    entry that the same command resumes; integrity failures are rolled
    back and are never resumed automatically.
    """

    def __init__(
        self,
        *,
        ledger: StateLedger,
        migrator: AtomicMigrator,
        compressor: CompressionController,
        mounts: MountManager,
        probe: PlatformProbe,
        settings: Settings,
        lock_factory: Optional[Callable[[Path, str], PathLock]] = None,
    ) -> None:
        self._ledger = ledger
        self._migrator = migrator
        self._compressor = compressor
        self._mounts = mounts
        self._probe = probe
        self._settings = settings
        self._lock_factory = lock_factory or (
            lambda path, command: PathLock(settings.locks_dir, path, command)
        )

    # -- public operations -------------------------------------------------

    def pack(
        self,
        path: Path | str,
        *,
        dry_run: bool = False,
        compress: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> OperationReport:
        logical = normalize_path(path)
        cancel = cancel or CancellationToken()
        if dry_run:
            return self._plan_pack(logical)
        with self._lock_factory(logical, OperationKind.PACK.value):
            report = self._pack_locked(logical, cancel)
            if compress and not report.compressed:
                compressed = self._compress_locked(logical, OperationKind.COMPRESS, cancel)
                report = replace(report, compressed=compressed.compressed, state=compressed.state)
            return report

    def unpack(
        self,
        path: Path | str,
        *,
        dry_run: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> OperationReport:
        logical = normalize_path(path)
        cancel = cancel or CancellationToken()
        if dry_run:
            return self._plan_unpack(logical)
        with self._lock_factory(logical, OperationKind.UNPACK.value):
            return self._unpack_locked(logical, cancel)

    def compress(self, path: Path | str, *, cancel: Optional[CancellationToken] = None) -> OperationReport:
        logical = normalize_path(path)
        with self._lock_factory(logical, OperationKind.COMPRESS.value):
            return self._compress_locked(logical, OperationKind.COMPRESS, cancel or CancellationToken())

    def decompress(self, path: Path | str, *, cancel: Optional[CancellationToken] = None) -> OperationReport:
        logical = normalize_path(path)
        with self._lock_factory(logical, OperationKind.DECOMPRESS.value):
            return self._compress_locked(logical, OperationKind.DECOMPRESS, cancel or CancellationToken())

    def status(self, path: Path | str) -> PathStatus:
        """Pure read of the ledger plus a mount snapshot."""
        logical = normalize_path(path)
        entry = self._ledger.get(logical)
        if entry is None:
            if logical.is_dir() and not logical.is_symlink():
                return PathStatus(logical_path=logical, state=ManagedState.UNPACKED, managed=False)
            raise PathNotManaged(f"{logical} is not managed and does not exist", path=logical)
        mounted = None
        if entry.backing_image_path is not None:
            mounted = self._mounts.is_mounted(logical, entry.backing_image_path)
        return PathStatus(
            logical_path=logical,
            state=entry.state,
            managed=True,
            compressed=entry.compressed,
            size_bytes=entry.size_bytes,
            file_count=entry.file_count,
            content_fingerprint=entry.content_fingerprint,
            backing_image_path=entry.backing_image_path,
            mounted=mounted,
            pending_operation=entry.pending_operation,
            failure=entry.failure,
            holder=read_holder(self._settings.locks_dir, logical),
        )

    def list_entries(self) -> list[ManagedPath]:
        return self._ledger.list_all()

    def history(self, path: Path | str, limit: Optional[int] = None) -> list[OperationRecord]:
        return self._ledger.operations(normalize_path(path), limit=limit)

    def abort(self, path: Path | str, *, cancel: Optional[CancellationToken] = None) -> OperationReport:
        """Return an interrupted or failed path to its pre-operation state.

        Operations already past their commit step are rolled forward instead.
        """
        logical = normalize_path(path)
        with self._lock_factory(logical, "abort"):
            entry = self._load(logical)
            if entry is None:
                raise PathNotManaged(f"{logical} is not managed", path=logical)
            if entry.state != ManagedState.FAILED or entry.pending_operation is None:
                raise InvalidState(
                    f"Nothing to abort: {logical} is {entry.state.value}",
                    path=logical,
                    state=entry.state.value,
                )
            kind = entry.pending_operation.kind
            step = entry.pending_operation.step
            paths = self._migrator.paths_for(logical)
            if kind == OperationKind.UNPACK and self._migrator.unpack_swapped(paths):
                step = steps_for(kind)[-1]
            if is_past_commit(kind, step):
                logger.warning("%s of %s is past its commit point; completing it", kind.value, logical)
                return self._run_operation(entry, kind, step, cancel or CancellationToken())
            if kind == OperationKind.PACK:
                self._migrator.rollback_pack(paths)
                self._ledger.remove(logical)
                self._journal(logical, kind, step, "done", {"aborted": True})
                return OperationReport(logical, kind, OperationStatus.COMPLETED, ManagedState.UNPACKED, message="pack aborted")
            if kind == OperationKind.UNPACK:
                self._migrator.rollback_unpack(paths)
            entry = self._ledger.put(replace(entry, state=ManagedState.PACKED, pending_operation=None, failure=None))
            self._journal(logical, kind, step, "done", {"aborted": True})
            return self._report(entry, kind, OperationStatus.COMPLETED, message=f"{kind.value} aborted")

    def recover(self, *, cancel: Optional[CancellationToken] = None) -> list[BatchResult]:
        """Resume every interrupted or retryable failed entry.

        A cancellation stops the running entry at its next checkpoint and
        leaves the remaining entries untouched.
        """
        cancel = cancel or CancellationToken()
        results = []
        for entry in self._ledger.list_all():
            if cancel.cancelled:
                break
            pending = entry.pending_operation
            if pending is None:
                continue
            if entry.state == ManagedState.FAILED and entry.failure and not entry.failure.retryable:
                results.append(
                    BatchResult(
                        entry.logical_path,
                        error=InvalidState(
                            f"{pending.kind.value} failed and needs manual review; "
                            f"inspect, then run abort ({entry.failure.reason})",
                            path=entry.logical_path,
                            state=entry.state.value,
                        ),
                    )
                )
                continue
            results.append(self._attempt(getattr(self, pending.kind.value), entry.logical_path, cancel=cancel))
        return results

    def remount(
        self,
        path: Path | str | None = None,
        *,
        cancel: Optional[CancellationToken] = None,
    ) -> list[BatchResult]:
        """Re-attach images of PACKED entries that are not mounted (e.g. after reboot)."""
        if path is not None:
            entries = [self._require(normalize_path(path))]
        else:
            entries = self._ledger.list_by_state(ManagedState.PACKED)
        cancel = cancel or CancellationToken()
        results = []
        for entry in entries:
            if cancel.cancelled:
                break
            results.append(self._attempt(self._remount_one, entry.logical_path, cancel=cancel))
        return results

    def run_many(
        self,
        kind: OperationKind,
        paths: Iterable[Path | str],
        *,
        max_workers: int = 4,
        **kwargs: Any,
    ) -> list[BatchResult]:
        """Run one operation over independent paths concurrently."""
        operation = getattr(self, kind.value)
        targets = [normalize_path(path) for path in paths]
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = [pool.submit(self._attempt, operation, target, **kwargs) for target in targets]
            return [future.result() for future in futures]

    # -- locked bodies -----------------------------------------------------

    def _pack_locked(self, logical: Path, cancel: CancellationToken) -> OperationReport:
        kind = OperationKind.PACK
        entry = self._load(logical)
        if entry is None:
            summary = self._migrator.preflight_pack(logical, self._probe)
            paths = self._migrator.paths_for(logical)
            entry = ManagedPath(
                logical_path=logical,
                state=ManagedState.PACKING,
                backing_image_path=paths.image,
                size_bytes=summary.total_bytes,
                file_count=summary.file_count,
            )
            return self._run_operation(entry, kind, steps_for(kind)[0], cancel, fresh=True)
        if entry.state == ManagedState.PACKED:
            self._migrator.remount(self._migrator.paths_for(logical))
            return self._report(entry, kind, OperationStatus.NOOP, message="already packed")
        return self._run_operation(entry, kind, self._resume_step(entry, kind), cancel)

    def _unpack_locked(self, logical: Path, cancel: CancellationToken) -> OperationReport:
        kind = OperationKind.UNPACK
        entry = self._require(logical)
        if entry.state == ManagedState.PACKED:
            return self._run_operation(entry, kind, steps_for(kind)[0], cancel)
        return self._run_operation(entry, kind, self._resume_step(entry, kind), cancel)

    def _compress_locked(self, logical: Path, kind: OperationKind, cancel: CancellationToken) -> OperationReport:
        if not self._probe.supports_compressed_read():
            raise Unsupported("This platform cannot read transparently compressed files", path=logical)
        entry = self._require(logical)
        target = kind == OperationKind.COMPRESS
        if entry.state == ManagedState.PACKED:
            if entry.compressed == target:
                return self._report(entry, kind, OperationStatus.NOOP, message=f"already {kind.value}ed")
            return self._run_operation(entry, kind, steps_for(kind)[0], cancel)
        pending = entry.pending_operation
        if (
            entry.state == ManagedState.FAILED
            and pending is not None
            and pending.kind in (OperationKind.COMPRESS, OperationKind.DECOMPRESS)
            and pending.kind != kind
        ):
            # Switching direction is safe: content is identical either way.
            return self._run_operation(entry, kind, steps_for(kind)[0], cancel)
        return self._run_operation(entry, kind, self._resume_step(entry, kind), cancel)

    def _remount_one(self, logical: Path, *, cancel: CancellationToken) -> OperationReport:
        with self._lock_factory(logical, "remount"):
            cancel.raise_if_cancelled()
            entry = self._require(logical)
            if entry.state != ManagedState.PACKED:
                raise InvalidState(
                    f"Cannot remount {logical} while it is {entry.state.value}",
                    path=logical,
                    state=entry.state.value,
                )
            paths = self._migrator.paths_for(logical)
            if self._mounts.is_mounted(logical, paths.image):
                return self._report(entry, OperationKind.PACK, OperationStatus.NOOP, message="already mounted")
            self._migrator.remount(paths)
            return self._report(entry, OperationKind.PACK, OperationStatus.COMPLETED, message="remounted")

    # -- dry runs ----------------------------------------------------------

    def _plan_pack(self, logical: Path) -> OperationReport:
        kind = OperationKind.PACK
        entry = self._ledger.get(logical)
        if entry is not None:
            return self._report(entry, kind, OperationStatus.DRY_RUN, steps=self._remaining(entry, kind))
        summary = self._migrator.preflight_pack(logical, self._probe)
        paths = self._migrator.paths_for(logical)
        return OperationReport(
            logical_path=logical,
            kind=kind,
            status=OperationStatus.DRY_RUN,
            state=ManagedState.UNPACKED,
            steps=steps_for(kind),
            image_path=paths.image,
            image_size_bytes=self._settings.image_size_for(summary.allocated_bytes),
            size_bytes=summary.total_bytes,
            file_count=summary.file_count,
        )

    def _plan_unpack(self, logical: Path) -> OperationReport:
        kind = OperationKind.UNPACK
        entry = self._require(logical)
        if entry.state not in (ManagedState.PACKED, ManagedState.FAILED, ManagedState.UNPACKING):
            raise InvalidState(
                f"Cannot unpack {logical} while it is {entry.state.value}",
                path=logical,
                state=entry.state.value,
            )
        size_bytes = entry.size_bytes
        if entry.backing_image_path and self._mounts.is_mounted(logical, entry.backing_image_path):
            size_bytes = measure_tree(logical, volume_root=True).total_bytes
        return replace(
            self._report(entry, kind, OperationStatus.DRY_RUN, steps=self._remaining(entry, kind)),
            size_bytes=size_bytes,
        )

    # -- step engine -------------------------------------------------------

    def _run_operation(
        self,
        entry: ManagedPath,
        kind: OperationKind,
        start_step: str,
        cancel: CancellationToken,
        *,
        fresh: bool = False,
    ) -> OperationReport:
        logical = entry.logical_path
        paths = self._migrator.paths_for(logical)
        steps = steps_for(kind)
        resumed_from = None if fresh or start_step == steps[0] else start_step
        if resumed_from:
            logger.warning("Resuming %s of %s at step %s", kind.value, logical, start_step)
        started_at = _now_iso()
        if entry.pending_operation is not None and entry.pending_operation.kind == kind:
            started_at = entry.pending_operation.started_at
        for step in steps[steps.index(start_step):]:
            pending = PendingOperation(kind=kind, step=step, started_at=started_at)
            entry = self._ledger.put(
                replace(entry, state=in_flight_state(kind), pending_operation=pending, failure=None)
            )
            self._journal(logical, kind, step, "begin")
            ctx = StepContext(
                entry=entry,
                paths=paths,
                cancel=cancel,
                checkpoint=lambda detail, step=step: self._journal(logical, kind, step, "checkpoint", detail),
            )
            try:
                cancel.raise_if_cancelled()
                logger.debug("%s %s: %s", kind.value, logical, step)
                updates = self._execute(kind, step, ctx)
            except Exception as exc:
                error = self._fail(entry, kind, step, paths, exc)
                if error is exc:
                    raise
                raise error from exc
            if updates:
                entry = self._ledger.put(replace(entry, **updates))
            self._journal(logical, kind, step, "done")
        return self._finish(entry, kind, steps, resumed_from)

    def _execute(self, kind: OperationKind, step: str, ctx: StepContext) -> dict[str, Any]:
        if kind == OperationKind.PACK:
            return self._migrator.run_pack_step(step, ctx)
        if kind == OperationKind.UNPACK:
            return self._migrator.run_unpack_step(step, ctx)
        return self._compressor.run_step(kind, step, ctx)

    def _finish(
        self,
        entry: ManagedPath,
        kind: OperationKind,
        steps: tuple[str, ...],
        resumed_from: Optional[str],
    ) -> OperationReport:
        if kind == OperationKind.UNPACK:
            self._ledger.remove(entry.logical_path)
            logger.info("Unpacked %s", entry.logical_path)
            return replace(
                self._report(entry, kind, OperationStatus.COMPLETED, steps=steps),
                state=ManagedState.UNPACKED,
                compressed=False,
                resumed_from=resumed_from,
            )
        compressed = entry.compressed
        if kind == OperationKind.COMPRESS:
            compressed = True
        elif kind == OperationKind.DECOMPRESS:
            compressed = False
        entry = self._ledger.put(
            replace(
                entry,
                state=ManagedState.PACKED,
                compressed=compressed,
                pending_operation=None,
                failure=None,
            )
        )
        logger.info("%s of %s completed", kind.value, entry.logical_path)
        return replace(
            self._report(entry, kind, OperationStatus.COMPLETED, steps=steps),
            resumed_from=resumed_from,
        )

    def _fail(
        self,
        entry: ManagedPath,
        kind: OperationKind,
        step: str,
        paths: MigrationPaths,
        exc: Exception,
    ) -> AfpackError:
        """Record a failed step and decide between rollback and resume.

        Integrity failures are recorded as non-retryable before the rollback
        starts, so a crash during the rollback cannot leave a resumable entry.
        """
        error = _as_afpack_error(exc)
        logical = entry.logical_path
        reason = str(error) or error.__class__.__name__
        pending = PendingOperation(
            kind=kind,
            step=step,
            started_at=entry.pending_operation.started_at if entry.pending_operation else _now_iso(),
        )
        if isinstance(error, INTEGRITY_ERRORS):
            logger.error("%s of %s failed verification at %s: %s", kind.value, logical, step, reason)
            failure = Failure(reason=reason, error_type=error.__class__.__name__, resume_step=None, retryable=False)
            entry = self._ledger.put(
                replace(entry, state=ManagedState.FAILED, pending_operation=pending, failure=failure)
            )
            self._journal(logical, kind, step, "failed", {"error": error.__class__.__name__, "reason": reason})
            try:
                self._rollback(kind, paths)
            except (AfpackError, OSError) as rollback_exc:
                logger.error("Rollback of %s failed: %s", logical, rollback_exc)
                reason = f"{reason}; rollback failed: {rollback_exc}"
                self._ledger.put(replace(entry, failure=replace(failure, reason=reason)))
            return error.with_context(path=logical, state=ManagedState.FAILED.value, retry_safe=False)
        resume_step = step
        if not is_past_commit(kind, step):
            try:
                resume_step = self._stabilize(kind, step, paths)
            except (AfpackError, OSError) as stabilize_exc:
                logger.error("Could not stabilize %s after %s failed: %s", logical, step, stabilize_exc)
        retry_safe = error.retry_safe is not False
        failure = Failure(
            reason=reason,
            error_type=error.__class__.__name__,
            resume_step=resume_step,
            retryable=retry_safe,
        )
        if retry_safe:
            logger.warning("%s of %s stopped at %s (resume at %s): %s", kind.value, logical, step, resume_step, reason)
        else:
            logger.error("%s of %s stopped at %s and needs manual review: %s", kind.value, logical, step, reason)
        self._ledger.put(replace(entry, state=ManagedState.FAILED, pending_operation=pending, failure=failure))
        self._journal(logical, kind, step, "failed", {"error": error.__class__.__name__, "reason": reason})
        return error.with_context(path=logical, state=ManagedState.FAILED.value, retry_safe=retry_safe)

    def _stabilize(self, kind: OperationKind, step: str, paths: MigrationPaths) -> str:
        if kind == OperationKind.PACK:
            return self._migrator.stabilize_pack(step, paths)
        if kind == OperationKind.UNPACK:
            return self._migrator.stabilize_unpack(step, paths)
        return step

    def _rollback(self, kind: OperationKind, paths: MigrationPaths) -> None:
        if kind == OperationKind.PACK:
            self._migrator.rollback_pack(paths)
        elif kind == OperationKind.UNPACK:
            self._migrator.rollback_unpack(paths)

    # -- helpers -----------------------------------------------------------

    def _load(self, logical: Path) -> Optional[ManagedPath]:
        """Read an entry while holding its lock.

        A transitional state seen under the lock means the writer died, so
        it is converted to a resumable FAILED entry first.
        """
        entry = self._ledger.get(logical)
        if entry is None or not entry.in_transition or entry.pending_operation is None:
            return entry
        pending = entry.pending_operation
        logger.warning(
            "%s of %s was interrupted at step %s",
            pending.kind.value,
            logical,
            pending.step,
        )
        resume_step = pending.step
        if not is_past_commit(pending.kind, pending.step):
            try:
                resume_step = self._stabilize(pending.kind, pending.step, self._migrator.paths_for(logical))
            except (AfpackError, OSError) as exc:
                logger.error("Could not stabilize interrupted %s of %s: %s", pending.kind.value, logical, exc)
        entry = self._ledger.put(
            replace(
                entry,
                state=ManagedState.FAILED,
                failure=Failure(
                    reason=f"interrupted during {pending.step}",
                    error_type="Interrupted",
                    resume_step=resume_step,
                    retryable=True,
                ),
            )
        )
        self._journal(logical, pending.kind, pending.step, "failed", {"error": "Interrupted"})
        return entry

    def _require(self, logical: Path) -> ManagedPath:
        entry = self._load(logical)
        if entry is None:
            raise PathNotManaged(f"{logical} is not managed", path=logical)
        return entry

    def _resume_step(self, entry: ManagedPath, kind: OperationKind) -> str:
        pending = entry.pending_operation
        state = entry.state.value
        if entry.state != ManagedState.FAILED or pending is None or entry.failure is None:
            raise InvalidState(
                f"Cannot {kind.value} {entry.logical_path} while it is {state}",
                path=entry.logical_path,
                state=state,
            )
        if pending.kind != kind:
            raise InvalidState(
                f"{entry.logical_path} has an unfinished {pending.kind.value}; "
                f"re-run {pending.kind.value} or abort it first",
                path=entry.logical_path,
                state=state,
            )
        if not entry.failure.retryable or entry.failure.resume_step is None:
            raise InvalidState(
                f"{kind.value} of {entry.logical_path} failed and needs manual review "
                f"({entry.failure.reason}); inspect, then run abort",
                path=entry.logical_path,
                state=state,
                retry_safe=False,
            )
        return entry.failure.resume_step

    def _remaining(self, entry: ManagedPath, kind: OperationKind) -> tuple[str, ...]:
        steps = steps_for(kind)
        if entry.state == ManagedState.PACKED:
            return () if kind == OperationKind.PACK else steps
        step = entry.resume_step
        return steps[steps.index(step):] if step in steps else steps

    def _attempt(self, operation: Callable[..., OperationReport], logical: Path, **kwargs: Any) -> BatchResult:
        try:
            return BatchResult(logical, report=operation(logical, **kwargs))
        except Busy as exc:
            logger.info("Skipping %s: %s", logical, exc)
            return BatchResult(logical, error=exc)
        except AfpackError as exc:
            return BatchResult(logical, error=exc)
        except OSError as exc:
            return BatchResult(logical, error=IOFailure(str(exc), path=logical))

    def _journal(
        self,
        logical: Path,
        kind: OperationKind,
        step: str,
        phase: str,
        detail: Optional[dict[str, Any]] = None,
    ) -> None:
        self._ledger.append_operation(
            OperationRecord(logical_path=logical, kind=kind, step=step, phase=phase, detail=detail or {})
        )

    def _report(
        self,
        entry: ManagedPath,
        kind: OperationKind,
        status: OperationStatus,
        *,
        steps: tuple[str, ...] = (),
        message: str = "",
    ) -> OperationReport:
        return OperationReport(
            logical_path=entry.logical_path,
            kind=kind,
            status=status,
            state=entry.state,
            steps=steps,
            image_path=entry.backing_image_path,
            size_bytes=entry.size_bytes,
            file_count=entry.file_count,
            compressed=entry.compressed,
            message=message,
        )
