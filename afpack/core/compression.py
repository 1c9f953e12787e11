"""Transparent compression of a mounted image's content."""

from __future__ import annotations

import logging
from typing import Any

from afpack.backends import CompressionBackend
from afpack.core.fingerprint import fingerprint_tree, walk_tree
from afpack.core.migrator import StepContext
from afpack.core.state import OperationKind
from afpack.errors import CompressionFailure, VerificationFailed
from afpack.infrastructure.mounts import MountManager

logger = logging.getLogger(__name__)

_MAX_REPORTED_FAILURES = 5


class CompressionController:
    """Streaming, resumable (de)compression pass over a mounted tree.

    Files already in the target state are skipped, so a retry after a
    partial failure only touches the remainder. Content is never altered,
    which the final ``verify`` step proves against the fingerprint taken
    before the pass.
    """

    def __init__(self, mounts: MountManager, backend: CompressionBackend, *, batch_size: int = 500) -> None:
        self._mounts = mounts
        self._backend = backend
        self._batch_size = batch_size

    def run_step(self, kind: OperationKind, step: str, ctx: StepContext) -> dict[str, Any]:
        self._mounts.ensure_attached(ctx.paths.image, ctx.paths.logical)
        if step == "fingerprint":
            fingerprint = fingerprint_tree(ctx.paths.logical, ctx.cancel, volume_root=True)
            return {
                "content_fingerprint": fingerprint.digest,
                "size_bytes": fingerprint.total_bytes,
                "file_count": fingerprint.file_count,
            }
        if step in ("compress", "decompress"):
            self._run_pass(ctx, compress=kind == OperationKind.COMPRESS)
            return {}
        if step == "verify":
            fingerprint = fingerprint_tree(ctx.paths.logical, ctx.cancel, volume_root=True)
            if fingerprint.digest != ctx.entry.content_fingerprint:
                raise VerificationFailed(
                    f"Content of {ctx.paths.logical} changed during {kind.value}",
                    path=ctx.paths.logical,
                )
            return {}
        raise ValueError(f"Unknown {kind.value} step: {step}")

    def _run_pass(self, ctx: StepContext, *, compress: bool) -> None:
        verb = "compressed" if compress else "decompressed"
        apply = self._backend.compress if compress else self._backend.decompress
        processed = changed = 0
        failures: list[str] = []
        for entry in walk_tree(ctx.paths.logical, volume_root=True):
            if entry.kind != "file":
                continue
            ctx.cancel.raise_if_cancelled()
            path = ctx.paths.logical / entry.relative_path
            processed += 1
            try:
                if self._backend.is_compressed(path) != compress:
                    apply(path)
                    changed += 1
            except (CompressionFailure, OSError) as exc:
                logger.debug("Could not %s %s: %s", "compress" if compress else "decompress", path, exc)
                failures.append(f"{entry.relative_path.as_posix()}: {exc}")
            if processed % self._batch_size == 0:
                ctx.checkpoint({"processed": processed, "changed": changed, "failed": len(failures)})
        logger.info("%s %d of %d files under %s", verb.capitalize(), changed, processed, ctx.paths.logical)
        if failures:
            shown = "; ".join(failures[:_MAX_REPORTED_FAILURES])
            more = len(failures) - _MAX_REPORTED_FAILURES
            if more > 0:
                shown += f"; and {more} more"
            raise CompressionFailure(
                f"{len(failures)} of {processed} files could not be {verb} ({shown}); "
                "re-run to retry the remainder",
                path=ctx.paths.logical,
            )
