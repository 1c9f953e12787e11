"""Pack command - move a directory into a mounted sparse image."""

from __future__ import annotations

from argparse import Namespace
from pathlib import Path
from typing import Optional

from afpack.commands.output import emit_output, report_lines, report_payload
from afpack.core.cancel import CancellationToken
from afpack.core.orchestrator import Orchestrator
from afpack.errors import ValidationError

ARTIFACT_DIR_NAMES = ("node_modules", "target", ".build", ".venv")


def detect_artifact_dir(cwd: Path) -> Path:
    """Pick the single build-artifact directory under ``cwd``."""
    candidates = [
        cwd / name
        for name in ARTIFACT_DIR_NAMES
        if (cwd / name).is_dir() and not (cwd / name).is_symlink()
    ]
    if not candidates:
        raise ValidationError(
            f"No path given and no artifact directory ({', '.join(ARTIFACT_DIR_NAMES)}) in {cwd}"
        )
    if len(candidates) > 1:
        names = ", ".join(candidate.name for candidate in candidates)
        raise ValidationError(f"No path given and several artifact directories found: {names}")
    return candidates[0]


def run_pack(
    args: Namespace,
    *,
    orchestrator: Orchestrator,
    cancel: Optional[CancellationToken] = None,
    cwd: Optional[Path] = None,
    output_sink=print,
) -> int:
    """Pack a directory (or the detected artifact directory) into an image."""
    path = getattr(args, "path", None)
    target = Path(path) if path else detect_artifact_dir(cwd or Path.cwd())
    compression = getattr(args, "compress", None)
    report = orchestrator.pack(
        target,
        dry_run=getattr(args, "dry_run", False),
        compress=bool(compression) and compression != "none",
        cancel=cancel,
    )
    emit_output(
        command="pack",
        payload=report_payload(report),
        json_output=getattr(args, "json", False),
        output_sink=output_sink,
        human_lines=report_lines("pack", report),
    )
    return 0
