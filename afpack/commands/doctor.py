"""Doctor command - validate ledger entries against the filesystem."""

from __future__ import annotations

from argparse import Namespace
from pathlib import Path

from afpack.app import AfpackApp
from afpack.commands.output import emit_output
from afpack.core.fingerprint import fingerprint_tree
from afpack.core.state import ManagedState
from afpack.infrastructure.locks import read_holder


def collect_issues(app: AfpackApp, *, check_fingerprints: bool = False) -> list[dict[str, str]]:
    """Return a list of detected issues; never modifies anything."""
    issues: list[dict[str, str]] = []
    for entry in app.ledger.list_all():
        path = str(entry.logical_path)
        paths = app.migrator.paths_for(entry.logical_path)
        if entry.in_transition and read_holder(app.settings.locks_dir, entry.logical_path) is None:
            issues.append({"path": path, "issue": "interrupted", "step": entry.resume_step or ""})
        if entry.state == ManagedState.FAILED and entry.failure is not None:
            issues.append(
                {
                    "path": path,
                    "issue": "failed" if entry.failure.retryable else "failed_needs_review",
                    "reason": entry.failure.reason,
                }
            )
        if entry.state != ManagedState.PACKED:
            continue
        image = entry.backing_image_path or paths.image
        if not image.exists():
            issues.append({"path": path, "issue": "missing_image", "image": str(image)})
            continue
        for leftover in (paths.partial_image, paths.staging, paths.trash, paths.restore):
            if leftover.exists():
                issues.append({"path": path, "issue": "leftover", "leftover": str(leftover)})
        if not app.mounts.is_mounted(entry.logical_path, image):
            issues.append({"path": path, "issue": "not_mounted", "image": str(image)})
            continue
        if check_fingerprints and entry.content_fingerprint:
            current = fingerprint_tree(entry.logical_path, volume_root=True)
            if current.digest != entry.content_fingerprint:
                issues.append(
                    {
                        "path": path,
                        "issue": "fingerprint_drift",
                        "recorded": entry.content_fingerprint,
                        "current": current.digest,
                    }
                )
    return issues


def run_doctor(
    args: Namespace,
    *,
    app: AfpackApp,
    config_path: Path | None = None,
    output_sink=print,
) -> int:
    """Report ledger entries whose mounts, images or content no longer agree."""
    issues: list[dict[str, str]] = []
    if config_path is not None and not config_path.exists():
        issues.append({"issue": "missing_config", "path": str(config_path)})
    issues.extend(collect_issues(app, check_fingerprints=getattr(args, "fingerprints", False)))
    lines = [
        "doctor: " + " ".join(f"{key}={value}" for key, value in sorted(issue.items()))
        for issue in issues
    ] or ["doctor: no issues found"]
    emit_output(
        command="doctor",
        payload={"issues": issues},
        json_output=getattr(args, "json", False),
        output_sink=output_sink,
        human_lines=lines,
    )
    return 0
