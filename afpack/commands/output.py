"""Deterministic CLI output helpers."""

from __future__ import annotations

import json
from typing import Iterable

from afpack.core.orchestrator import BatchResult, OperationReport, PathStatus
from afpack.core.state import ManagedPath
from afpack.settings import format_size

SCHEMA_VERSION = "v1"


def emit_output(
    *,
    command: str,
    payload: dict,
    json_output: bool,
    output_sink=print,
    human_lines: Iterable[str] = (),
) -> None:
    """Emit deterministic CLI output."""
    if json_output:
        envelope = {
            "schema_version": SCHEMA_VERSION,
            "command": command,
            "data": payload,
        }
        output_sink(
            json.dumps(
                envelope,
                sort_keys=True,
                separators=(",", ":"),
                ensure_ascii=True,
            )
        )
        return
    for line in human_lines:
        output_sink(line)


def _optional_str(value) -> str | None:
    return str(value) if value is not None else None


def report_payload(report: OperationReport) -> dict:
    return {
        "path": str(report.logical_path),
        "operation": report.kind.value,
        "status": report.status.value,
        "state": report.state.value,
        "steps": list(report.steps),
        "resumed_from": report.resumed_from,
        "image_path": _optional_str(report.image_path),
        "image_size_bytes": report.image_size_bytes,
        "size_bytes": report.size_bytes,
        "file_count": report.file_count,
        "compressed": report.compressed,
        "message": report.message,
    }


def report_lines(command: str, report: OperationReport) -> list[str]:
    lines = [
        f"{command}: {report.logical_path} {report.status.value.lower()} "
        f"state={report.state.value} compressed={str(report.compressed).lower()}"
    ]
    if report.resumed_from:
        lines.append(f"{command}: resumed from step {report.resumed_from}")
    if report.image_path is not None:
        lines.append(f"{command}: image={report.image_path}")
    if report.image_size_bytes is not None:
        lines.append(f"{command}: image_size={format_size(report.image_size_bytes)}")
    if report.steps and report.status.value == "DRY_RUN":
        lines.append(f"{command}: steps={','.join(report.steps)}")
    lines.append(f"{command}: files={report.file_count} size={format_size(report.size_bytes)}")
    if report.message:
        lines.append(f"{command}: {report.message}")
    return lines


def status_payload(status: PathStatus) -> dict:
    pending = status.pending_operation
    failure = status.failure
    return {
        "path": str(status.logical_path),
        "state": status.state.value,
        "managed": status.managed,
        "compressed": status.compressed,
        "size_bytes": status.size_bytes,
        "file_count": status.file_count,
        "content_fingerprint": status.content_fingerprint,
        "image_path": _optional_str(status.backing_image_path),
        "mounted": status.mounted,
        "interrupted": status.interrupted,
        "pending_operation": (
            {"kind": pending.kind.value, "step": pending.step, "started_at": pending.started_at}
            if pending
            else None
        ),
        "failure": (
            {
                "reason": failure.reason,
                "error_type": failure.error_type,
                "resume_step": failure.resume_step,
                "retryable": failure.retryable,
            }
            if failure
            else None
        ),
        "holder": status.holder,
    }


def entry_payload(entry: ManagedPath) -> dict:
    return {
        "path": str(entry.logical_path),
        "state": entry.state.value,
        "compressed": entry.compressed,
        "size_bytes": entry.size_bytes,
        "file_count": entry.file_count,
        "image_path": _optional_str(entry.backing_image_path),
        "resume_step": entry.resume_step,
        "updated_at": entry.updated_at,
    }


def batch_payload(result: BatchResult) -> dict:
    payload = {"path": str(result.logical_path), "ok": result.ok}
    if result.report is not None:
        payload["report"] = report_payload(result.report)
    if result.error is not None:
        payload["error_type"] = result.error.__class__.__name__
        payload["error_message"] = str(result.error)
        payload["exit_code"] = result.error.exit_code
    return payload


def batch_exit_code(results: Iterable[BatchResult]) -> int:
    for result in results:
        if result.error is not None:
            return result.error.exit_code
    return 0
