"""Recovery commands - resume, abort and remount managed paths."""

from __future__ import annotations

from argparse import Namespace
from typing import Optional

from afpack.commands.output import (
    batch_exit_code,
    batch_payload,
    emit_output,
    report_lines,
    report_payload,
)
from afpack.core.cancel import CancellationToken
from afpack.core.orchestrator import BatchResult, Orchestrator


def _batch_lines(command: str, results: list[BatchResult]) -> list[str]:
    if not results:
        return [f"{command}: nothing to do"]
    lines = []
    for result in results:
        if result.report is not None:
            lines.extend(report_lines(command, result.report))
        else:
            lines.append(f"{command}: {result.logical_path} error={result.error}")
    return lines


def run_recover(
    args: Namespace,
    *,
    orchestrator: Orchestrator,
    cancel: Optional[CancellationToken] = None,
    output_sink=print,
) -> int:
    """Resume every interrupted or retryable failed path."""
    results = orchestrator.recover(cancel=cancel)
    emit_output(
        command="recover",
        payload={"results": [batch_payload(result) for result in results]},
        json_output=getattr(args, "json", False),
        output_sink=output_sink,
        human_lines=_batch_lines("recover", results),
    )
    return batch_exit_code(results)


def run_remount(
    args: Namespace,
    *,
    orchestrator: Orchestrator,
    cancel: Optional[CancellationToken] = None,
    output_sink=print,
) -> int:
    """Re-attach the images of packed paths, e.g. after a reboot."""
    results = orchestrator.remount(getattr(args, "path", None), cancel=cancel)
    emit_output(
        command="remount",
        payload={"results": [batch_payload(result) for result in results]},
        json_output=getattr(args, "json", False),
        output_sink=output_sink,
        human_lines=_batch_lines("remount", results),
    )
    return batch_exit_code(results)


def run_abort(
    args: Namespace,
    *,
    orchestrator: Orchestrator,
    cancel: Optional[CancellationToken] = None,
    output_sink=print,
) -> int:
    report = orchestrator.abort(args.path, cancel=cancel)
    emit_output(
        command="abort",
        payload=report_payload(report),
        json_output=getattr(args, "json", False),
        output_sink=output_sink,
        human_lines=report_lines("abort", report),
    )
    return 0
