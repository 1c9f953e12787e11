"""Compress and decompress commands for packed paths."""

from __future__ import annotations

from argparse import Namespace
from typing import Optional

from afpack.commands.output import emit_output, report_lines, report_payload
from afpack.core.cancel import CancellationToken
from afpack.core.orchestrator import Orchestrator


def run_compress(
    args: Namespace,
    *,
    orchestrator: Orchestrator,
    cancel: Optional[CancellationToken] = None,
    output_sink=print,
) -> int:
    """Apply transparent compression inside a packed path's image."""
    report = orchestrator.compress(args.path, cancel=cancel)
    emit_output(
        command="compress",
        payload=report_payload(report),
        json_output=getattr(args, "json", False),
        output_sink=output_sink,
        human_lines=report_lines("compress", report),
    )
    return 0


def run_decompress(
    args: Namespace,
    *,
    orchestrator: Orchestrator,
    cancel: Optional[CancellationToken] = None,
    output_sink=print,
) -> int:
    """Remove transparent compression inside a packed path's image."""
    report = orchestrator.decompress(args.path, cancel=cancel)
    emit_output(
        command="decompress",
        payload=report_payload(report),
        json_output=getattr(args, "json", False),
        output_sink=output_sink,
        human_lines=report_lines("decompress", report),
    )
    return 0
