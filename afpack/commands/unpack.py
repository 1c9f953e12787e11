"""Unpack command - restore a packed directory and drop its image."""

from __future__ import annotations

from argparse import Namespace
from typing import Optional

from afpack.commands.output import emit_output, report_lines, report_payload
from afpack.core.cancel import CancellationToken
from afpack.core.orchestrator import Orchestrator


def run_unpack(
    args: Namespace,
    *,
    orchestrator: Orchestrator,
    cancel: Optional[CancellationToken] = None,
    output_sink=print,
) -> int:
    report = orchestrator.unpack(
        args.path,
        dry_run=getattr(args, "dry_run", False),
        cancel=cancel,
    )
    emit_output(
        command="unpack",
        payload=report_payload(report),
        json_output=getattr(args, "json", False),
        output_sink=output_sink,
        human_lines=report_lines("unpack", report),
    )
    return 0
