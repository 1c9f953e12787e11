"""Status and list commands - read-only views of the ledger."""

from __future__ import annotations

from argparse import Namespace

from afpack.commands.output import emit_output, entry_payload, status_payload
from afpack.core.orchestrator import Orchestrator
from afpack.settings import format_size


def run_status(args: Namespace, *, orchestrator: Orchestrator, output_sink=print) -> int:
    status = orchestrator.status(args.path)
    lines = [
        f"status: {status.logical_path}",
        f"status: state={status.state.value} managed={str(status.managed).lower()} "
        f"compressed={str(status.compressed).lower()}",
    ]
    if status.managed:
        lines.append(f"status: files={status.file_count} size={format_size(status.size_bytes)}")
        lines.append(f"status: image={status.backing_image_path} mounted={status.mounted}")
        if status.content_fingerprint:
            lines.append(f"status: fingerprint={status.content_fingerprint}")
    if status.holder is not None:
        lines.append(
            f"status: in progress by pid {status.holder.get('pid')} ({status.holder.get('command')})"
        )
    elif status.interrupted:
        lines.append("status: interrupted; re-run the command or `afpack recover`")
    if status.failure is not None:
        lines.append(f"status: failed: {status.failure.reason}")
        if status.failure.retryable:
            lines.append(f"status: retry resumes at {status.failure.resume_step}")
        else:
            lines.append("status: needs manual review, then `afpack abort`")
    emit_output(
        command="status",
        payload=status_payload(status),
        json_output=getattr(args, "json", False),
        output_sink=output_sink,
        human_lines=lines,
    )
    return 0


def run_list(args: Namespace, *, orchestrator: Orchestrator, output_sink=print) -> int:
    entries = orchestrator.list_entries()
    lines = [
        f"{entry.state.value:<13} {format_size(entry.size_bytes):>9} "
        f"{'compressed' if entry.compressed else '          '} {entry.logical_path}"
        for entry in entries
    ]
    if not lines:
        lines = ["list: no managed paths"]
    emit_output(
        command="list",
        payload={"entries": [entry_payload(entry) for entry in entries]},
        json_output=getattr(args, "json", False),
        output_sink=output_sink,
        human_lines=lines,
    )
    return 0
