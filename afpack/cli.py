"""Command-line interface for afpack."""

from __future__ import annotations

import argparse
from dataclasses import replace
import logging
import sys
from pathlib import Path
from typing import Optional

from . import __version__

_COMPRESSION_CHOICES = ["none", "lzfse", "lzvn", "zlib"]


def _load_dotenv_files() -> None:
    from dotenv import load_dotenv

    # Project-local .env first; values already in the environment win.
    load_dotenv(Path.cwd() / ".env", override=False)
    load_dotenv(Path.home() / ".config" / "afpack" / ".env", override=False)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _build_app(args: argparse.Namespace):
    from .app import AfpackApp
    from .settings import load_settings, resolve_compression

    settings = load_settings(args.config)
    if args.state_dir is not None:
        settings = replace(settings, state_dir=args.state_dir)
    compression = getattr(args, "compress", None) or getattr(args, "algorithm", None)
    if compression == "none":
        compression = None
    if compression:
        compression = resolve_compression(compression)
    return AfpackApp(settings, compression=compression)


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit machine-readable JSON output",
    )


def build_parser() -> argparse.ArgumentParser:
    from .settings import default_config_path

    parser = argparse.ArgumentParser(
        prog="afpack",
        description="Pack build-artifact directories into mounted sparse disk images",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"afpack {__version__}",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=default_config_path(),
        help="Settings path (default: ~/.config/afpack/settings.json)",
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        help="Ledger and lock directory (default: ~/.local/state/afpack)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log every step",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    pack_parser = subparsers.add_parser(
        "pack",
        help="Move a directory into a sparse image mounted at the same path",
    )
    pack_parser.add_argument(
        "path",
        nargs="?",
        help="Directory to pack (default: the single node_modules/target/.build/.venv here)",
    )
    pack_parser.add_argument(
        "--compress",
        choices=_COMPRESSION_CHOICES,
        help="Compress the image content after packing",
    )
    pack_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate and show the plan without changing anything",
    )
    _add_common(pack_parser)

    unpack_parser = subparsers.add_parser(
        "unpack",
        help="Restore a packed directory and delete its image",
    )
    unpack_parser.add_argument("path", help="Packed directory")
    unpack_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate and show the plan without changing anything",
    )
    _add_common(unpack_parser)

    status_parser = subparsers.add_parser("status", help="Show the state of a path")
    status_parser.add_argument("path", help="Directory to inspect")
    _add_common(status_parser)

    compress_parser = subparsers.add_parser("compress", help="Compress a packed path's content")
    compress_parser.add_argument("path", help="Packed directory")
    compress_parser.add_argument(
        "--algorithm",
        choices=_COMPRESSION_CHOICES[1:],
        help="Compression algorithm (default from settings)",
    )
    _add_common(compress_parser)

    decompress_parser = subparsers.add_parser(
        "decompress",
        help="Remove compression from a packed path's content",
    )
    decompress_parser.add_argument("path", help="Packed directory")
    _add_common(decompress_parser)

    recover_parser = subparsers.add_parser(
        "recover",
        help="Resume every interrupted or failed operation",
    )
    _add_common(recover_parser)

    abort_parser = subparsers.add_parser(
        "abort",
        help="Roll an interrupted or failed operation back",
    )
    abort_parser.add_argument("path", help="Managed directory")
    _add_common(abort_parser)

    remount_parser = subparsers.add_parser(
        "remount",
        help="Re-attach images of packed paths that are not mounted",
    )
    remount_parser.add_argument("path", nargs="?", help="Only this path")
    _add_common(remount_parser)

    list_parser = subparsers.add_parser("list", help="List managed paths")
    _add_common(list_parser)

    doctor_parser = subparsers.add_parser(
        "doctor",
        help="Check managed paths against the filesystem",
    )
    doctor_parser.add_argument(
        "--fingerprints",
        action="store_true",
        help="Also re-fingerprint mounted trees to detect drift",
    )
    _add_common(doctor_parser)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    _configure_logging(args.verbose)
    raw_args = argv if argv is not None else sys.argv[1:]
    explicit_config = any(arg.startswith("--config") for arg in raw_args)

    try:
        _load_dotenv_files()
        # Import here to avoid slow startup
        from .core.cancel import CancellationToken, install_signal_handlers

        app = _build_app(args)
        cancel = CancellationToken()
        restore_signals = install_signal_handlers(cancel)
        try:
            orchestrator = app.orchestrator
            if args.command == "pack":
                from .commands.pack import run_pack
                return run_pack(args, orchestrator=orchestrator, cancel=cancel)
            elif args.command == "unpack":
                from .commands.unpack import run_unpack
                return run_unpack(args, orchestrator=orchestrator, cancel=cancel)
            elif args.command == "status":
                from .commands.status import run_status
                return run_status(args, orchestrator=orchestrator)
            elif args.command == "compress":
                from .commands.compress import run_compress
                return run_compress(args, orchestrator=orchestrator, cancel=cancel)
            elif args.command == "decompress":
                from .commands.compress import run_decompress
                return run_decompress(args, orchestrator=orchestrator, cancel=cancel)
            elif args.command == "recover":
                from .commands.recover import run_recover
                return run_recover(args, orchestrator=orchestrator, cancel=cancel)
            elif args.command == "abort":
                from .commands.recover import run_abort
                return run_abort(args, orchestrator=orchestrator, cancel=cancel)
            elif args.command == "remount":
                from .commands.recover import run_remount
                return run_remount(args, orchestrator=orchestrator, cancel=cancel)
            elif args.command == "list":
                from .commands.status import run_list
                return run_list(args, orchestrator=orchestrator)
            elif args.command == "doctor":
                from .commands.doctor import run_doctor
                return run_doctor(
                    args,
                    app=app,
                    config_path=args.config if explicit_config else None,
                )
            else:
                parser.print_help()
                return 1
        finally:
            restore_signals()
            app.close()
    except Exception as exc:  # pragma: no cover - exercised in CLI tests
        from .errors import AfpackError, exit_code_for_exception

        message = exc.describe() if isinstance(exc, AfpackError) else str(exc)
        print(f"afpack: {message}", file=sys.stderr)
        return exit_code_for_exception(exc)


if __name__ == "__main__":
    sys.exit(main())
