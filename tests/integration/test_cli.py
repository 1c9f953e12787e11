"""Integration tests for the CLI: exit codes, output and end-to-end flows."""

from __future__ import annotations

import json
import os
from pathlib import Path
import signal
import sys
from typing import Callable

import pytest

from afpack import cli
from afpack.app import AfpackApp
from afpack.errors import (
    Busy,
    InsufficientSpace,
    IOFailure,
    OperationCancelled,
    PathNotManaged,
    RuntimeFailure,
    ValidationError,
    VerificationFailed,
)
from tests.helpers import FakeImageBackend, build_node_modules, digest


@pytest.mark.parametrize(
    "error",
    [
        ValidationError("bad input"),
        Busy("locked"),
        InsufficientSpace("full"),
        VerificationFailed("mismatch"),
        OSError("disk error"),
        RuntimeError("boom"),
    ],
)
def test_cli_maps_errors_to_exit_codes(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, error: Exception
) -> None:
    def raise_error(_args, **_kwargs):
        raise error

    monkeypatch.setattr("afpack.commands.pack.run_pack", raise_error)
    monkeypatch.setattr(sys, "argv", ["afpack", "--state-dir", str(tmp_path / "state"), "pack", str(tmp_path)])
    expected = {
        OSError: IOFailure.exit_code,
        RuntimeError: RuntimeFailure.exit_code,
    }.get(type(error), getattr(error, "exit_code", None))
    assert cli.main() == expected


def test_cli_error_message_names_path_and_retry(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    def raise_error(_args, **_kwargs):
        raise InsufficientSpace("not enough room", path=tmp_path / "node_modules", state="UNPACKED")

    monkeypatch.setattr("afpack.commands.pack.run_pack", raise_error)
    assert cli.main(["--state-dir", str(tmp_path / "state"), "pack", str(tmp_path)]) == 5
    err = capsys.readouterr().err
    assert err.startswith("afpack: not enough room")
    assert "state: UNPACKED" in err
    assert "retry: safe" in err


def test_no_command_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main([]) == 1
    assert "usage:" in capsys.readouterr().out


@pytest.fixture
def run_cli(
    make_app: Callable[..., AfpackApp], monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
):
    """Run the CLI against fake backends sharing one state dir."""
    monkeypatch.setattr(cli, "_build_app", lambda _args: make_app())

    def _run(*argv: str) -> tuple[int, str]:
        code = cli.main(list(argv))
        captured = capsys.readouterr()
        return code, captured.out + captured.err

    return _run


def _json(output: str) -> dict:
    lines = [line for line in output.splitlines() if line.startswith("{")]
    return json.loads(lines[-1])


def test_pack_status_unpack_end_to_end(run_cli, project_dir: Path) -> None:
    logical = build_node_modules(project_dir / "node_modules")
    before = digest(logical)

    code, out = run_cli("pack", str(logical), "--json")
    assert code == 0
    envelope = _json(out)
    assert envelope["schema_version"] == "v1"
    assert envelope["command"] == "pack"
    assert envelope["data"]["state"] == "PACKED"
    assert envelope["data"]["status"] == "COMPLETED"

    code, out = run_cli("status", str(logical), "--json")
    assert code == 0
    data = _json(out)["data"]
    assert data["state"] == "PACKED"
    assert data["managed"] is True
    assert data["mounted"] is True
    assert data["compressed"] is False
    assert data["size_bytes"] > 0

    code, out = run_cli("list")
    assert code == 0
    assert str(logical) in out

    code, out = run_cli("unpack", str(logical))
    assert code == 0
    assert "unpack:" in out
    assert digest(logical) == before


def test_pack_detects_artifact_directory(run_cli, project_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    build_node_modules(project_dir / "node_modules")
    monkeypatch.chdir(project_dir)
    code, out = run_cli("pack", "--json")
    assert code == 0
    assert _json(out)["data"]["path"] == str(project_dir / "node_modules")


def test_pack_without_path_needs_single_candidate(run_cli, project_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (project_dir / "node_modules").mkdir()
    (project_dir / "target").mkdir()
    monkeypatch.chdir(project_dir)
    code, out = run_cli("pack")
    assert code == ValidationError.exit_code
    assert "several artifact directories" in out


def test_pack_with_compress_flag(run_cli, project_dir: Path) -> None:
    logical = build_node_modules(project_dir / "node_modules")
    code, out = run_cli("pack", str(logical), "--compress", "lzfse", "--json")
    assert code == 0
    assert _json(out)["data"]["compressed"] is True
    code, out = run_cli("decompress", str(logical), "--json")
    assert code == 0
    assert _json(out)["data"]["compressed"] is False


def test_dry_run_lists_steps(run_cli, project_dir: Path) -> None:
    logical = build_node_modules(project_dir / "node_modules")
    code, out = run_cli("pack", str(logical), "--dry-run")
    assert code == 0
    assert "steps=check_space," in out
    assert logical.is_dir() and not logical.is_symlink()


def test_status_of_unknown_path(run_cli, project_dir: Path) -> None:
    code, _ = run_cli("status", str(project_dir / "nothing-here"))
    assert code == PathNotManaged.exit_code


def test_remount_and_doctor_after_reboot(run_cli, project_dir: Path, image_backend: FakeImageBackend) -> None:
    logical = build_node_modules(project_dir / "node_modules")
    assert run_cli("pack", str(logical))[0] == 0
    image_backend.simulate_reboot()

    code, out = run_cli("doctor", "--json")
    assert code == 0
    issues = _json(out)["data"]["issues"]
    assert [issue["issue"] for issue in issues] == ["not_mounted"]

    code, out = run_cli("remount", "--json")
    assert code == 0
    assert _json(out)["data"]["results"][0]["ok"] is True

    code, out = run_cli("doctor", "--fingerprints", "--json")
    assert _json(out)["data"]["issues"] == []


def test_doctor_detects_fingerprint_drift(run_cli, project_dir: Path) -> None:
    logical = build_node_modules(project_dir / "node_modules")
    run_cli("pack", str(logical))
    (logical / "pkg-1" / "package.json").write_text("{}")
    code, out = run_cli("doctor", "--fingerprints", "--json")
    assert code == 0
    assert [issue["issue"] for issue in _json(out)["data"]["issues"]] == ["fingerprint_drift"]


def test_doctor_reports_missing_explicit_config(run_cli, tmp_path: Path) -> None:
    code, out = run_cli("--config", str(tmp_path / "absent.json"), "doctor", "--json")
    assert code == 0
    assert _json(out)["data"]["issues"] == [
        {"issue": "missing_config", "path": str(tmp_path / "absent.json")}
    ]


def test_failed_pack_then_recover(run_cli, project_dir: Path, image_backend: FakeImageBackend) -> None:
    logical = build_node_modules(project_dir / "node_modules")
    image_backend.fail_next("attach", IOFailure("attach failed"))

    code, out = run_cli("pack", str(logical))
    assert code == IOFailure.exit_code
    assert "retry: safe" in out

    code, out = run_cli("status", str(logical), "--json")
    failure = _json(out)["data"]["failure"]
    assert failure["retryable"] is True
    assert failure["resume_step"] == "attach_staging"

    code, out = run_cli("recover", "--json")
    assert code == 0
    assert _json(out)["data"]["results"][0]["report"]["state"] == "PACKED"


def test_abort_failed_pack(run_cli, project_dir: Path, image_backend: FakeImageBackend) -> None:
    logical = build_node_modules(project_dir / "node_modules")
    before = digest(logical)
    image_backend.fail_next("create", IOFailure("disk error"))
    assert run_cli("pack", str(logical))[0] == IOFailure.exit_code

    code, out = run_cli("abort", str(logical), "--json")

    assert code == 0
    assert _json(out)["data"]["state"] == "UNPACKED"
    assert digest(logical) == before
    assert run_cli("status", str(logical), "--json")[1].count('"managed":false') == 1


def test_sigterm_during_recover_stops_at_checkpoint(
    run_cli,
    make_app: Callable[..., AfpackApp],
    project_dir: Path,
    image_backend: FakeImageBackend,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    logical = build_node_modules(project_dir / "node_modules")
    before = digest(logical)
    image_backend.fail_next("attach", IOFailure("attach failed"))
    assert run_cli("pack", str(logical))[0] == IOFailure.exit_code

    def build_app(_args) -> AfpackApp:
        app = make_app()
        real = app.migrator.run_pack_step

        def run_pack_step(step, ctx):
            if step == "copy":
                os.kill(os.getpid(), signal.SIGTERM)
            return real(step, ctx)

        monkeypatch.setattr(app.migrator, "run_pack_step", run_pack_step)
        return app

    monkeypatch.setattr(cli, "_build_app", build_app)
    code, out = run_cli("recover", "--json")

    assert code == OperationCancelled.exit_code
    result = _json(out)["data"]["results"][0]
    assert result["ok"] is False
    assert result["error_type"] == "OperationCancelled"
    assert digest(logical) == before

    monkeypatch.setattr(cli, "_build_app", lambda _args: make_app())
    code, out = run_cli("status", str(logical), "--json")
    failure = _json(out)["data"]["failure"]
    assert failure["retryable"] is True
    assert failure["resume_step"] == "attach_staging"

    code, out = run_cli("recover", "--json")
    assert code == 0
    assert _json(out)["data"]["results"][0]["report"]["state"] == "PACKED"
