"""Tests for profile dispatch, the shared step runner, and individual profiles."""

from __future__ import annotations

import asyncio
import json
import os
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

import branchrunner.profiles as profiles
from branchrunner.process import ExecResult
from branchrunner.profiles import PROFILE_RUNNERS, ProfileRun, ios_capacitor, run_profile, stubs, tauri_app
from branchrunner.schemas import BuildOptions, ProfileContext, ProfileKind, ResultStatus
from branchrunner.simulators import SimulatorCatalog

posix_only = pytest.mark.skipif(os.name == "nt", reason="fake tools are shell scripts")


def _context(tmp_path: Path, **overrides: object) -> ProfileContext:
    work = tmp_path / "work"
    work.mkdir(exist_ok=True)
    fields: dict[str, object] = {
        "repo_full_name": "acme/app",
        "branch": "main",
        "local_path": work,
        "run_id": "r1",
        "logs_dir": tmp_path / "logs",
        "screenshots_dir": tmp_path / "shots",
    }
    fields.update(overrides)
    return ProfileContext(**fields)


@pytest.mark.unit
def test_every_profile_kind_has_a_runner() -> None:
    assert set(PROFILE_RUNNERS) == set(ProfileKind)


@pytest.mark.unit
def test_unknown_profile_becomes_failure(tmp_path: Path) -> None:
    result = asyncio.run(run_profile(_context(tmp_path), "flutter-app"))

    assert result.status == ResultStatus.FAILURE
    assert result.error_message == "Unknown profile: flutter-app"
    assert Path(result.build_log_path).is_file()


@pytest.mark.unit
@pytest.mark.parametrize(
    ("kind", "message"),
    [
        (ProfileKind.ANDROID_CAPACITOR, stubs.ANDROID_MESSAGE),
        (ProfileKind.CUSTOM, stubs.CUSTOM_MESSAGE),
    ],
)
def test_placeholder_profiles_fail_with_fixed_message(tmp_path: Path, kind: ProfileKind, message: str) -> None:
    result = asyncio.run(run_profile(_context(tmp_path), kind))

    assert result.status == ResultStatus.FAILURE
    assert result.error_message == message
    assert "not implemented" in Path(result.build_log_path).read_text(encoding="utf-8")


@pytest.mark.unit
def test_tauri_on_unsupported_host_uses_placeholder(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(tauri_app, "capture_supported", lambda platform=None: False)

    result = asyncio.run(run_profile(_context(tmp_path), ProfileKind.TAURI_APP))

    assert result.error_message == stubs.TAURI_MESSAGE


@pytest.mark.unit
def test_custom_profile_lists_declared_steps(tmp_path: Path) -> None:
    context = _context(tmp_path)
    (context.local_path / ".branchrunner.yml").write_text(
        "steps:\n  - name: Build\n    run: make build\n  - make screenshot\n", encoding="utf-8"
    )

    result = asyncio.run(run_profile(context, ProfileKind.CUSTOM))

    log = Path(result.build_log_path).read_text(encoding="utf-8")
    assert "1. Build: make build" in log
    assert "2. make screenshot" in log


@pytest.mark.unit
def test_runner_exception_becomes_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    async def crash(_run: ProfileRun) -> None:
        raise KeyError("boom")

    monkeypatch.setitem(profiles.PROFILE_RUNNERS, ProfileKind.WEB_GENERIC, crash)

    result = asyncio.run(run_profile(_context(tmp_path), ProfileKind.WEB_GENERIC))

    assert result.status == ResultStatus.FAILURE
    assert result.error_message.startswith("Unexpected error:")


@pytest.mark.unit
def test_tauri_without_src_tauri_fails(tmp_path: Path) -> None:
    result = asyncio.run(run_profile(_context(tmp_path), ProfileKind.TAURI_APP))

    if tauri_app.capture_supported():
        assert result.error_message == "No src-tauri/ directory found. This is not a Tauri project."
    else:
        assert result.error_message == stubs.TAURI_MESSAGE


@pytest.mark.unit
def test_ios_without_ios_directory_fails(tmp_path: Path) -> None:
    result = asyncio.run(run_profile(_context(tmp_path), ProfileKind.IOS_CAPACITOR))

    assert result.error_message == "No ios/ directory found. Run `npx cap add ios` first."


@pytest.mark.unit
def test_tauri_app_name_resolution(tmp_path: Path) -> None:
    tauri_dir = tmp_path / "src-tauri"
    tauri_dir.mkdir()
    assert tauri_app.app_name(tmp_path) == tauri_app.DEFAULT_APP_NAME

    (tauri_dir / "Cargo.toml").write_text('[package]\nname = "desk"\n', encoding="utf-8")
    assert tauri_app.app_name(tmp_path) == "desk"

    (tauri_dir / "tauri.conf.json").write_text('{"productName": "Desk App"}', encoding="utf-8")
    assert tauri_app.app_name(tmp_path) == "Desk App"


@pytest.mark.unit
def test_capture_supported_hosts() -> None:
    assert tauri_app.capture_supported("darwin") is True
    assert tauri_app.capture_supported("linux") is True
    assert tauri_app.capture_supported("win32") is False


@pytest.mark.integration
@posix_only
def test_node_service_reports_test_failure_with_both_logs(
    tmp_path: Path, fake_bin: Callable[[str, str], Path]
) -> None:
    fake_bin(
        "npm",
        'case "$1" in\n'
        "  ci) echo installed ;;\n"
        "  run) echo built ;;\n"
        '  test) echo "1 failing: renders header" >&2; exit 1 ;;\n'
        "esac",
    )

    result = asyncio.run(run_profile(_context(tmp_path), ProfileKind.NODE_SERVICE))

    assert result.status == ResultStatus.FAILURE
    assert result.error_message == "Tests failed"
    build_log = Path(result.build_log_path).read_text(encoding="utf-8")
    runtime_log = Path(result.runtime_log_path).read_text(encoding="utf-8")
    assert "installed" in build_log
    assert "built" in build_log
    assert "1 failing: renders header" in runtime_log
    assert result.network_log_path is None


@pytest.mark.integration
@posix_only
def test_node_service_success_records_durations(
    tmp_path: Path, fake_bin: Callable[[str, str], Path]
) -> None:
    fake_bin("npm", 'echo "npm $*"')

    result = asyncio.run(run_profile(_context(tmp_path), ProfileKind.NODE_SERVICE))

    assert result.status == ResultStatus.SUCCESS
    assert result.screenshot_path is None
    assert result.durations.install is not None
    assert result.durations.build is not None
    assert result.durations.total is not None


@pytest.mark.integration
@posix_only
def test_node_service_install_failure_aborts(tmp_path: Path, fake_bin: Callable[[str, str], Path]) -> None:
    fake_bin("npm", 'echo "npm ERR! missing lockfile" >&2; exit 1')

    result = asyncio.run(run_profile(_context(tmp_path), ProfileKind.NODE_SERVICE))

    assert result.error_message == "npm ci failed"


@pytest.mark.integration
@posix_only
def test_soft_step_failure_continues_and_env_vars_are_passed(tmp_path: Path) -> None:
    context = _context(tmp_path, build_options=BuildOptions(env_vars={"BR_FLAG": "on"}))
    run = ProfileRun(context)

    async def scenario() -> str:
        await run.run_step("Lint", "exit 2", timeout_ms=5_000)
        result = await run.run_step("Echo", 'printf "%s" "$BR_FLAG"', timeout_ms=5_000, abort_message="x")
        return result.stdout

    assert asyncio.run(scenario()) == "on"
    assert "Warning: Lint failed, continuing" in run.build_log.read()


linux_only = pytest.mark.skipif(not sys.platform.startswith("linux"), reason="window capture via xdotool/import")

_WRITE_LAST_ARG = 'for last; do :; done; printf "PNG" > "$last"'


def _fake_tauri_npm(fake_bin: Callable[[str, str], Path], pid_file: Path, banner: str) -> None:
    fake_bin(
        "npm",
        'case "$1" in\n'
        "  ci) echo installed ;;\n"
        f'  run) echo "$$" > "{pid_file}"; echo "{banner}"; exec sleep 30 ;;\n'
        "esac",
    )


def _tauri_context(tmp_path: Path, **options: object) -> ProfileContext:
    context = _context(tmp_path, build_options=BuildOptions(screenshot_delay_ms=0, **options))
    (context.local_path / "src-tauri").mkdir()
    return context


@pytest.mark.integration
@linux_only
def test_tauri_ready_app_falls_back_to_full_screen_capture(
    tmp_path: Path,
    fake_bin: Callable[[str, str], Path],
    monkeypatch: pytest.MonkeyPatch,
    wait_until_gone: Callable[[int], bool],
) -> None:
    monkeypatch.setattr(tauri_app, "APP_LAUNCH_DELAY_MS", 0)
    pid_file = tmp_path / "tauri.pid"
    _fake_tauri_npm(fake_bin, pid_file, "  Local: vite dev server running at http://localhost:1420")
    fake_bin("cargo", "exit 0")
    fake_bin("xdotool", "exit 1")
    fake_bin("import", _WRITE_LAST_ARG)
    context = _tauri_context(tmp_path)

    result = asyncio.run(run_profile(context, ProfileKind.TAURI_APP))

    assert result.status == ResultStatus.SUCCESS
    assert result.screenshot_path == str(context.screenshot_path)
    assert context.screenshot_path.read_bytes() == b"PNG"
    build_log = Path(result.build_log_path).read_text(encoding="utf-8")
    assert "Captured full screen" in build_log
    assert "No ready signal" not in build_log
    assert "dev server running" in Path(result.runtime_log_path).read_text(encoding="utf-8")
    assert wait_until_gone(int(pid_file.read_text(encoding="utf-8")))


@pytest.mark.integration
@linux_only
def test_tauri_without_ready_signal_still_captures_named_window(
    tmp_path: Path,
    fake_bin: Callable[[str, str], Path],
    monkeypatch: pytest.MonkeyPatch,
    wait_until_gone: Callable[[int], bool],
) -> None:
    monkeypatch.setattr(tauri_app, "APP_LAUNCH_DELAY_MS", 0)
    pid_file = tmp_path / "tauri.pid"
    _fake_tauri_npm(fake_bin, pid_file, "Compiling tauri-app v0.1.0")
    fake_bin("cargo", "exit 0")
    fake_bin("xdotool", "echo 4242")
    fake_bin("import", _WRITE_LAST_ARG)
    context = _tauri_context(tmp_path, runtime_timeout_ms=300)

    result = asyncio.run(run_profile(context, ProfileKind.TAURI_APP))

    assert result.status == ResultStatus.SUCCESS
    build_log = Path(result.build_log_path).read_text(encoding="utf-8")
    assert "No ready signal before timeout, continuing to capture" in build_log
    assert "Captured window 4242" in build_log
    assert wait_until_gone(int(pid_file.read_text(encoding="utf-8")))


@pytest.mark.integration
@linux_only
def test_tauri_capture_failure_is_not_fatal(
    tmp_path: Path,
    fake_bin: Callable[[str, str], Path],
    monkeypatch: pytest.MonkeyPatch,
    wait_until_gone: Callable[[int], bool],
) -> None:
    monkeypatch.setattr(tauri_app, "APP_LAUNCH_DELAY_MS", 0)
    pid_file = tmp_path / "tauri.pid"
    _fake_tauri_npm(fake_bin, pid_file, "ready")
    fake_bin("cargo", "exit 0")
    fake_bin("xdotool", "exit 1")
    fake_bin("import", 'echo "import: unable to open X server" >&2; exit 1')

    result = asyncio.run(run_profile(_tauri_context(tmp_path), ProfileKind.TAURI_APP))

    assert result.status == ResultStatus.SUCCESS
    assert result.screenshot_path is None
    assert "Screenshot capture failed: import: unable to open X server" in Path(result.build_log_path).read_text(
        encoding="utf-8"
    )
    assert wait_until_gone(int(pid_file.read_text(encoding="utf-8")))


@pytest.mark.integration
@linux_only
def test_ios_launch_failure_is_soft_and_device_logs_are_captured(
    tmp_path: Path,
    fake_bin: Callable[[str, str], Path],
    monkeypatch: pytest.MonkeyPatch,
    wait_until_gone: Callable[[int], bool],
) -> None:
    monkeypatch.setattr(ios_capacitor, "APP_LAUNCH_DELAY_MS", 0)
    monkeypatch.setattr(ios_capacitor, "LOG_STREAM_SECONDS", 0.5)
    pid_file = tmp_path / "log-stream.pid"
    fake_bin("npm", "echo installed")
    fake_bin(
        "npx",
        'case "$2 $3" in\n'
        '  "sync ios") echo synced ;;\n'
        '  "run ios") echo "Unable to launch App on simulator" >&2; exit 1 ;;\n'
        "esac",
    )
    fake_bin(
        "xcrun",
        'case "$2" in\n'
        '  shutdown) echo "Unable to shutdown device in current state: Shutdown" >&2; exit 149 ;;\n'
        f"  io) {_WRITE_LAST_ARG} ;;\n"
        f'  spawn) echo "$$" > "{pid_file}"; echo "SpringBoard: launched io.acme.app"; exec sleep 30 ;;\n'
        '  *) echo "xcrun $*" ;;\n'
        "esac",
    )
    listing = {"devices": {"iOS-18": [{"name": "iPad Air", "isAvailable": True}, {"name": "iPhone 16"}]}}

    async def list_devices(_command: str, _cwd: Path, _timeout_ms: int) -> ExecResult:
        return ExecResult(success=True, stdout=json.dumps(listing), stderr="", exit_code=0, timed_out=False)

    context = _context(tmp_path, build_options=BuildOptions(screenshot_delay_ms=0))
    (context.local_path / "ios").mkdir()
    catalog = SimulatorCatalog(runner=list_devices)

    result = asyncio.run(ios_capacitor.run(ProfileRun(context), catalog))

    assert result.status == ResultStatus.SUCCESS
    assert context.screenshot_path.read_bytes() == b"PNG"
    build_log = Path(result.build_log_path).read_text(encoding="utf-8")
    assert "Booting simulator (iPhone 16)" in build_log
    assert "Warning: Shutting down simulator failed, continuing" in build_log
    assert "Warning: Running app on simulator failed, continuing" in build_log
    assert "SpringBoard: launched io.acme.app" in Path(result.runtime_log_path).read_text(encoding="utf-8")
    assert wait_until_gone(int(pid_file.read_text(encoding="utf-8")))
