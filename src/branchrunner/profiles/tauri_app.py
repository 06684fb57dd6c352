"""tauri-app: run ``tauri dev`` detached and capture the desktop window."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shlex
import sys
from pathlib import Path

from branchrunner.process import run_with_timeout, sleep_ms, spawn_long_running, which
from branchrunner.profiles.base import ProfileRun
from branchrunner.schemas import ProfileResult
from branchrunner.strategy import Outcome, Strategy, StrategyChain

logger = logging.getLogger(__name__)

DEFAULT_APP_NAME = "tauri-app"
APP_LAUNCH_DELAY_MS = 5_000
READY_KEYWORDS = ("running", "ready", "listening", "dev server")
CAPTURE_TIMEOUT_MS = 10_000
_CARGO_NAME_RE = re.compile(r'^\s*name\s*=\s*"([^"]+)"', re.MULTILINE)


def capture_supported(platform: str | None = None) -> bool:
    """Whether this host has a window-capture backend (macOS or Linux)."""
    platform = platform or sys.platform
    return platform == "darwin" or platform.startswith("linux")


def app_name(local_path: str | Path) -> str:
    """Product name from ``tauri.conf.json``, else the Cargo package name."""
    tauri_dir = Path(local_path) / "src-tauri"
    conf_path = tauri_dir / "tauri.conf.json"
    if conf_path.is_file():
        try:
            conf = json.loads(conf_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            conf = {}
        name = (conf.get("package") or {}).get("productName") or conf.get("productName")
        if name:
            return str(name)
    cargo_path = tauri_dir / "Cargo.toml"
    if cargo_path.is_file():
        try:
            match = _CARGO_NAME_RE.search(cargo_path.read_text(encoding="utf-8"))
        except OSError:
            match = None
        if match:
            return match.group(1)
    return DEFAULT_APP_NAME


async def _find_window_id(name: str, cwd: Path) -> str | None:
    if sys.platform == "darwin":
        script = (
            'tell application "System Events"\n'
            f'  set matching to every application process whose name contains "{name}"\n'
            "  if (count of matching) > 0 then\n"
            "    set target to item 1 of matching\n"
            "    if (count of windows of target) > 0 then return id of first window of target\n"
            "  end if\n"
            "end tell\n"
            "return -1"
        )
        result = await run_with_timeout(shlex.join(["osascript", "-e", script]), cwd, CAPTURE_TIMEOUT_MS)
    elif which("xdotool"):
        result = await run_with_timeout(shlex.join(["xdotool", "search", "--name", name]), cwd, CAPTURE_TIMEOUT_MS)
    else:
        return None
    first = (result.stdout.split() or [""])[0]
    return first if result.success and first.isdigit() and int(first) > 0 else None


def _capture_chain(run: ProfileRun, name: str, output: Path) -> StrategyChain[str]:
    cwd = Path(run.context.local_path)
    target = str(output)

    async def _capture(command: list[str], label: str) -> Outcome[str]:
        result = await run_with_timeout(shlex.join(command), cwd, CAPTURE_TIMEOUT_MS)
        if result.success and output.is_file():
            run.build_log.stamp(f"Captured {label}")
            return Outcome.success(label)
        return Outcome.soft_fail(result.stderr.strip() or f"{command[0]} produced no image")

    async def _named_window() -> Outcome[str]:
        window_id = await _find_window_id(name, cwd)
        if window_id is None:
            return Outcome.soft_fail(f"No window found for {name}")
        if sys.platform == "darwin":
            return await _capture(["screencapture", "-l", window_id, target], f"window {window_id}")
        return await _capture(["import", "-window", window_id, target], f"window {window_id}")

    async def _whole_screen() -> Outcome[str]:
        if sys.platform == "darwin":
            return await _capture(["screencapture", "-x", target], "full screen")
        return await _capture(["import", "-window", "root", target], "full screen")

    return StrategyChain(
        "tauri window capture",
        [Strategy("named-window", _named_window), Strategy("whole-screen", _whole_screen)],
    )


async def _wait_until_ready(ready: asyncio.Event, timeout_ms: int) -> bool:
    try:
        await asyncio.wait_for(ready.wait(), timeout=timeout_ms / 1000.0)
    except asyncio.TimeoutError:
        return False
    return True


async def run(run: ProfileRun) -> ProfileResult:
    ctx = run.context
    run.build_log.stamp("=== Tauri App Profile ===")
    run.build_log.stamp(f"Repository: {ctx.repo_full_name}")
    run.build_log.stamp(f"Branch: {ctx.branch}")
    run.build_log.stamp(f"Platform: {sys.platform}")

    run.require_path("src-tauri", "No src-tauri/ directory found. This is not a Tauri project.")
    run.ensure_tool("cargo", "Install Rust from rustup.rs")
    name = app_name(ctx.local_path)
    run.build_log.stamp(f"App name: {name}")

    await run.install_node_modules()

    ready = asyncio.Event()

    def _on_output(stream: str, text: str) -> None:
        run.tee(stream, text)
        lowered = text.lower()
        if any(keyword in lowered for keyword in READY_KEYWORDS):
            ready.set()

    run.build_log.section("Starting Tauri Dev")
    screenshot = ctx.screenshot_path
    proc = await spawn_long_running(
        "npm",
        ["run", "tauri", "dev"],
        ctx.local_path,
        ctx.build_options.env_vars or None,
        on_output=_on_output,
    )
    async with proc:
        with run.timed("build"):
            run.build_log.stamp("Waiting for Tauri app to start...")
            if not await _wait_until_ready(ready, run.options.runtime_timeout_ms):
                run.build_log.stamp("No ready signal before timeout, continuing to capture")

        with run.timed("screenshot"):
            await sleep_ms(max(APP_LAUNCH_DELAY_MS, run.options.screenshot_delay_ms))
            run.build_log.section("Screenshot Capture")
            screenshot.parent.mkdir(parents=True, exist_ok=True)
            capture = await _capture_chain(run, name, screenshot).run()
            if not capture.ok:
                run.build_log.stamp(f"Screenshot capture failed: {capture.outcome.detail}")

        run.build_log.stamp("Stopping Tauri app...")

    diff_result = await run.diff_screenshot(screenshot)
    return run.success(screenshot=screenshot, diff_result=diff_result)
