"""ios-capacitor: build a Capacitor app, run it on a simulator, capture it."""

from __future__ import annotations

import asyncio
import logging
import shlex

from branchrunner.process import sleep_ms, spawn_long_running
from branchrunner.profiles.base import INSTALL_TIMEOUT_MS, ProfileRun
from branchrunner.schemas import ProfileResult
from branchrunner.simulators import SimulatorCatalog, default_catalog

logger = logging.getLogger(__name__)

BOOT_TIMEOUT_MS = 120_000
CAP_RUN_TIMEOUT_MS = 600_000
LOG_STREAM_SECONDS = 10.0
APP_LAUNCH_DELAY_MS = 8_000


async def _boot(run: ProfileRun, device: str) -> None:
    quoted = shlex.quote(device)
    run.build_log.section(f"Booting simulator ({device})")
    # "Unable to shutdown/boot device in current state" is expected for an
    # already shut down / booted device, so both results are ignored.
    await run.run_step("Shutting down simulator", f"xcrun simctl shutdown {quoted}", timeout_ms=60_000)
    await run.run_step("Booting simulator", f"xcrun simctl boot {quoted}", timeout_ms=60_000)
    await run.run_step(
        "Waiting for simulator boot",
        f"xcrun simctl bootstatus {quoted} -b",
        timeout_ms=BOOT_TIMEOUT_MS,
    )


async def _stream_device_logs(run: ProfileRun) -> None:
    run.build_log.section(f"Capturing device logs for {LOG_STREAM_SECONDS:.0f}s")
    run.runtime_log.stamp("=== iOS Simulator Logs ===")
    proc = await spawn_long_running(
        "xcrun",
        ["simctl", "spawn", "booted", "log", "stream", "--level=info"],
        run.context.local_path,
        on_output=lambda _stream, text: run.runtime_log.append(text),
    )
    async with proc:
        try:
            await asyncio.wait_for(proc.wait_for_exit(), timeout=LOG_STREAM_SECONDS)
        except asyncio.TimeoutError:
            pass


async def run(run: ProfileRun, catalog: SimulatorCatalog | None = None) -> ProfileResult:
    catalog = catalog or default_catalog
    run.require_path("ios", "No ios/ directory found. Run `npx cap add ios` first.")
    run.ensure_tool("xcrun", "Install Xcode and its command line tools")

    with run.timed("install"):
        await run.run_step(
            "Installing dependencies",
            "npm ci",
            timeout_ms=INSTALL_TIMEOUT_MS,
            abort_message="npm ci failed",
        )

    device = await catalog.pick(run.options.simulator_device)
    with run.timed("build"):
        await run.run_step(
            "Syncing Capacitor iOS",
            "npx cap sync ios",
            timeout_ms=INSTALL_TIMEOUT_MS,
            abort_message="Capacitor sync failed",
        )
        await _boot(run, device)
        await run.run_step(
            "Running app on simulator",
            f"npx cap run ios --target {shlex.quote(device)} --no-open",
            timeout_ms=max(CAP_RUN_TIMEOUT_MS, run.options.build_timeout_ms),
        )

    screenshot = run.context.screenshot_path
    with run.timed("screenshot"):
        delay = max(APP_LAUNCH_DELAY_MS, run.options.screenshot_delay_ms)
        run.build_log.section(f"Waiting {delay / 1000:.0f}s for app to launch")
        await sleep_ms(delay)
        screenshot.parent.mkdir(parents=True, exist_ok=True)
        await run.run_step(
            "Taking screenshot",
            f"xcrun simctl io booted screenshot {shlex.quote(str(screenshot))}",
            timeout_ms=run.options.screenshot_timeout_ms,
        )

    await _stream_device_logs(run)
    diff_result = await run.diff_screenshot(screenshot)
    return run.success(screenshot=screenshot, diff_result=diff_result)
