"""web-generic: start the dev server and capture it with a headless browser."""

from __future__ import annotations

import asyncio
import logging
import urllib.error
import urllib.request

from branchrunner.browser import PAGE_LOAD_TIMEOUT_MS, BrowserEnvironment
from branchrunner.errors import ProfileAbort
from branchrunner.port_detection import (
    DEFAULT_PORT,
    detect_port_dynamically,
    detect_port_static,
    find_dev_script,
    read_package_json,
)
from branchrunner.process import kill_process_on_port, sleep_ms, spawn_long_running
from branchrunner.profiles.base import ProfileRun
from branchrunner.schemas import ProfileResult

logger = logging.getLogger(__name__)

SERVER_READY_TIMEOUT_MS = 60_000
SERVER_STARTUP_DELAY_MS = 5_000
DYNAMIC_DETECTION_TIMEOUT_MS = 30_000
_POLL_INTERVAL_MS = 1_000


def _head_ok(url: str) -> bool:
    request = urllib.request.Request(url, method="HEAD")
    try:
        with urllib.request.urlopen(request, timeout=5) as response:
            return response.status < 400
    except urllib.error.HTTPError as exc:
        return exc.code == 304
    except (urllib.error.URLError, OSError, ValueError):
        return False


async def wait_for_server(url: str, timeout_ms: int = SERVER_READY_TIMEOUT_MS) -> bool:
    """Poll *url* with HEAD requests until it answers or the deadline passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_ms / 1000.0
    while loop.time() < deadline:
        if await asyncio.to_thread(_head_ok, url):
            return True
        await sleep_ms(_POLL_INTERVAL_MS)
    return False


async def resolve_port(run: ProfileRun) -> int:
    """Configured dev port > confident static guess > port the dev server announces > static guess.

    A port found by running the dev server is saved as the repository's
    ``detected_port`` so later runs skip detection.
    """
    ctx = run.context
    if ctx.dev_port:
        return int(ctx.dev_port)
    static = detect_port_static(ctx.local_path)
    if static is not None and static.confidence != "low":
        run.build_log.stamp(f"Port {static.port} from {static.source}")
        return static.port

    run.build_log.section("Detecting port dynamically")
    dynamic = await detect_port_dynamically(
        ctx.local_path, run.build_log, min(DYNAMIC_DETECTION_TIMEOUT_MS, run.options.runtime_timeout_ms)
    )
    if dynamic is None:
        port = static.port if static else DEFAULT_PORT
        run.build_log.stamp(f"No port announced; assuming {port}")
        return port
    if run.store is not None:
        run.store.update_repo_config(ctx.repo_full_name, {"detected_port": dynamic.port})
    return dynamic.port


async def run(run: ProfileRun) -> ProfileResult:
    ctx = run.context
    await run.install_node_modules()

    run.build_log.section("Detecting dev script")
    script = find_dev_script(read_package_json(ctx.local_path)) or "dev"
    port = await resolve_port(run)
    run.build_log.stamp(f"Using script: npm run {script}")
    run.build_log.stamp(f"Using port: {port}")

    reclaimed = await kill_process_on_port(port)
    if reclaimed:
        run.build_log.stamp(f"Killed stale process(es) on port {port}: {reclaimed}")

    run.build_log.section("Starting dev server")
    run.runtime_log.stamp("=== Dev Server Output ===")
    env = {"PORT": str(port), "BROWSER": "none", **ctx.build_options.env_vars}
    proc = await spawn_long_running(
        "npm",
        ["run", script],
        ctx.local_path,
        env,
        on_output=lambda _stream, text: run.runtime_log.append(text),
    )
    screenshot = ctx.screenshot_path
    async with proc:
        url = f"http://localhost:{port}"
        with run.timed("build"):
            run.build_log.stamp(f"Waiting for server on port {port}...")
            if not await wait_for_server(url, max(SERVER_READY_TIMEOUT_MS, run.options.runtime_timeout_ms)):
                raise ProfileAbort(f"Dev server failed to start on port {port}")
            run.build_log.stamp("Server is ready")
            await sleep_ms(min(SERVER_STARTUP_DELAY_MS, run.options.screenshot_delay_ms))

        with run.timed("screenshot"):
            run.build_log.section("Launching browser")
            run.network_log.stamp("=== Network Requests ===")
            async with BrowserEnvironment(runtime_log=run.runtime_log, network_log=run.network_log) as env:
                run.build_log.stamp(f"Navigating to {url}")
                if not await env.navigate(url, PAGE_LOAD_TIMEOUT_MS):
                    run.build_log.stamp("Warning: Page load timeout, continuing with screenshot")
                run.build_log.section("Taking screenshot")
                await env.save_screenshot(screenshot)
                run.build_log.stamp("Screenshot captured successfully")

    diff_result = await run.diff_screenshot(screenshot)
    return run.success(screenshot=screenshot, diff_result=diff_result)
