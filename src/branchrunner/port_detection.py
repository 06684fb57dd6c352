"""Dev-server port inference from manifests or from live dev-server output."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any

from branchrunner.process import spawn_long_running
from branchrunner.run_log import RunLog
from branchrunner.schemas import PortDetectionResult

logger = logging.getLogger(__name__)

DEV_SCRIPT_NAMES = ("dev", "start", "serve")
DEFAULT_PORT = 3000

_SCRIPT_PORT_RE = re.compile(r"(?:--port[= ]|PORT=|-p[= ]?)(\d+)", re.IGNORECASE)
_VITE_PORT_RE = re.compile(r"port:\s*(\d+)")
_URL_PORT_RE = re.compile(r"https?://(?:localhost|127\.0\.0\.1|0\.0\.0\.0):(\d+)", re.IGNORECASE)
_VITE_CONFIGS = ("vite.config.ts", "vite.config.js", "vite.config.mjs")

# Ordered: the first matching dependency wins.
_FRAMEWORK_DEFAULTS: tuple[tuple[tuple[str, ...], int, str], ...] = (
    (("next",), 3000, "Next.js default"),
    (("@angular/core", "@angular/cli"), 4200, "Angular default"),
    (("react-scripts",), 3000, "Create React App default"),
    (("@vue/cli-service",), 8080, "Vue CLI default"),
    (("nuxt",), 3000, "Nuxt default"),
    (("@sveltejs/kit",), 5173, "SvelteKit default"),
)


def read_package_json(local_path: str | Path) -> dict[str, Any] | None:
    """Parse ``package.json`` under *local_path*; ``None`` when absent or invalid."""
    path = Path(local_path) / "package.json"
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Could not parse %s: %s", path, exc)
        return None
    return data if isinstance(data, dict) else None


def find_dev_script(package_json: dict[str, Any] | None) -> str | None:
    """Return the first of dev/start/serve defined in the manifest scripts."""
    scripts = (package_json or {}).get("scripts") or {}
    for name in DEV_SCRIPT_NAMES:
        if scripts.get(name):
            return name
    return None


def detect_port_static(local_path: str | Path) -> PortDetectionResult | None:
    """Infer the dev-server port without running anything.

    Ranking: explicit port in the dev script or vite config (high) >
    framework convention (medium) > generic default (low).
    """
    manifest = read_package_json(local_path)
    if manifest is None:
        return None

    scripts = manifest.get("scripts") or {}
    deps: dict[str, Any] = {**(manifest.get("dependencies") or {}), **(manifest.get("devDependencies") or {})}

    dev_script = str(next((scripts[name] for name in DEV_SCRIPT_NAMES if scripts.get(name)), ""))
    match = _SCRIPT_PORT_RE.search(dev_script)
    if match:
        return PortDetectionResult(port=int(match.group(1)), confidence="high", source="package.json scripts")

    root = Path(local_path)
    if "vite" in deps or any((root / name).is_file() for name in _VITE_CONFIGS):
        for name in _VITE_CONFIGS:
            config_path = root / name
            if not config_path.is_file():
                continue
            try:
                vite_match = _VITE_PORT_RE.search(config_path.read_text(encoding="utf-8"))
            except OSError:
                continue
            if vite_match:
                return PortDetectionResult(port=int(vite_match.group(1)), confidence="high", source=name)
        return PortDetectionResult(port=5173, confidence="medium", source="Vite default")

    for packages, port, source in _FRAMEWORK_DEFAULTS:
        if any(package in deps for package in packages):
            return PortDetectionResult(port=port, confidence="medium", source=source)

    return PortDetectionResult(port=DEFAULT_PORT, confidence="low", source="Default assumption")


def parse_port_from_output(text: str) -> int | None:
    match = _URL_PORT_RE.search(text or "")
    return int(match.group(1)) if match else None


async def detect_port_dynamically(
    local_path: str | Path,
    log: RunLog,
    timeout_ms: int = 30_000,
) -> PortDetectionResult | None:
    """Start the dev script and read the port from its first announced URL.

    The dev process tree is torn down whether or not a port was found.
    """
    script = find_dev_script(read_package_json(local_path))
    if script is None:
        return None

    log.stamp(f"Starting dev server to detect port: npm run {script}")
    found = asyncio.Event()
    port_holder: list[int] = []
    seen: list[str] = []

    def _on_output(_stream: str, text: str) -> None:
        log.append(text)
        seen.append(text)
        if port_holder:
            return
        # Match against the joined tail so a URL split across chunks is still found.
        port = parse_port_from_output("".join(seen[-4:]))
        if port is not None:
            port_holder.append(port)
            found.set()

    proc = await spawn_long_running("npm", ["run", script], local_path, on_output=_on_output)
    async with proc:
        exited = asyncio.create_task(proc.wait_for_exit())
        detected = asyncio.create_task(found.wait())
        try:
            await asyncio.wait(
                {exited, detected},
                timeout=timeout_ms / 1000.0,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (exited, detected):
                task.cancel()

    if port_holder:
        log.stamp(f"Detected port: {port_holder[0]}")
        return PortDetectionResult(port=port_holder[0], confidence="high", source="Dynamic detection")
    log.stamp("No port announced before the dev server exited or timed out")
    return None
