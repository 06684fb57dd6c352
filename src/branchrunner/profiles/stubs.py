"""Placeholder profiles.

Each writes the steps it would run to the build log and fails with a fixed
message, so callers treat it like any other failed build.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml

from branchrunner.errors import ProfileNotImplementedError
from branchrunner.profiles.base import ProfileRun
from branchrunner.schemas import ProfileResult

logger = logging.getLogger(__name__)

CUSTOM_CONFIG_NAMES = (".branchrunner.yml", ".branchrunner.yaml")

ANDROID_MESSAGE = "Android Capacitor profile is not yet implemented"
CUSTOM_MESSAGE = "Custom profile is not yet implemented"
TAURI_MESSAGE = "Tauri profile is not yet implemented on this platform"


def _explain(run: ProfileRun, title: str, lines: list[str]) -> None:
    run.build_log.stamp(f"=== {title} ===")
    for line in lines:
        run.build_log.stamp(line)
    run.build_log.stamp("Returning failure status as profile is not implemented.")


async def android_capacitor(run: ProfileRun) -> ProfileResult:
    _explain(
        run,
        "Android Capacitor Profile",
        [
            "This profile would:",
            "1. npm ci and npx cap sync android",
            "2. Boot an Android emulator (AVD) and wait for sys.boot_completed",
            "3. npx cap run android against the emulator",
            "4. Capture adb exec-out screencap and logcat output",
        ],
    )
    raise ProfileNotImplementedError(ANDROID_MESSAGE)


def load_custom_steps(local_path: str | Path) -> list[str]:
    """Step descriptions declared in the repository's ``.branchrunner.yml``."""
    for name in CUSTOM_CONFIG_NAMES:
        path = Path(local_path) / name
        if not path.is_file():
            continue
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("Could not read %s: %s", path, exc)
            return []
        steps = data.get("steps") if isinstance(data, dict) else None
        result: list[str] = []
        for step in steps or []:
            if isinstance(step, dict):
                label = step.get("name") or step.get("run") or ""
                command = step.get("run")
                result.append(f"{label}: {command}" if command and label != command else str(label))
            else:
                result.append(str(step))
        return [item for item in result if item]
    return []


async def custom(run: ProfileRun) -> ProfileResult:
    steps = load_custom_steps(run.context.local_path)
    lines = ["This profile is a placeholder for user-defined build steps."]
    if steps:
        lines.append("Steps declared in .branchrunner.yml:")
        lines.extend(f"  {index}. {step}" for index, step in enumerate(steps, start=1))
    else:
        lines.append("Declare build/run/screenshot steps in .branchrunner.yml to describe them here.")
    _explain(run, "Custom Profile", lines)
    raise ProfileNotImplementedError(CUSTOM_MESSAGE)


async def tauri_unsupported(run: ProfileRun) -> ProfileResult:
    _explain(
        run,
        "Tauri App Profile",
        [
            "Window capture is only available on macOS and Linux.",
            "This profile would run `npm run tauri dev` and capture the app window.",
        ],
    )
    raise ProfileNotImplementedError(TAURI_MESSAGE)
