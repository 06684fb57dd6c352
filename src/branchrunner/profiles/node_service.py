"""node-service: install, optional build, then the test suite as the runtime check."""

from __future__ import annotations

from branchrunner.profiles.base import INSTALL_TIMEOUT_MS, ProfileRun
from branchrunner.schemas import ProfileResult

STEP_TIMEOUT_MS = 300_000


async def run(run: ProfileRun) -> ProfileResult:
    run.build_log.stamp("=== Node Service Profile ===")
    run.build_log.stamp("This profile runs npm ci, npm run build (if available), and npm test.")

    with run.timed("install"):
        await run.run_step(
            "Installing dependencies",
            "npm ci",
            timeout_ms=INSTALL_TIMEOUT_MS,
            abort_message="npm ci failed",
        )

    with run.timed("build"):
        await run.run_step(
            "Building",
            "npm run build --if-present",
            timeout_ms=min(STEP_TIMEOUT_MS, run.options.build_timeout_ms),
        )

        run.runtime_log.stamp("=== Test Output ===")
        await run.run_step(
            "Running tests",
            "npm test --if-present",
            timeout_ms=STEP_TIMEOUT_MS,
            abort_message="Tests failed",
            tee_runtime=True,
        )

    return run.success()
