"""Shared plumbing for profile runners: logs, steps, durations, results."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from branchrunner.build_cache import BuildCache
from branchrunner.errors import CommandTimeoutError, ProfileAbort, ToolUnavailableError
from branchrunner.process import ExecResult, run_with_timeout, which
from branchrunner.run_log import RunLog
from branchrunner.schemas import (
    BuildOptions,
    DiffResult,
    Durations,
    ProfileContext,
    ProfileResult,
    ResultStatus,
)
from branchrunner.screenshot_diff import perform_screenshot_diff
from branchrunner.store import ConfigStore

logger = logging.getLogger(__name__)

INSTALL_TIMEOUT_MS = 300_000


class ProfileRun:
    """State of one profile execution.

    Hard steps raise (:class:`ProfileAbort`, :class:`ToolUnavailableError`,
    :class:`CommandTimeoutError`); :func:`branchrunner.profiles.run_profile`
    turns those into a failure result.  Soft steps log a warning and return.
    The runtime and network logs are created on first use.
    """

    def __init__(
        self,
        context: ProfileContext,
        *,
        store: ConfigStore | None = None,
        cache: BuildCache | None = None,
    ) -> None:
        self.context = context
        self.store = store
        self.cache = cache
        self.build_log = RunLog(context.build_log_path)
        self.durations = Durations()
        self._runtime_log: RunLog | None = None
        self._network_log: RunLog | None = None
        self._started = time.monotonic()

    @property
    def options(self) -> BuildOptions:
        return self.context.build_options

    @property
    def runtime_log(self) -> RunLog:
        if self._runtime_log is None:
            self._runtime_log = RunLog(self.context.runtime_log_path)
        return self._runtime_log

    @property
    def network_log(self) -> RunLog:
        if self._network_log is None:
            self._network_log = RunLog(self.context.network_log_path)
        return self._network_log

    @contextmanager
    def timed(self, field: str) -> Iterator[None]:
        """Record the wall time of the enclosed block into ``durations.<field>``."""
        started = time.monotonic()
        try:
            yield
        finally:
            setattr(self.durations, field, int((time.monotonic() - started) * 1000))

    def ensure_tool(self, tool: str, hint: str = "") -> str:
        path = which(tool)
        if path is None:
            raise ToolUnavailableError(tool, hint)
        return path

    def require_path(self, relative: str, message: str) -> Path:
        path = Path(self.context.local_path) / relative
        if not path.exists():
            raise ProfileAbort(message)
        return path

    async def run_step(
        self,
        title: str,
        command: str,
        *,
        timeout_ms: int,
        abort_message: str | None = None,
        tee_runtime: bool = False,
    ) -> ExecResult:
        """Run one shell step in the working tree.

        With *abort_message* the step is hard: a failure aborts the profile
        with that message.  Without it a failure is logged and ignored.
        """
        self.build_log.section(title)
        self.build_log.stamp(f"$ {command}")
        result = await run_with_timeout(
            command,
            self.context.local_path,
            timeout_ms,
            env=self.options.env_vars or None,
        )
        if result.stdout:
            self.build_log.append(result.stdout if result.stdout.endswith("\n") else result.stdout + "\n")
        if result.stderr:
            self.build_log.append(result.stderr if result.stderr.endswith("\n") else result.stderr + "\n")
        if tee_runtime and result.output:
            self.runtime_log.line(result.output)
        if result.truncated:
            self.build_log.stamp("Warning: output truncated")

        if result.success:
            return result
        if result.timed_out:
            self.build_log.stamp(f"Step timed out after {timeout_ms}ms")
            if abort_message is not None:
                raise CommandTimeoutError(command, timeout_ms)
        if abort_message is not None:
            raise ProfileAbort(abort_message)
        self.build_log.stamp(f"Warning: {title} failed, continuing")
        return result

    async def install_node_modules(self, *, abort_message: str = "npm ci failed") -> None:
        """Restore ``node_modules`` from cache, or install and populate the cache."""
        repo = self.context.repo_full_name
        with self.timed("install"):
            if self.cache is not None and await self.cache.restore_node_modules(repo, self.context.local_path):
                self.build_log.stamp("Restored node_modules from cache")
                return
            await self.run_step(
                "Installing dependencies",
                "npm ci",
                timeout_ms=INSTALL_TIMEOUT_MS,
                abort_message=abort_message,
            )
            if self.cache is not None and await self.cache.cache_node_modules(repo, self.context.local_path):
                self.build_log.stamp("Cached node_modules for next run")

    def tee(self, _stream: str, text: str) -> None:
        """Output callback that copies a live process into both logs."""
        self.build_log.append(text)
        self.runtime_log.append(text)

    async def diff_screenshot(self, screenshot: Path) -> DiffResult | None:
        if self.store is None or not screenshot.is_file():
            return None
        self.build_log.section("Comparing with previous screenshot")
        result = await perform_screenshot_diff(
            self.store,
            self.context.repo_full_name,
            self.context.branch,
            self.context.run_id,
            screenshot,
            self.context.screenshots_dir,
        )
        if result is None:
            self.build_log.stamp("No baseline screenshot to compare against")
        else:
            self.build_log.stamp(f"Screenshot diff: {result.diff_percentage:.2f}% different")
        return result

    def _result(self, status: ResultStatus, **fields) -> ProfileResult:
        self.durations.total = int((time.monotonic() - self._started) * 1000)
        return ProfileResult(
            status=status,
            build_log_path=str(self.context.build_log_path),
            runtime_log_path=str(self._runtime_log.path) if self._runtime_log else None,
            network_log_path=str(self._network_log.path) if self._network_log else None,
            durations=self.durations,
            **fields,
        )

    def success(self, *, screenshot: Path | None = None, diff_result: DiffResult | None = None) -> ProfileResult:
        self.build_log.section("Build completed successfully")
        screenshot_path = str(screenshot) if screenshot is not None and screenshot.is_file() else None
        return self._result(ResultStatus.SUCCESS, screenshot_path=screenshot_path, diff_result=diff_result)

    def failure(self, message: str) -> ProfileResult:
        self.build_log.stamp(f"ERROR: {message}")
        logger.info("Profile failed for %s/%s: %s", self.context.repo_full_name, self.context.branch, message)
        return self._result(ResultStatus.FAILURE, error_message=message)
