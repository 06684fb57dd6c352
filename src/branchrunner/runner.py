"""Executes one :class:`BuildJob` end to end and records the outcome."""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from branchrunner.build_cache import BuildCache
from branchrunner.config import RunnerSettings
from branchrunner.error_analyzer import analyze_log_file
from branchrunner.errors import GitRecoveryExhaustedError
from branchrunner.git_tools import ensure_repo_cloned, sync_to_branch
from branchrunner.notifier import BuildNotification, LoggingNotifier, Notifier
from branchrunner.profiles import run_profile
from branchrunner.run_log import RunLog, run_logs_dir, screenshots_dir
from branchrunner.schemas import (
    BuildJob,
    Durations,
    ProfileContext,
    ProfileResult,
    RunRecord,
    RunStatus,
    generate_run_id,
)
from branchrunner.store import ConfigStore

logger = logging.getLogger(__name__)

ProfileRunnerFn = Callable[..., Awaitable[ProfileResult]]


class JobRunner:
    """Clone/sync the working tree, run the profile, update history, notify."""

    def __init__(
        self,
        settings: RunnerSettings,
        store: ConfigStore,
        notifier: Notifier | None = None,
        *,
        profile_runner: ProfileRunnerFn = run_profile,
        cache: BuildCache | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.notifier = notifier or LoggingNotifier()
        self.profile_runner = profile_runner
        self.cache = cache if cache is not None else BuildCache.from_settings(settings)

    def should_accept(self, repo_full_name: str, branch: str = "") -> bool:
        """Whether a push for this repository should be queued at all.

        Unknown, disabled and paused repositories are acknowledged and dropped.
        """
        repo = self.store.get_repo_config(repo_full_name)
        if repo is None:
            logger.info("Ignoring %s/%s: repository not configured", repo_full_name, branch)
            return False
        if not repo.enabled:
            logger.info("Ignoring %s/%s: repository disabled", repo_full_name, branch)
            return False
        if self.store.is_repo_paused(repo_full_name):
            logger.info("Ignoring %s/%s: repository paused", repo_full_name, branch)
            return False
        return True

    async def execute(self, job: BuildJob) -> RunRecord | None:
        """Run *job*; returns the final run record, or ``None`` for unknown repos."""
        repo = self.store.get_repo_config(job.repo_full_name)
        if repo is None:
            logger.error("No config found for %s", job.repo_full_name)
            return None

        run_id = generate_run_id()
        logs_dir = run_logs_dir(self.settings.logs_root, job.repo_full_name, job.branch, run_id)
        shots_dir = screenshots_dir(self.settings.screenshots_root, job.repo_full_name, job.branch)
        logs_dir.mkdir(parents=True, exist_ok=True)
        shots_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Starting job execution: %s/%s (%s)", job.repo_full_name, job.branch, run_id)

        build_log = RunLog(logs_dir / "build.log")
        record = RunRecord(
            branch=job.branch,
            run_id=run_id,
            status=RunStatus.RUNNING,
            build_log_path=str(build_log.path),
        )
        self.store.add_run_record(job.repo_full_name, record)

        build_log.stamp(f"=== Build started for {job.repo_full_name}/{job.branch} ===")
        build_log.stamp(f"Run ID: {run_id}")
        build_log.stamp(f"Profile: {repo.profile.value}")
        build_log.stamp(f"Trigger: {job.trigger}")
        if job.commit_message:
            build_log.stamp(f"Commit: {job.commit_message} ({job.commit_author or 'unknown'})")

        started = time.monotonic()
        git_ms: int | None = None
        patch: dict[str, Any]
        try:
            git_started = time.monotonic()
            repo = await ensure_repo_cloned(repo, self.store, self.settings)
            build_log.stamp(f"Local path: {repo.local_path}")
            build_log.section("Git Sync")
            sync = await sync_to_branch(repo.local_path, job.branch, build_log)
            git_ms = int((time.monotonic() - git_started) * 1000)
            if not sync.success:
                raise GitRecoveryExhaustedError(f"Git sync failed: {sync.message}")
            if sync.recovery_attempted:
                build_log.stamp(f"Git sync needed recovery; building {sync.checked_out_branch}")

            build_log.section("Running Profile")
            context = ProfileContext(
                repo_full_name=job.repo_full_name,
                branch=job.branch,
                local_path=repo.local_path,
                run_id=run_id,
                logs_dir=logs_dir,
                screenshots_dir=shots_dir,
                dev_port=repo.dev_port or repo.detected_port,
                build_options=self.settings.effective_build_options(repo),
            )
            result = await self.profile_runner(context, repo.profile, store=self.store, cache=self.cache)
            build_log.stamp(f"=== Build {result.status.value.upper()} ===")
            durations = result.durations or Durations()
            durations.git = git_ms
            patch = {
                "status": RunStatus(result.status.value),
                "screenshot_path": result.screenshot_path,
                "runtime_log_path": result.runtime_log_path,
                "network_log_path": result.network_log_path,
                "error_message": result.error_message,
                "diff_result": result.diff_result,
                "durations": durations,
            }
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            if not isinstance(exc, GitRecoveryExhaustedError):
                logger.exception("Job %s failed", run_id)
            build_log.stamp("=== Build FAILED ===")
            build_log.stamp(f"Error: {message}")
            patch = {
                "status": RunStatus.FAILURE,
                "error_message": message,
                "durations": Durations(git=git_ms),
            }

        patch["durations"].total = int((time.monotonic() - started) * 1000)
        if patch["status"] == RunStatus.FAILURE:
            patch["error_summary"] = analyze_log_file(build_log.path)

        final = record.model_copy(update=patch)
        self.store.update_run_record(
            job.repo_full_name, run_id, {k: v for k, v in final.model_dump().items() if k in patch}
        )
        logger.info("Job %s completed with status: %s", run_id, final.status.value)
        await self._notify(job, final)
        return final

    async def _notify(self, job: BuildJob, record: RunRecord) -> None:
        notification = BuildNotification(
            repo_full_name=job.repo_full_name,
            branch=job.branch,
            run_id=record.run_id,
            status=record.status,
            error_message=record.error_message,
            screenshot_path=record.screenshot_path,
            build_log_path=record.build_log_path,
            runtime_log_path=record.runtime_log_path,
            network_log_path=record.network_log_path,
            diff_result=record.diff_result,
            durations=record.durations,
            error_summary=record.error_summary,
        )
        try:
            await self.notifier.notify(notification)
        except Exception:
            logger.exception("Notifier failed for run %s", record.run_id)
