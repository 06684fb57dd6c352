"""Build result notifications."""

from __future__ import annotations

import asyncio
import logging
import urllib.error
import urllib.request
from typing import Protocol, runtime_checkable

from pydantic import BaseModel

from branchrunner.config import RunnerSettings
from branchrunner.errors import CommandFailedError
from branchrunner.retry import NOTIFY_RETRY_POLICY, RetryPolicy, SleepFn, retry_with_policy
from branchrunner.schemas import DiffResult, Durations, ErrorSummary, RunStatus

logger = logging.getLogger(__name__)


class BuildNotification(BaseModel):
    repo_full_name: str
    branch: str
    run_id: str
    status: RunStatus
    error_message: str | None = None
    screenshot_path: str | None = None
    build_log_path: str | None = None
    runtime_log_path: str | None = None
    network_log_path: str | None = None
    diff_result: DiffResult | None = None
    durations: Durations | None = None
    error_summary: ErrorSummary | None = None

    @property
    def headline(self) -> str:
        if self.status == RunStatus.SUCCESS:
            return f"Build succeeded: {self.repo_full_name}/{self.branch}"
        return f"Build failed: {self.repo_full_name}/{self.branch}: {self.error_message or 'Unknown error'}"


@runtime_checkable
class Notifier(Protocol):
    async def notify(self, notification: BuildNotification) -> None: ...


class LoggingNotifier:
    """Writes notifications to the process log."""

    async def notify(self, notification: BuildNotification) -> None:
        if notification.status == RunStatus.SUCCESS:
            logger.info(notification.headline)
        else:
            logger.warning(notification.headline)


class WebhookNotifier:
    """POSTs each notification as JSON to *url*, retrying transient failures."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 10.0,
        policy: RetryPolicy = NOTIFY_RETRY_POLICY,
        sleep: SleepFn | None = None,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.policy = policy
        self._sleep = sleep

    def _post(self, body: bytes) -> int:
        request = urllib.request.Request(
            self.url,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                return int(response.status)
        except urllib.error.HTTPError as exc:
            raise CommandFailedError(f"webhook returned HTTP {exc.code}") from exc
        except (urllib.error.URLError, OSError) as exc:
            raise CommandFailedError(f"webhook delivery failed: {exc}") from exc

    async def notify(self, notification: BuildNotification) -> None:
        body = notification.model_dump_json(exclude_none=True).encode("utf-8")

        async def _deliver() -> int:
            return await asyncio.to_thread(self._post, body)

        try:
            await retry_with_policy(
                _deliver,
                self.policy,
                retry_on=(CommandFailedError,),
                sleep=self._sleep,
                description="notification webhook",
            )
        except CommandFailedError as exc:
            logger.error("Giving up on notification for %s: %s", notification.run_id, exc)


def notifier_from_settings(settings: RunnerSettings) -> Notifier:
    if settings.notify_webhook_url:
        return WebhookNotifier(settings.notify_webhook_url)
    return LoggingNotifier()
