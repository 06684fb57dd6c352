"""Tests for build notifications."""

from __future__ import annotations

import asyncio
import json
import logging

import pytest

from branchrunner.config import RunnerSettings
from branchrunner.errors import CommandFailedError
from branchrunner.notifier import (
    BuildNotification,
    LoggingNotifier,
    Notifier,
    WebhookNotifier,
    notifier_from_settings,
)
from branchrunner.retry import RetryPolicy
from branchrunner.schemas import RunStatus

pytestmark = pytest.mark.unit


def _notification(status: RunStatus = RunStatus.FAILURE) -> BuildNotification:
    return BuildNotification(
        repo_full_name="acme/app",
        branch="main",
        run_id="r1",
        status=status,
        error_message="Tests failed" if status == RunStatus.FAILURE else None,
    )


async def _no_sleep(_seconds: float) -> None:
    return None


def test_headline() -> None:
    assert _notification().headline == "Build failed: acme/app/main: Tests failed"
    assert _notification(RunStatus.SUCCESS).headline == "Build succeeded: acme/app/main"


def test_webhook_retries_transient_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    notifier = WebhookNotifier(
        "https://hooks.example.com/build",
        policy=RetryPolicy(max_retries=2, initial_delay_ms=1, max_delay_ms=1),
        sleep=_no_sleep,
    )
    bodies: list[dict[str, object]] = []

    def flaky_post(body: bytes) -> int:
        bodies.append(json.loads(body))
        if len(bodies) < 2:
            raise CommandFailedError("webhook returned HTTP 502")
        return 200

    monkeypatch.setattr(notifier, "_post", flaky_post)

    asyncio.run(notifier.notify(_notification()))

    assert len(bodies) == 2
    assert bodies[0]["status"] == "failure"
    assert bodies[0]["error_message"] == "Tests failed"


def test_webhook_gives_up_without_raising(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    notifier = WebhookNotifier(
        "https://hooks.example.com/build",
        policy=RetryPolicy(max_retries=1, initial_delay_ms=1, max_delay_ms=1),
        sleep=_no_sleep,
    )
    calls: list[bytes] = []

    def down(body: bytes) -> int:
        calls.append(body)
        raise CommandFailedError("webhook delivery failed: connection refused")

    monkeypatch.setattr(notifier, "_post", down)

    with caplog.at_level(logging.ERROR, logger="branchrunner.notifier"):
        asyncio.run(notifier.notify(_notification()))

    assert len(calls) == 2
    assert "Giving up on notification for r1" in caplog.text


def test_notifier_from_settings() -> None:
    assert isinstance(notifier_from_settings(RunnerSettings()), LoggingNotifier)
    webhook = notifier_from_settings(RunnerSettings(notify_webhook_url="https://hooks.example.com/x"))
    assert isinstance(webhook, WebhookNotifier)
    assert isinstance(webhook, Notifier)
