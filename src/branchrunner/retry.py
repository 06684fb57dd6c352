"""Bounded exponential-backoff retries for idempotent async operations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff curve.

    ``max_retries`` counts re-invocations, so an always-failing operation is
    called ``max_retries + 1`` times.
    """

    max_retries: int
    initial_delay_ms: int
    max_delay_ms: int
    multiplier: float = 2.0

    def delay_ms(self, attempt: int) -> int:
        """Delay before re-invocation number ``attempt + 1`` (``attempt`` is 0-based)."""
        raw = self.initial_delay_ms * (self.multiplier ** max(0, attempt))
        return int(min(raw, self.max_delay_ms))


FETCH_RETRY_POLICY = RetryPolicy(max_retries=3, initial_delay_ms=2_000, max_delay_ms=16_000)
NOTIFY_RETRY_POLICY = RetryPolicy(max_retries=2, initial_delay_ms=1_000, max_delay_ms=5_000)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int,
    initial_delay_ms: int,
    max_delay_ms: int,
    multiplier: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: SleepFn | None = None,
    description: str = "operation",
) -> T:
    """Run *operation* until it succeeds or the retry budget is spent.

    Sleeps ``min(initial_delay_ms * multiplier**attempt, max_delay_ms)``
    between attempts and re-raises the last failure once retries run out.
    Only wrap operations that are safe to repeat.
    """
    policy = RetryPolicy(
        max_retries=max(0, int(max_retries)),
        initial_delay_ms=max(0, int(initial_delay_ms)),
        max_delay_ms=max(0, int(max_delay_ms)),
        multiplier=multiplier,
    )
    return await retry_with_policy(
        operation, policy, retry_on=retry_on, sleep=sleep, description=description
    )


async def retry_with_policy(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: SleepFn | None = None,
    description: str = "operation",
) -> T:
    """Same as :func:`retry_with_backoff` with the parameters bundled in *policy*."""
    do_sleep = sleep or asyncio.sleep
    attempt = 0
    while True:
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= policy.max_retries:
                raise
            delay = policy.delay_ms(attempt)
            logger.info(
                "%s failed (attempt %s/%s): %s; retrying in %sms",
                description,
                attempt + 1,
                policy.max_retries + 1,
                exc,
                delay,
            )
            await do_sleep(delay / 1000.0)
            attempt += 1
