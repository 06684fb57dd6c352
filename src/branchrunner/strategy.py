"""Ordered fallback strategies with tagged outcomes.

Git recovery, simulator selection, and screenshot capture all follow the same
shape: try the preferred approach, degrade to the next one on a soft failure,
stop outright on a hard failure.  A :class:`StrategyChain` keeps that
branching explicit and testable on its own.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    SOFT_FAIL = "soft_fail"
    HARD_FAIL = "hard_fail"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of one strategy attempt."""

    kind: OutcomeKind
    value: T | None = None
    detail: str = ""

    @classmethod
    def success(cls, value: T | None = None, detail: str = "") -> Outcome[T]:
        return cls(OutcomeKind.SUCCESS, value, detail)

    @classmethod
    def soft_fail(cls, detail: str = "") -> Outcome[T]:
        return cls(OutcomeKind.SOFT_FAIL, None, detail)

    @classmethod
    def hard_fail(cls, detail: str = "") -> Outcome[T]:
        return cls(OutcomeKind.HARD_FAIL, None, detail)

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS


@dataclass(frozen=True)
class Strategy(Generic[T]):
    name: str
    attempt: Callable[[], Awaitable[Outcome[T]]]


@dataclass
class ChainResult(Generic[T]):
    """Final outcome plus the trail of strategies that were tried."""

    outcome: Outcome[T]
    winner: str | None = None
    attempts: list[tuple[str, Outcome[T]]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome.ok

    @property
    def used_fallback(self) -> bool:
        """True when anything past the first strategy had to run."""
        return len(self.attempts) > 1

    @property
    def value(self) -> T | None:
        return self.outcome.value


class StrategyChain(Generic[T]):
    """Try strategies in order; stop at the first success or hard failure."""

    def __init__(self, name: str, strategies: Sequence[Strategy[T]]) -> None:
        self.name = name
        self.strategies = list(strategies)

    async def run(self) -> ChainResult[T]:
        attempts: list[tuple[str, Outcome[T]]] = []
        last: Outcome[T] = Outcome.soft_fail("no strategies configured")
        for strategy in self.strategies:
            try:
                outcome = await strategy.attempt()
            except Exception as exc:
                logger.warning("%s: strategy %s raised: %s", self.name, strategy.name, exc)
                outcome = Outcome.soft_fail(str(exc))
            attempts.append((strategy.name, outcome))
            last = outcome
            if outcome.kind == OutcomeKind.SUCCESS:
                logger.debug("%s: %s succeeded", self.name, strategy.name)
                return ChainResult(outcome=outcome, winner=strategy.name, attempts=attempts)
            if outcome.kind == OutcomeKind.HARD_FAIL:
                logger.info("%s: %s failed hard: %s", self.name, strategy.name, outcome.detail)
                break
            logger.debug("%s: %s soft-failed: %s", self.name, strategy.name, outcome.detail)
        return ChainResult(outcome=last, winner=None, attempts=attempts)
