"""Tests for ordered fallback chains."""

from __future__ import annotations

import asyncio

from branchrunner.strategy import Outcome, OutcomeKind, Strategy, StrategyChain


def _strategy(name: str, outcome: Outcome[str], calls: list[str]) -> Strategy[str]:
    async def attempt() -> Outcome[str]:
        calls.append(name)
        return outcome

    return Strategy(name, attempt)


def test_chain_stops_at_first_success() -> None:
    calls: list[str] = []
    chain = StrategyChain(
        "demo",
        [
            _strategy("a", Outcome.soft_fail("no"), calls),
            _strategy("b", Outcome.success("b-value"), calls),
            _strategy("c", Outcome.success("c-value"), calls),
        ],
    )

    result = asyncio.run(chain.run())

    assert result.ok is True
    assert result.winner == "b"
    assert result.value == "b-value"
    assert result.used_fallback is True
    assert calls == ["a", "b"]


def test_first_strategy_success_is_not_a_fallback() -> None:
    calls: list[str] = []
    result = asyncio.run(StrategyChain("demo", [_strategy("a", Outcome.success("x"), calls)]).run())

    assert result.ok is True
    assert result.used_fallback is False


def test_hard_fail_stops_chain() -> None:
    calls: list[str] = []
    chain = StrategyChain(
        "demo",
        [
            _strategy("a", Outcome.hard_fail("fatal"), calls),
            _strategy("b", Outcome.success("never"), calls),
        ],
    )

    result = asyncio.run(chain.run())

    assert result.ok is False
    assert result.outcome.kind == OutcomeKind.HARD_FAIL
    assert result.outcome.detail == "fatal"
    assert calls == ["a"]


def test_raising_strategy_counts_as_soft_fail() -> None:
    calls: list[str] = []

    async def explode() -> Outcome[str]:
        raise RuntimeError("kaboom")

    chain = StrategyChain("demo", [Strategy("boom", explode), _strategy("b", Outcome.success("ok"), calls)])

    result = asyncio.run(chain.run())

    assert result.ok is True
    assert result.attempts[0][1].kind == OutcomeKind.SOFT_FAIL
    assert "kaboom" in result.attempts[0][1].detail


def test_exhausted_chain_reports_last_outcome() -> None:
    calls: list[str] = []
    chain = StrategyChain(
        "demo",
        [_strategy("a", Outcome.soft_fail("first"), calls), _strategy("b", Outcome.soft_fail("second"), calls)],
    )

    result = asyncio.run(chain.run())

    assert result.ok is False
    assert result.winner is None
    assert result.outcome.detail == "second"
