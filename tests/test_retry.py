from __future__ import annotations

import asyncio

import pytest

from tests.conftest import RecordingSleep
from zkom_node.retry import RetryDecision, RetryExecutor


class TransientError(Exception):
    pass


class PermanentError(Exception):
    pass


def classify(exc: BaseException) -> RetryDecision:
    if isinstance(exc, TransientError):
        return RetryDecision.RETRYABLE
    return RetryDecision.FATAL


def test_retryable_error_exhausts_budget_and_raises_last_error():
    sleep = RecordingSleep()
    calls: list[int] = []

    async def op():
        calls.append(len(calls) + 1)
        raise TransientError(f"attempt {len(calls)}")

    executor = RetryExecutor(max_attempts=5, initial_delay=1.0, classify=classify, sleep=sleep)
    with pytest.raises(TransientError) as excinfo:
        asyncio.run(executor.run(op))

    assert calls == [1, 2, 3, 4, 5]
    assert str(excinfo.value) == "attempt 5"
    assert executor.attempts == 5


def test_delays_follow_exact_geometric_sequence():
    sleep = RecordingSleep()

    async def op():
        raise TransientError("busy")

    executor = RetryExecutor(max_attempts=5, initial_delay=1.0, classify=classify, sleep=sleep)
    with pytest.raises(TransientError):
        asyncio.run(executor.run(op))

    assert sleep.delays == [1.0, 2.0, 4.0, 8.0]
    assert executor.delays() == [1.0, 2.0, 4.0, 8.0]


def test_fatal_error_is_not_retried():
    sleep = RecordingSleep()
    calls = 0

    async def op():
        nonlocal calls
        calls += 1
        raise PermanentError("bad request")

    executor = RetryExecutor(max_attempts=5, initial_delay=1.0, classify=classify, sleep=sleep)
    with pytest.raises(PermanentError):
        asyncio.run(executor.run(op))

    assert calls == 1
    assert sleep.delays == []


def test_success_after_transient_failures_returns_value():
    sleep = RecordingSleep()
    outcomes = [TransientError("a"), TransientError("b"), "done"]

    async def op():
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    executor = RetryExecutor(max_attempts=3, initial_delay=2.0, classify=classify, sleep=sleep)
    assert asyncio.run(executor.run(op)) == "done"
    assert executor.attempts == 3
    assert sleep.delays == [2.0, 4.0]


def test_single_attempt_budget_never_sleeps():
    sleep = RecordingSleep()

    async def op():
        raise TransientError("once")

    executor = RetryExecutor(max_attempts=1, initial_delay=1.0, classify=classify, sleep=sleep)
    with pytest.raises(TransientError):
        asyncio.run(executor.run(op))
    assert sleep.delays == []


def test_zero_attempt_budget_is_rejected():
    with pytest.raises(ValueError):
        RetryExecutor(max_attempts=0, initial_delay=1.0)
