from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from typing import Awaitable, Callable, TypeVar

from zkom_node.logger import get_logger


T = TypeVar("T")


class RetryDecision(StrEnum):
    RETRYABLE = "retryable"
    FATAL = "fatal"


def always_retry(_exc: BaseException) -> RetryDecision:
    return RetryDecision.RETRYABLE


class RetryExecutor:
    """Bounded retry with pure exponential backoff.

    Attempt ``n`` (counted from 1) that fails with a retryable error is followed
    by a wait of ``initial_delay * 2 ** (n - 1)`` seconds. A fatal error, or a
    failure on the last attempt, is re-raised unchanged.
    """

    def __init__(
        self,
        max_attempts: int,
        initial_delay: float,
        classify: Callable[[BaseException], RetryDecision] = always_retry,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: logging.Logger | None = None,
        name: str = "operation",
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._max_attempts = max_attempts
        self._initial_delay = initial_delay
        self._classify = classify
        self._sleep = sleep
        self._logger = logger or get_logger("retry")
        self._name = name
        self.attempts = 0

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def delay_for(self, attempt: int) -> float:
        return self._initial_delay * (2 ** (attempt - 1))

    def delays(self) -> list[float]:
        return [self.delay_for(attempt) for attempt in range(1, self._max_attempts)]

    async def run(self, op: Callable[[], Awaitable[T]]) -> T:
        self.attempts = 0
        for attempt in range(1, self._max_attempts + 1):
            self.attempts = attempt
            try:
                return await op()
            except Exception as exc:  # noqa: BLE001
                decision = self._classify(exc)
                if decision is RetryDecision.FATAL:
                    self._logger.warning(
                        "retry_fatal_error",
                        extra={"operation": self._name, "attempt": attempt, "error": str(exc)},
                    )
                    raise
                if attempt >= self._max_attempts:
                    self._logger.warning(
                        "retry_attempts_exhausted",
                        extra={"operation": self._name, "attempts": attempt, "error": str(exc)},
                    )
                    raise
                delay = self.delay_for(attempt)
                self._logger.warning(
                    "retry_scheduled",
                    extra={
                        "operation": self._name,
                        "attempt": attempt + 1,
                        "max_attempts": self._max_attempts,
                        "delay_sec": delay,
                        "error": str(exc),
                    },
                )
                await self._sleep(delay)
        raise RuntimeError("unreachable")
