"""Pull-based job consumption with an explicit reconnection state machine.

CONSUMING -> DISCONNECTED on a receive error, DISCONNECTED -> RECONNECTING after
the settle delay, RECONNECTING -> CONSUMING on a fresh subscription or FAILED
once the reconnect budget is spent. FAILED is terminal.
"""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from typing import Any, Awaitable, Callable, Protocol

from zkom_node.errors import StreamConnectError
from zkom_node.logger import get_logger
from zkom_node.retry import RetryExecutor
from zkom_node.task_runner import TaskRunner


class StreamMessage(Protocol):
    data: bytes

    async def ack(self) -> None: ...


class Subscription(Protocol):
    async def next_message(self, timeout: float) -> StreamMessage | None: ...


class StreamTransport(Protocol):
    async def open_subscription(self) -> Any: ...


class ConsumerState(StrEnum):
    CONSUMING = "consuming"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


TRANSITIONS: dict[ConsumerState, frozenset[ConsumerState]] = {
    ConsumerState.CONSUMING: frozenset({ConsumerState.DISCONNECTED}),
    ConsumerState.DISCONNECTED: frozenset({ConsumerState.RECONNECTING}),
    ConsumerState.RECONNECTING: frozenset({ConsumerState.CONSUMING, ConsumerState.FAILED}),
    ConsumerState.FAILED: frozenset(),
}


class StreamConsumer:
    def __init__(
        self,
        transport: StreamTransport,
        runner: TaskRunner,
        settle_delay: float = 5.0,
        reconnect_attempts: int = 3,
        reconnect_initial_delay: float = 2.0,
        fetch_timeout: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._transport = transport
        self._runner = runner
        self._settle_delay = settle_delay
        self._reconnect_attempts = reconnect_attempts
        self._reconnect_initial_delay = reconnect_initial_delay
        self._fetch_timeout = fetch_timeout
        self._sleep = sleep
        self._logger = logger or get_logger("stream_consumer")
        self._subscription: Subscription | None = None
        self.state = ConsumerState.CONSUMING
        self.history: list[ConsumerState] = [ConsumerState.CONSUMING]
        self.processed = 0

    def _transition(self, target: ConsumerState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal consumer transition {self.state} -> {target}")
        self._logger.info("stream_consumer_transition", extra={"from": str(self.state), "to": str(target)})
        self.state = target
        self.history.append(target)

    async def start(self) -> None:
        try:
            self._subscription = await self._transport.open_subscription()
        except StreamConnectError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise StreamConnectError(f"initial subscription failed: {exc}") from exc

    async def run(self, stop_event: asyncio.Event) -> ConsumerState:
        if self._subscription is None:
            await self.start()
        self._logger.info("task_processing_loop_started")

        while not stop_event.is_set() and self.state is not ConsumerState.FAILED:
            if self.state is ConsumerState.CONSUMING:
                await self._consume(stop_event)
            elif self.state is ConsumerState.DISCONNECTED:
                self._logger.warning("stream_interrupted", extra={"retry_in_sec": self._settle_delay})
                await self._sleep_or_stop(stop_event, self._settle_delay)
                self._transition(ConsumerState.RECONNECTING)
            elif self.state is ConsumerState.RECONNECTING:
                await self._reconnect(stop_event)

        if self.state is ConsumerState.FAILED:
            self._logger.error("task_processing_stopped", extra={"attempts": self._reconnect_attempts})
        else:
            self._logger.info("task_processing_loop_stopped")
        return self.state

    async def _consume(self, stop_event: asyncio.Event) -> None:
        subscription = self._subscription
        if subscription is None:
            self._transition(ConsumerState.DISCONNECTED)
            return

        while not stop_event.is_set():
            try:
                message = await subscription.next_message(self._fetch_timeout)
            except Exception as exc:  # noqa: BLE001
                self._logger.error("stream_receive_failed", extra={"error": str(exc)})
                self._subscription = None
                self._transition(ConsumerState.DISCONNECTED)
                return

            if message is None:
                continue

            self._logger.debug("stream_message_received", extra={"size": len(message.data)})
            await self._runner.handle(message.data)
            self.processed += 1
            try:
                await message.ack()
            except Exception as exc:  # noqa: BLE001
                self._logger.error("stream_ack_failed", extra={"error": str(exc)})

    async def _sleep_or_stop(self, stop_event: asyncio.Event, seconds: float) -> None:
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waiter = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waiter.cancel()

    async def _reconnect(self, stop_event: asyncio.Event) -> None:
        async def _open() -> Any:
            if stop_event.is_set():
                raise StreamConnectError("reconnect aborted by shutdown")
            return await self._transport.open_subscription()

        executor = RetryExecutor(
            max_attempts=self._reconnect_attempts,
            initial_delay=self._reconnect_initial_delay,
            sleep=lambda seconds: self._sleep_or_stop(stop_event, seconds),
            logger=self._logger,
            name="stream_reconnect",
        )
        try:
            self._subscription = await executor.run(_open)
        except Exception as exc:  # noqa: BLE001
            if stop_event.is_set():
                return
            self._logger.error(
                "stream_reconnect_exhausted",
                extra={"attempts": executor.attempts, "error": str(exc)},
            )
            self._transition(ConsumerState.FAILED)
            return

        self._logger.info("stream_reconnected", extra={"attempts": executor.attempts})
        self._transition(ConsumerState.CONSUMING)
