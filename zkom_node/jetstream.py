from __future__ import annotations

import logging

import nats
from nats.aio.client import Client as NATS
from nats.aio.msg import Msg
from nats.errors import TimeoutError as NatsTimeoutError
from nats.js import JetStreamContext
from nats.js.api import AckPolicy, ConsumerConfig
from nats.js.errors import NotFoundError

from zkom_node.errors import StreamConnectError
from zkom_node.logger import get_logger


STREAM_NAME = "TASKS"
CONSUMER_NAME = "zkom-processor"


class JetStreamSubscription:
    def __init__(self, subscription: JetStreamContext.PullSubscription) -> None:
        self._subscription = subscription

    async def next_message(self, timeout: float) -> Msg | None:
        try:
            messages = await self._subscription.fetch(1, timeout=timeout)
        except NatsTimeoutError:
            return None
        return messages[0] if messages else None

    async def close(self) -> None:
        await self._subscription.unsubscribe()


class JetStreamTransport:
    def __init__(
        self,
        servers: str | list[str],
        stream: str = STREAM_NAME,
        durable: str = CONSUMER_NAME,
        logger: logging.Logger | None = None,
    ) -> None:
        self._servers = [servers] if isinstance(servers, str) else list(servers)
        self._stream = stream
        self._durable = durable
        self._logger = logger or get_logger("jetstream")
        self._nc: NATS | None = None
        self._js: JetStreamContext | None = None

    async def connect(self) -> None:
        self._logger.debug("nats_connecting", extra={"servers": self._servers})
        try:
            self._nc = await nats.connect(servers=self._servers, name="zkom-node")
        except Exception as exc:  # noqa: BLE001
            raise StreamConnectError(f"failed to connect to NATS {self._servers}: {exc}") from exc
        self._js = self._nc.jetstream()
        self._logger.info("nats_connected", extra={"servers": self._servers})

    def _context(self) -> JetStreamContext:
        if self._js is None:
            raise StreamConnectError("JetStream transport is not connected")
        return self._js

    async def open_subscription(self) -> JetStreamSubscription:
        js = self._context()
        try:
            await js.stream_info(self._stream)
            try:
                await js.consumer_info(self._stream, self._durable)
            except NotFoundError:
                await js.add_consumer(
                    self._stream,
                    ConsumerConfig(durable_name=self._durable, ack_policy=AckPolicy.EXPLICIT),
                )
                self._logger.info("jetstream_consumer_created", extra={"consumer": self._durable})
            subscription = await js.pull_subscribe_bind(self._durable, self._stream)
        except StreamConnectError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise StreamConnectError(f"failed to subscribe to stream {self._stream}/{self._durable}: {exc}") from exc

        self._logger.info("jetstream_subscribed", extra={"stream": self._stream, "consumer": self._durable})
        return JetStreamSubscription(subscription)

    async def publish(self, subject: str, payload: bytes) -> None:
        await self._context().publish(subject, payload)

    async def close(self) -> None:
        if self._nc is not None and not self._nc.is_closed:
            await self._nc.drain()
        self._nc = None
        self._js = None
