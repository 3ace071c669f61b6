from __future__ import annotations

import asyncio
import logging
from typing import Callable

from zkom_node.compute_backend import StableDiffusionClient
from zkom_node.config import ConfigStore
from zkom_node.device import build_identity
from zkom_node.errors import CodeExpired, DeviceDisabled, VerificationTimeout
from zkom_node.hardware import HardwareCollector, check_environment
from zkom_node.heartbeat import HeartbeatLoop
from zkom_node.identity_client import IdentityClient
from zkom_node.jetstream import JetStreamTransport
from zkom_node.models import Credential
from zkom_node.registration import RegistrationFlow
from zkom_node.settings import NodeSettings
from zkom_node.stream_consumer import ConsumerState, StreamConsumer
from zkom_node.task_runner import TaskRunner


MSG_STARTING_NODE = "Starting ZKOM node client..."
MSG_NODE_CONFIGURED = "Node already configured, starting..."
MSG_DEVICE_VERIFY_TIMEOUT = "Device verification timeout, please restart the program"
MSG_DEVICE_CODE_EXPIRED = "Device code expired, please restart the program"
MSG_DEVICE_DISABLED = "Device has been disabled"
MSG_NODE_STARTING = "Node starting..."
MSG_NODE_ID = "Node ID: {}"


class NodeAgent:
    def __init__(
        self,
        settings: NodeSettings,
        store: ConfigStore,
        logger: logging.Logger,
        probe: HardwareCollector | None = None,
        echo: Callable[[str], None] = print,
    ) -> None:
        self._settings = settings
        self._store = store
        self._logger = logger
        self._probe = probe or HardwareCollector(logger)
        self._echo = echo

    def _identity_client(self, base_url: str) -> IdentityClient:
        return IdentityClient(
            base_url=base_url,
            timeout=self._settings.request_timeout_sec,
            logger=self._logger,
        )

    async def run(self, stop_event: asyncio.Event) -> int:
        self._logger.info("node_agent_starting")
        self._echo(MSG_STARTING_NODE)

        if not self._settings.skip_runtime_checks:
            await asyncio.to_thread(check_environment, self._logger)

        self._store.ensure_dir()
        if self._settings.base_url:
            self._store.set_base_url(self._settings.base_url)

        credential = self._store.credential()
        if credential is not None:
            self._logger.info("node_already_configured", extra={"node_id": credential.node_id})
            self._echo(MSG_NODE_CONFIGURED)
        else:
            credential = await self._register(stop_event)
            if credential is None:
                return 0

        await self._start_node(credential, stop_event)
        return 0

    async def _register(self, stop_event: asyncio.Event) -> Credential | None:
        facts = await asyncio.to_thread(self._probe.collect_info)
        identity = build_identity(facts, self._settings.installation_hash)
        client = self._identity_client(self._store.load().base_url)
        flow = RegistrationFlow(
            client,
            self._store,
            poll_interval=self._settings.verify_poll_interval_sec,
            echo=self._echo,
            logger=self._logger,
        )
        try:
            return await flow.register(identity, stop_event)
        except VerificationTimeout as exc:
            self._logger.warning("device_verify_timeout", extra={"polls": flow.polls, "error": str(exc)})
            self._echo(MSG_DEVICE_VERIFY_TIMEOUT)
        except CodeExpired:
            self._logger.warning("device_code_expired")
            self._echo(MSG_DEVICE_CODE_EXPIRED)
        except DeviceDisabled:
            self._logger.warning("device_disabled")
            self._echo(MSG_DEVICE_DISABLED)
        finally:
            await client.close()
        return None

    async def _start_node(self, credential: Credential, stop_event: asyncio.Event) -> None:
        self._echo(MSG_NODE_STARTING)
        self._echo(MSG_NODE_ID.format(credential.node_id or "unknown"))

        settings = self._settings
        transport = JetStreamTransport(
            settings.nats_url,
            stream=settings.stream_name,
            durable=settings.consumer_name,
            logger=self._logger,
        )
        identity_client = self._identity_client(credential.base_url)
        backend = StableDiffusionClient(
            settings.sd_url,
            timeout_sec=settings.sd_timeout_sec,
            max_attempts=settings.sd_max_attempts,
            initial_delay=settings.sd_initial_delay_sec,
            logger=self._logger,
        )
        runner = TaskRunner(credential.node_id, backend, transport, logger=self._logger)
        consumer = StreamConsumer(
            transport,
            runner,
            settle_delay=settings.reconnect_settle_sec,
            reconnect_attempts=settings.reconnect_attempts,
            reconnect_initial_delay=settings.reconnect_initial_delay_sec,
            fetch_timeout=settings.fetch_timeout_sec,
            logger=self._logger,
        )
        heartbeat = HeartbeatLoop(
            identity_client,
            self._store,
            self._probe,
            interval_sec=settings.heartbeat_interval_sec,
            threshold_sec=settings.token_refresh_threshold_sec,
            logger=self._logger,
        )

        try:
            await transport.connect()
            await consumer.start()

            heartbeat_task = asyncio.create_task(heartbeat.run(stop_event), name="heartbeat")
            try:
                state = await consumer.run(stop_event)
                if state is ConsumerState.FAILED:
                    # Jobs cannot be served without the stream; liveness reporting carries on.
                    self._logger.error("job_processing_halted", extra={"node_id": credential.node_id})
                await heartbeat_task
            finally:
                if not heartbeat_task.done():
                    heartbeat_task.cancel()
                    await asyncio.gather(heartbeat_task, return_exceptions=True)
        finally:
            await transport.close()
            await identity_client.close()
            await backend.close()
