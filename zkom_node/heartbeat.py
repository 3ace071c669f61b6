from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from typing import Protocol

from zkom_node.config import ConfigStore
from zkom_node.errors import HeartbeatError, NodeAgentError, TokenParseError
from zkom_node.identity_client import IdentityClient
from zkom_node.logger import get_logger
from zkom_node.models import Credential, GpuMetrics
from zkom_node.token_expiry import should_refresh


HEARTBEAT_INTERVAL_SECONDS = 60
TOKEN_REFRESH_THRESHOLD_SECONDS = 300


class MetricsProbe(Protocol):
    def collect_gpu_metrics(self) -> GpuMetrics: ...


class HeartbeatPhase(StrEnum):
    CHECK_REFRESH = "check_refresh"
    COLLECT_TELEMETRY = "collect_telemetry"
    SEND_HEARTBEAT = "send_heartbeat"
    SLEEP = "sleep"


async def sleep_or_stop(stop_event: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return


class HeartbeatLoop:
    def __init__(
        self,
        client: IdentityClient,
        store: ConfigStore,
        probe: MetricsProbe,
        interval_sec: float = HEARTBEAT_INTERVAL_SECONDS,
        threshold_sec: int = TOKEN_REFRESH_THRESHOLD_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._probe = probe
        self._interval_sec = interval_sec
        self._threshold_sec = threshold_sec
        self._logger = logger or get_logger("heartbeat")
        self.phase = HeartbeatPhase.SLEEP
        self.heartbeats_sent = 0

    async def run(self, stop_event: asyncio.Event) -> None:
        self._logger.info("heartbeat_loop_started", extra={"interval_sec": self._interval_sec})
        while not stop_event.is_set():
            try:
                await self.run_cycle()
            except Exception as exc:  # noqa: BLE001
                self._logger.error("heartbeat_cycle_error", extra={"error": str(exc)}, exc_info=True)
            self.phase = HeartbeatPhase.SLEEP
            await sleep_or_stop(stop_event, self._interval_sec)
        self._logger.info("heartbeat_loop_stopped")

    async def run_cycle(self) -> None:
        credential = self._store.credential()
        if credential is None:
            self._logger.warning("heartbeat_skipped_no_credential")
            return

        self.phase = HeartbeatPhase.CHECK_REFRESH
        credential = await self._check_refresh(credential)

        self.phase = HeartbeatPhase.COLLECT_TELEMETRY
        try:
            metrics = await asyncio.to_thread(self._probe.collect_gpu_metrics)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning("gpu_metrics_failed", extra={"error": str(exc)})
            return

        self.phase = HeartbeatPhase.SEND_HEARTBEAT
        try:
            response = await self._client.heartbeat(credential.node_id, metrics, credential.access_token)
        except HeartbeatError as exc:
            if exc.unauthorized:
                # Refresh now; the heartbeat goes out again on the next tick.
                self._logger.warning("heartbeat_unauthorized", extra={"node_id": credential.node_id})
                await self._refresh(credential)
                return
            self._logger.warning("heartbeat_failed", extra={"error": str(exc)})
            return
        except NodeAgentError as exc:
            self._logger.warning("heartbeat_failed", extra={"error": str(exc)})
            return

        self.heartbeats_sent += 1
        self._logger.debug(
            "heartbeat_sent",
            extra={"node_id": credential.node_id, "status": response.status, "detail": response.message},
        )

    async def _check_refresh(self, credential: Credential) -> Credential:
        try:
            needs_refresh = should_refresh(credential.access_token, self._threshold_sec)
        except TokenParseError as exc:
            self._logger.warning("access_token_unparseable", extra={"error": str(exc)})
            needs_refresh = True
        if not needs_refresh:
            return credential
        return await self._refresh(credential)

    async def _refresh(self, credential: Credential) -> Credential:
        if not credential.refresh_token:
            self._logger.warning("token_refresh_skipped_no_refresh_token")
            return credential
        try:
            access_token = await self._client.refresh_access_token(credential.refresh_token)
        except NodeAgentError as exc:
            self._logger.warning("token_refresh_failed", extra={"error": str(exc)})
            return credential

        self._store.update_access_token(access_token)
        self._logger.info("access_token_refreshed", extra={"node_id": credential.node_id})
        return Credential(
            access_token=access_token,
            refresh_token=credential.refresh_token,
            node_id=credential.node_id,
            base_url=credential.base_url,
        )
