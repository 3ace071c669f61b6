from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timezone
from typing import Awaitable, Callable

from zkom_node.config import ConfigStore
from zkom_node.errors import CodeExpired, DeviceDisabled, VerificationTimeout
from zkom_node.identity_client import IdentityClient
from zkom_node.logger import get_logger
from zkom_node.models import (
    Credential,
    DeviceIdentity,
    DeviceInitRequest,
    RegistrationSession,
    utc_now,
)


DEVICE_VERIFY_POLL_INTERVAL = 5

MSG_VERIFY_INSTRUCTIONS = "Please visit the following URL to complete device verification:"
MSG_VERIFY_URI = "Verification URL: {}"
MSG_DEVICE_CODE = "Device Code: {}"
MSG_CODE_EXPIRY = "Code expiry: {}"
MSG_DEVICE_VERIFY_SUCCESS = "Device verification successful!"


def poll_budget(expires_at: datetime, now: datetime, poll_interval: int) -> int:
    remaining = (expires_at - now).total_seconds()
    return max(0, math.floor(remaining / poll_interval))


class RegistrationFlow:
    """Device authorization handshake: init once, then poll verify until a credential is issued."""

    def __init__(
        self,
        client: IdentityClient,
        store: ConfigStore,
        poll_interval: int = DEVICE_VERIFY_POLL_INTERVAL,
        now: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        echo: Callable[[str], None] = print,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._poll_interval = poll_interval
        self._now = now
        self._sleep = sleep
        self._echo = echo
        self._logger = logger or get_logger("registration")
        self.polls = 0

    async def start_session(self, identity: DeviceIdentity) -> RegistrationSession:
        request = DeviceInitRequest(
            device_fingerprint=identity.device_fingerprint,
            gpu_info=identity.gpu_info,
            hardware_info=identity.hardware_info,
            installation_hash=identity.installation_hash,
        )
        response = await self._client.init_device(request)

        self._store.set_device_code(response.device_code)
        self._store.set_user_code(response.user_code)

        expires_at = response.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return RegistrationSession(
            device_code=response.device_code,
            user_code=response.user_code,
            verification_uri=response.verification_uri,
            expires_at=expires_at,
            poll_interval=self._poll_interval,
        )

    def _show_instructions(self, session: RegistrationSession) -> None:
        expiry = session.expires_at.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        self._echo(MSG_VERIFY_INSTRUCTIONS)
        self._echo(MSG_VERIFY_URI.format(session.verification_uri))
        self._echo(MSG_DEVICE_CODE.format(session.device_code))
        self._echo(MSG_CODE_EXPIRY.format(expiry))

    async def _wait(self, stop_event: asyncio.Event | None) -> None:
        if stop_event is None:
            await self._sleep(self._poll_interval)
            return
        if stop_event.is_set():
            raise VerificationTimeout("device verification aborted by shutdown")
        await self._sleep(self._poll_interval)
        if stop_event.is_set():
            raise VerificationTimeout("device verification aborted by shutdown")

    async def register(self, identity: DeviceIdentity, stop_event: asyncio.Event | None = None) -> Credential:
        session = await self.start_session(identity)
        self._show_instructions(session)

        budget = poll_budget(session.expires_at, self._now(), session.poll_interval)
        self._logger.info(
            "device_verify_polling",
            extra={"user_code": session.user_code, "max_attempts": budget, "interval_sec": session.poll_interval},
        )

        self.polls = 0
        while self.polls < budget:
            self.polls += 1
            try:
                response = await self._client.verify_device(session.user_code)
            except (CodeExpired, DeviceDisabled) as exc:
                self._logger.error("device_verify_terminal", extra={"error": str(exc), "attempt": self.polls})
                raise
            except Exception as exc:  # noqa: BLE001
                self._logger.warning("device_verify_pending", extra={"error": str(exc), "attempt": self.polls})
                if self.polls < budget:
                    await self._wait(stop_event)
                continue

            node_id = str(response.node_id)
            self._store.set_tokens(response.access_token, response.refresh_token)
            cfg = self._store.set_node_id(node_id)
            self._echo(MSG_DEVICE_VERIFY_SUCCESS)
            self._logger.info("device_verified", extra={"node_id": node_id, "attempts": self.polls})
            return Credential(
                access_token=response.access_token,
                refresh_token=response.refresh_token,
                node_id=node_id,
                base_url=cfg.base_url,
            )

        raise VerificationTimeout()
