from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from zkom_node.errors import (
    CodeExpired,
    DeviceDisabled,
    HeartbeatError,
    InitError,
    NetworkError,
    RefreshError,
    VerifyError,
)
from zkom_node.logger import get_logger
from zkom_node.models import (
    DeviceInitRequest,
    DeviceInitResponse,
    DeviceVerifyResponse,
    GpuMetrics,
    HeartbeatRequest,
    HeartbeatResponse,
    RefreshResponse,
)


API_NODES_INIT = "/api/nodes/init"
API_NODES_VERIFY = "/api/nodes/verify"
API_NODES_HEARTBEAT = "/api/nodes/device/heartbeat"
API_NODES_REFRESH = "/api/nodes/device/refresh"

ERROR_DEVICE_INIT_FAILED = "Device initialization failed"
ERROR_DEVICE_VERIFY_FAILED = "Device verification failed"


class IdentityClient:
    def __init__(
        self,
        base_url: str,
        timeout: float,
        logger: logging.Logger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._logger = logger or get_logger("identity_client")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def close(self) -> None:
        await self._client.aclose()

    def _format_error(self, response: httpx.Response) -> str:
        detail = (response.text or "").strip().replace("\n", " ")
        if len(detail) > 220:
            detail = f"{detail[:220]}..."
        request = response.request
        return f"status={response.status_code} method={request.method} url={request.url} detail={detail}"

    async def _send(
        self,
        method: str,
        url: str,
        json_body: dict[str, Any] | None = None,
        bearer: str | None = None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {bearer}"} if bearer else None
        try:
            return await self._client.request(method, url, json=json_body, headers=headers)
        except httpx.RequestError as exc:
            self._logger.warning(
                "identity_request_failed",
                extra={"method": method, "url": url, "error": f"{exc.__class__.__name__}: {exc}"},
            )
            raise NetworkError(f"{exc.__class__.__name__} method={method} url={url} detail={exc}") from exc

    async def init_device(self, request: DeviceInitRequest) -> DeviceInitResponse:
        body = request.model_dump(mode="json")
        self._logger.debug("device_init_request", extra={"body": body})
        response = await self._send("POST", API_NODES_INIT, body)
        if not response.is_success:
            raise InitError(f"{ERROR_DEVICE_INIT_FAILED}: {self._format_error(response)}")
        try:
            return DeviceInitResponse.model_validate_json(response.content)
        except ValidationError as exc:
            raise InitError(f"{ERROR_DEVICE_INIT_FAILED}: invalid response: {exc}") from exc

    async def verify_device(self, user_code: str) -> DeviceVerifyResponse:
        self._logger.debug("device_verify_request", extra={"user_code": user_code})
        response = await self._send("GET", f"{API_NODES_VERIFY}/{user_code}")
        if response.status_code == httpx.codes.GONE:
            raise CodeExpired()
        if response.status_code == httpx.codes.FORBIDDEN:
            raise DeviceDisabled()
        if response.status_code != httpx.codes.OK:
            raise VerifyError(f"{ERROR_DEVICE_VERIFY_FAILED}: {self._format_error(response)}")
        try:
            return DeviceVerifyResponse.model_validate_json(response.content)
        except ValidationError as exc:
            raise VerifyError(f"{ERROR_DEVICE_VERIFY_FAILED}: invalid response: {exc}") from exc

    async def heartbeat(self, node_id: str, metrics: GpuMetrics, access_token: str) -> HeartbeatResponse:
        body = HeartbeatRequest(node_id=node_id, metrics=metrics).model_dump(mode="json")
        try:
            response = await self._send("POST", API_NODES_HEARTBEAT, body, bearer=access_token)
        except NetworkError as exc:
            raise HeartbeatError(str(exc)) from exc
        if not response.is_success:
            raise HeartbeatError(
                f"heartbeat rejected: {self._format_error(response)}",
                status_code=response.status_code,
            )
        if not response.content:
            return HeartbeatResponse()
        try:
            return HeartbeatResponse.model_validate_json(response.content)
        except ValidationError as exc:
            raise HeartbeatError(f"heartbeat response invalid: {exc}", status_code=response.status_code) from exc

    async def refresh_access_token(self, refresh_token: str) -> str:
        try:
            response = await self._send("POST", API_NODES_REFRESH, bearer=refresh_token)
        except NetworkError as exc:
            raise RefreshError(str(exc)) from exc
        if not response.is_success:
            raise RefreshError(f"token refresh rejected: {self._format_error(response)}")
        try:
            return RefreshResponse.model_validate_json(response.content).access_token
        except ValidationError as exc:
            raise RefreshError(f"token refresh response invalid: {exc}") from exc
