from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from zkom_node.errors import (
    CodeExpired,
    DeviceDisabled,
    HeartbeatError,
    InitError,
    NetworkError,
    RefreshError,
    VerifyError,
)
from zkom_node.identity_client import IdentityClient
from zkom_node.models import DeviceInitRequest, GpuInfo, GpuMetrics, HardwareInfo

NODE_UUID = "3f2b6c1e-8d4a-4b7e-9a51-2c0d9e7f6a10"


def _client(handler) -> IdentityClient:
    return IdentityClient("https://fleet.test", timeout=5, transport=httpx.MockTransport(handler))


def _init_request() -> DeviceInitRequest:
    return DeviceInitRequest(
        device_fingerprint="abc",
        gpu_info=GpuInfo(model="RTX 4090", memory=24564, cuda_version="12.4"),
        hardware_info=HardwareInfo(cpu_info="unknown", gpu_did="GPU-1", driver_version="550.54"),
        installation_hash="install",
    )


def test_init_device_posts_request_and_parses_session():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "device_code": "DEV123",
                "verification_uri": "https://fleet.test/activate",
                "user_code": "USR-9",
                "expires_at": "2030-01-01T00:05:00Z",
            },
        )

    response = asyncio.run(_client(handler).init_device(_init_request()))

    assert seen["path"] == "/api/nodes/init"
    assert seen["body"]["gpu_info"]["model"] == "RTX 4090"
    assert seen["body"]["installation_hash"] == "install"
    assert response.device_code == "DEV123"
    assert response.expires_at.year == 2030


def test_init_device_non_success_raises_init_error():
    client = _client(lambda request: httpx.Response(500, text="down"))
    with pytest.raises(InitError):
        asyncio.run(client.init_device(_init_request()))


@pytest.mark.parametrize(
    "status, error",
    [(410, CodeExpired), (403, DeviceDisabled), (404, VerifyError), (428, VerifyError)],
)
def test_verify_status_mapping(status, error):
    client = _client(lambda request: httpx.Response(status, text="nope"))
    with pytest.raises(error):
        asyncio.run(client.verify_device("USR-9"))


def test_verify_success_returns_tokens():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/nodes/verify/USR-9"
        return httpx.Response(200, json={"node_id": NODE_UUID, "access_token": "a", "refresh_token": "r"})

    response = asyncio.run(_client(handler).verify_device("USR-9"))
    assert str(response.node_id) == NODE_UUID
    assert response.refresh_token == "r"


def test_verify_transport_failure_is_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    with pytest.raises(NetworkError):
        asyncio.run(_client(handler).verify_device("USR-9"))


def test_heartbeat_sends_bearer_and_metrics():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": "ok", "message": "recorded"})

    metrics = GpuMetrics(gpu_utilization=37, gpu_memory_used=2048, gpu_temperature=61)
    response = asyncio.run(_client(handler).heartbeat("node-1", metrics, "access-xyz"))

    assert seen["auth"] == "Bearer access-xyz"
    assert seen["body"]["node_id"] == "node-1"
    assert seen["body"]["metrics"]["gpu_utilization"] == 37
    assert "timestamp" in seen["body"]["metrics"]
    assert response.status == "ok"


def test_heartbeat_unauthorized_is_flagged():
    client = _client(lambda request: httpx.Response(401, text="token expired"))
    metrics = GpuMetrics(gpu_utilization=0, gpu_memory_used=0, gpu_temperature=30)

    with pytest.raises(HeartbeatError) as excinfo:
        asyncio.run(client.heartbeat("node-1", metrics, "stale"))
    assert excinfo.value.unauthorized is True


def test_refresh_uses_refresh_token_as_bearer():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/nodes/device/refresh"
        assert request.headers["Authorization"] == "Bearer refresh-1"
        return httpx.Response(200, json={"access_token": "fresh"})

    assert asyncio.run(_client(handler).refresh_access_token("refresh-1")) == "fresh"


def test_refresh_rejection_raises_refresh_error():
    client = _client(lambda request: httpx.Response(401, text="revoked"))
    with pytest.raises(RefreshError):
        asyncio.run(client.refresh_access_token("refresh-1"))
