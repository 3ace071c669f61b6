from __future__ import annotations

import base64
import json
from pathlib import Path

import pytest

from zkom_node.config import ConfigStore


def make_token(payload: dict | None = None, raw_payload: str | None = None) -> str:
    header = base64.urlsafe_b64encode(b'{"alg":"HS256","typ":"JWT"}').decode().rstrip("=")
    if raw_payload is None:
        raw_payload = base64.urlsafe_b64encode(json.dumps(payload or {}).encode()).decode().rstrip("=")
    return f"{header}.{raw_payload}.signature"


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class RecordingPublisher:
    def __init__(self, fail: bool = False) -> None:
        self.published: list[tuple[str, dict]] = []
        self._fail = fail

    async def publish(self, subject: str, payload: bytes) -> None:
        if self._fail:
            raise ConnectionError("publish refused")
        self.published.append((subject, json.loads(payload)))


@pytest.fixture
def store(tmp_path: Path) -> ConfigStore:
    return ConfigStore(tmp_path / "zkom" / "config.json")


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()
