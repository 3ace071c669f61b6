from __future__ import annotations

import asyncio
import json
from uuid import UUID

import httpx

from tests.conftest import RecordingPublisher, RecordingSleep
from zkom_node.compute_backend import StableDiffusionClient
from zkom_node.errors import ComputeBackendError
from zkom_node.task_runner import TaskRunner


class FakeBackend:
    def __init__(self, result: list[str] | Exception | None = None) -> None:
        self.result = result if result is not None else ["data:image/png;base64,AAA"]
        self.calls: list[dict] = []

    async def generate(self, params):
        self.calls.append(params)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class SteppingClock:
    def __init__(self, *values: float) -> None:
        self._values = list(values)

    def __call__(self) -> float:
        return self._values.pop(0)


def _payload(**overrides) -> bytes:
    body = {"task_id": "task-1", "node_id": "node-1", "params": {"prompt": "forest"}}
    body.update(overrides)
    return json.dumps(body).encode()


def test_successful_job_publishes_completed_result(publisher):
    backend = FakeBackend()
    runner = TaskRunner("node-1", backend, publisher, clock=SteppingClock(10.0, 12.5))

    result = asyncio.run(runner.handle(_payload()))

    assert backend.calls == [{"prompt": "forest"}]
    assert result.status == "completed"
    assert publisher.published == [
        (
            "results.task-1",
            {
                "task_id": "task-1",
                "status": "completed",
                "duration_sec": 2.5,
                "result_urls": ["data:image/png;base64,AAA"],
                "node_id": "node-1",
                "retries": 0,
            },
        )
    ]


def test_foreign_node_id_is_rejected_without_compute_call(publisher):
    backend = FakeBackend()
    runner = TaskRunner("node-1", backend, publisher)

    result = asyncio.run(runner.handle(_payload(node_id="node-2")))

    assert backend.calls == []
    assert result.status == "failed"
    subject, body = publisher.published[0]
    assert subject == "results.task-1"
    assert body["status"] == "failed"
    assert "invalid node id" in body["error_stack"].lower()
    assert "result_urls" not in body
    assert len(publisher.published) == 1


def test_unparseable_payload_still_publishes_one_failed_result(publisher):
    runner = TaskRunner("node-1", FakeBackend(), publisher)

    result = asyncio.run(runner.handle(b"{not json"))

    assert len(publisher.published) == 1
    subject, body = publisher.published[0]
    UUID(body["task_id"])
    assert subject == f"results.{body['task_id']}"
    assert result.task_id == body["task_id"]
    assert body["status"] == "failed"
    assert body["error_stack"].startswith("Failed to parse task message")


def test_payload_missing_fields_is_treated_as_unparseable(publisher):
    runner = TaskRunner("node-1", FakeBackend(), publisher)

    asyncio.run(runner.handle(json.dumps({"params": {}}).encode()))

    assert publisher.published[0][1]["status"] == "failed"
    assert publisher.published[0][1]["task_id"] != ""


def test_backend_failure_publishes_failed_result_with_detail(publisher):
    backend = FakeBackend(ComputeBackendError("Stable Diffusion API request failed: HTTP 422: bad"))
    runner = TaskRunner("node-1", backend, publisher, clock=SteppingClock(1.0, 1.75))

    result = asyncio.run(runner.handle(_payload()))

    assert result.status == "failed"
    body = publisher.published[0][1]
    assert body["error_stack"] == "Stable Diffusion API request failed: HTTP 422: bad"
    assert body["duration_sec"] == 0.75
    assert body["retries"] == 0


def test_publish_failure_is_swallowed_and_result_returned():
    runner = TaskRunner("node-1", FakeBackend(), RecordingPublisher(fail=True))

    result = asyncio.run(runner.handle(_payload()))

    assert result.status == "completed"


def test_non_object_params_fail_under_the_original_task_id(publisher):
    def refuse(request: httpx.Request) -> httpx.Response:
        raise AssertionError("backend must not be called")

    backend = StableDiffusionClient("http://sd.local", transport=httpx.MockTransport(refuse), sleep=RecordingSleep())
    runner = TaskRunner("node-1", backend, publisher, clock=SteppingClock(1.0, 1.0))

    result = asyncio.run(runner.handle(b'{"task_id":"t-7","node_id":"node-1","params":null}'))

    assert result.task_id == "t-7"
    subject, body = publisher.published[0]
    assert subject == "results.t-7"
    assert body["status"] == "failed"
    assert body["error_stack"] == "Missing required parameter: prompt"
