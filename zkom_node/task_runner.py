from __future__ import annotations

import logging
from time import perf_counter
from typing import Any, Callable, Protocol
from uuid import uuid4

from pydantic import ValidationError

from zkom_node.errors import InvalidNodeId
from zkom_node.logger import get_logger
from zkom_node.models import Job, JobResult, JobStatus


class ComputeBackend(Protocol):
    async def generate(self, params: Any) -> list[str]: ...


class ResultPublisher(Protocol):
    async def publish(self, subject: str, payload: bytes) -> None: ...


def _preview(payload: bytes, limit: int = 100) -> str:
    text = payload.decode("utf-8", errors="replace")
    return text if len(text) <= limit else f"{text[:limit]}..."


class TaskRunner:
    def __init__(
        self,
        node_id: str,
        backend: ComputeBackend,
        publisher: ResultPublisher,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = perf_counter,
    ) -> None:
        self._node_id = node_id
        self._backend = backend
        self._publisher = publisher
        self._logger = logger or get_logger("task_runner")
        self._clock = clock

    @property
    def node_id(self) -> str:
        return self._node_id

    def _failed(self, task_id: str, detail: str, duration: float = 0.0) -> JobResult:
        return JobResult(
            task_id=task_id,
            status=JobStatus.failed,
            duration_seconds=duration,
            error_detail=detail,
            node_id=self._node_id,
        )

    async def handle(self, payload: bytes) -> JobResult:
        """Process one stream message; always publishes exactly one result."""
        task_id: str | None = None
        try:
            job = Job.model_validate_json(payload)
        except ValidationError as exc:
            self._logger.error("task_message_invalid", extra={"error": str(exc), "preview": _preview(payload)})
            result = self._failed(str(uuid4()), f"Failed to parse task message: {exc}")
        else:
            task_id = job.task_id
            try:
                result = await self._execute(job)
            except Exception as exc:  # noqa: BLE001
                self._logger.error("task_unexpected_error", extra={"task_id": task_id, "error": str(exc)})
                result = self._failed(task_id, f"Unexpected task error: {exc}")

        await self._publish(result)
        return result

    async def _execute(self, job: Job) -> JobResult:
        self._logger.info("task_received", extra={"task_id": job.task_id})
        if job.node_id != self._node_id:
            error = InvalidNodeId()
            self._logger.warning("task_invalid_node_id", extra={"task_id": job.task_id, "target": job.node_id})
            return self._failed(job.task_id, str(error))

        self._logger.info("task_processing", extra={"task_id": job.task_id, "params": job.params})
        started = self._clock()
        try:
            result_urls = await self._backend.generate(job.params)
        except Exception as exc:  # noqa: BLE001
            duration = round(self._clock() - started, 3)
            self._logger.error("task_failed", extra={"task_id": job.task_id, "error": str(exc)})
            return self._failed(job.task_id, str(exc) or exc.__class__.__name__, duration)

        duration = round(self._clock() - started, 3)
        self._logger.info(
            "task_completed",
            extra={"task_id": job.task_id, "duration_sec": duration, "images": len(result_urls)},
        )
        return JobResult(
            task_id=job.task_id,
            status=JobStatus.completed,
            duration_seconds=duration,
            result_urls=result_urls,
            node_id=self._node_id,
        )

    async def _publish(self, result: JobResult) -> None:
        try:
            await self._publisher.publish(result.subject, result.to_wire())
        except Exception as exc:  # noqa: BLE001
            self._logger.error(
                "task_result_publish_failed",
                extra={"task_id": result.task_id, "subject": result.subject, "error": str(exc)},
            )
            return
        self._logger.debug("task_result_published", extra={"task_id": result.task_id, "status": result.status})
