from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Credential:
    access_token: str
    refresh_token: str
    node_id: str
    base_url: str


@dataclass
class HardwareFacts:
    cpu_serial: str
    gpu_uuid: str | None
    system_fingerprint: str
    gpu_model: str | None = None
    gpu_memory: int | None = None
    cuda_version: str | None = None
    driver_version: str | None = None


@dataclass(frozen=True)
class RegistrationSession:
    device_code: str
    user_code: str
    verification_uri: str
    expires_at: datetime
    poll_interval: int


class GpuInfo(BaseModel):
    model: str
    memory: int
    cuda_version: str


class HardwareInfo(BaseModel):
    cpu_info: str
    gpu_did: str
    driver_version: str


class DeviceIdentity(BaseModel):
    model_config = {"frozen": True}

    device_fingerprint: str
    gpu_info: GpuInfo
    hardware_info: HardwareInfo
    installation_hash: str


class DeviceInitRequest(BaseModel):
    device_fingerprint: str
    gpu_info: GpuInfo
    hardware_info: HardwareInfo
    installation_hash: str


class DeviceInitResponse(BaseModel):
    device_code: str
    verification_uri: str
    user_code: str
    expires_at: datetime


class DeviceVerifyResponse(BaseModel):
    node_id: UUID
    access_token: str
    refresh_token: str


class GpuMetrics(BaseModel):
    gpu_utilization: int = Field(ge=0, le=100)
    gpu_memory_used: int = Field(ge=0)
    gpu_temperature: int
    timestamp: datetime = Field(default_factory=utc_now)


class HeartbeatRequest(BaseModel):
    node_id: str
    metrics: GpuMetrics


class HeartbeatResponse(BaseModel):
    status: str = ""
    message: str = ""


class RefreshResponse(BaseModel):
    access_token: str


class Job(BaseModel):
    task_id: str
    node_id: str
    params: Any = Field(default_factory=dict)


class JobStatus(StrEnum):
    completed = "completed"
    failed = "failed"


class JobResult(BaseModel):
    task_id: str
    status: JobStatus
    duration_seconds: float = Field(default=0.0, ge=0, serialization_alias="duration_sec")
    result_urls: list[str] | None = None
    error_detail: str | None = Field(default=None, serialization_alias="error_stack")
    node_id: str | None = None
    retries: int = 0

    @property
    def subject(self) -> str:
        return f"results.{self.task_id}"

    def to_wire(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


class Txt2ImgRequest(BaseModel):
    prompt: str
    negative_prompt: str = ""
    width: int = 512
    height: int = 512
    steps: int = 20
    cfg_scale: float = 7.0
    seed: int = -1
    batch_size: int = 1
    n_iter: int = 1
    restore_faces: bool = False
    tiling: bool = False


class ImageResponse(BaseModel):
    images: list[str]
    parameters: Any = None
    info: str = ""
