from __future__ import annotations

import logging
import platform
import subprocess
import sys
from pathlib import Path

import psutil

from zkom_node.device import system_fingerprint
from zkom_node.errors import EnvironmentCheckError, ProbeError
from zkom_node.logger import get_logger
from zkom_node.models import GpuMetrics, HardwareFacts, utc_now


def _run_command(cmd: list[str]) -> str:
    try:
        return subprocess.check_output(cmd, text=True, stderr=subprocess.DEVNULL).strip()
    except Exception:  # noqa: BLE001
        return ""


def _query_nvidia_smi(field: str, nounits: bool = False) -> str:
    fmt = "csv,noheader,nounits" if nounits else "csv,noheader"
    output = _run_command(["nvidia-smi", f"--query-gpu={field}", f"--format={fmt}"])
    return output.splitlines()[0].strip() if output else ""


def _cpu_serial() -> str:
    cpuinfo = Path("/proc/cpuinfo")
    try:
        text = cpuinfo.read_text(encoding="utf-8", errors="ignore")
    except OSError:
        return "unknown"
    for line in text.splitlines():
        if line.startswith("Serial") and ":" in line:
            return line.split(":", 1)[1].strip()
    return "unknown"


def _cpu_brand() -> str:
    cpuinfo = Path("/proc/cpuinfo")
    try:
        for line in cpuinfo.read_text(encoding="utf-8", errors="ignore").splitlines():
            if line.startswith("model name") and ":" in line:
                return line.split(":", 1)[1].strip()
    except OSError:
        pass
    return platform.processor() or "Unknown"


def _cuda_version() -> str | None:
    output = _run_command(["nvcc", "--version"])
    for line in output.splitlines():
        if "release" in line:
            parts = line.split()
            if len(parts) > 5:
                return parts[5]
    return None


def _as_int(raw: str) -> int | None:
    try:
        return int(float(raw))
    except ValueError:
        return None


class HardwareCollector:
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or get_logger("hardware")

    def collect_info(self) -> HardwareFacts:
        total_memory = psutil.virtual_memory().total
        memory_total = _query_nvidia_smi("memory.total", nounits=True)
        facts = HardwareFacts(
            cpu_serial=_cpu_serial(),
            gpu_uuid=_query_nvidia_smi("gpu_uuid") or None,
            system_fingerprint=system_fingerprint(_cpu_brand(), total_memory, sys.platform),
            gpu_model=_query_nvidia_smi("gpu_name") or None,
            gpu_memory=_as_int(memory_total) if memory_total else None,
            cuda_version=_cuda_version(),
            driver_version=_query_nvidia_smi("driver_version") or None,
        )
        self._logger.debug("hardware_info_collected", extra={"gpu_model": facts.gpu_model})
        return facts

    def collect_gpu_metrics(self) -> GpuMetrics:
        readings: dict[str, int] = {}
        for key, field in (
            ("gpu_utilization", "utilization.gpu"),
            ("gpu_memory_used", "memory.used"),
            ("gpu_temperature", "temperature.gpu"),
        ):
            raw = _query_nvidia_smi(field, nounits=True)
            value = _as_int(raw) if raw else None
            if value is None:
                raise ProbeError(f"unable to read {field} from nvidia-smi")
            readings[key] = value
        try:
            return GpuMetrics(timestamp=utc_now(), **readings)
        except ValueError as exc:
            raise ProbeError(f"gpu metrics out of range: {exc}") from exc


def check_environment(logger: logging.Logger | None = None) -> None:
    logger = logger or get_logger("hardware")
    checks = (
        (["nvidia-smi"], "CUDA environment check failed. Please ensure CUDA is properly installed."),
        (["docker", "info"], "Docker environment check failed. Please ensure Docker is installed and running."),
    )
    for cmd, message in checks:
        try:
            result = subprocess.run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=False)
        except OSError as exc:
            raise EnvironmentCheckError(f"failed to execute {cmd[0]}: {exc}") from exc
        if result.returncode != 0:
            raise EnvironmentCheckError(message)
        logger.info("environment_check_passed", extra={"check": cmd[0]})
