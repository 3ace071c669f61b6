from __future__ import annotations

import hashlib

from zkom_node.models import DeviceIdentity, GpuInfo, HardwareFacts, HardwareInfo


FINGERPRINT_SEPARATOR = ";"
FINGERPRINT_CPU_PREFIX = "CPU"
FINGERPRINT_MEM_PREFIX = "MEM"
FINGERPRINT_OS_PREFIX = "OS"


def system_fingerprint(cpu_brand: str, total_memory: int, os_name: str) -> str:
    sep = FINGERPRINT_SEPARATOR
    return (
        f"{FINGERPRINT_CPU_PREFIX}{sep}{cpu_brand}"
        f"{sep}{FINGERPRINT_MEM_PREFIX}{sep}{total_memory}"
        f"{sep}{FINGERPRINT_OS_PREFIX}{sep}{os_name}"
    )


def device_fingerprint(
    cpu_serial: str,
    gpu_uuid: str | None,
    system_fp: str,
    installation_hash: str,
) -> str:
    # Field order and ':' separators must stay stable; the backend keys devices on this digest.
    combined = f"{cpu_serial}:{gpu_uuid or 'unknown'}:{system_fp}:{installation_hash}"
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()


def build_identity(facts: HardwareFacts, installation_hash: str) -> DeviceIdentity:
    return DeviceIdentity(
        device_fingerprint=device_fingerprint(
            facts.cpu_serial,
            facts.gpu_uuid,
            facts.system_fingerprint,
            installation_hash,
        ),
        gpu_info=GpuInfo(
            model=facts.gpu_model or "Unknown",
            memory=facts.gpu_memory or 0,
            cuda_version=facts.cuda_version or "Unknown",
        ),
        hardware_info=HardwareInfo(
            cpu_info=facts.cpu_serial,
            gpu_did=facts.gpu_uuid or "Unknown",
            driver_version=facts.driver_version or "Unknown",
        ),
        installation_hash=installation_hash,
    )
