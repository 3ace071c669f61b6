from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


NATS_SERVER_URL = "nats://zkom-nats.abo.network:4222"
SD_API_URL = "http://localhost:7860"
DEFAULT_INSTALLATION_HASH = "dummy_installation_hash_2024"


class NodeSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ZKOM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    nats_url: str = NATS_SERVER_URL
    sd_url: str = SD_API_URL
    base_url: str | None = None
    config_dir: str | None = None
    log_dir: str | None = None
    log_level: str = "INFO"

    heartbeat_interval_sec: int = 60
    token_refresh_threshold_sec: int = 300
    verify_poll_interval_sec: int = Field(default=5, gt=0)
    request_timeout_sec: int = 15

    sd_timeout_sec: int = 120
    sd_max_attempts: int = 5
    sd_initial_delay_sec: float = 1.0

    stream_name: str = "TASKS"
    consumer_name: str = "zkom-processor"
    fetch_timeout_sec: float = 5.0
    reconnect_settle_sec: float = 5.0
    reconnect_attempts: int = 3
    reconnect_initial_delay_sec: float = 2.0

    installation_hash: str = DEFAULT_INSTALLATION_HASH
    skip_runtime_checks: bool = False

    @field_validator("nats_url", "sd_url", mode="before")
    @classmethod
    def strip_url(cls, value: str) -> str:
        return str(value).strip().rstrip("/")

    @field_validator("base_url", mode="before")
    @classmethod
    def strip_base_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip().rstrip("/")
        return cleaned or None

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_level(cls, value: str | None) -> str:
        return str(value or "INFO").strip().upper()


@lru_cache(maxsize=1)
def get_settings() -> NodeSettings:
    return NodeSettings()
