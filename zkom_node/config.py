from __future__ import annotations

from dataclasses import asdict, dataclass, fields
import json
import os
from pathlib import Path

from zkom_node.errors import ConfigError
from zkom_node.models import Credential


APP_NAME = "zkom"
CONFIG_FILENAME = "config.json"
API_BASE_URL = "https://zkom-backend.abo.network"


def get_config_dir() -> Path:
    override = os.getenv("ZKOM_CONFIG_DIR")
    if override:
        return Path(override)
    base = os.getenv("XDG_CONFIG_HOME") or os.getenv("APPDATA") or str(Path.home() / ".config")
    return Path(base) / APP_NAME


def get_log_dir() -> Path:
    return get_config_dir() / "logs"


def get_config_path() -> Path:
    return get_config_dir() / CONFIG_FILENAME


@dataclass
class NodeConfig:
    device_code: str | None = None
    user_code: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    node_id: str | None = None
    base_url: str = API_BASE_URL


class ConfigStore:
    """JSON-backed node record; every setter rewrites the whole file."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or get_config_path()

    @property
    def path(self) -> Path:
        return self._path

    def ensure_dir(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigError(f"config directory unavailable: {self._path.parent}: {exc}") from exc

    def load(self) -> NodeConfig:
        cfg = NodeConfig()
        if not self._path.exists():
            return cfg

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"config unreadable: {self._path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"config is not an object: {self._path}")

        for field in fields(cfg):
            if field.name in data and data[field.name] is not None:
                setattr(cfg, field.name, str(data[field.name]))
        return cfg

    def save(self, cfg: NodeConfig) -> None:
        self.ensure_dir()
        tmp = self._path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True), encoding="utf-8")
            tmp.replace(self._path)
        except OSError as exc:
            raise ConfigError(f"config write failed: {self._path}: {exc}") from exc

    def _update(self, **changes: str | None) -> NodeConfig:
        cfg = self.load()
        for key, value in changes.items():
            setattr(cfg, key, value)
        self.save(cfg)
        return cfg

    def set_device_code(self, code: str) -> NodeConfig:
        return self._update(device_code=code)

    def set_user_code(self, code: str) -> NodeConfig:
        return self._update(user_code=code)

    def set_tokens(self, access_token: str, refresh_token: str) -> NodeConfig:
        return self._update(access_token=access_token, refresh_token=refresh_token)

    def set_node_id(self, node_id: str) -> NodeConfig:
        return self._update(node_id=node_id)

    def update_access_token(self, access_token: str) -> NodeConfig:
        return self._update(access_token=access_token)

    def set_base_url(self, base_url: str) -> NodeConfig:
        return self._update(base_url=base_url.rstrip("/"))

    def credential(self) -> Credential | None:
        cfg = self.load()
        if not cfg.access_token:
            return None
        return Credential(
            access_token=cfg.access_token,
            refresh_token=cfg.refresh_token or "",
            node_id=cfg.node_id or "",
            base_url=cfg.base_url,
        )
