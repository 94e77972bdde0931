"""Configuration loading helpers for so-relay."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

import yaml

from .models import RelayConfig

RELAY_CONFIG_FILENAME = "relay_config.yaml"
CLIENT_KEY_ENV = "SO_RELAY_CLIENT_KEY"


def _read_file(path: Path) -> dict:
    text = path.read_text(encoding="utf-8")
    if path.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file must contain a mapping: {path}")
    return data


def _write_file(path: Path, payload: dict) -> None:
    with path.open("w", encoding="utf-8") as stream:
        if path.suffix in (".yaml", ".yml"):
            yaml.safe_dump(payload, stream, allow_unicode=True, sort_keys=False)
        else:
            json.dump(payload, stream, indent=2, ensure_ascii=False)


@dataclass(slots=True)
class ConfigLocator:
    """Resolve important paths from project root."""

    project_root: Path | None = None
    data_dir: Path | None = None
    logs_dir: Path | None = None

    def __post_init__(self) -> None:
        env_root = os.environ.get("SO_RELAY_HOME")
        if env_root:
            root = Path(env_root).expanduser().resolve()
        else:
            root = (self.project_root or Path(__file__).resolve().parents[2]).resolve()
        self.project_root = root
        self.data_dir = (root / "data").resolve()
        self.logs_dir = (root / "logs").resolve()
        self.ensure_directories()

    def ensure_directories(self) -> None:
        for directory in (self.data_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def relay_config_path(self) -> Path:
        return self.data_dir / RELAY_CONFIG_FILENAME


class ConfigRepository:
    """Repository encapsulating config IO and schema validation."""

    def __init__(self, locator: ConfigLocator | None = None) -> None:
        self.locator = locator or ConfigLocator()
        self._cache: RelayConfig | None = None

    def load_relay_config(self) -> RelayConfig:
        if self._cache is not None:
            return self._cache
        path = self.locator.relay_config_path()
        if path.exists():
            payload = _read_file(path)
            config = RelayConfig.model_validate(payload)
        else:
            config = RelayConfig()
            self.save_relay_config(config)
        env_key = os.environ.get(CLIENT_KEY_ENV)
        if env_key:
            config.stack_exchange.client_key = env_key
        self._cache = config
        return config

    def save_relay_config(self, config: RelayConfig) -> None:
        path = self.locator.relay_config_path()
        payload = config.model_dump(mode="json")
        _write_file(path, payload)
        self._cache = config

    def database_path(self) -> Path:
        config = self.load_relay_config()
        return config.resolved_database_path(self.locator.project_root)


__all__ = ["ConfigLocator", "ConfigRepository", "CLIENT_KEY_ENV"]
