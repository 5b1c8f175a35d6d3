"""Persisted configuration management."""

from __future__ import annotations

import json
from dataclasses import asdict, fields, replace
from pathlib import Path
from typing import Any

from .models import Config

APP_DIR = Path.home() / ".gijiroku"
CONFIG_PATH = (APP_DIR / "config.json").expanduser()


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or saved."""


def load_config() -> Config:
    if not CONFIG_PATH.exists():
        return Config()
    try:
        payload = json.loads(CONFIG_PATH.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Failed to parse configuration file: {exc}") from exc
    known = {f.name for f in fields(Config)}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ConfigError(f"Unknown configuration key(s): {', '.join(unknown)}")
    return Config(**payload)


def save_config(config: Config) -> None:
    CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    data = {k: v for k, v in asdict(config).items() if v is not None}
    CONFIG_PATH.write_text(json.dumps(data, indent=2))


def update_config(**kwargs: Any) -> Config:
    config = load_config()
    known = {f.name for f in fields(Config)}
    for key in kwargs:
        if key not in known:
            raise ConfigError(f"Unknown configuration key: {key}")
    config = replace(config, **kwargs)
    save_config(config)
    return config


def store_path(config: Config) -> Path:
    if config.store_path:
        return Path(config.store_path).expanduser()
    return APP_DIR / "records.db"
