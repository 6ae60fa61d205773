"""Server configuration loaded from a JSON file, with periodic reloading."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

log = logging.getLogger(__name__)

_lock = threading.RLock()
_config: Optional["GlobalConfig"] = None
_config_file: str = ""


class ConfigError(Exception):
    """Raised when the configuration file cannot be located, read or parsed."""


def _field(data: dict, key: str, kind: type, default: Any) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if kind is int:
        ok = isinstance(value, int) and not isinstance(value, bool)
    else:
        ok = isinstance(value, kind)
    if not ok:
        raise ConfigError(
            f"field {key!r}: expected {kind.__name__}, got {type(value).__name__}"
        )
    return value


def _section(data: dict, key: str) -> Optional[dict]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"field {key!r}: expected an object, got {type(value).__name__}")
    return value


@dataclass
class HttpConfig:
    enabled: bool = False
    listen: str = ""
    backdoor: bool = False

    @classmethod
    def _parse(cls, data: dict) -> "HttpConfig":
        return cls(
            enabled=_field(data, "enabled", bool, False),
            listen=_field(data, "listen", str, ""),
            backdoor=_field(data, "backdoor", bool, False),
        )


@dataclass
class DatabaseConfig:
    type: str = ""
    user: str = ""
    password: str = ""
    host: str = ""
    name: str = ""
    max_idle: int = 0
    max_open: int = 0
    log_mode: str = ""

    @classmethod
    def _parse(cls, data: dict) -> "DatabaseConfig":
        return cls(
            type=_field(data, "type", str, ""),
            user=_field(data, "user", str, ""),
            password=_field(data, "password", str, ""),
            host=_field(data, "host", str, ""),
            name=_field(data, "name", str, ""),
            max_idle=_field(data, "maxIdle", int, 0),
            max_open=_field(data, "maxOpen", int, 0),
            log_mode=_field(data, "logMode", str, ""),
        )


@dataclass
class MetricsConfig:
    prometheus_host: str = ""

    @classmethod
    def _parse(cls, data: dict) -> "MetricsConfig":
        return cls(prometheus_host=_field(data, "prometheusHost", str, ""))


@dataclass
class GlobalConfig:
    http: Optional[HttpConfig] = None
    database: Optional[DatabaseConfig] = None
    log_mode: str = ""
    env: str = ""
    metrics: Optional[MetricsConfig] = None

    @classmethod
    def from_dict(cls, data: Any) -> "GlobalConfig":
        """Build a configuration from decoded JSON; absent sections stay None."""
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError("configuration must be a JSON object")
        http = _section(data, "http")
        database = _section(data, "database")
        metrics = _section(data, "metrics")
        return cls(
            http=HttpConfig._parse(http) if http is not None else None,
            database=DatabaseConfig._parse(database) if database is not None else None,
            log_mode=_field(data, "logMode", str, ""),
            env=_field(data, "env", str, ""),
            metrics=MetricsConfig._parse(metrics) if metrics is not None else None,
        )


def _load(path: str) -> GlobalConfig:
    global _config_file
    if not path:
        raise ConfigError("configuration file is not specified")
    file = Path(path)
    if not file.exists():
        raise ConfigError(f"config file: {path} is not existent")
    with _lock:
        _config_file = str(path)
    try:
        content = file.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise ConfigError(f"read config file: {path} fail: {exc}") from exc
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"parse config file: {path} fail: {exc}") from exc
    return GlobalConfig.from_dict(data)


def parse_config(path: str, reload: bool = False) -> Optional[GlobalConfig]:
    """Load the configuration file and make it current.

    On failure a reload logs the problem, keeps the previous configuration and
    returns None; a first load raises ConfigError.
    """
    global _config
    try:
        config = _load(path)
    except ConfigError as exc:
        if reload:
            log.error("%s", exc)
            return None
        raise
    with _lock:
        _config = config
    if not reload:
        log.info("read config file: %s successfully", path)
    return config


def get_config() -> Optional[GlobalConfig]:
    """Return the current configuration, or None if none was loaded."""
    with _lock:
        return _config


def reload_config() -> Optional[GlobalConfig]:
    """Reload the most recently used configuration file."""
    with _lock:
        path = _config_file
    config = parse_config(path, True)
    log.info("Reload config complete")
    return config


def reload_forever(interval: float = 10.0, stop_event: Optional[threading.Event] = None) -> None:
    """Reload the configuration every interval seconds until stop_event is set."""
    stop = stop_event if stop_event is not None else threading.Event()
    while True:
        reload_config()
        if stop.wait(interval):
            return