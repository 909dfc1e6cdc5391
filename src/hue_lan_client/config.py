"""Configuration for the Hue LAN client."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional

CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1

DEFAULT_CONTENT_TYPE = "application/json;charset=utf-8"
REDACTED = "***"

# Inclusive bounds for numeric settings.
_BOUNDS = {
    "ssdp_port": (1, 65535),
    "ssdp_timeout": (0.01, 120.0),
    "discovery_interval": (0.01, 3600.0),
    "discovery_initial_debounce": (0.01, 600.0),
    "discovery_debounce": (0.01, 600.0),
    "max_bridge_age": (0, 100000),
    "max_subscribed_age": (0, 100000),
    "max_bridge_errors": (0, 1000),
    "request_timeout": (0.01, 120.0),
    "flush_interval": (0.0, 60.0),
    "subscribe_interval": (0.01, 86400.0),
}
_LOG_FORMATS = ("plain", "json")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_LEVEL_FIELDS = ("log_level", "discovery_log_level", "requests_log_level")


@dataclass(frozen=True)
class Config:
    """Client configuration supplied by the hosting application."""

    ssdp_address: str = "239.255.255.250"
    ssdp_port: int = 1900
    ssdp_service_type: str = "upnp:rootdevice"
    ssdp_timeout: float = 3.0
    discovery_interval: float = 15.0
    discovery_initial_debounce: float = 5.0
    discovery_debounce: float = 2.0
    max_bridge_age: int = 5
    max_subscribed_age: int = 100
    max_bridge_errors: int = 2
    request_timeout: float = 5.0
    request_content_type: str = DEFAULT_CONTENT_TYPE
    flush_interval: float = 0.2
    subscribe_interval: float = 1.0
    device_type: str = "hue-lan-client"
    username: Optional[str] = None
    log_format: str = "plain"
    log_level: str = "INFO"
    discovery_log_level: Optional[str] = None
    requests_log_level: Optional[str] = None
    config_version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        _validate_config(self)

    def logging_dict(self) -> Dict[str, Any]:
        """Return a sanitized mapping suitable for structured logging."""

        base = {field.name: getattr(self, field.name) for field in fields(self)}
        base["username"] = REDACTED if self.username else None
        return base

    @classmethod
    def from_sources(
        cls,
        path: Optional[Path] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> "Config":
        """Load configuration from defaults, an optional TOML file, then overrides."""

        config = cls()
        config = _apply_mapping(config, _load_file_config(path))
        config = _apply_mapping(config, overrides or {})
        return config


def _validate_config(config: Config) -> None:
    version = config.config_version
    if version > CONFIG_VERSION:
        raise ValueError(
            f"config_version {version} is newer than supported ({CONFIG_VERSION}); upgrade the client."
        )
    if version < MIN_SUPPORTED_CONFIG_VERSION:
        raise ValueError(
            f"config_version {version} is too old; {MIN_SUPPORTED_CONFIG_VERSION} is the minimum."
        )
    for name, (low, high) in _BOUNDS.items():
        value = getattr(config, name)
        if not low <= value <= high:
            raise ValueError(f"{name}={value} is outside [{low}, {high}].")
    if not config.ssdp_service_type:
        raise ValueError("ssdp_service_type must not be empty.")
    if config.log_format not in _LOG_FORMATS:
        raise ValueError(f"log_format={config.log_format!r} is not one of {_LOG_FORMATS}.")
    for name in _LEVEL_FIELDS:
        value = getattr(config, name)
        if value is not None and value.upper() not in _LOG_LEVELS:
            raise ValueError(f"{name}={value!r} is not one of {_LOG_LEVELS}.")


def _load_file_config(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("rb") as f:
        parsed = tomllib.load(f)
    if not isinstance(parsed, Mapping):
        raise ValueError("Configuration file must contain a TOML table.")
    return {k.replace("-", "_"): v for k, v in parsed.items()}


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    # Field annotations are strings under postponed evaluation.
    kinds = {field.name: field.type for field in fields(Config)}
    data: MutableMapping[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key not in kinds:
            raise ValueError(f"Unknown configuration key: {key}")
        if kinds[key] == "int":
            data[key] = int(value)
        elif kinds[key] == "float":
            data[key] = float(value)
        elif key in _LEVEL_FIELDS:
            data[key] = str(value).upper()
        elif key == "log_format":
            data[key] = str(value).lower()
        else:
            data[key] = str(value)
    return replace(config, **data)


def load_config(
    path: Optional[Path] = None, overrides: Optional[Mapping[str, Any]] = None
) -> Config:
    """Public helper for hosting applications."""

    return Config.from_sources(path, overrides)
