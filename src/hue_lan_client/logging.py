"""Structured logging helpers."""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping

from .config import REDACTED, Config

# Attributes every LogRecord carries; anything else arrived through `extra=`.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
}

SECRET_KEYS = frozenset({"username", "credentials", "whitelist"})


class JsonFormatter(logging.Formatter):
    """One JSON object per line; `extra=` fields are merged in with secrets masked."""

    def format(self, record: logging.LogRecord) -> str:
        extras = {key: value for key, value in vars(record).items() if key not in _RECORD_ATTRS}
        payload: Dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(redact_mapping(extras))
        if record.exc_info:
            payload["traceback"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def redact_mapping(values: Mapping[str, Any], extra_keys: Iterable[str] = ()) -> Dict[str, Any]:
    """Copy `values`, masking secret keys at any depth of nested mappings."""

    secret = SECRET_KEYS | {key.lower() for key in extra_keys}
    redacted: Dict[str, Any] = {}
    for key, value in values.items():
        if key.lower() in secret and value is not None:
            redacted[key] = REDACTED
        elif isinstance(value, Mapping):
            redacted[key] = redact_mapping(value, extra_keys)
        else:
            redacted[key] = value
    return redacted


def redact_path(path: str, username: str | None) -> str:
    """Mask a credential embedded in an API path."""

    if username and username in path:
        return path.replace(username, REDACTED)
    return path


def configure_logging(config: Config) -> None:
    """Configure global logging based on the provided config."""

    level = config.log_level.upper()
    discovery_level = (config.discovery_log_level or config.log_level).upper()
    requests_level = (config.requests_log_level or config.log_level).upper()
    if config.log_format == "json":
        formatter: Dict[str, Any] = {"()": JsonFormatter}
    else:
        formatter = {
            "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            "datefmt": "%Y-%m-%dT%H:%M:%S%z",
        }

    def _logger(logger_level: str) -> Dict[str, Any]:
        return {"level": logger_level, "handlers": ["console"], "propagate": False}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": formatter,
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": "DEBUG",
                }
            },
            "loggers": {
                "hue": _logger(level),
                "hue.ssdp": _logger(discovery_level),
                "hue.discovery": _logger(discovery_level),
                "hue.bridge": _logger(level),
                "hue.coalescer": _logger(level),
                "hue.scheduler": _logger(level),
                "hue.requests": _logger(requests_level),
            },
            "root": {"level": level, "handlers": ["console"]},
        }
    )


def get_logger(name: str) -> logging.Logger:
    """Return a namespaced logger for the requested subsystem."""

    return logging.getLogger(name)
