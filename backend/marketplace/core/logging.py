"""Logging configuration with text/JSON output and an audit channel."""

from __future__ import annotations

import json
import logging
import sys
import time
from datetime import UTC, datetime
from typing import Any

from marketplace.core.config import settings

ROOT_LOGGER_NAME = "marketplace"
AUDIT_LOGGER_NAME = f"{ROOT_LOGGER_NAME}.audit"

# Attributes every LogRecord carries; anything else arrived through `extra=`.
_RESERVED_RECORD_ATTRS = frozenset(
    {
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
    },
)


def _record_extra(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_RECORD_ATTRS and not key.startswith("_")
    }


def _json_default(value: object) -> str:
    return str(value)


class JsonFormatter(logging.Formatter):
    """Render records as one JSON object per line."""

    def __init__(self, *, use_utc: bool = False) -> None:
        super().__init__()
        self._use_utc = use_utc

    def format(self, record: logging.LogRecord) -> str:
        tz = UTC if self._use_utc else None
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=tz).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_record_extra(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            entry["stack"] = self.formatStack(record.stack_info)
        return json.dumps(entry, default=_json_default)


class TextFormatter(logging.Formatter):
    """Human-readable formatter that appends `extra=` fields as key=value pairs."""

    def __init__(self, *, use_utc: bool = False) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        if use_utc:
            self.converter = time.gmtime

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extra = _record_extra(record)
        if not extra:
            return base
        pairs = " ".join(f"{key}={value}" for key, value in sorted(extra.items()))
        first_line, sep, rest = base.partition("\n")
        return f"{first_line} {pairs}{sep}{rest}"


def build_formatter(log_format: str, *, use_utc: bool) -> logging.Formatter:
    if log_format.strip().lower() == "json":
        return JsonFormatter(use_utc=use_utc)
    return TextFormatter(use_utc=use_utc)


def configure_logging() -> None:
    """Install a single stream handler on the package logger from settings."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(settings.log_level.upper())
    logger.handlers.clear()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        build_formatter(settings.log_format, use_utc=settings.log_use_utc),
    )
    logger.addHandler(handler)
    logger.propagate = False


def get_logger(name: str) -> logging.Logger:
    """Return a logger nested under the package logger."""
    if name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def get_audit_logger() -> logging.Logger:
    """Logger for audit-trail events (status transitions, 5xx escalations)."""
    return logging.getLogger(AUDIT_LOGGER_NAME)
