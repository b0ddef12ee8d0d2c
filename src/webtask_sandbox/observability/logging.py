"""Logging setup for applications embedding the webtask client.

Every client logger lives under `webtask_sandbox` and attaches its structured
context as `extra={"data": {...}}`. The formatter here renders that context
either appended to a text line or as one JSON object per record
(`WEBTASK_LOG_FORMAT=json`), masking credentials in both modes.
"""

from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Mapping
from dataclasses import asdict, is_dataclass
from logging.config import dictConfig
from typing import Any

from opentelemetry import trace
from pydantic import BaseModel

LOG_FORMAT_ENV = "WEBTASK_LOG_FORMAT"

_SECRET_KEYS = frozenset({"token", "key", "authorization", "secrets", "ectx"})
_REDACTED = "<redacted>"
_MAX_DEPTH = 6
_MAX_ITEMS = 100


def _level(env_var: str, default: str) -> str:
    return os.getenv(env_var, default).upper()


def _json_output_from_env() -> bool:
    return os.getenv(LOG_FORMAT_ENV, "text").strip().lower() == "json"


def redact(value: Any, depth: int = _MAX_DEPTH) -> Any:
    """Return a JSON-safe copy of `value` with credential entries masked."""

    if depth <= 0:
        return "<depth_exceeded>"
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return f"<bytes len={len(value)}>"
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json", by_alias=True)
    elif is_dataclass(value) and not isinstance(value, type):
        value = asdict(value)
    if isinstance(value, Mapping):
        masked: dict[str, Any] = {}
        for index, (key, item) in enumerate(value.items()):
            if index >= _MAX_ITEMS:
                masked["<truncated>"] = f"{len(value) - index} more"
                break
            name = str(key)
            masked[name] = _REDACTED if name.lower() in _SECRET_KEYS else redact(item, depth - 1)
        return masked
    if isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
        rendered = [redact(item, depth - 1) for item in items[:_MAX_ITEMS]]
        if len(items) > _MAX_ITEMS:
            rendered.append(f"<{len(items) - _MAX_ITEMS} more>")
        return rendered
    return str(value)


class TraceContextFilter(logging.Filter):
    """Stamp records with the ids of the active OpenTelemetry span, if any."""

    def filter(self, record: logging.LogRecord) -> bool:
        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            record.trace_id = f"{span_context.trace_id:032x}"
            record.span_id = f"{span_context.span_id:016x}"
        return True


class WebtaskLogFormatter(logging.Formatter):
    """Render `data` extras after the message, or the whole record as JSON."""

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        *,
        json_output: bool | None = None,
    ) -> None:
        super().__init__(fmt, datefmt)
        self._json_output = _json_output_from_env() if json_output is None else json_output

    def format(self, record: logging.LogRecord) -> str:
        data = record.__dict__.get("data")
        if self._json_output:
            return json.dumps(self._payload(record, data), sort_keys=True, separators=(",", ":"))
        line = super().format(record)
        if data:
            line = f"{line} | data={json.dumps(redact(data), sort_keys=True, separators=(',', ':'))}"
        return line

    def _payload(self, record: logging.LogRecord, data: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": (
                f"{time.strftime('%Y-%m-%dT%H:%M:%S', time.gmtime(record.created))}"
                f".{int(record.msecs):03d}Z"
            ),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if data:
            payload["data"] = redact(data)
        for attribute in ("trace_id", "span_id"):
            value = record.__dict__.get(attribute)
            if value:
                payload[attribute] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return payload


def build_log_config(
    *,
    level_env: str = "WEBTASK_LOG_LEVEL",
    default_level: str = "INFO",
    json_output: bool | None = None,
    extra_loggers: Mapping[str, dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Return a dictConfig mapping for the client's loggers.

    Only the `webtask_sandbox` tree and the HTTP libraries are configured;
    the root logger is left to the host application.
    """

    loggers: dict[str, dict[str, Any]] = {
        "webtask_sandbox": {
            "level": _level(level_env, default_level),
            "handlers": ["webtask"],
            "propagate": False,
        },
        "webtask_sandbox.transport.calls": {
            "level": _level("WEBTASK_TRANSPORT_LOG_LEVEL", "WARNING"),
        },
        "httpx": {
            "level": _level("HTTPX_LOG_LEVEL", "WARNING"),
            "handlers": ["webtask"],
            "propagate": False,
        },
        "httpcore": {
            "level": _level("HTTPX_LOG_LEVEL", "WARNING"),
            "handlers": ["webtask"],
            "propagate": False,
        },
    }
    if extra_loggers:
        loggers.update(extra_loggers)

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "webtask": {
                "()": WebtaskLogFormatter,
                "fmt": "%(asctime)s %(levelname)s %(name)s: %(message)s",
                "datefmt": "%Y-%m-%dT%H:%M:%S",
                "json_output": json_output,
            }
        },
        "filters": {"trace_context": {"()": TraceContextFilter}},
        "handlers": {
            "webtask": {
                "class": "logging.StreamHandler",
                "formatter": "webtask",
                "stream": "ext://sys.stderr",
                "filters": ["trace_context"],
            }
        },
        "loggers": loggers,
    }


def configure_logging(**options: Any) -> None:
    """Apply `build_log_config(**options)`."""

    dictConfig(build_log_config(**options))


__all__ = [
    "LOG_FORMAT_ENV",
    "TraceContextFilter",
    "WebtaskLogFormatter",
    "build_log_config",
    "configure_logging",
    "redact",
]
