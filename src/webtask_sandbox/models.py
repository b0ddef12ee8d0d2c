"""Pydantic shapes for webtask cluster responses."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

VENDOR_HEADER_PREFIX = "x-auth0"

logger = logging.getLogger("webtask_sandbox.models")


@dataclass(frozen=True, slots=True)
class IssuedToken:
    """Token text plus the invocation URL advertised in the `Location` header."""

    token: str
    webtask_url: str | None = None


class WebtaskRecord(BaseModel):
    """Named webtask entry as returned by the webtask create, read and list endpoints."""

    model_config = ConfigDict(frozen=True, extra="allow")

    token: str
    meta: dict[str, Any] | None = None
    webtask_url: str | None = None


class CronJobDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    name: str
    container: str
    token: str
    schedule: str
    state: str = "active"
    tz: str | None = None
    meta: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    last_scheduled_at: datetime | None = None
    next_available_at: datetime | None = None


class CronJobResult(BaseModel):
    """One execution record from a cron job's history."""

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    type: str | None = None
    status_code: int | None = Field(default=None, alias="statusCode")
    body: Any = None
    headers: dict[str, Any] = Field(default_factory=dict)
    scheduled_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @field_validator("headers", mode="before")
    @classmethod
    def _decode_vendor_headers(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        decoded: dict[str, Any] = {}
        for name, raw in value.items():
            if name.startswith(VENDOR_HEADER_PREFIX) and isinstance(raw, str):
                try:
                    decoded[name] = json.loads(raw)
                except ValueError:
                    decoded[name] = raw
            else:
                decoded[name] = raw
        return decoded


class WebtaskStorage(BaseModel):
    """Stored document for a named webtask; `etag` enables optimistic concurrency."""

    model_config = ConfigDict(frozen=True, extra="allow")

    data: Any = None
    etag: str | int | None = None


class NodeModule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    name: str
    version: str
    state: str | None = None


def parse_stored_data(raw: Any) -> Any:
    """JSON-decode stored data, keeping the raw value when it is not valid JSON."""

    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        logger.debug(
            "storage data is not json, returning raw value",
            extra={"data": {"length": len(raw)}},
        )
        return raw


__all__ = [
    "VENDOR_HEADER_PREFIX",
    "CronJobDescriptor",
    "CronJobResult",
    "IssuedToken",
    "NodeModule",
    "WebtaskRecord",
    "WebtaskStorage",
    "parse_stored_data",
]
