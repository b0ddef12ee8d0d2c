"""Shared client defaults for the webtask cluster."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class WebtaskDefaults:
    base_url: str = "https://webtask.it.auth0.com"
    timeout_seconds: float = 30.0
    profile_name: str = "default"
    profile_file: str = "~/.webtask"


# Instances
WEBTASK = WebtaskDefaults()

__all__ = ["WEBTASK", "WebtaskDefaults"]
