"""Load named webtask profiles from the JSON profile file."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, ValidationError

from webtask_sandbox.clients import WEBTASK
from webtask_sandbox.errors import ProfileNotFoundError

logger = logging.getLogger("webtask_sandbox.config")


class ProfileEntry(BaseModel):
    """One named entry of the profile file."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    url: str = WEBTASK.base_url
    container: str
    token: str


def default_profile_path() -> Path:
    return Path(WEBTASK.profile_file).expanduser()


def load_profiles(path: Path | None = None) -> dict[str, ProfileEntry]:
    """Return every profile in the file keyed by name."""

    profile_path = (path or default_profile_path()).expanduser()
    if not profile_path.exists():
        raise ProfileNotFoundError(f"Profile file {profile_path} does not exist")
    text = profile_path.read_text(encoding="utf-8")
    try:
        raw = json.loads(text)
    except ValueError as exc:
        raise ProfileNotFoundError(f"Profile file {profile_path} is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ProfileNotFoundError(f"Profile file {profile_path} must contain a JSON object")

    profiles: dict[str, ProfileEntry] = {}
    for name, entry in raw.items():
        try:
            profiles[name] = ProfileEntry.model_validate(entry)
        except ValidationError as exc:
            raise ProfileNotFoundError(f"Profile `{name}` in {profile_path} is invalid: {exc}") from exc
    logger.debug(
        "profile file loaded",
        extra={"data": {"path": str(profile_path), "profiles": sorted(profiles)}},
    )
    return profiles


def load_profile(name: str = WEBTASK.profile_name, path: Path | None = None) -> ProfileEntry:
    """Return a single named profile."""

    profiles = load_profiles(path)
    try:
        return profiles[name]
    except KeyError as exc:
        raise ProfileNotFoundError(f"Profile `{name}` not found") from exc


__all__ = ["ProfileEntry", "default_profile_path", "load_profile", "load_profiles"]
