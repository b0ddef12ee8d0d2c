"""Environment configuration for webtask profiles."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from webtask_sandbox.clients import WEBTASK


class WebtaskSettings(BaseSettings):
    """Credentials and connection settings for a webtask cluster."""

    model_config = SettingsConfigDict(
        env_prefix="",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    url: str = Field(default=WEBTASK.base_url, alias="WEBTASK_URL")
    container: str | None = Field(default=None, alias="WEBTASK_CONTAINER")
    token: str | None = Field(default=None, alias="WEBTASK_TOKEN")
    profile: str = Field(default=WEBTASK.profile_name, alias="WEBTASK_PROFILE")
    config_path: Path | None = Field(default=None, alias="WEBTASK_CONFIG_PATH")
    timeout_seconds: float = Field(
        default=WEBTASK.timeout_seconds,
        alias="WEBTASK_TIMEOUT_SECONDS",
        gt=0,
    )

    @property
    def has_credentials(self) -> bool:
        """Return True when a token is configured directly in the environment."""

        return bool(self.token)

    @property
    def profile_path(self) -> Path:
        return (self.config_path or Path(WEBTASK.profile_file)).expanduser()


__all__ = ["WebtaskSettings"]
