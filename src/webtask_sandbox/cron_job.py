"""Handle for a scheduled (cron) webtask job."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from webtask_sandbox.claims import Claims
from webtask_sandbox.models import CronJobDescriptor, CronJobResult
from webtask_sandbox.tokens import decode_claims

if TYPE_CHECKING:
    from webtask_sandbox.profile import Sandbox


class CronJob:
    """A cron job descriptor bound to the profile that manages it."""

    def __init__(self, sandbox: Sandbox, descriptor: CronJobDescriptor) -> None:
        self._sandbox = sandbox
        self._apply(descriptor)

    def _apply(self, descriptor: CronJobDescriptor) -> None:
        self._descriptor = descriptor
        self._claims = decode_claims(descriptor.token)

    def __repr__(self) -> str:
        return (
            f"CronJob(container={self.container!r}, name={self.name!r}, "
            f"schedule={self.schedule!r}, state={self.state!r})"
        )

    @property
    def sandbox(self) -> Sandbox:
        return self._sandbox

    @property
    def descriptor(self) -> CronJobDescriptor:
        return self._descriptor

    @property
    def claims(self) -> Claims:
        return self._claims

    @property
    def name(self) -> str:
        return self._descriptor.name

    @property
    def container(self) -> str:
        return self._descriptor.container

    @property
    def token(self) -> str:
        return self._descriptor.token

    @property
    def schedule(self) -> str:
        return self._descriptor.schedule

    @property
    def state(self) -> str:
        return self._descriptor.state

    @property
    def tz(self) -> str | None:
        return self._descriptor.tz

    @property
    def meta(self) -> dict[str, Any]:
        return dict(self._descriptor.meta)

    @property
    def next_available_at(self) -> datetime | None:
        return self._descriptor.next_available_at

    @property
    def last_scheduled_at(self) -> datetime | None:
        return self._descriptor.last_scheduled_at

    @property
    def created_at(self) -> datetime | None:
        return self._descriptor.created_at

    @property
    def extra(self) -> dict[str, Any]:
        """Server fields without a dedicated attribute."""

        return dict(self._descriptor.model_extra or {})

    @property
    def url(self) -> str:
        return f"{self._sandbox.url}/api/run/{self.container}/{self.name}"

    async def refresh(self) -> CronJob:
        """Re-read the descriptor from the cluster and update this handle in place."""

        latest = await self._sandbox.get_cron_job(self.name, container=self.container)
        self._apply(latest.descriptor)
        return self

    async def remove(self) -> None:
        """Unschedule the job. The underlying token stays valid."""

        await self._sandbox.remove_cron_job(self.name, container=self.container)

    async def get_history(self, *, offset: int = 0, limit: int = 10) -> list[CronJobResult]:
        return await self._sandbox.get_cron_job_history(
            self.name, container=self.container, offset=offset, limit=limit
        )

    async def inspect(self, *, decrypt: bool = False, fetch_code: bool = False) -> Claims:
        return await self._sandbox.inspect_token(
            self.token, decrypt=decrypt, fetch_code=fetch_code
        )

    async def set_job_state(self, state: str) -> CronJob:
        changes = await self._sandbox.set_cron_job_state(
            self.name, state, container=self.container
        )
        merged = {**self._descriptor.model_dump(), "state": state, **changes}
        self._apply(CronJobDescriptor.model_validate(merged))
        return self


__all__ = ["CronJob"]
