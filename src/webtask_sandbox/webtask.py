"""Handle for a single issued webtask token."""

from __future__ import annotations

import posixpath
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import httpx

from webtask_sandbox.claims import Claims
from webtask_sandbox.errors import MissingJobName, UnremovableWebtask
from webtask_sandbox.log_stream import LogStream
from webtask_sandbox.models import WebtaskStorage
from webtask_sandbox.tokens import decode_claims, granted_container
from webtask_sandbox.transport import invoke

if TYPE_CHECKING:
    from webtask_sandbox.cron_job import CronJob
    from webtask_sandbox.profile import Sandbox


class Webtask:
    """An issued token plus the profile it was issued through.

    Claims are decoded once at construction. Without an explicit container
    the handle uses the profile container when the token grants it, and the
    token's own `ten` container otherwise; `url` is derived on every access.
    """

    def __init__(
        self,
        sandbox: Sandbox,
        token: str,
        *,
        meta: Mapping[str, Any] | None = None,
        container: str | None = None,
        webtask_url: str | None = None,
    ) -> None:
        self._sandbox = sandbox
        self._token = token
        self._claims = decode_claims(token)
        self._meta = dict(meta or {})
        if container is None and self._claims.ten is not None:
            container = granted_container(self._claims.ten, sandbox.container)
        self._container = container or sandbox.container
        self._webtask_url = webtask_url

    def __repr__(self) -> str:
        return f"Webtask(container={self.container!r}, name={self.name!r})"

    @property
    def sandbox(self) -> Sandbox:
        return self._sandbox

    @property
    def token(self) -> str:
        return self._token

    @property
    def claims(self) -> Claims:
        return self._claims

    @property
    def meta(self) -> dict[str, Any]:
        return dict(self._meta)

    @property
    def name(self) -> str | None:
        return self._claims.jtn

    @property
    def container(self) -> str:
        return self._container

    @property
    def url(self) -> str:
        """Public invocation URL.

        Named webtasks are addressed by name; unnamed ones carry their token
        as the `key` query parameter.
        """

        if self._webtask_url:
            return self._webtask_url
        if self._claims.host:
            cluster = httpx.URL(self._sandbox.url)
            port = f":{cluster.port}" if cluster.port else ""
            url = f"{cluster.scheme}://{self._claims.host}{port}/{self.container}"
        else:
            url = f"{self._sandbox.url}/api/run/{self.container}"
        if self._claims.jtn:
            return f"{url}/{self._claims.jtn}"
        return f"{url}?key={self._token}"

    async def run(
        self,
        *,
        method: str = "get",
        path: str = "",
        query: Mapping[str, Any] | None = None,
        body: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        """Invoke the webtask.

        Error statuses are returned as responses. Query parameters already in
        `url` are kept unless `query` overrides them.
        """

        target = httpx.URL(self.url)
        if path:
            target = target.copy_with(path=target.path.rstrip("/") + "/" + path.lstrip("/"))
        json_body = None
        content = None
        if isinstance(body, (str, bytes)):
            content = body
        elif body is not None:
            json_body = body
        return await invoke(
            self._sandbox.client,
            method,
            str(target),
            params=dict(query) if query else None,
            json_body=json_body,
            content=content,
            headers=headers,
        )

    async def create_cron_job(
        self,
        schedule: str,
        *,
        name: str | None = None,
        state: str = "active",
        meta: Mapping[str, Any] | None = None,
        tz: str | None = None,
    ) -> CronJob:
        """Schedule this webtask; the job name defaults to the webtask name."""

        job_name = name or self._claims.jtn or self._code_filename()
        if not job_name:
            raise MissingJobName("Cron jobs must have a name.")
        return await self._sandbox.create_cron_job(
            job_name,
            self._token,
            schedule,
            container=self.container,
            state=state,
            meta=meta if meta is not None else self._meta,
            tz=tz,
        )

    def _code_filename(self) -> str:
        if not self._claims.url:
            return ""
        return posixpath.basename(httpx.URL(self._claims.url).path)

    async def inspect(
        self, *, decrypt: bool = False, fetch_code: bool = False, meta: bool = False
    ) -> Claims:
        return await self._sandbox.inspect_token(
            self._token, decrypt=decrypt, fetch_code=fetch_code, meta=meta
        )

    async def remove(self) -> bool:
        if not self._claims.jtn:
            raise UnremovableWebtask("Unnamed webtasks cannot be removed")
        return await self._sandbox.remove_webtask(self._claims.jtn, container=self.container)

    async def revoke(self) -> None:
        await self._sandbox.revoke_token(self._token)

    async def update(self, **changes: Any) -> Webtask:
        """Re-issue this named webtask; see `Sandbox.update_webtask` for `changes`."""

        changes.setdefault("container", self.container)
        return await self._sandbox.update_webtask(self._claims.jtn, **changes)

    async def update_storage(
        self,
        storage: WebtaskStorage | Mapping[str, Any],
        *,
        name: str | None = None,
        container: str | None = None,
    ) -> WebtaskStorage:
        return await self._sandbox.update_storage(
            storage,
            name or self._claims.jtn,
            container=container or self.container,
        )

    async def get_storage(
        self, *, name: str | None = None, container: str | None = None
    ) -> WebtaskStorage:
        return await self._sandbox.get_storage(
            name or self._claims.jtn, container=container or self.container
        )

    def create_log_stream(self, container: str | None = None) -> LogStream:
        return self._sandbox.create_log_stream(container or self.container)

    def to_dict(self) -> dict[str, str]:
        data = {"container": self.container, "token": self._token, "url": self.url}
        if self._claims.jtn:
            data["name"] = self._claims.jtn
        return data


__all__ = ["Webtask"]
