"""The webtask profile: cluster URL, container and token plus every remote operation."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from pathlib import Path
from types import TracebackType
from typing import Any, Literal, overload
from urllib.parse import quote

import httpx

from webtask_sandbox.claims import (
    PRESERVED_CLAIMS,
    Claims,
    ParseMode,
    TokenOptions,
    coerce_options,
    to_claims,
    with_code_source,
)
from webtask_sandbox.clients import WEBTASK
from webtask_sandbox.config.profile_file import load_profile
from webtask_sandbox.config.settings import WebtaskSettings
from webtask_sandbox.cron_job import CronJob
from webtask_sandbox.errors import MissingRequiredOption, UnexpectedResponseType, ValidationError
from webtask_sandbox.log_stream import LogStream
from webtask_sandbox.models import (
    CronJobDescriptor,
    CronJobResult,
    IssuedToken,
    NodeModule,
    WebtaskRecord,
    WebtaskStorage,
    parse_stored_data,
)
from webtask_sandbox.tokens import from_claims
from webtask_sandbox.transport import QueryParams, issue_request
from webtask_sandbox.webtask import Webtask

logger = logging.getLogger("webtask_sandbox.profile")

TokenOptionsInput = TokenOptions | Mapping[str, Any] | None
ClaimsInput = Claims | Mapping[str, Any]


class Sandbox:
    """Credentials for one webtask container and the operations they allow.

    The profile is immutable; a single instance can be shared by concurrent
    tasks. It owns its HTTP client unless one is injected.
    """

    def __init__(
        self,
        url: str | None = None,
        container: str | None = None,
        token: str | None = None,
        *,
        timeout_seconds: float = WEBTASK.timeout_seconds,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not container:
            raise ValidationError("A Sandbox instance cannot be created without a container.")
        if not isinstance(container, str):
            raise ValidationError(
                f"Only String containers are supported, got `{type(container).__name__}`."
            )
        if not token:
            raise ValidationError("A Sandbox instance cannot be created without a token.")
        self._url = (url or WEBTASK.base_url).rstrip("/")
        self._container = container
        self._token = token
        self._owns_client = client is None
        self._client: httpx.AsyncClient = client or httpx.AsyncClient(timeout=timeout_seconds)

    # ------------------------------------------------------------------
    # construction

    @classmethod
    def from_token(
        cls,
        token: str,
        *,
        url: str | None = None,
        container: str | None = None,
        timeout_seconds: float = WEBTASK.timeout_seconds,
        client: httpx.AsyncClient | None = None,
    ) -> Sandbox:
        """Build a profile whose container is derived from the token's claims."""

        derived = from_claims(token)
        return cls(
            url,
            container or derived.container,
            token,
            timeout_seconds=timeout_seconds,
            client=client,
        )

    @classmethod
    def from_profile(
        cls,
        name: str = WEBTASK.profile_name,
        config_path: Path | None = None,
        *,
        timeout_seconds: float = WEBTASK.timeout_seconds,
        client: httpx.AsyncClient | None = None,
    ) -> Sandbox:
        entry = load_profile(name, config_path)
        return cls(
            entry.url,
            entry.container,
            entry.token,
            timeout_seconds=timeout_seconds,
            client=client,
        )

    @classmethod
    def from_settings(
        cls,
        settings: WebtaskSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> Sandbox:
        """Build a profile from the environment, falling back to the profile file."""

        settings = settings or WebtaskSettings()
        if settings.token:
            if settings.container:
                return cls(
                    settings.url,
                    settings.container,
                    settings.token,
                    timeout_seconds=settings.timeout_seconds,
                    client=client,
                )
            return cls.from_token(
                settings.token,
                url=settings.url,
                timeout_seconds=settings.timeout_seconds,
                client=client,
            )
        logger.debug(
            "no token in environment, reading profile file",
            extra={"data": {"profile": settings.profile, "path": str(settings.profile_path)}},
        )
        return cls.from_profile(
            settings.profile,
            settings.profile_path,
            timeout_seconds=settings.timeout_seconds,
            client=client,
        )

    # ------------------------------------------------------------------
    # properties

    def __repr__(self) -> str:
        return f"Sandbox(url={self._url!r}, container={self._container!r})"

    @property
    def url(self) -> str:
        return self._url

    @property
    def container(self) -> str:
        return self._container

    @property
    def token(self) -> str:
        return self._token

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> Sandbox:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # tokens and webtasks

    @overload
    async def create_token(
        self, options: TokenOptionsInput = ..., *, include_webtask_url: Literal[False] = ...
    ) -> str: ...

    @overload
    async def create_token(
        self, options: TokenOptionsInput = ..., *, include_webtask_url: Literal[True]
    ) -> IssuedToken: ...

    async def create_token(
        self, options: TokenOptionsInput = None, *, include_webtask_url: bool = False
    ) -> str | IssuedToken:
        """Issue a token for the given options.

        Options are validated and mapped to claims before any request is sent.
        """

        claims = to_claims(coerce_options(options), container=self._container)
        if include_webtask_url:
            return await self.create_token_raw(claims, include_webtask_url=True)
        return await self.create_token_raw(claims)

    @overload
    async def create_token_raw(
        self, claims: ClaimsInput, *, include_webtask_url: Literal[False] = ...
    ) -> str: ...

    @overload
    async def create_token_raw(
        self, claims: ClaimsInput, *, include_webtask_url: Literal[True]
    ) -> IssuedToken: ...

    async def create_token_raw(
        self, claims: ClaimsInput, *, include_webtask_url: bool = False
    ) -> str | IssuedToken:
        payload = claims.to_payload() if isinstance(claims, Claims) else dict(claims)
        response = await self._call("POST", self._api("tokens", "issue"), json_body=payload)
        logger.info(
            "token issued",
            extra={"data": {"container": payload.get("ten"), "name": payload.get("jtn")}},
        )
        if include_webtask_url:
            return IssuedToken(token=response.text, webtask_url=response.headers.get("location"))
        return response.text

    async def create(
        self, code_or_url: str | None = None, options: TokenOptionsInput = None
    ) -> Webtask:
        """Issue a webtask for inline code or a code URL."""

        token_options = coerce_options(options)
        if code_or_url is not None:
            token_options = with_code_source(token_options, code_or_url)
        elif not (token_options.code or token_options.code_url):
            raise MissingRequiredOption("code")
        issued = await self.create_token(token_options, include_webtask_url=True)
        return Webtask(
            self,
            issued.token,
            meta=token_options.meta,
            container=token_options.container,
            webtask_url=issued.webtask_url,
        )

    async def create_raw(self, claims: ClaimsInput) -> Webtask:
        """Issue a webtask from an already-built claim set."""

        issued = await self.create_token_raw(claims, include_webtask_url=True)
        meta = claims.meta if isinstance(claims, Claims) else claims.get("meta")
        return Webtask(self, issued.token, meta=meta, webtask_url=issued.webtask_url)

    async def create_url(
        self, code_or_url: str | None = None, options: TokenOptionsInput = None
    ) -> str:
        webtask = await self.create(code_or_url, options)
        return webtask.url

    async def run(
        self,
        code_or_url: str | None = None,
        options: TokenOptionsInput = None,
        *,
        method: str = "get",
        path: str = "",
        query: Mapping[str, Any] | None = None,
        body: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        """Create a webtask and invoke it once."""

        webtask = await self.create(code_or_url, options)
        return await webtask.run(method=method, path=path, query=query, body=body, headers=headers)

    async def get_webtask(self, name: str | None, *, container: str | None = None) -> Webtask:
        if not name:
            raise MissingRequiredOption("name")
        target = container or self._container
        response = await self._call("GET", self._api("webtask", target, name))
        record = WebtaskRecord.model_validate(self._json(response))
        return Webtask(
            self,
            record.token,
            meta=record.meta,
            container=target,
            webtask_url=record.webtask_url,
        )

    async def create_webtask(
        self,
        name: str | None,
        *,
        code: str | None = None,
        url: str | None = None,
        secrets: Mapping[str, Any] | None = None,
        meta: Mapping[str, Any] | None = None,
        host: str | None = None,
        container: str | None = None,
    ) -> Webtask:
        """Create or replace a named webtask; the cluster issues its token."""

        if not name:
            raise MissingRequiredOption("name")
        if code and url:
            raise ValidationError("Either the `code` or `url` option can be specified, but not both")
        if not (code or url):
            raise MissingRequiredOption("code")
        payload: dict[str, Any] = {"url": url} if url else {"code": code}
        if secrets:
            payload["secrets"] = dict(secrets)
        if meta:
            payload["meta"] = dict(meta)
        if host:
            payload["host"] = host
        target = container or self._container
        response = await self._call("PUT", self._api("webtask", target, name), json_body=payload)
        record = WebtaskRecord.model_validate(self._json(response))
        logger.info("webtask created", extra={"data": {"container": target, "name": name}})
        return Webtask(
            self,
            record.token,
            meta=record.meta,
            container=target,
            webtask_url=record.webtask_url,
        )

    async def remove_webtask(self, name: str | None, *, container: str | None = None) -> bool:
        if not name:
            raise MissingRequiredOption("name")
        await self._call("DELETE", self._api("webtask", container or self._container, name))
        logger.info(
            "webtask removed",
            extra={"data": {"container": container or self._container, "name": name}},
        )
        return True

    async def update_webtask(
        self,
        name: str | None,
        *,
        code: str | Literal[False] | None = None,
        url: str | Literal[False] | None = None,
        secrets: Mapping[str, Any] | Literal[False] | None = None,
        params: Mapping[str, Any] | Literal[False] | None = None,
        host: str | Literal[False] | None = None,
        meta: Mapping[str, Any] | Literal[False] | None = None,
        parse_body: bool | ParseMode | None = None,
        merge_body: bool | None = None,
        container: str | None = None,
    ) -> Webtask:
        """Re-issue a named webtask with some of its claims changed.

        Every changeable field follows the same rule: `None` keeps the current
        value, `False` removes it and anything else replaces it. Supplying
        `url` drops existing inline code and vice versa. Validity window,
        issuance depth, revocation flag and rate limits are always kept.

        `parse_body=False` removes the `pb` claim so the cluster default
        applies; pass `ParseMode.NEVER` to pin parsing off, which is what
        `parse_body=False` means when issuing a new token.

        Another writer may update the webtask between the read and the
        re-issue; the last write wins.
        """

        if not isinstance(name, str) or not name:
            raise MissingRequiredOption("name")
        if code not in (None, False) and not isinstance(code, str):
            raise ValidationError("The `code` option must be a string")
        if url not in (None, False) and not isinstance(url, str):
            raise ValidationError("The `url` option must be a string")
        if code and url:
            raise ValidationError("Either the `code` or `url` option can be specified, but not both")
        if parse_body is not None and not isinstance(parse_body, bool):
            try:
                parse_body = ParseMode(parse_body)
            except ValueError as exc:
                raise ValidationError(
                    f"The `parse_body` option must be a boolean or a ParseMode, got `{parse_body}`"
                ) from exc

        webtask = await self.get_webtask(name, container=container)
        current = await webtask.inspect(
            decrypt=secrets is not False,
            fetch_code=code is not False,
            meta=meta is not False,
        )

        updated: dict[str, Any] = {"ten": current.ten, "jtn": current.jtn}
        for claim in PRESERVED_CLAIMS:
            value = current.get(claim)
            if value:
                updated[claim] = value

        _merge_claim(updated, "host", host, current.host)
        _merge_claim(
            updated,
            "pb",
            int(parse_body) if parse_body is not None and parse_body is not False else parse_body,
            current.pb,
        )
        _merge_claim(updated, "mb", 1 if merge_body else merge_body, current.mb)
        _merge_claim(updated, "ectx", _as_dict(secrets), current.ectx)
        _merge_claim(updated, "pctx", _as_dict(params), current.pctx)
        _merge_claim(updated, "meta", _as_dict(meta), current.meta)

        if url:
            updated["url"] = url
        elif code:
            updated["code"] = code
        elif url is not False and current.url:
            updated["url"] = current.url
        elif code is not False and current.code:
            updated["code"] = current.code

        logger.info(
            "updating webtask",
            extra={"data": {"container": updated["ten"], "name": name, "claims": sorted(updated)}},
        )
        return await self.create_raw(updated)

    async def list_webtasks(
        self,
        *,
        container: str | None = None,
        meta: Mapping[str, Any] | None = None,
        offset: int | None = None,
        limit: int | None = None,
    ) -> list[Webtask]:
        target = container or self._container
        params = _paging(offset, limit) + _meta_filters(meta)
        response = await self._call("GET", self._api("webtask", target), params=params)
        records = [WebtaskRecord.model_validate(item) for item in self._json_list(response)]
        return [
            Webtask(
                self,
                record.token,
                meta=record.meta,
                container=target,
                webtask_url=record.webtask_url,
            )
            for record in records
        ]

    # ------------------------------------------------------------------
    # cron jobs

    async def create_cron_job(
        self,
        name: str,
        token: str,
        schedule: str,
        *,
        container: str | None = None,
        state: str | None = None,
        meta: Mapping[str, Any] | None = None,
        tz: str | None = None,
    ) -> CronJob:
        payload: dict[str, Any] = {"token": token, "schedule": schedule}
        if state:
            payload["state"] = state
        if meta:
            payload["meta"] = dict(meta)
        if tz:
            payload["tz"] = tz
        response = await self._call(
            "PUT", self._api("cron", container or self._container, name), json_body=payload
        )
        return CronJob(self, CronJobDescriptor.model_validate(self._json(response)))

    async def remove_cron_job(self, name: str, *, container: str | None = None) -> None:
        await self._call("DELETE", self._api("cron", container or self._container, name))

    async def set_cron_job_state(
        self, name: str, state: str, *, container: str | None = None
    ) -> dict[str, Any]:
        """Change a job's state and return the fields the cluster reported back."""

        response = await self._call(
            "PUT",
            self._api("cron", container or self._container, name, "state"),
            json_body={"state": state},
        )
        if not response.content:
            return {}
        body = self._json(response)
        return dict(body) if isinstance(body, dict) else {}

    async def list_cron_jobs(
        self,
        *,
        container: str | None = None,
        offset: int | None = None,
        limit: int | None = None,
        meta: Mapping[str, Any] | None = None,
    ) -> list[CronJob]:
        params = _paging(offset, limit) + _meta_filters(meta)
        response = await self._call(
            "GET", self._api("cron", container or self._container), params=params
        )
        return [
            CronJob(self, CronJobDescriptor.model_validate(item))
            for item in self._json_list(response)
        ]

    async def get_cron_job(self, name: str, *, container: str | None = None) -> CronJob:
        response = await self._call("GET", self._api("cron", container or self._container, name))
        return CronJob(self, CronJobDescriptor.model_validate(self._json(response)))

    async def get_cron_job_history(
        self,
        name: str,
        *,
        container: str | None = None,
        offset: int | None = None,
        limit: int | None = None,
    ) -> list[CronJobResult]:
        response = await self._call(
            "GET",
            self._api("cron", container or self._container, name, "history"),
            params=_paging(offset, limit),
        )
        return [CronJobResult.model_validate(item) for item in self._json_list(response)]

    # ------------------------------------------------------------------
    # inspection and revocation

    async def inspect_token(
        self,
        token: str,
        *,
        decrypt: bool = False,
        fetch_code: bool = False,
        meta: bool = False,
    ) -> Claims:
        params: list[tuple[str, Any]] = [("token", token)]
        if decrypt:
            params.append(("decrypt", "true"))
        if fetch_code:
            params.append(("fetch_code", "true"))
        if meta:
            params.append(("meta", "true"))
        response = await self._call("GET", self._api("tokens", "inspect"), params=params)
        body = self._json(response)
        if not isinstance(body, dict):
            raise UnexpectedResponseType(
                "Unexpected response type: token inspection did not return an object",
                status_code=response.status_code,
                body=body,
            )
        return Claims.from_payload(body)

    async def inspect_webtask(
        self,
        name: str,
        *,
        container: str | None = None,
        decrypt: bool = False,
        fetch_code: bool = False,
        meta: bool = False,
    ) -> Claims:
        webtask = await self.get_webtask(name, container=container)
        return await webtask.inspect(decrypt=decrypt, fetch_code=fetch_code, meta=meta)

    async def revoke_token(self, token: str) -> None:
        await self._call("POST", self._api("tokens", "revoke"), params=[("token", token)])
        logger.info("token revoked", extra={"data": {"container": self._container}})

    # ------------------------------------------------------------------
    # node modules

    async def list_node_module_versions(self, name: str) -> list[NodeModule]:
        response = await self._call("GET", self._api("env", "node", "modules", name))
        return [NodeModule.model_validate(item) for item in self._json_list(response)]

    async def ensure_node_modules(
        self,
        modules: Sequence[NodeModule | Mapping[str, Any]],
        *,
        reset: bool = False,
    ) -> list[NodeModule]:
        """Ask the cluster to provision modules; returns each module with its build state."""

        payload = {
            "modules": [
                {"name": module.name, "version": module.version}
                if isinstance(module, NodeModule)
                else {"name": module["name"], "version": module["version"]}
                for module in modules
            ]
        }
        response = await self._call(
            "POST",
            self._api("env", "node", "modules"),
            params=[("reset", 1)] if reset else None,
            json_body=payload,
        )
        return [NodeModule.model_validate(item) for item in self._json_list(response)]

    # ------------------------------------------------------------------
    # storage

    async def update_storage(
        self,
        storage: WebtaskStorage | Mapping[str, Any],
        name: str | None,
        *,
        container: str | None = None,
    ) -> WebtaskStorage:
        """Replace the stored document of a named webtask.

        Pass the `etag` from a previous read to reject concurrent writes.
        """

        if not name:
            raise MissingRequiredOption("name")
        if isinstance(storage, WebtaskStorage):
            data, etag = storage.data, storage.etag
        else:
            data, etag = storage.get("data"), storage.get("etag")
        payload: dict[str, Any] = {"data": json.dumps(data)}
        if etag:
            payload["etag"] = str(etag)
        response = await self._call(
            "PUT",
            self._api("webtask", container or self._container, name, "data"),
            json_body=payload,
        )
        body = self._json(response) if response.content else {}
        return WebtaskStorage.model_validate(body if isinstance(body, dict) else {})

    async def get_storage(self, name: str | None, *, container: str | None = None) -> WebtaskStorage:
        if not name:
            raise MissingRequiredOption("name")
        response = await self._call(
            "GET", self._api("webtask", container or self._container, name, "data")
        )
        body = self._json(response)
        if not isinstance(body, dict):
            raise UnexpectedResponseType(
                "Unexpected response type: storage read did not return an object",
                status_code=response.status_code,
                body=body,
            )
        return WebtaskStorage.model_validate({**body, "data": parse_stored_data(body.get("data"))})

    # ------------------------------------------------------------------
    # logs

    def create_log_stream(self, container: str | None = None) -> LogStream:
        """Return a stream of container logs; the connection opens on first use."""

        target = container or self._container
        return LogStream(
            self._client,
            self._api("logs", "tenant", target),
            token=self._token,
            container=target,
        )

    # ------------------------------------------------------------------
    # internal

    def _api(self, *segments: str) -> str:
        return "/".join([self._url, "api", *(quote(segment, safe="") for segment in segments)])

    async def _call(
        self,
        method: str,
        url: str,
        *,
        params: QueryParams | None = None,
        json_body: Any = None,
    ) -> httpx.Response:
        return await issue_request(
            self._client,
            method,
            url,
            token=self._token,
            params=params,
            json_body=json_body,
            headers={"Accept": "application/json"},
        )

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise UnexpectedResponseType(
                "Unexpected response type: expected a JSON body",
                status_code=response.status_code,
                body=response.text,
            ) from exc

    def _json_list(self, response: httpx.Response) -> list[Any]:
        body = self._json(response)
        if not isinstance(body, list):
            raise UnexpectedResponseType(
                "Unexpected response type: expected a JSON array",
                status_code=response.status_code,
                body=body,
            )
        return body


def _merge_claim(target: dict[str, Any], key: str, value: Any, previous: Any) -> None:
    if value is False:
        return
    if value is None:
        if previous:
            target[key] = previous
        return
    target[key] = value


def _as_dict(value: Mapping[str, Any] | Literal[False] | None) -> dict[str, Any] | Literal[False] | None:
    if value is None or value is False:
        return value
    return dict(value)


def _paging(offset: int | None, limit: int | None) -> list[tuple[str, Any]]:
    params: list[tuple[str, Any]] = []
    if offset is not None:
        params.append(("offset", offset))
    if limit is not None:
        params.append(("limit", limit))
    return params


def _meta_filters(meta: Mapping[str, Any] | None) -> list[tuple[str, Any]]:
    return [("meta", f"{key}:{value}") for key, value in (meta or {}).items()]


__all__ = ["Sandbox"]
