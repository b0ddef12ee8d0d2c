from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from webtask_sandbox.claims import Claims, ParseMode
from webtask_sandbox.errors import (
    ClientError,
    InvalidScheduleWindow,
    MissingRequiredOption,
    UnexpectedResponseType,
    ValidationError,
)
from webtask_sandbox.models import IssuedToken, NodeModule, WebtaskStorage
from webtask_sandbox.profile import Sandbox

pytestmark = pytest.mark.anyio("asyncio")

CLUSTER = "https://webtask.example.com"

Handler = Callable[[httpx.Request], httpx.Response]


def _sandbox(handler: Handler, *, container: str = "tenant", token: str = "profile-token") -> Sandbox:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return Sandbox(CLUSTER, container, token, client=client)


def _body(request: httpx.Request) -> Any:
    return json.loads(request.content)


def _unreachable(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request {request.method} {request.url}")


# ----------------------------------------------------------------------
# construction


def test_sandbox_requires_container_and_token() -> None:
    with pytest.raises(ValidationError, match="without a container"):
        Sandbox(CLUSTER, None, "token")
    with pytest.raises(ValidationError, match="Only String containers"):
        Sandbox(CLUSTER, 42, "token")  # type: ignore[arg-type]
    with pytest.raises(ValidationError, match="without a token"):
        Sandbox(CLUSTER, "tenant", "")


def test_sandbox_defaults_cluster_url_and_strips_slash() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(_unreachable))

    assert Sandbox(None, "tenant", "t", client=client).url == "https://webtask.it.auth0.com"
    assert Sandbox(f"{CLUSTER}/", "tenant", "t", client=client).url == CLUSTER


def test_from_token_derives_container(make_token) -> None:
    token = make_token(ten="/^wt-[0-9]+$/")
    client = httpx.AsyncClient(transport=httpx.MockTransport(_unreachable))

    sandbox = Sandbox.from_token(token, url=CLUSTER, client=client)

    assert sandbox.container == "wt-0"
    assert sandbox.token == token
    assert Sandbox.from_token(token, container="explicit", client=client).container == "explicit"


async def test_owned_client_is_closed() -> None:
    sandbox = Sandbox(CLUSTER, "tenant", "token")

    async with sandbox:
        pass

    assert sandbox.client.is_closed


# ----------------------------------------------------------------------
# tokens and webtasks


async def test_create_token_posts_claims(make_token) -> None:
    issued = make_token(ten="tenant")
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["method"] = request.method
        captured["auth"] = request.headers["authorization"]
        captured["body"] = _body(request)
        return httpx.Response(200, text=issued)

    sandbox = _sandbox(handler)

    token = await sandbox.create_token({"code": "module.exports = cb => cb();", "name": "hello"})

    assert token == issued
    assert captured["method"] == "POST"
    assert captured["url"] == f"{CLUSTER}/api/tokens/issue"
    assert captured["auth"] == "Bearer profile-token"
    assert captured["body"] == {
        "ten": "tenant",
        "dd": 0,
        "jtn": "hello",
        "code": "module.exports = cb => cb();",
        "dr": 1,
    }


async def test_create_token_can_return_location(make_token) -> None:
    issued = make_token(ten="tenant")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=issued, headers={"location": "https://hello.example.com/"})

    result = await _sandbox(handler).create_token({"code": "x"}, include_webtask_url=True)

    assert result == IssuedToken(token=issued, webtask_url="https://hello.example.com/")


async def test_create_token_validates_before_network() -> None:
    sandbox = _sandbox(_unreachable)

    with pytest.raises(InvalidScheduleWindow):
        await sandbox.create_token({"code": "x", "nbf": 10, "exp": 5})


async def test_create_classifies_code_url(make_token) -> None:
    issued = make_token(ten="tenant", url="https://example.com/hello.js")
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = _body(request)
        return httpx.Response(200, text=issued)

    webtask = await _sandbox(handler).create("https://example.com/hello.js", {"meta": {"k": "v"}})

    assert captured["body"]["url"] == "https://example.com/hello.js"
    assert "code" not in captured["body"]
    assert webtask.token == issued
    assert webtask.meta == {"k": "v"}
    assert webtask.url == f"{CLUSTER}/api/run/tenant?key={issued}"


async def test_create_without_code_is_rejected() -> None:
    with pytest.raises(MissingRequiredOption):
        await _sandbox(_unreachable).create(None, {"name": "hello"})


async def test_create_url_for_named_webtask(make_token) -> None:
    issued = make_token(ten="tenant", jtn="hello")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=issued)

    url = await _sandbox(handler).create_url("module.exports = 1;", {"name": "hello"})

    assert url == f"{CLUSTER}/api/run/tenant/hello"


async def test_create_in_another_container_addresses_that_container(make_token) -> None:
    issued = make_token(ten="other", jtn="hello")
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = _body(request)
        return httpx.Response(200, text=issued)

    webtask = await _sandbox(handler).create("code", {"container": "other", "name": "hello"})

    assert captured["body"]["ten"] == "other"
    assert webtask.container == "other"
    assert webtask.url == f"{CLUSTER}/api/run/other/hello"


async def test_create_webtask_puts_named_webtask(make_token) -> None:
    token = make_token(ten="other", jtn="hello")
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["request"] = f"{request.method} {request.url.path}"
        captured["body"] = _body(request)
        return httpx.Response(200, json={"token": token, "meta": {"owner": "ops"}})

    webtask = await _sandbox(handler).create_webtask(
        "hello",
        code="module.exports = cb => cb();",
        secrets={"API_KEY": "s3cret"},
        meta={"owner": "ops"},
        host="hello.example.com",
        container="other",
    )

    assert captured["request"] == "PUT /api/webtask/other/hello"
    assert captured["body"] == {
        "code": "module.exports = cb => cb();",
        "secrets": {"API_KEY": "s3cret"},
        "meta": {"owner": "ops"},
        "host": "hello.example.com",
    }
    assert webtask.token == token
    assert webtask.container == "other"
    assert webtask.meta == {"owner": "ops"}


async def test_create_webtask_with_code_url(make_token) -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = _body(request)
        return httpx.Response(200, json={"token": make_token(ten="tenant", jtn="hello")})

    webtask = await _sandbox(handler).create_webtask("hello", url="https://example.com/a.js")

    assert captured["body"] == {"url": "https://example.com/a.js"}
    assert webtask.url == f"{CLUSTER}/api/run/tenant/hello"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"name": None, "code": "x"},
        {"name": "hello"},
        {"name": "hello", "code": "x", "url": "https://example.com/x.js"},
    ],
)
async def test_create_webtask_validates_before_network(kwargs: dict[str, Any]) -> None:
    name = kwargs.pop("name")

    with pytest.raises(ValidationError):
        await _sandbox(_unreachable).create_webtask(name, **kwargs)


async def test_run_creates_and_invokes(make_token) -> None:
    issued = make_token(ten="tenant", jtn="hello")
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(f"{request.method} {request.url.path}")
        if request.url.path == "/api/tokens/issue":
            return httpx.Response(200, text=issued)
        return httpx.Response(200, json={"echo": _body(request)})

    response = await _sandbox(handler).run(
        "module.exports = 1;", {"name": "hello"}, method="post", body={"a": 1}
    )

    assert response.json() == {"echo": {"a": 1}}
    assert calls == ["POST /api/tokens/issue", "POST /api/run/tenant/hello"]


async def test_get_webtask_reads_record(make_token) -> None:
    token = make_token(ten="tenant", jtn="hello")

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.path == "/api/webtask/other/hello"
        return httpx.Response(
            200,
            json={"token": token, "meta": {"k": "v"}, "webtask_url": "https://hello.example.com"},
        )

    webtask = await _sandbox(handler).get_webtask("hello", container="other")

    assert webtask.token == token
    assert webtask.container == "other"
    assert webtask.meta == {"k": "v"}
    assert webtask.url == "https://hello.example.com"


async def test_get_webtask_requires_name() -> None:
    with pytest.raises(MissingRequiredOption, match="`name`"):
        await _sandbox(_unreachable).get_webtask("")


async def test_get_webtask_not_found_is_client_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "Webtask not found"})

    with pytest.raises(ClientError) as excinfo:
        await _sandbox(handler).get_webtask("missing")

    assert excinfo.value.status_code == 404
    assert "Webtask not found" in str(excinfo.value)


async def test_remove_webtask() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(f"{request.method} {request.url.path}")
        return httpx.Response(204)

    assert await _sandbox(handler).remove_webtask("hello") is True
    assert seen == ["DELETE /api/webtask/tenant/hello"]


async def test_list_webtasks_sends_paging_and_meta(make_token) -> None:
    tokens = [make_token(ten="tenant", jtn="a"), make_token(ten="tenant", jtn="b")]
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["params"] = request.url.params
        return httpx.Response(200, json=[{"token": token} for token in tokens])

    webtasks = await _sandbox(handler).list_webtasks(
        meta={"owner": "ops", "tier": "gold"}, offset=10, limit=5
    )

    assert [webtask.name for webtask in webtasks] == ["a", "b"]
    assert captured["params"].get_list("meta") == ["owner:ops", "tier:gold"]
    assert captured["params"]["offset"] == "10"
    assert captured["params"]["limit"] == "5"


async def test_list_webtasks_requires_array() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"not": "a list"})

    with pytest.raises(UnexpectedResponseType):
        await _sandbox(handler).list_webtasks()


# ----------------------------------------------------------------------
# update


def _update_handler(
    make_token, current: dict[str, Any], captured: dict[str, Any]
) -> Handler:
    named = make_token(ten="tenant", jtn="hello")
    reissued = make_token(ten="tenant", jtn="hello")

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/webtask/tenant/hello":
            return httpx.Response(200, json={"token": named})
        if path == "/api/tokens/inspect":
            captured["inspect"] = dict(request.url.params)
            return httpx.Response(200, json=current)
        if path == "/api/tokens/issue":
            captured["issued"] = _body(request)
            return httpx.Response(200, text=reissued)
        raise AssertionError(f"unexpected request {request.method} {path}")

    return handler


async def test_update_webtask_preserves_and_replaces_claims(make_token) -> None:
    current = {
        "ten": "tenant",
        "jtn": "hello",
        "code": "old code",
        "ectx": {"SECRET": "1"},
        "pctx": {"param": "1"},
        "meta": {"owner": "ops"},
        "host": "hello.example.com",
        "nbf": 100,
        "exp": 200,
        "dd": 1,
        "dr": 1,
        "lm": 5,
        "pb": 1,
        "jti": "ignored",
    }
    captured: dict[str, Any] = {}
    sandbox = _sandbox(_update_handler(make_token, current, captured))

    webtask = await sandbox.update_webtask("hello", code="new code", secrets=False, host=False)

    assert webtask.name == "hello"
    assert captured["inspect"]["fetch_code"] == "true"
    assert captured["inspect"]["meta"] == "true"
    assert "decrypt" not in captured["inspect"]
    assert captured["issued"] == {
        "ten": "tenant",
        "jtn": "hello",
        "nbf": 100,
        "exp": 200,
        "dd": 1,
        "dr": 1,
        "lm": 5,
        "pb": 1,
        "pctx": {"param": "1"},
        "meta": {"owner": "ops"},
        "code": "new code",
    }


async def test_update_webtask_keeps_code_source_by_default(make_token) -> None:
    current = {"ten": "tenant", "jtn": "hello", "url": "https://example.com/a.js", "mb": 1}
    captured: dict[str, Any] = {}
    sandbox = _sandbox(_update_handler(make_token, current, captured))

    await sandbox.update_webtask(
        "hello", params={"p": 2}, parse_body=ParseMode.NEVER, merge_body=False
    )

    assert captured["inspect"]["decrypt"] == "true"
    assert captured["issued"] == {
        "ten": "tenant",
        "jtn": "hello",
        "url": "https://example.com/a.js",
        "pctx": {"p": 2},
        "pb": 0,
    }


async def test_update_webtask_url_replaces_code(make_token) -> None:
    current = {"ten": "tenant", "jtn": "hello", "code": "old code"}
    captured: dict[str, Any] = {}
    sandbox = _sandbox(_update_handler(make_token, current, captured))

    await sandbox.update_webtask("hello", url="https://example.com/new.js")

    assert captured["issued"]["url"] == "https://example.com/new.js"
    assert "code" not in captured["issued"]


async def test_update_webtask_without_changes_keeps_secrets(make_token) -> None:
    current = {
        "ten": "tenant",
        "jtn": "hello",
        "code": "old code",
        "ectx": {"API_KEY": "s3cret"},
        "pb": 2,
    }
    captured: dict[str, Any] = {}
    sandbox = _sandbox(_update_handler(make_token, current, captured))

    await sandbox.update_webtask("hello")

    assert captured["inspect"] == {
        "token": captured["inspect"]["token"],
        "decrypt": "true",
        "fetch_code": "true",
        "meta": "true",
    }
    assert captured["issued"] == {
        "ten": "tenant",
        "jtn": "hello",
        "code": "old code",
        "ectx": {"API_KEY": "s3cret"},
        "pb": 2,
    }


async def test_update_webtask_parse_body_false_removes_claim(make_token) -> None:
    current = {"ten": "tenant", "jtn": "hello", "code": "old code", "pb": 1}
    captured: dict[str, Any] = {}
    sandbox = _sandbox(_update_handler(make_token, current, captured))

    await sandbox.update_webtask("hello", parse_body=False)

    assert "pb" not in captured["issued"]


async def test_update_webtask_in_another_container(make_token) -> None:
    named = make_token(ten="other", jtn="hello")
    reissued = make_token(ten="other", jtn="hello")
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/webtask/other/hello":
            return httpx.Response(200, json={"token": named})
        if path == "/api/tokens/inspect":
            return httpx.Response(200, json={"ten": "other", "jtn": "hello", "code": "x"})
        if path == "/api/tokens/issue":
            captured["issued"] = _body(request)
            return httpx.Response(200, text=reissued)
        raise AssertionError(f"unexpected request {request.method} {path}")

    webtask = await _sandbox(handler).update_webtask("hello", container="other")

    assert captured["issued"]["ten"] == "other"
    assert webtask.container == "other"
    assert webtask.url == f"{CLUSTER}/api/run/other/hello"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"name": None},
        {"name": "hello", "code": "x", "url": "https://example.com/x.js"},
        {"name": "hello", "code": 42},
        {"name": "hello", "url": ["https://example.com/x.js"]},
        {"name": "hello", "parse_body": 7},
    ],
)
async def test_update_webtask_validates_before_network(kwargs: dict[str, Any]) -> None:
    name = kwargs.pop("name")

    with pytest.raises(ValidationError):
        await _sandbox(_unreachable).update_webtask(name, **kwargs)


# ----------------------------------------------------------------------
# inspection, revocation, modules, storage


async def test_inspect_token_returns_claims() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["params"] = dict(request.url.params)
        return httpx.Response(200, json={"ten": "tenant", "code": "x", "ectx": {"S": "1"}})

    claims = await _sandbox(handler).inspect_token("tok", decrypt=True, fetch_code=True)

    assert isinstance(claims, Claims)
    assert claims.ectx == {"S": "1"}
    assert captured["params"] == {"token": "tok", "decrypt": "true", "fetch_code": "true"}


async def test_inspect_webtask_resolves_name(make_token) -> None:
    named = make_token(ten="tenant", jtn="hello")
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path == "/api/tokens/inspect":
            assert request.url.params["token"] == named
            return httpx.Response(200, json={"ten": "tenant", "jtn": "hello"})
        return httpx.Response(200, json={"token": named})

    claims = await _sandbox(handler).inspect_webtask("hello")

    assert claims.jtn == "hello"
    assert paths == ["/api/webtask/tenant/hello", "/api/tokens/inspect"]


async def test_revoke_token() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["request"] = f"{request.method} {request.url.path}"
        captured["token"] = request.url.params["token"]
        return httpx.Response(200)

    assert await _sandbox(handler).revoke_token("revoke-me") is None
    assert captured == {"request": "POST /api/tokens/revoke", "token": "revoke-me"}


async def test_node_modules() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            captured["list"] = request.url.path
            return httpx.Response(200, json=[{"name": "@scope/pkg", "version": "1.0.0"}])
        captured["reset"] = request.url.params.get("reset")
        captured["body"] = _body(request)
        return httpx.Response(
            200, json=[{"name": "lodash", "version": "4.17.21", "state": "queued"}]
        )

    sandbox = _sandbox(handler)

    versions = await sandbox.list_node_module_versions("@scope/pkg")
    ensured = await sandbox.ensure_node_modules(
        [NodeModule(name="lodash", version="4.17.21")], reset=True
    )

    assert versions == [NodeModule(name="@scope/pkg", version="1.0.0")]
    assert captured["list"] == "/api/env/node/modules/@scope/pkg"
    assert ensured[0].state == "queued"
    assert captured["reset"] == "1"
    assert captured["body"] == {"modules": [{"name": "lodash", "version": "4.17.21"}]}


async def test_update_storage_serialises_data() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["request"] = f"{request.method} {request.url.path}"
        captured["body"] = _body(request)
        return httpx.Response(200, json={"etag": "2"})

    result = await _sandbox(handler).update_storage(
        WebtaskStorage(data={"count": 1}, etag=1), "hello"
    )

    assert captured["request"] == "PUT /api/webtask/tenant/hello/data"
    assert captured["body"] == {"data": '{"count": 1}', "etag": "1"}
    assert result.etag == "2"


async def test_get_storage_parses_json_best_effort() -> None:
    responses = iter(
        [
            httpx.Response(200, json={"data": '{"count": 1}', "etag": "7"}),
            httpx.Response(200, json={"data": "not json", "etag": "8"}),
        ]
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return next(responses)

    sandbox = _sandbox(handler)

    first = await sandbox.get_storage("hello")
    second = await sandbox.get_storage("hello")

    assert first.data == {"count": 1}
    assert first.etag == "7"
    assert second.data == "not json"


async def test_storage_requires_name() -> None:
    sandbox = _sandbox(_unreachable)

    with pytest.raises(MissingRequiredOption):
        await sandbox.get_storage(None)
    with pytest.raises(MissingRequiredOption):
        await sandbox.update_storage({"data": 1}, "")
