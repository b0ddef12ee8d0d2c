from __future__ import annotations

from typing import Any

import httpx
import pytest

from webtask_sandbox.errors import (
    ClientError,
    ResponseError,
    ServerError,
    TransportError,
    UnexpectedResponseType,
)
from webtask_sandbox.transport import invoke, issue_request

pytestmark = pytest.mark.anyio("asyncio")

URL = "https://webtask.example.com/api/tokens/issue"


def _client(response: httpx.Response) -> tuple[dict[str, Any], httpx.AsyncClient]:
    captured: dict[str, Any] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["headers"] = dict(request.headers)
        captured["params"] = request.url.params
        return response

    return captured, httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def test_issue_request_sends_bearer_token() -> None:
    captured, client = _client(httpx.Response(200, text="ok"))

    response = await issue_request(client, "post", URL, token="secret", json_body={"ten": "t"})

    assert response.text == "ok"
    assert captured["method"] == "POST"
    assert captured["headers"]["authorization"] == "Bearer secret"


async def test_client_error_uses_json_message() -> None:
    _, client = _client(httpx.Response(403, json={"message": "Forbidden container"}))

    with pytest.raises(ClientError) as excinfo:
        await issue_request(client, "get", URL, token="secret")

    assert str(excinfo.value) == "Invalid request: Forbidden container"
    assert excinfo.value.status_code == 403
    assert excinfo.value.body == {"message": "Forbidden container"}


async def test_server_error_falls_back_to_text() -> None:
    _, client = _client(httpx.Response(502, text="bad gateway"))

    with pytest.raises(ServerError) as excinfo:
        await issue_request(client, "get", URL, token="secret")

    assert str(excinfo.value) == "Server error: bad gateway"
    assert excinfo.value.status_code == 502


async def test_redirect_is_unexpected() -> None:
    _, client = _client(httpx.Response(304))

    with pytest.raises(UnexpectedResponseType) as excinfo:
        await issue_request(client, "get", URL, token="secret")

    assert isinstance(excinfo.value, ResponseError)
    assert excinfo.value.status_code == 304


async def test_connection_failure_is_transport_error() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    with pytest.raises(TransportError, match="Error communicating with the webtask cluster"):
        await issue_request(client, "get", URL, token="secret")


async def test_invoke_returns_error_responses() -> None:
    captured, client = _client(httpx.Response(500, text="boom"))

    response = await invoke(client, "get", URL, params={"a": "1"})

    assert response.status_code == 500
    assert response.text == "boom"
    assert captured["params"]["a"] == "1"
    assert "authorization" not in captured["headers"]
