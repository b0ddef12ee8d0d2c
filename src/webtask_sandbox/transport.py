"""HTTP request issuing and uniform error mapping for the webtask cluster."""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence
from typing import Any

import httpx
from opentelemetry import trace
from opentelemetry.trace import SpanKind

from webtask_sandbox.errors import ClientError, ServerError, TransportError, UnexpectedResponseType

_LOGGER = logging.getLogger("webtask_sandbox.transport.calls")

QueryParams = Mapping[str, Any] | Sequence[tuple[str, Any]]


async def issue_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    token: str | None = None,
    params: QueryParams | None = None,
    json_body: Any = None,
    content: str | bytes | None = None,
    headers: Mapping[str, str] | None = None,
) -> httpx.Response:
    """Send an administrative request and raise on any non-2xx status."""

    request_headers = dict(headers or {})
    if token:
        request_headers["Authorization"] = f"Bearer {token}"
    response = await _send(
        client,
        "webtask.request",
        method,
        url,
        params=params,
        json_body=json_body,
        content=content,
        headers=request_headers,
    )
    raise_for_response(response)
    return response


async def invoke(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    params: QueryParams | None = None,
    json_body: Any = None,
    content: str | bytes | None = None,
    headers: Mapping[str, str] | None = None,
) -> httpx.Response:
    """Call a webtask; the response is returned whatever its status."""

    return await _send(
        client,
        "webtask.invoke",
        method,
        url,
        params=params,
        json_body=json_body,
        content=content,
        headers=dict(headers or {}),
    )


def raise_for_response(response: httpx.Response) -> None:
    """Map a non-success response onto the client exception hierarchy.

    The response body must already be read.
    """

    status = response.status_code
    if status < 300:
        return
    message, body = _error_details(response)
    if status < 400:
        raise UnexpectedResponseType(
            f"Unexpected response type: {message}", status_code=status, body=body
        )
    if status < 500:
        raise ClientError(f"Invalid request: {message}", status_code=status, body=body)
    raise ServerError(f"Server error: {message}", status_code=status, body=body)


def transport_error(exc: httpx.HTTPError, prefix: str) -> TransportError:
    return TransportError(f"{prefix}: {exc}")


async def _send(
    client: httpx.AsyncClient,
    span_name: str,
    method: str,
    url: str,
    *,
    params: QueryParams | None,
    json_body: Any,
    content: str | bytes | None,
    headers: dict[str, str],
) -> httpx.Response:
    # Invocation URLs may carry the token in the query string; only the path is recorded.
    path = httpx.URL(url).path
    tracer = trace.get_tracer("webtask_sandbox.transport")
    with tracer.start_as_current_span(
        span_name,
        kind=SpanKind.CLIENT,
        attributes={
            "http.method": method.upper(),
            "http.target": path,
        },
    ) as span:
        started = time.perf_counter()
        try:
            response = await client.request(
                method.upper(),
                url,
                params=params,
                json=json_body,
                content=content,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            span.set_attributes({"webtask.error": exc.__class__.__name__})
            _LOGGER.warning(
                f"{span_name}.failed",
                extra={
                    "data": {
                        "method": method.upper(),
                        "path": path,
                        "error": exc.__class__.__name__,
                    }
                },
            )
            raise transport_error(exc, "Error communicating with the webtask cluster") from exc
        latency_ms = (time.perf_counter() - started) * 1000
        span.set_attributes({"http.status_code": response.status_code})
        _LOGGER.debug(
            f"{span_name}.complete",
            extra={
                "data": {
                    "method": method.upper(),
                    "path": path,
                    "status_code": response.status_code,
                    "latency_ms": round(latency_ms, 2),
                }
            },
        )
        return response


def _error_details(response: httpx.Response) -> tuple[str, object]:
    text = response.text
    try:
        body: object = response.json()
    except ValueError:
        body = text
    if isinstance(body, dict) and isinstance(body.get("message"), str):
        return body["message"], body
    return text or response.reason_phrase, body


__all__ = ["QueryParams", "invoke", "issue_request", "raise_for_response", "transport_error"]
