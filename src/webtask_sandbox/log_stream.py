"""Streaming container logs delivered as server-sent events."""

from __future__ import annotations

import json
import logging
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass
from types import TracebackType
from typing import Any

import httpx

from webtask_sandbox.transport import raise_for_response, transport_error

logger = logging.getLogger("webtask_sandbox.log_stream")


@dataclass(frozen=True, slots=True)
class LogEvent:
    """One dispatched event from the log stream."""

    data: str
    event: str = "message"
    id: str | None = None
    retry: int | None = None

    def payload(self) -> Any:
        """Return the JSON-decoded data, or None when the data is not JSON."""

        try:
            return json.loads(self.data)
        except ValueError:
            return None


class EventStreamParser:
    """Incremental parser for `text/event-stream` framing.

    Chunks may split lines, fields or separators anywhere; an event is only
    dispatched once its terminating blank line has been seen.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._carry_cr = False

    def feed(self, chunk: str) -> list[LogEvent]:
        text = ("\r" if self._carry_cr else "") + chunk
        self._carry_cr = text.endswith("\r")
        if self._carry_cr:
            text = text[:-1]
        self._buffer += text.replace("\r\n", "\n").replace("\r", "\n")

        events: list[LogEvent] = []
        while True:
            separator = self._buffer.find("\n\n")
            if separator == -1:
                break
            block = self._buffer[:separator]
            self._buffer = self._buffer[separator + 2 :]
            event = _parse_block(block)
            if event is not None:
                events.append(event)
        return events


def _parse_block(block: str) -> LogEvent | None:
    data_lines: list[str] = []
    event_type = "message"
    event_id: str | None = None
    retry: int | None = None
    for line in block.split("\n"):
        if not line or line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data_lines.append(value)
        elif name == "event":
            event_type = value or "message"
        elif name == "id":
            event_id = value
        elif name == "retry" and value.isdigit():
            retry = int(value)
    if not data_lines:
        return None
    return LogEvent(data="\n".join(data_lines), event=event_type, id=event_id, retry=retry)


class LogStream:
    """Async iterator over a container's log events.

    The connection is opened lazily on first iteration (or on entering
    `async with`) and stays open until `aclose()` is called.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        *,
        token: str,
        container: str,
    ) -> None:
        self._client = client
        self._url = url
        self._token = token
        self._container = container
        self._parser = EventStreamParser()
        self._pending: deque[LogEvent] = deque()
        self._response: httpx.Response | None = None
        self._chunks: AsyncIterator[str] | None = None
        self._closed = False

    @property
    def container(self) -> str:
        return self._container

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> LogStream:
        if self._response is not None or self._closed:
            return self
        request = self._client.build_request(
            "GET",
            self._url,
            params={"key": self._token},
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(self._client.timeout.connect, read=None),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise transport_error(exc, "Error streaming logs") from exc
        if response.status_code >= 300:
            try:
                await response.aread()
            finally:
                await response.aclose()
            raise_for_response(response)
        self._response = response
        self._chunks = response.aiter_text()
        logger.info("log stream opened", extra={"data": {"container": self._container}})
        return self

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._response is not None:
            await self._response.aclose()
            logger.info("log stream closed", extra={"data": {"container": self._container}})

    def __aiter__(self) -> LogStream:
        return self

    async def __anext__(self) -> LogEvent:
        await self.open()
        while not self._pending:
            if self._closed or self._chunks is None:
                raise StopAsyncIteration
            try:
                chunk = await anext(self._chunks)
            except StopAsyncIteration:
                await self.aclose()
                raise
            except httpx.HTTPError as exc:
                await self.aclose()
                raise transport_error(exc, "Error streaming logs") from exc
            self._pending.extend(self._parser.feed(chunk))
        return self._pending.popleft()

    async def __aenter__(self) -> LogStream:
        return await self.open()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()


__all__ = ["EventStreamParser", "LogEvent", "LogStream"]
