from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from types import TracebackType
from typing import Any

import httpx

from .config import DEFAULT_UPSTREAM_TIMEOUT, RouteDescriptor
from .errors import UpstreamProtocolError
from .types import RequestBody

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/chat/completions"
DONE_MARKER = "[DONE]"
SSE_ACCEPT = "text/event-stream"


def _decode_object(text: str, *, what: str) -> dict[str, Any]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise UpstreamProtocolError(f"upstream {what} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise UpstreamProtocolError(f"upstream {what} is not a JSON object")
    return payload


class ChunkStream:
    """Live sequence of chunk objects read from an upstream SSE response.

    Owns the HTTP response and the client that produced it; both are released
    by :meth:`aclose`, which also runs once the sequence is exhausted or fails.
    """

    def __init__(self, client: UpstreamClient, response: httpx.Response) -> None:
        self._client = client
        self._response = response
        self._events = self._iter_events()
        self._closed = False

    def __aiter__(self) -> ChunkStream:
        return self

    async def __anext__(self) -> dict[str, Any]:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._events.__anext__()
        except BaseException:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._events.aclose()
            await self._response.aclose()
        finally:
            await self._client.aclose()

    async def _iter_events(self) -> AsyncIterator[dict[str, Any]]:
        data_lines: list[str] = []
        async for raw_line in self._response.aiter_lines():
            line = raw_line.rstrip("\r")
            if line == "":
                if not data_lines:
                    continue
                data_text = "\n".join(data_lines)
                data_lines.clear()
                if data_text == DONE_MARKER:
                    return
                yield self._decode_chunk(data_text)
                continue
            if line.startswith(":"):
                continue
            if line.startswith("data:"):
                data_lines.append(line[5:].lstrip())
        if data_lines:
            data_text = "\n".join(data_lines)
            if data_text and data_text != DONE_MARKER:
                yield self._decode_chunk(data_text)

    @staticmethod
    def _decode_chunk(data_text: str) -> dict[str, Any]:
        chunk = _decode_object(data_text, what="stream chunk")
        error = chunk.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else None
            raise UpstreamProtocolError(str(message or error))
        return chunk


class UpstreamClient:
    """HTTP client bound to one route and one caller credential."""

    def __init__(
        self,
        route: RouteDescriptor,
        credential: str,
        *,
        timeout: float | None = DEFAULT_UPSTREAM_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        # bare scheme when the credential is empty
        headers = httpx.Headers(
            {
                "Authorization": f"Bearer {credential}".rstrip(),
                "Content-Type": "application/json",
            }
        )
        # route headers win over the defaults above, Authorization included
        headers.update(dict(route.headers))
        self._route_headers = httpx.Headers(dict(route.headers))
        self._client = httpx.AsyncClient(
            base_url=route.target,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> UpstreamClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def complete(self, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.post(CHAT_COMPLETIONS_PATH, json=payload)
        response.raise_for_status()
        return _decode_object(response.text, what="completion")

    async def open_stream(self, payload: dict[str, Any]) -> ChunkStream:
        headers = {} if "accept" in self._route_headers else {"Accept": SSE_ACCEPT}
        request = self._client.build_request(
            "POST",
            CHAT_COMPLETIONS_PATH,
            json=payload,
            headers=headers,
        )
        response = await self._client.send(request, stream=True)
        try:
            if response.is_error:
                await response.aread()
                response.raise_for_status()
        except BaseException:
            await response.aclose()
            raise
        return ChunkStream(self, response)


async def dispatch(
    body: RequestBody,
    route: RouteDescriptor,
    credential: str,
    *,
    timeout: float | None = DEFAULT_UPSTREAM_TIMEOUT,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any] | ChunkStream:
    """Forward ``body`` to ``route.target``.

    Returns a :class:`ChunkStream` when ``body.stream`` is exactly ``True`` and
    the decoded completion otherwise. Transport and protocol errors propagate.
    """
    client = UpstreamClient(route, credential, timeout=timeout, transport=transport)
    if body.is_stream:
        logger.debug("upstream.open_stream target=%s", route.target)
        try:
            return await client.open_stream(body.upstream_payload(stream=True))
        except BaseException:
            await client.aclose()
            raise
    logger.debug("upstream.complete target=%s", route.target)
    async with client:
        return await client.complete(body.upstream_payload(stream=False))
