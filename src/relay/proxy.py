from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import httpx
from fastapi import Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .auth import extract_credential
from .config import DEFAULT_UPSTREAM_TIMEOUT, RouteDescriptor
from .errors import MalformedBodyError
from .streaming import SSE_HEADERS, StreamBridge
from .types import RequestBody
from .upstream import dispatch


@dataclass
class ProxyResult:
    response: Response
    streaming: bool
    # resolves once the response body is fully produced: None, or the failure
    done: asyncio.Future[BaseException | None]


def parse_body(raw: bytes) -> RequestBody:
    try:
        return RequestBody.model_validate_json(raw or b"")
    except ValidationError as exc:
        raise MalformedBodyError(f"request body must be a JSON object: {exc.errors()[0]['msg']}") from exc


def _resolved_future(value: BaseException | None = None) -> asyncio.Future[BaseException | None]:
    future: asyncio.Future[BaseException | None] = asyncio.get_running_loop().create_future()
    future.set_result(value)
    return future


async def proxy_request(
    request: Request,
    route: RouteDescriptor,
    *,
    timeout: float | None = DEFAULT_UPSTREAM_TIMEOUT,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProxyResult:
    """Forward one inbound chat request to ``route`` and build the client response.

    Errors raised before the response exists (malformed body, transport and
    upstream status errors) propagate to the caller.
    """
    credential = extract_credential(request.headers)
    body = parse_body(await request.body())
    upstream: Any = await dispatch(
        body, route, credential, timeout=timeout, transport=transport
    )
    if body.is_stream:
        bridge = StreamBridge(upstream, route.transform_chunk)
        response = StreamingResponse(
            bridge.start(),
            media_type=SSE_HEADERS["content-type"],
            headers={
                key: value for key, value in SSE_HEADERS.items() if key != "content-type"
            },
        )
        return ProxyResult(response=response, streaming=True, done=bridge.done)
    completion = upstream
    if route.transform_completion is not None:
        completion = route.transform_completion(completion)
    return ProxyResult(
        response=JSONResponse(completion),
        streaming=False,
        done=_resolved_future(),
    )
