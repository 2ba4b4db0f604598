import logging
import time
import uuid
from enum import Enum
from typing import Any

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .config import RouteTable, Settings, load_routes, load_settings
from .errors import MalformedBodyError, RouteNotFoundError, UpstreamProtocolError
from .metrics import PROM_CONTENT_TYPE, RequestMetrics
from .proxy import ProxyResult, proxy_request
from .router import resolve

logger = logging.getLogger(__name__)

BAD_GATEWAY_STATUS = 502
PROXIED_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]
UNMATCHED_ROUTE = "unmatched"


class ErrorCode(str, Enum):
    MALFORMED_BODY = "malformed_body"
    UPSTREAM_HTTP_ERROR = "upstream_http_error"
    UPSTREAM_PROTOCOL_ERROR = "upstream_protocol_error"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    PROXY_ERROR = "proxy_error"


def _http_status_error_details(exc: httpx.HTTPStatusError) -> tuple[int, str]:
    response = exc.response
    status = response.status_code
    message: str | None = None
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error_field = payload.get("error")
        if isinstance(error_field, dict):
            error_message = error_field.get("message")
            if isinstance(error_message, str) and error_message:
                message = error_message
        if message is None:
            nested_message = payload.get("message")
            if isinstance(nested_message, str) and nested_message:
                message = nested_message
    if message is None and response.text:
        message = response.text
    if message is None:
        message = response.reason_phrase or str(exc)
    return status, message


def _describe_error(exc: Exception) -> tuple[str, ErrorCode, int | None]:
    if isinstance(exc, httpx.HTTPStatusError):
        status, message = _http_status_error_details(exc)
        return f"{status} {message}", ErrorCode.UPSTREAM_HTTP_ERROR, status
    if isinstance(exc, MalformedBodyError):
        return str(exc), ErrorCode.MALFORMED_BODY, None
    if isinstance(exc, UpstreamProtocolError):
        return str(exc), ErrorCode.UPSTREAM_PROTOCOL_ERROR, None
    if isinstance(exc, httpx.TransportError):
        return str(exc) or type(exc).__name__, ErrorCode.UPSTREAM_UNAVAILABLE, None
    return str(exc) or type(exc).__name__, ErrorCode.PROXY_ERROR, None


def _make_error_body(
    *,
    message: str,
    code: ErrorCode,
    upstream_status: int | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "message": message,
        "type": "proxy_error",
        "code": code.value,
    }
    if upstream_status is not None:
        payload["upstream_status"] = upstream_status
    return {"error": payload}


def _log_request_event(level: int, *, event: str, req_id: str, **fields: Any) -> None:
    message = f"{event} req_id={req_id}"
    for key, value in fields.items():
        if value is not None:
            message = f"{message} {key}={value}"
    logger.log(level, message)


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def create_app(
    routes: RouteTable | None = None,
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the HTTP boundary around the proxy core.

    ``routes`` defaults to ``routes.yaml`` under ``settings.config_dir``;
    ``transport`` is handed to every upstream client (tests use a mock).
    """
    settings = settings or load_settings()
    routes = routes if routes is not None else load_routes(settings.config_dir)
    metrics = RequestMetrics()

    app = FastAPI(title="llm-relay")
    app.state.routes = routes
    app.state.settings = settings
    app.state.metrics = metrics

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_allow_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        return {
            "status": "ok",
            "routes": [{"prefix": route.prefix, "target": route.target} for route in routes],
        }

    @app.get("/metrics")
    async def metrics_endpoint() -> Response:
        return Response(metrics.render(), media_type=PROM_CONTENT_TYPE)

    def _watch_stream(result: ProxyResult, *, req_id: str, prefix: str, start: float) -> None:
        def _on_done(future: Any) -> None:
            error = future.result()
            latency_ms = _elapsed_ms(start)
            if error is None:
                _log_request_event(
                    logging.INFO,
                    event="proxy.stream_complete",
                    req_id=req_id,
                    latency_ms=latency_ms,
                )
            else:
                _log_request_event(
                    logging.ERROR,
                    event="proxy.stream_error",
                    req_id=req_id,
                    latency_ms=latency_ms,
                    detail=str(error) or type(error).__name__,
                )
            metrics.record(
                route=prefix,
                status=result.response.status_code,
                mode="SSE",
                latency_ms=latency_ms,
            )

        result.done.add_done_callback(_on_done)

    @app.api_route("/{path:path}", methods=PROXIED_METHODS)
    async def proxy(req: Request, path: str) -> Response:
        start = time.perf_counter()
        req_id = str(uuid.uuid4())
        headers = {"x-relay-request-id": req_id}
        url_path = req.url.path
        try:
            route = resolve(routes, url_path)
        except RouteNotFoundError:
            _log_request_event(
                logging.INFO,
                event="proxy.not_found",
                req_id=req_id,
                method=req.method,
                path=url_path,
            )
            metrics.record(
                route=UNMATCHED_ROUTE, status=404, mode="JSON", latency_ms=_elapsed_ms(start)
            )
            return PlainTextResponse("Not Found", status_code=404, headers=headers)

        _log_request_event(
            logging.INFO,
            event="proxy.request",
            req_id=req_id,
            method=req.method,
            path=url_path,
            target=route.target,
        )
        try:
            result = await proxy_request(
                req, route, timeout=settings.upstream_timeout, transport=transport
            )
        except Exception as exc:
            message, code, upstream_status = _describe_error(exc)
            latency_ms = _elapsed_ms(start)
            _log_request_event(
                logging.ERROR,
                event="proxy.error",
                req_id=req_id,
                method=req.method,
                path=url_path,
                latency_ms=latency_ms,
                code=code.value,
                detail=message,
            )
            metrics.record(
                route=route.prefix,
                status=BAD_GATEWAY_STATUS,
                mode="JSON",
                latency_ms=latency_ms,
            )
            return JSONResponse(
                _make_error_body(message=message, code=code, upstream_status=upstream_status),
                status_code=BAD_GATEWAY_STATUS,
                headers=headers,
            )

        result.response.headers.update(headers)
        mode = "SSE" if result.streaming else "JSON"
        _log_request_event(
            logging.INFO,
            event="proxy.response",
            req_id=req_id,
            status=result.response.status_code,
            mode=mode,
            latency_ms=_elapsed_ms(start),
        )
        if result.streaming:
            _watch_stream(result, req_id=req_id, prefix=route.prefix, start=start)
        else:
            metrics.record(
                route=route.prefix,
                status=result.response.status_code,
                mode=mode,
                latency_ms=_elapsed_ms(start),
            )
        return result.response

    return app


app = create_app()
