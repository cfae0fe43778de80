"""FastAPI integration helpers for spanline.

Usage::

    from spanline.integrations.fastapi import install_tracing

    app = FastAPI()
    tracer = Tracer.from_env()
    install_tracing(app, tracer)

Every HTTP request then runs under its own root span (``http.server``),
keyed by the ``x-request-id`` header when the client sends one. Route code
reaches the tracer through :func:`get_tracer` or ``request.app.state.tracer``.

Requires the ``fastapi`` extra::

    pip install spanline[fastapi]
"""

from __future__ import annotations

import asyncio

try:
    from fastapi import APIRouter, FastAPI, Request
    from fastapi.responses import JSONResponse
    from starlette.datastructures import Headers, MutableHeaders
    from starlette.types import ASGIApp, Message, Receive, Scope, Send
except ImportError as _err:  # pragma: no cover
    raise ImportError(
        "FastAPI is required for spanline.integrations.fastapi. "
        "Install it with: pip install spanline[fastapi]"
    ) from _err

import structlog

from spanline.core.constants import (
    REQUEST_ID_HEADER,
    TRACE_ID_HEADER,
    SpanOperation,
)
from spanline.tracing.span import Span, new_trace_id
from spanline.tracing.tracer import Tracer

logger = structlog.get_logger(__name__)


class TracingMiddleware:
    """ASGI middleware that wraps each HTTP request in a root span.

    * The trace id is the request's ``x-request-id`` header, or a fresh id.
      A header value already in use by an in-flight request gets a random
      suffix so the two requests keep separate trees.
    * The route runs with the root span active, so spans opened by route
      code (and by tasks it spawns) nest under it.
    * The root ends with status ``error`` when the app raises or answers
      with a 5xx, unless route code already set its status; the exception
      itself is re-raised untouched and tracing never raises into the
      request.
    * A cancelled request (client disconnect) aborts its trace: every
      still-open span is force-closed with status ``error``.
    * The response carries the trace id in ``x-trace-id``.
    """

    def __init__(
        self,
        app: ASGIApp,
        tracer: Tracer,
        request_id_header: str = REQUEST_ID_HEADER,
    ) -> None:
        self.app = app
        self._tracer = tracer
        self._request_id_header = request_id_header

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        request_id = headers.get(self._request_id_header)
        trace_id = self._scoped_trace_id(request_id)
        method: str = scope["method"]
        path: str = scope["path"]
        root = self._tracer.start_span(
            f"{method} {path}",
            SpanOperation.HTTP_SERVER,
            trace_id=trace_id,
            **{"http.method": method, "http.target": path},
        )
        if request_id:
            root.set_attribute("http.request_id", request_id)
        status_code = 500

        async def _send(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                MutableHeaders(scope=message).append(TRACE_ID_HEADER, root.trace_id)
            await send(message)

        try:
            with self._tracer.use_span(root):
                await self.app(scope, receive, _send)
        except asyncio.CancelledError:
            logger.warning("request_cancelled", trace_id=root.trace_id, path=path)
            self._tracer.abort(root.trace_id, "request cancelled")
            root.force_end("request cancelled")
            raise
        except Exception as exc:
            self._finish(root, 500, exc)
            raise
        else:
            self._finish(root, status_code)

    def _scoped_trace_id(self, request_id: str | None) -> str:
        if not request_id:
            return new_trace_id()
        if not self._tracer.collector.is_pending(request_id):
            return request_id
        # Another in-flight request already owns this id.
        scoped = f"{request_id}-{new_trace_id()[:8]}"
        logger.warning("duplicate_request_id", request_id=request_id, trace_id=scoped)
        return scoped

    def _finish(
        self, root: Span, status_code: int, exc: Exception | None = None
    ) -> None:
        """End the request's root span. Never raises."""
        if root.is_ended:
            return
        try:
            root.set_attribute("http.status_code", status_code)
            if exc is not None:
                root.set_attribute("exception.type", type(exc).__name__)
                root.set_attribute("exception.message", str(exc))
                root.end_with_error(f"{type(exc).__name__}: {exc}")
            elif status_code >= 500:  # noqa: PLR2004
                root.end_with_error(f"HTTP {status_code}")
            else:
                root.end()
        except Exception:
            logger.error("request_span_finish_failed", trace_id=root.trace_id, exc_info=True)
            root.end_with_error("request span finish failed")


def install_tracing(app: FastAPI, tracer: Tracer) -> FastAPI:
    """Attach *tracer* to *app*: middleware plus ``app.state.tracer``."""
    app.state.tracer = tracer
    app.add_middleware(TracingMiddleware, tracer=tracer)
    return app


def get_tracer(request: Request) -> Tracer:
    """FastAPI dependency returning the tracer installed on the app."""
    tracer: Tracer = request.app.state.tracer
    return tracer


def create_tracing_router(prefix: str = "/_tracing") -> APIRouter:
    """Return an :class:`APIRouter` exposing collector status.

    Endpoints:
        - ``GET {prefix}/status`` -- emitted / dropped counters and pending traces
    """
    router = APIRouter(prefix=prefix, tags=["tracing"])

    @router.get("/status")
    async def tracing_status(request: Request) -> JSONResponse:
        tracer = get_tracer(request)
        collector = tracer.collector
        return JSONResponse(
            content={
                "environment": tracer.config.environment,
                "sample_rate": tracer.config.sample_rate,
                "emitted": collector.emitted,
                "dropped": collector.dropped,
                "pending": collector.pending_trace_ids,
            }
        )

    return router
