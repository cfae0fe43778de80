"""Tests for integrations/fastapi.py (requires fastapi extra)."""
from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from spanline.core.constants import SpanStatus
from spanline.core.exceptions import OrphanedSpanWarning
from spanline.tracing.sinks import InMemoryTraceSink
from spanline.tracing.tracer import Tracer

try:
    from fastapi import FastAPI, HTTPException, Request
    from fastapi.responses import JSONResponse
    from fastapi.testclient import TestClient

    from spanline.integrations.fastapi import (
        TracingMiddleware,
        create_tracing_router,
        get_tracer,
        install_tracing,
    )

    _FASTAPI_AVAILABLE = True
except ImportError:
    _FASTAPI_AVAILABLE = False

pytestmark = pytest.mark.skipif(
    not _FASTAPI_AVAILABLE, reason="fastapi not installed"
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_app(tracer: Tracer) -> FastAPI:
    app = FastAPI()
    install_tracing(app, tracer)
    app.include_router(create_tracing_router())

    @app.get("/ok")
    async def ok(request: Request) -> dict[str, Any]:
        span = get_tracer(request).current_span()
        return {"trace_id": span.trace_id if span else None}

    @app.get("/nested/{key}")
    async def nested(request: Request, key: str) -> dict[str, str]:
        tr = get_tracer(request)
        for i in range(3):
            child = tr.start_span(f"{key}-step-{i}", "function")
            await asyncio.sleep(0.001)
            child.end()
        return {"key": key}

    @app.get("/boom")
    async def boom() -> None:
        raise RuntimeError("kaboom")

    @app.get("/unavailable")
    async def unavailable() -> None:
        raise HTTPException(status_code=503, detail="down")

    @app.get("/db-down")
    async def db_down(request: Request) -> None:
        span = get_tracer(request).current_span()
        assert span is not None
        span.set_error("db down")
        raise RuntimeError("connection refused")

    @app.get("/half")
    async def half(request: Request) -> JSONResponse:
        span = get_tracer(request).current_span()
        assert span is not None
        span.set_status("ok")
        return JSONResponse(status_code=503, content={"degraded": True})

    @app.get("/missing")
    async def missing() -> None:
        raise HTTPException(status_code=404, detail="nope")

    return app


# ---------------------------------------------------------------------------
# Root span per request
# ---------------------------------------------------------------------------


def test_request_id_header_becomes_trace_id(
    tracer: Tracer, sink: InMemoryTraceSink
) -> None:
    client = TestClient(_make_app(tracer))
    resp = client.get("/ok", headers={"x-request-id": "req-1"})
    assert resp.status_code == 200
    assert resp.json() == {"trace_id": "req-1"}
    assert resp.headers["x-trace-id"] == "req-1"

    tree = sink.get("req-1")
    assert tree is not None
    assert tree.root.name == "GET /ok"
    assert tree.root.operation == "http.server"
    assert tree.root.status == SpanStatus.OK
    assert tree.root.attributes["http.method"] == "GET"
    assert tree.root.attributes["http.target"] == "/ok"
    assert tree.root.attributes["http.status_code"] == 200


def test_missing_request_id_generates_trace_id(
    tracer: Tracer, sink: InMemoryTraceSink
) -> None:
    client = TestClient(_make_app(tracer))
    resp = client.get("/ok")
    trace_id = resp.headers["x-trace-id"]
    assert trace_id
    assert resp.json()["trace_id"] == trace_id
    assert sink.get(trace_id) is not None


def test_route_spans_nest_under_request(tracer: Tracer, sink: InMemoryTraceSink) -> None:
    client = TestClient(_make_app(tracer))
    client.get("/nested/a", headers={"x-request-id": "req-nested"})
    tree = sink.get("req-nested")
    assert tree is not None
    assert tree.span_count == 4
    children = tree.children_of(tree.root.span_id)
    assert [c.name for c in children] == ["a-step-0", "a-step-1", "a-step-2"]


def test_unhandled_exception_marks_root_error(
    tracer: Tracer, sink: InMemoryTraceSink
) -> None:
    client = TestClient(_make_app(tracer), raise_server_exceptions=False)
    resp = client.get("/boom", headers={"x-request-id": "req-boom"})
    assert resp.status_code == 500
    tree = sink.get("req-boom")
    assert tree is not None
    assert tree.root.status == SpanStatus.ERROR
    assert tree.root.error == "RuntimeError: kaboom"
    assert tree.root.attributes["http.status_code"] == 500


def test_5xx_response_marks_root_error(tracer: Tracer, sink: InMemoryTraceSink) -> None:
    client = TestClient(_make_app(tracer))
    resp = client.get("/unavailable", headers={"x-request-id": "req-503"})
    assert resp.status_code == 503
    tree = sink.get("req-503")
    assert tree is not None
    assert tree.root.status == SpanStatus.ERROR
    assert tree.root.attributes["http.status_code"] == 503


def test_4xx_response_keeps_root_ok(tracer: Tracer, sink: InMemoryTraceSink) -> None:
    client = TestClient(_make_app(tracer))
    client.get("/missing", headers={"x-request-id": "req-404"})
    tree = sink.get("req-404")
    assert tree is not None
    assert tree.root.status == SpanStatus.OK
    assert tree.root.attributes["http.status_code"] == 404


def test_exception_after_route_set_error_still_emits(
    tracer: Tracer, sink: InMemoryTraceSink
) -> None:
    client = TestClient(_make_app(tracer), raise_server_exceptions=False)
    resp = client.get("/db-down", headers={"x-request-id": "req-db"})
    assert resp.status_code == 500
    tree = sink.get("req-db")
    assert tree is not None
    assert tree.root.status == SpanStatus.ERROR
    assert tree.root.error == "db down"
    assert tree.root.attributes["exception.type"] == "RuntimeError"
    assert tree.root.attributes["http.status_code"] == 500
    assert tracer.collector.pending_trace_ids == []


def test_route_exception_reaches_server_unchanged(tracer: Tracer) -> None:
    client = TestClient(_make_app(tracer))
    with pytest.raises(RuntimeError, match="connection refused"):
        client.get("/db-down")


def test_5xx_after_route_set_ok_keeps_route_status(
    tracer: Tracer, sink: InMemoryTraceSink
) -> None:
    client = TestClient(_make_app(tracer))
    resp = client.get("/half", headers={"x-request-id": "req-half"})
    assert resp.status_code == 503
    assert resp.json() == {"degraded": True}
    tree = sink.get("req-half")
    assert tree is not None
    assert tree.root.status == SpanStatus.OK
    assert tree.root.attributes["http.status_code"] == 503
    assert tracer.collector.pending_trace_ids == []


def test_duplicate_request_id_gets_own_trace(
    tracer: Tracer, sink: InMemoryTraceSink
) -> None:
    in_flight = tracer.start_span("GET /other", "http.server", trace_id="req-dup")
    client = TestClient(_make_app(tracer))
    resp = client.get("/ok", headers={"x-request-id": "req-dup"})

    trace_id = resp.headers["x-trace-id"]
    assert trace_id.startswith("req-dup-")
    assert resp.json() == {"trace_id": trace_id}
    tree = sink.get(trace_id)
    assert tree is not None
    assert tree.root.attributes["http.request_id"] == "req-dup"

    in_flight.end()
    original = sink.get("req-dup")
    assert original is not None
    assert original.root.span_id == in_flight.span_id


def test_status_router(tracer: Tracer) -> None:
    client = TestClient(_make_app(tracer))
    client.get("/ok")
    resp = client.get("/_tracing/status")
    assert resp.status_code == 200
    body = resp.json()
    assert body["environment"] == "development"
    assert body["sample_rate"] == 1.0
    assert body["emitted"] >= 1
    assert body["dropped"] == 0
    assert body["pending"] == [resp.headers["x-trace-id"]]


def test_install_tracing_sets_state(tracer: Tracer) -> None:
    app = FastAPI()
    assert install_tracing(app, tracer) is app
    assert app.state.tracer is tracer


# ---------------------------------------------------------------------------
# Concurrency and cancellation
# ---------------------------------------------------------------------------


async def test_concurrent_requests_produce_separate_trees(
    tracer: Tracer, sink: InMemoryTraceSink
) -> None:
    transport = httpx.ASGITransport(app=_make_app(tracer))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        await asyncio.gather(
            *(
                client.get(f"/nested/{key}", headers={"x-request-id": f"req-{key}"})
                for key in ("a", "b", "c")
            )
        )

    assert sorted(t.trace_id for t in sink.traces) == ["req-a", "req-b", "req-c"]
    for key in ("a", "b", "c"):
        tree = sink.get(f"req-{key}")
        assert tree is not None
        assert tree.span_count == 4
        for span in tree.spans:
            assert span.name.startswith(f"{key}-step-")
            assert span.parent_id == tree.root.span_id


async def test_concurrent_requests_with_same_request_id_stay_apart(
    tracer: Tracer, sink: InMemoryTraceSink
) -> None:
    transport = httpx.ASGITransport(app=_make_app(tracer))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        responses = await asyncio.gather(
            *(
                client.get(f"/nested/{key}", headers={"x-request-id": "req-same"})
                for key in ("a", "b")
            )
        )

    trace_ids = {r.headers["x-trace-id"] for r in responses}
    assert len(trace_ids) == 2
    assert "req-same" in trace_ids
    for trace_id in trace_ids:
        tree = sink.get(trace_id)
        assert tree is not None
        assert tree.span_count == 4
        assert tree.root.attributes["http.request_id"] == "req-same"


async def test_cancelled_request_force_closes_open_spans(
    tracer: Tracer, sink: InMemoryTraceSink
) -> None:
    async def _app(scope: Any, receive: Any, send: Any) -> None:
        tracer.start_span("db.query.slow", "db.query")
        raise asyncio.CancelledError

    middleware = TracingMiddleware(_app, tracer=tracer)
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/slow",
        "headers": [(b"x-request-id", b"req-cancel")],
    }

    async def _receive() -> dict[str, Any]:
        return {"type": "http.disconnect"}

    async def _send(_message: Any) -> None:
        pass

    with pytest.warns(OrphanedSpanWarning), pytest.raises(asyncio.CancelledError):
        await middleware(scope, _receive, _send)

    tree = sink.get("req-cancel")
    assert tree is not None
    assert tree.root.status == SpanStatus.ERROR
    assert tree.root.forced
    child = tree.find("db.query.slow")
    assert child is not None
    assert child.forced
    assert child.error == "force-closed: request cancelled"
    assert tracer.collector.pending_trace_ids == []


async def test_non_http_scope_passes_through(tracer: Tracer) -> None:
    seen: list[str] = []

    async def _app(scope: Any, receive: Any, send: Any) -> None:
        seen.append(scope["type"])

    middleware = TracingMiddleware(_app, tracer=tracer)
    await middleware({"type": "lifespan"}, None, None)  # type: ignore[arg-type]
    assert seen == ["lifespan"]
    assert tracer.collector.pending_trace_ids == []
