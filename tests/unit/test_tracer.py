"""Tests for tracing/tracer.py -- span creation, parenting and sampling."""

from __future__ import annotations

import asyncio
import random

import pytest

from spanline.core.config import TracingConfig
from spanline.tracing.collector import TraceCollector
from spanline.tracing.sinks import HttpTraceSink, InMemoryTraceSink, StructlogTraceSink
from spanline.tracing.tracer import Tracer, build_default_sinks


def _tracer(sample_rate: float, sink: InMemoryTraceSink, seed: int = 7) -> Tracer:
    return Tracer(
        config=TracingConfig(sample_rate=sample_rate),
        sinks=[sink],
        rng=random.Random(seed),
    )


# ---------------------------------------------------------------------------
# Parenting
# ---------------------------------------------------------------------------


def test_span_without_active_parent_is_root(tracer: Tracer) -> None:
    span = tracer.start_span("GET /", "http.server")
    assert span.is_root
    span.end()


def test_span_defaults_to_active_parent(tracer: Tracer, sink: InMemoryTraceSink) -> None:
    root = tracer.start_span("root")
    with tracer.use_span(root):
        child = tracer.start_span("child", "db.query")
        assert tracer.current_span() is root
    assert child.parent_id == root.span_id
    assert child.trace_id == root.trace_id
    child.end()
    root.end()
    tree = sink.traces[0]
    assert [s.name for s in tree.children_of(root.span_id)] == ["child"]


def test_explicit_parent_wins_over_active(tracer: Tracer) -> None:
    other = tracer.start_span("other")
    root = tracer.start_span("root")
    with tracer.use_span(root):
        child = tracer.start_span("child", parent=other)
    assert child.parent_id == other.span_id
    for span in (child, root, other):
        span.end()


def test_root_flag_ignores_active_span(tracer: Tracer) -> None:
    outer = tracer.start_span("outer")
    with tracer.use_span(outer):
        detached = tracer.start_span("background", root=True)
    assert detached.is_root
    assert detached.trace_id != outer.trace_id
    detached.end()
    outer.end()


def test_trace_id_starts_a_new_root(tracer: Tracer) -> None:
    outer = tracer.start_span("outer")
    with tracer.use_span(outer):
        span = tracer.start_span("GET /", trace_id="req-123")
    assert span.is_root
    assert span.trace_id == "req-123"
    span.end()
    outer.end()


def test_attributes_passed_as_keywords(tracer: Tracer) -> None:
    span = tracer.start_span("q", "db.query", rows=3, table="users")
    assert span.attributes == {"rows": 3, "table": "users"}
    span.end()


def test_invalid_keyword_attribute_raises(tracer: Tracer) -> None:
    with pytest.raises(TypeError):
        tracer.start_span("q", payload=[1, 2])  # type: ignore[arg-type]


def test_run_with_span_delegates_to_stack(tracer: Tracer) -> None:
    span = tracer.start_span("job")
    assert tracer.run_with_span(span, tracer.current_span) is span
    assert tracer.current_span() is None
    span.end()


async def test_async_children_attach_to_request_root(
    tracer: Tracer, sink: InMemoryTraceSink
) -> None:
    async def _request(key: str) -> None:
        root = tracer.start_span(f"GET /{key}", "http.server", trace_id=key)

        async def _handler() -> None:
            for i in range(3):
                child = tracer.start_span(f"{key}-{i}")
                await asyncio.sleep(0)
                child.end()

        await tracer.run_with_span(root, _handler)
        root.end()

    await asyncio.gather(_request("a"), _request("b"))

    assert sorted(t.trace_id for t in sink.traces) == ["a", "b"]
    for tree in sink.traces:
        assert tree.span_count == 4
        assert all(s.parent_id == tree.root.span_id for s in tree.spans)
        assert all(s.name.startswith(tree.trace_id) for s in tree.spans)


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------


def test_sample_rate_one_records_everything() -> None:
    sink = InMemoryTraceSink()
    tracer = _tracer(1.0, sink)
    for i in range(20):
        tracer.start_span(f"r{i}").end()
    assert len(sink.traces) == 20


def test_sample_rate_zero_records_nothing() -> None:
    sink = InMemoryTraceSink()
    tracer = _tracer(0.0, sink)
    root = tracer.start_span("root")
    with tracer.use_span(root):
        child = tracer.start_span("child")
    assert root.sampled is False
    assert child.sampled is False
    child.end()
    root.end()
    assert sink.traces == []
    assert tracer.collector.pending_trace_ids == []


def test_partial_sampling_is_decided_per_root() -> None:
    sink = InMemoryTraceSink()
    tracer = _tracer(0.5, sink, seed=42)
    decisions = []
    for i in range(200):
        root = tracer.start_span(f"r{i}")
        with tracer.use_span(root):
            child = tracer.start_span("child")
        assert child.sampled is root.sampled
        decisions.append(root.sampled)
        child.end()
        root.end()
    assert 0 < sum(decisions) < 200
    assert len(sink.traces) == sum(decisions)
    assert all(tree.span_count == 2 for tree in sink.traces)


def test_unsampled_span_still_usable() -> None:
    tracer = _tracer(0.0, InMemoryTraceSink())
    span = tracer.start_span("quiet")
    span.set_attribute("k", "v")
    span.end()
    assert span.is_ended
    assert span.attributes == {"k": "v"}


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def test_default_sinks_without_url_use_structlog() -> None:
    sinks = build_default_sinks(TracingConfig())
    assert len(sinks) == 1
    assert isinstance(sinks[0], StructlogTraceSink)


def test_default_sinks_with_url_use_http() -> None:
    sinks = build_default_sinks(
        TracingConfig(sink_url="http://collector.local/traces", sink_api_key="k")
    )
    try:
        assert len(sinks) == 1
        assert isinstance(sinks[0], HttpTraceSink)
    finally:
        for s in sinks:
            s.close()


def test_sinks_added_to_supplied_collector() -> None:
    collector = TraceCollector()
    extra = InMemoryTraceSink()
    tracer = Tracer(collector=collector, sinks=[extra])
    assert tracer.collector is collector
    assert collector.sinks == [extra]


def test_collector_built_from_config() -> None:
    config = TracingConfig(buffer_timeout=2.5, environment="staging")
    tracer = Tracer(config=config, sinks=[InMemoryTraceSink()])
    assert tracer.collector.buffer_timeout == 2.5
    tracer.start_span("r").end()
    sink = tracer.collector.sinks[0]
    assert isinstance(sink, InMemoryTraceSink)
    assert sink.traces[0].environment == "staging"


def test_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SPANLINE_SAMPLE_RATE", "0.25")
    monkeypatch.setenv("SPANLINE_ENVIRONMENT", "production")
    monkeypatch.delenv("SPANLINE_SINK_URL", raising=False)
    tracer = Tracer.from_env(sinks=[InMemoryTraceSink()])
    assert tracer.config.sample_rate == 0.25
    assert tracer.config.environment == "production"


def test_abort_and_shutdown(tracer: Tracer, sink: InMemoryTraceSink) -> None:
    root = tracer.start_span("root", trace_id="t-abort")
    with tracer.use_span(root):
        child = tracer.start_span("child")
    with pytest.warns(UserWarning):
        closed = tracer.abort("t-abort", "cancelled")
    assert closed == 2
    assert child.forced and root.forced
    assert sink.get("t-abort") is not None
    tracer.start()
    tracer.shutdown()
