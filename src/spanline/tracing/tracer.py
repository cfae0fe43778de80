"""Tracer -- creates spans, tracks the active one and feeds the collector."""

from __future__ import annotations

import random
from contextlib import AbstractContextManager
from typing import Any, Callable, TypeVar

import structlog

from spanline.core.config import TracingConfig
from spanline.core.constants import SpanOperation
from spanline.tracing.collector import TraceCollector
from spanline.tracing.context import SpanStack
from spanline.tracing.models import AttributeValue
from spanline.tracing.sinks import HttpTraceSink, StructlogTraceSink, TraceSink
from spanline.tracing.span import Span

logger = structlog.get_logger(__name__)

_T = TypeVar("_T")


def build_default_sinks(config: TracingConfig) -> list[TraceSink]:
    """Return the HTTP sink when ``sink_url`` is configured, else a structlog sink."""
    if config.sink_url:
        return [
            HttpTraceSink(
                config.sink_url,
                api_key=config.sink_api_key,
                max_queue_size=config.max_queue_size,
            )
        ]
    return [StructlogTraceSink()]


class Tracer:
    """Entry point for instrumentation.

    Usage::

        tracer = Tracer(sinks=[InMemoryTraceSink()])
        root = tracer.start_span("GET /heavy", "http.server", trace_id=request_id)
        with tracer.use_span(root):
            calc = tracer.start_span("calculate-sqrt", "calculation")
            ...
            calc.end()
        root.end()          # the whole tree is emitted here

    Spans started without an explicit *parent* attach to the active span of
    the calling context, or become roots when none is active. Sampling is
    decided once per root and inherited by its descendants; unsampled spans
    behave normally but are never collected.
    """

    def __init__(
        self,
        config: TracingConfig | None = None,
        sinks: list[TraceSink] | None = None,
        collector: TraceCollector | None = None,
        stack: SpanStack | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or TracingConfig()
        self.stack = stack or SpanStack()
        if collector is None:
            collector = TraceCollector(
                sinks=sinks if sinks is not None else build_default_sinks(self.config),
                buffer_timeout=self.config.buffer_timeout,
                sweep_interval=self.config.sweep_interval,
                environment=self.config.environment,
            )
        elif sinks:
            for sink in sinks:
                collector.add_sink(sink)
        self.collector = collector
        self._rng = rng or random.Random()

    @classmethod
    def from_env(cls, sinks: list[TraceSink] | None = None) -> Tracer:
        """Build a tracer from ``SPANLINE_*`` environment variables."""
        return cls(config=TracingConfig.from_env(), sinks=sinks)

    # ------------------------------------------------------------------ #
    # Spans
    # ------------------------------------------------------------------ #

    def _should_sample(self) -> bool:
        rate = self.config.sample_rate
        if rate >= 1.0:
            return True
        if rate <= 0.0:
            return False
        return self._rng.random() < rate

    def start_span(
        self,
        name: str,
        operation: str = SpanOperation.FUNCTION,
        *,
        parent: Span | None = None,
        trace_id: str | None = None,
        root: bool = False,
        **attributes: AttributeValue,
    ) -> Span:
        """Create, register and return a new span.

        Parameters
        ----------
        name:
            Human-readable label (e.g. ``"GET /heavy"``, ``"db.query.user"``).
        operation:
            Operation tag (e.g. ``"http.server"``, ``"db.query"``).
        parent:
            Explicit parent. Defaults to the active span of the calling
            context.
        trace_id:
            Logical-unit-of-work key for a new root span (e.g. the inbound
            request id). Passing it always starts a root.
        root:
            Start a root span even when a span is active.
        **attributes:
            Scalar key/value pairs attached to the span.
        """
        if parent is None and not root and trace_id is None:
            parent = self.stack.current_span()
        span = Span.start(name, operation=operation, parent=parent, trace_id=trace_id)
        if parent is None:
            span.sampled = self._should_sample()
        span.set_attributes(attributes)
        span.add_end_listener(self.collector.on_span_end)
        self.collector.on_span_start(span)
        return span

    def current_span(self) -> Span | None:
        return self.stack.current_span()

    def use_span(self, span: Span) -> AbstractContextManager[Span]:
        return self.stack.use_span(span)

    def run_with_span(
        self, span: Span, fn: Callable[..., _T], *args: Any, **kwargs: Any
    ) -> _T:
        return self.stack.run_with_span(span, fn, *args, **kwargs)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def abort(self, trace_id: str, reason: str = "aborted") -> int:
        """Force-close the open spans of a cancelled unit of work."""
        return self.collector.abort(trace_id, reason)

    def start(self) -> None:
        """Start the collector's background sweeper."""
        self.collector.start()
        logger.info(
            "tracer_started",
            sample_rate=self.config.sample_rate,
            buffer_timeout=self.config.buffer_timeout,
            environment=self.config.environment,
        )

    def shutdown(self) -> None:
        """Flush pending traces and close all sinks."""
        self.collector.shutdown()
        logger.info("tracer_shutdown", emitted=self.collector.emitted)
