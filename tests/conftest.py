"""Shared test fixtures."""
from __future__ import annotations

from collections.abc import Iterator

import pytest
import structlog

from spanline.tracing.collector import TraceCollector
from spanline.tracing.sinks import InMemoryTraceSink
from spanline.tracing.tracer import Tracer


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    yield
    structlog.reset_defaults()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> InMemoryTraceSink:
    return InMemoryTraceSink()


@pytest.fixture
def collector(sink: InMemoryTraceSink, clock: FakeClock) -> TraceCollector:
    return TraceCollector(sinks=[sink], buffer_timeout=5.0, clock=clock)


@pytest.fixture
def tracer(collector: TraceCollector) -> Iterator[Tracer]:
    tr = Tracer(collector=collector)
    yield tr
    collector.shutdown(flush=False)
