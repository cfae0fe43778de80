"""Immutable snapshots of finished spans and assembled traces."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from spanline.core.constants import SpanStatus

AttributeValue = str | bool | int | float


class SpanRecord(BaseModel):
    """Frozen copy of a closed :class:`~spanline.tracing.span.Span`."""

    model_config = ConfigDict(frozen=True)

    span_id: str
    parent_id: str | None = None
    trace_id: str
    name: str
    operation: str
    status: SpanStatus = SpanStatus.OK
    error: str | None = None
    timestamp: datetime
    """Wall-clock start time (UTC)."""
    duration_ms: float
    attributes: dict[str, AttributeValue] = Field(default_factory=dict)
    forced: bool = False
    """``True`` when the collector force-closed the span."""

    @property
    def end_timestamp(self) -> datetime:
        return self.timestamp + timedelta(milliseconds=self.duration_ms)


class TraceTree(BaseModel):
    """A root span plus every descendant recorded under the same trace id.

    Built by the :class:`~spanline.tracing.collector.TraceCollector` once the
    whole trace has closed, then handed to the sinks. Frozen: sinks may share
    the same instance safely.
    """

    model_config = ConfigDict(frozen=True)

    trace_id: str
    root: SpanRecord
    spans: tuple[SpanRecord, ...] = ()
    """Descendant spans (the root excluded), in start order."""
    environment: str = "development"
    emitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def span_count(self) -> int:
        """Total number of spans including the root."""
        return len(self.spans) + 1

    @property
    def has_errors(self) -> bool:
        return self.root.status == SpanStatus.ERROR or any(
            s.status == SpanStatus.ERROR for s in self.spans
        )

    def all_spans(self) -> list[SpanRecord]:
        return [self.root, *self.spans]

    def children_of(self, span_id: str) -> list[SpanRecord]:
        """Return the direct children of *span_id*."""
        return [s for s in self.spans if s.parent_id == span_id]

    def find(self, name: str) -> SpanRecord | None:
        """Return the first span named *name*, or ``None``."""
        for span in self.all_spans():
            if span.name == name:
                return span
        return None

    def to_nested(self) -> dict[str, Any]:
        """Serialise the tree as nested dicts with a ``children`` key per span."""

        def _node(record: SpanRecord) -> dict[str, Any]:
            data = record.model_dump(mode="json")
            data["children"] = [_node(c) for c in self.children_of(record.span_id)]
            return data

        return {
            "trace_id": self.trace_id,
            "environment": self.environment,
            "emitted_at": self.emitted_at.isoformat(),
            "root": _node(self.root),
        }
