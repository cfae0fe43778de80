"""OpenTelemetry sink -- optional OTel export of finished traces.

Requires the ``opentelemetry-api`` package::

    pip install spanline[otel]

If the package is not installed, the sink logs a warning on instantiation
and :meth:`OTelTraceSink.emit` becomes a silent no-op.

Usage::

    from spanline.tracing.otel import OTelTraceSink

    tracer = Tracer(sinks=[OTelTraceSink(service_name="demo-api")])
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from spanline.core.constants import SpanStatus
from spanline.tracing.models import SpanRecord, TraceTree
from spanline.tracing.sinks import TraceSink

if TYPE_CHECKING:
    from opentelemetry.trace import Span as OTelSpan, Tracer as OTelTracer

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Detect whether opentelemetry is available at runtime.
# ---------------------------------------------------------------------------

_HAS_OTEL = False
try:
    from opentelemetry import trace as _otel_trace  # noqa: F401

    _HAS_OTEL = True
except ImportError:  # pragma: no cover
    pass


def _get_tracer(service_name: str) -> OTelTracer | None:
    """Return an OTel tracer if the API is installed, else ``None``."""
    if not _HAS_OTEL:
        return None
    from opentelemetry import trace  # noqa: PLC0415

    return trace.get_tracer(service_name)


def _to_ns(record: SpanRecord) -> tuple[int, int]:
    start = int(record.timestamp.timestamp() * 1_000_000_000)
    end = start + int(record.duration_ms * 1_000_000)
    return start, end


class OTelTraceSink(TraceSink):
    """A :class:`TraceSink` that replays each trace as OpenTelemetry spans.

    The root record becomes a root OTel span and every descendant a child of
    its parent's OTel span, with the original start time, end time and
    attributes. Error spans get an ``ERROR`` status.

    When an explicit *tracer* is provided (e.g. a mock for testing), the
    sink assumes the tracer implements the OTel ``Tracer`` interface and
    uses it directly.

    Args:
        service_name: The OTel service name used to obtain a tracer.
            Defaults to ``"spanline"``.
        tracer: An explicit :class:`opentelemetry.trace.Tracer` instance.
            If provided, *service_name* is ignored.
    """

    def __init__(
        self,
        service_name: str = "spanline",
        tracer: OTelTracer | None = None,
    ) -> None:
        if tracer is not None:
            self._available = True
            self._tracer: OTelTracer | None = tracer
        elif _HAS_OTEL:
            self._available = True
            self._tracer = _get_tracer(service_name)
        else:
            self._available = False
            self._tracer = None
            logger.warning(
                "opentelemetry_not_installed",
                hint="pip install opentelemetry-api to enable OTel export",
            )

    def emit(self, tree: TraceTree) -> None:
        if not self._available or self._tracer is None:
            return

        records = tree.all_spans()
        started: dict[str, OTelSpan] = {}
        for record in records:
            start_ns, _ = _to_ns(record)
            kwargs: dict[str, Any] = {
                "attributes": {
                    **record.attributes,
                    "spanline.trace_id": tree.trace_id,
                    "spanline.span_id": record.span_id,
                    "spanline.operation": record.operation,
                    "spanline.environment": tree.environment,
                },
                "start_time": start_ns,
            }
            parent = started.get(record.parent_id) if record.parent_id else None
            if parent is not None and _HAS_OTEL:
                from opentelemetry import trace  # noqa: PLC0415

                kwargs["context"] = trace.set_span_in_context(parent)
            started[record.span_id] = self._tracer.start_span(record.name, **kwargs)

        # Children end before their parents.
        for record in reversed(records):
            otel_span = started[record.span_id]
            if record.status == SpanStatus.ERROR:
                otel_span.set_attribute("spanline.error", True)
                if record.error:
                    otel_span.set_attribute("spanline.error.message", record.error)
                if _HAS_OTEL:
                    from opentelemetry.trace import StatusCode  # noqa: PLC0415

                    otel_span.set_status(StatusCode.ERROR, record.error)
            _, end_ns = _to_ns(record)
            otel_span.end(end_time=end_ns)
