from spanline.tracing.collector import TraceCollector
from spanline.tracing.context import SpanStack
from spanline.tracing.models import SpanRecord, TraceTree
from spanline.tracing.otel import OTelTraceSink
from spanline.tracing.sinks import (
    FileTraceSink,
    HttpTraceSink,
    InMemoryTraceSink,
    StructlogTraceSink,
    TraceSink,
)
from spanline.tracing.span import Span
from spanline.tracing.tracer import Tracer, build_default_sinks

__all__ = [
    "FileTraceSink",
    "HttpTraceSink",
    "InMemoryTraceSink",
    "OTelTraceSink",
    "Span",
    "SpanRecord",
    "SpanStack",
    "StructlogTraceSink",
    "TraceCollector",
    "TraceSink",
    "TraceTree",
    "Tracer",
    "build_default_sinks",
]
