"""spanline -- per-request span trees with context propagation."""

from spanline.__version__ import __version__

from spanline.core.config import TracingConfig
from spanline.core.constants import SpanOperation, SpanStatus
from spanline.core.exceptions import (
    ConfigurationError,
    InvalidStateError,
    OrphanedSpanWarning,
    SinkUnavailableError,
    SpanlineError,
)
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
from spanline.tracing.tracer import Tracer
from spanline.utils.logging import configure_logging, get_logger

__all__ = [
    "__version__",
    "TracingConfig",
    "SpanOperation",
    "SpanStatus",
    # Errors
    "SpanlineError",
    "ConfigurationError",
    "InvalidStateError",
    "SinkUnavailableError",
    "OrphanedSpanWarning",
    # Tracing
    "Span",
    "SpanStack",
    "SpanRecord",
    "TraceTree",
    "TraceCollector",
    "Tracer",
    # Sinks
    "TraceSink",
    "InMemoryTraceSink",
    "FileTraceSink",
    "StructlogTraceSink",
    "HttpTraceSink",
    "OTelTraceSink",
    # Logging
    "configure_logging",
    "get_logger",
]
