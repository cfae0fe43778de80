"""Trace span -- a single timed unit of work in a trace tree."""

from __future__ import annotations

import itertools
import secrets
import threading
import time
import uuid
import warnings
from datetime import datetime, timezone
from typing import Callable

import structlog

from spanline.core.constants import ATTRIBUTE_VALUE_TYPES, SpanOperation, SpanStatus
from spanline.core.exceptions import InvalidStateError, OrphanedSpanWarning
from spanline.tracing.models import AttributeValue, SpanRecord

logger = structlog.get_logger(__name__)

# Process-wide counter prefix keeps span ids unique for the process lifetime.
_span_counter = itertools.count(1)

EndListener = Callable[["Span"], None]


def new_span_id() -> str:
    """Return a 16-hex-char span id, unique within this process."""
    return f"{next(_span_counter) & 0xFFFFFFFF:08x}{secrets.token_hex(4)}"


def new_trace_id() -> str:
    return uuid.uuid4().hex


class Span:
    """Represents a single unit of work in a hierarchical trace.

    Spans form a tree: each has a ``span_id`` and an optional ``parent_id``
    linking it to its parent span. All spans of one logical unit of work
    share a ``trace_id``.

    A span is mutable until :meth:`end` is called and read-only afterwards:
    attribute writes and status changes on a closed span raise
    :class:`InvalidStateError`.
    """

    def __init__(
        self,
        name: str,
        operation: str = SpanOperation.FUNCTION,
        parent_id: str | None = None,
        trace_id: str | None = None,
        sampled: bool = True,
    ) -> None:
        self.span_id: str = new_span_id()
        self.parent_id: str | None = parent_id
        self.trace_id: str = trace_id or new_trace_id()
        self.name: str = name
        self.operation: str = str(operation)
        self.sampled: bool = sampled
        self.attributes: dict[str, AttributeValue] = {}
        self.timestamp: datetime = datetime.now(timezone.utc)
        self.start_time: float = time.monotonic()
        self.end_time: float | None = None
        self.status: SpanStatus = SpanStatus.OK
        self.error: str | None = None
        self.forced: bool = False

        self._parent: Span | None = None
        self._status_set = False
        self._lock = threading.Lock()
        self._end_listeners: list[EndListener] = []

    @classmethod
    def start(
        cls,
        name: str,
        operation: str = SpanOperation.FUNCTION,
        parent: Span | None = None,
        trace_id: str | None = None,
    ) -> Span:
        """Create a span starting now.

        A child inherits its parent's ``trace_id`` and sampling decision;
        *trace_id* is only honoured for root spans.
        """
        if parent is None:
            return cls(name, operation=operation, trace_id=trace_id)
        span = cls(
            name,
            operation=operation,
            parent_id=parent.span_id,
            trace_id=parent.trace_id,
            sampled=parent.sampled,
        )
        span._parent = parent
        return span

    # ------------------------------------------------------------------ #
    # State
    # ------------------------------------------------------------------ #

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @property
    def is_ended(self) -> bool:
        return self.end_time is not None

    @property
    def parent(self) -> Span | None:
        return self._parent

    def duration(self) -> float:
        """Return elapsed seconds between start and end.

        Raises:
            InvalidStateError: If the span has not ended yet.
        """
        if self.end_time is None:
            raise InvalidStateError(
                f"Span '{self.name}' has not ended",
                code="SPAN_OPEN",
                details={"span_id": self.span_id},
            )
        return self.end_time - self.start_time

    @property
    def duration_ms(self) -> float | None:
        """Elapsed milliseconds, or ``None`` if not yet ended."""
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time) * 1000.0

    # ------------------------------------------------------------------ #
    # Mutation
    # ------------------------------------------------------------------ #

    def _ensure_open(self, action: str) -> bool:
        """Return ``False`` for a force-closed span, raise for one the caller ended."""
        if self.end_time is None:
            return True
        if self.forced:
            logger.debug(
                "force_closed_span_write_ignored",
                span_id=self.span_id,
                span_name=self.name,
                action=action,
            )
            return False
        raise InvalidStateError(
            f"Cannot {action} on ended span '{self.name}'",
            code="SPAN_CLOSED",
            details={"span_id": self.span_id},
        )

    def set_attribute(self, key: str, value: AttributeValue) -> None:
        """Attach a scalar attribute (str, int, float or bool) to this span.

        Writes to a span the collector force-closed are ignored.

        Raises:
            InvalidStateError: If the caller already ended the span.
            TypeError: If *value* is not one of the permitted scalar types.
        """
        if not isinstance(value, ATTRIBUTE_VALUE_TYPES):
            raise TypeError(
                f"Span attribute '{key}' must be str, int, float or bool, "
                f"got {type(value).__name__}"
            )
        with self._lock:
            if self._ensure_open("set attribute"):
                self.attributes[key] = value

    def set_attributes(self, attributes: dict[str, AttributeValue]) -> None:
        for key, value in attributes.items():
            self.set_attribute(key, value)

    def set_status(self, status: SpanStatus | str) -> bool:
        """Set the final status. Allowed once per span.

        Returns ``False`` when the span was force-closed and the call was
        ignored.

        Raises:
            InvalidStateError: If the caller already ended the span or the
                status was already set.
        """
        resolved = SpanStatus(status)
        with self._lock:
            if not self._ensure_open("set status"):
                return False
            if self._status_set:
                raise InvalidStateError(
                    f"Status of span '{self.name}' already set to {self.status}",
                    code="STATUS_SET",
                    details={"span_id": self.span_id},
                )
            self.status = resolved
            self._status_set = True
            return True

    def set_error(self, error: str) -> None:
        """Mark this span as failed with the given error message."""
        if self.set_status(SpanStatus.ERROR):
            self.error = error

    def record_exception(self, exc: BaseException) -> None:
        """Mark the span failed and record the exception type and message."""
        self.set_error(f"{type(exc).__name__}: {exc}")
        self.set_attribute("exception.type", type(exc).__name__)
        self.set_attribute("exception.message", str(exc))

    def add_end_listener(self, listener: EndListener) -> None:
        """Register *listener* to be called once, after the span ends."""
        self._end_listeners.append(listener)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def end(self, status: SpanStatus | str | None = None) -> None:
        """Record the end time and final status.

        Idempotent: only the first call takes effect; later calls log a
        ``span_already_ended`` warning and return.

        Args:
            status: Final status. ``None`` keeps the current status (``ok``
                unless :meth:`set_status` / :meth:`set_error` was called).

        Raises:
            InvalidStateError: If *status* conflicts with a status that was
                already set explicitly.
        """
        with self._lock:
            if self.end_time is not None:
                log_fn = logger.debug if self.forced else logger.warning
                log_fn(
                    "span_already_ended",
                    span_id=self.span_id,
                    span_name=self.name,
                    trace_id=self.trace_id,
                )
                return
            if status is not None:
                resolved = SpanStatus(status)
                if self._status_set and resolved != self.status:
                    raise InvalidStateError(
                        f"Status of span '{self.name}' already set to {self.status}",
                        code="STATUS_SET",
                        details={"span_id": self.span_id},
                    )
                self.status = resolved
                self._status_set = True
            self.end_time = time.monotonic()
        self._after_end()

    def end_with_error(self, error: str | None = None) -> bool:
        """End the span as failed without ever raising for its status.

        The status becomes ``error`` unless one was already set
        explicitly, in which case that one is kept. Returns ``False`` if
        the span had already ended.
        """
        with self._lock:
            if self.end_time is not None:
                return False
            if not self._status_set:
                self.status = SpanStatus.ERROR
                self._status_set = True
                if error is not None:
                    self.error = error
            self.end_time = time.monotonic()
        self._after_end()
        return True

    def force_end(self, reason: str) -> bool:
        """Close an abandoned span with status ``error``.

        Used by the collector on timeout and abort. Overrides any status set
        earlier. Returns ``False`` if the span had already ended.
        """
        with self._lock:
            if self.end_time is not None:
                return False
            self.status = SpanStatus.ERROR
            self._status_set = True
            self.error = f"force-closed: {reason}"
            self.forced = True
            self.end_time = time.monotonic()
        self._after_end()
        return True

    def _after_end(self) -> None:
        parent = self._parent
        if parent is not None and parent.end_time is not None and not self.forced:
            logger.warning(
                "span_outlived_parent",
                span_id=self.span_id,
                span_name=self.name,
                parent_id=parent.span_id,
                trace_id=self.trace_id,
            )
            warnings.warn(
                f"Span '{self.name}' ended after its parent '{parent.name}'",
                OrphanedSpanWarning,
                stacklevel=3,
            )
        for listener in list(self._end_listeners):
            try:
                listener(self)
            except Exception:
                logger.warning(
                    "span_end_listener_error",
                    span_id=self.span_id,
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    exc_info=True,
                )

    # ------------------------------------------------------------------ #
    # Export
    # ------------------------------------------------------------------ #

    def to_record(self) -> SpanRecord:
        """Return a frozen snapshot of this (ended) span.

        Raises:
            InvalidStateError: If the span has not ended yet.
        """
        duration = self.duration()
        return SpanRecord(
            span_id=self.span_id,
            parent_id=self.parent_id,
            trace_id=self.trace_id,
            name=self.name,
            operation=self.operation,
            status=self.status,
            error=self.error,
            timestamp=self.timestamp,
            duration_ms=duration * 1000.0,
            attributes=dict(self.attributes),
            forced=self.forced,
        )

    def to_dict(self) -> dict[str, object]:
        """Serialise the span to a plain dictionary."""
        return {
            "span_id": self.span_id,
            "parent_id": self.parent_id,
            "trace_id": self.trace_id,
            "name": self.name,
            "operation": self.operation,
            "status": str(self.status),
            "error": self.error,
            "duration_ms": self.duration_ms,
            "attributes": dict(self.attributes),
        }

    def __repr__(self) -> str:
        state = "ended" if self.is_ended else "open"
        return (
            f"Span(name={self.name!r}, span_id={self.span_id!r}, "
            f"trace_id={self.trace_id!r}, {state})"
        )
