"""Trace collector -- buffers spans per trace id and emits finished trees."""

from __future__ import annotations

import threading
import time
import warnings
from typing import Callable

import structlog

from spanline.core.exceptions import OrphanedSpanWarning, SinkUnavailableError
from spanline.tracing.models import TraceTree
from spanline.tracing.sinks import TraceSink
from spanline.tracing.span import Span

logger = structlog.get_logger(__name__)


class _TraceBuffer:
    """Spans of one trace id. Guarded by its own lock."""

    __slots__ = ("trace_id", "lock", "spans", "open_ids", "root", "last_activity", "done")

    def __init__(self, trace_id: str, now: float) -> None:
        self.trace_id = trace_id
        self.lock = threading.Lock()
        self.spans: dict[str, Span] = {}
        self.open_ids: set[str] = set()
        self.root: Span | None = None
        self.last_activity = now
        self.done = False

    def add(self, span: Span) -> None:
        self.spans.setdefault(span.span_id, span)
        if span.is_root and self.root is None:
            self.root = span

    def open_spans(self) -> list[Span]:
        """Open spans, latest-started first so children close before parents."""
        spans = [self.spans[sid] for sid in self.open_ids if sid in self.spans]
        spans.sort(key=lambda s: (s.is_root, -s.start_time))
        return spans


# Trace ids remembered after emission so late spans are dropped, not re-buffered.
_COMPLETED_MEMORY = 10_000


class TraceCollector:
    """Aggregates closed spans into :class:`TraceTree` objects.

    Spans are buffered per ``trace_id``. Once the root span has ended and no
    span of that trace is still open, the tree is assembled and handed to
    every sink, and the buffer is dropped. Spans that never close are
    force-closed with status ``error`` after ``buffer_timeout`` seconds of
    inactivity, which completes (and emits) their trace.

    Each trace id has its own lock; the buffer map itself is only touched
    through single dict operations.

    Sink failures are logged and swallowed -- tracing never fails the caller.

    Usage::

        collector = TraceCollector(sinks=[InMemoryTraceSink()], buffer_timeout=5.0)
        collector.start()            # background sweeper
        ...
        collector.shutdown()         # force-flush and close sinks
    """

    def __init__(
        self,
        sinks: list[TraceSink] | None = None,
        buffer_timeout: float = 5.0,
        sweep_interval: float = 1.0,
        environment: str = "development",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sinks: list[TraceSink] = list(sinks) if sinks else []
        self._buffer_timeout = buffer_timeout
        self._sweep_interval = sweep_interval
        self._environment = environment
        self._clock = clock
        self._buffers: dict[str, _TraceBuffer] = {}
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None
        self._completed: dict[str, None] = {}
        self._completed_lock = threading.Lock()
        self.emitted = 0
        self.dropped = 0

    # ------------------------------------------------------------------ #
    # Configuration
    # ------------------------------------------------------------------ #

    def add_sink(self, sink: TraceSink) -> TraceCollector:
        """Register a new sink.  Returns ``self`` for chaining."""
        self._sinks.append(sink)
        return self

    @property
    def sinks(self) -> list[TraceSink]:
        return list(self._sinks)

    @property
    def buffer_timeout(self) -> float:
        return self._buffer_timeout

    @property
    def pending_trace_ids(self) -> list[str]:
        """Trace ids that still have buffered spans."""
        return list(self._buffers)

    def is_pending(self, trace_id: str) -> bool:
        """Return ``True`` while *trace_id* has a buffered, unemitted trace."""
        return trace_id in self._buffers

    def _mark_completed(self, trace_id: str) -> None:
        with self._completed_lock:
            self._completed[trace_id] = None
            if len(self._completed) > _COMPLETED_MEMORY:
                del self._completed[next(iter(self._completed))]

    def _segment(self, trace_id: str) -> _TraceBuffer:
        buf = self._buffers.get(trace_id)
        if buf is None:
            # setdefault is atomic: concurrent callers end up with one buffer.
            buf = self._buffers.setdefault(trace_id, _TraceBuffer(trace_id, self._clock()))
        return buf

    # ------------------------------------------------------------------ #
    # Span events
    # ------------------------------------------------------------------ #

    def on_span_start(self, span: Span) -> None:
        """Track a newly started span so it can be force-closed if abandoned."""
        if not span.sampled:
            return
        if span.trace_id in self._completed:
            if not span.is_root:
                logger.debug("late_span_ignored", trace_id=span.trace_id, span_name=span.name)
                return
            # A new root reusing a finished trace id starts a fresh trace.
            with self._completed_lock:
                self._completed.pop(span.trace_id, None)
        buf = self._segment(span.trace_id)
        with buf.lock:
            if buf.done or (buf.root is not None and buf.root.is_ended):
                logger.debug(
                    "late_span_ignored",
                    trace_id=span.trace_id,
                    span_id=span.span_id,
                    span_name=span.name,
                )
                return
            if span.is_root and buf.root is not None and buf.root is not span:
                logger.warning(
                    "duplicate_trace_id",
                    trace_id=span.trace_id,
                    span_id=span.span_id,
                    span_name=span.name,
                    root_span_id=buf.root.span_id,
                )
            buf.add(span)
            buf.open_ids.add(span.span_id)
            buf.last_activity = self._clock()

    def on_span_end(self, span: Span) -> None:
        """Buffer a closed span; emit its trace when the trace is complete.

        Never raises.
        """
        if not span.sampled:
            return
        if span.trace_id in self._completed:
            logger.debug("late_span_dropped", trace_id=span.trace_id, span_name=span.name)
            return
        buf = self._segment(span.trace_id)
        tree: TraceTree | None = None
        completed = False
        with buf.lock:
            if buf.done:
                logger.debug(
                    "late_span_dropped",
                    trace_id=span.trace_id,
                    span_id=span.span_id,
                    span_name=span.name,
                )
                return
            buf.add(span)
            buf.open_ids.discard(span.span_id)
            buf.last_activity = self._clock()
            root = buf.root
            if root is not None and root.is_ended:
                if buf.open_ids:
                    logger.debug(
                        "trace_waiting_for_spans",
                        trace_id=buf.trace_id,
                        open_spans=len(buf.open_ids),
                    )
                else:
                    buf.done = True
                    completed = True
                    tree = self._build_tree(buf, root)

        if completed:
            self._mark_completed(buf.trace_id)
            self._buffers.pop(buf.trace_id, None)
            self._emit(tree)

    def _build_tree(self, buf: _TraceBuffer, root: Span) -> TraceTree | None:
        # Only spans linked to the root and started before it closed belong
        # to the tree.
        cutoff = root.end_time if root.end_time is not None else float("inf")
        members: set[str] = {root.span_id}
        candidates = sorted(
            (s for s in buf.spans.values() if s is not root and s.is_ended),
            key=lambda s: s.start_time,
        )
        descendants: list[Span] = []
        for span in candidates:
            if span.parent_id in members and span.start_time <= cutoff:
                members.add(span.span_id)
                descendants.append(span)
        skipped = len(candidates) - len(descendants)
        if skipped:
            logger.debug("spans_outside_tree_skipped", trace_id=buf.trace_id, count=skipped)
        try:
            return TraceTree(
                trace_id=buf.trace_id,
                root=root.to_record(),
                spans=tuple(s.to_record() for s in descendants),
                environment=self._environment,
            )
        except Exception:
            logger.error("trace_build_failed", trace_id=buf.trace_id, exc_info=True)
            return None

    def _emit(self, tree: TraceTree | None) -> None:
        if tree is None:
            self.dropped += 1
            return
        self.emitted += 1
        for sink in self._sinks:
            try:
                sink.emit(tree)
            except SinkUnavailableError as exc:
                self.dropped += 1
                logger.warning(
                    "sink_unavailable",
                    sink=type(sink).__name__,
                    trace_id=tree.trace_id,
                    error=str(exc),
                    code=exc.code,
                )
            except Exception:
                self.dropped += 1
                logger.error(
                    "sink_emit_failed",
                    sink=type(sink).__name__,
                    trace_id=tree.trace_id,
                    exc_info=True,
                )

    # ------------------------------------------------------------------ #
    # Forced closure
    # ------------------------------------------------------------------ #

    def _force_close(self, buf: _TraceBuffer, reason: str) -> int:
        with buf.lock:
            if buf.done:
                return 0
            open_spans = buf.open_spans()
            rootless = buf.root is None
        # Ending spans re-enters on_span_end, so the lock must be released.
        closed = sum(1 for span in open_spans if span.force_end(reason))
        if closed:
            logger.warning(
                "open_spans_force_closed",
                trace_id=buf.trace_id,
                count=closed,
                reason=reason,
            )
            warnings.warn(
                f"{closed} span(s) of trace {buf.trace_id} force-closed ({reason})",
                OrphanedSpanWarning,
                stacklevel=3,
            )
        if rootless:
            with buf.lock:
                buf.done = True
                discarded = len(buf.spans)
            self._buffers.pop(buf.trace_id, None)
            self.dropped += 1
            logger.warning(
                "rootless_trace_discarded",
                trace_id=buf.trace_id,
                spans=discarded,
                reason=reason,
            )
        return closed

    def flush_expired(self, now: float | None = None) -> int:
        """Force-close traces idle for longer than ``buffer_timeout``.

        Returns the number of spans that were force-closed.
        """
        current = self._clock() if now is None else now
        expired = [
            buf
            for buf in list(self._buffers.values())
            if current - buf.last_activity >= self._buffer_timeout
        ]
        return sum(self._force_close(buf, "timeout") for buf in expired)

    def abort(self, trace_id: str, reason: str = "aborted") -> int:
        """Force-close every open span of *trace_id* immediately.

        Used when a unit of work is cancelled (e.g. client disconnect).
        Returns the number of spans closed.
        """
        buf = self._buffers.get(trace_id)
        if buf is None:
            return 0
        return self._force_close(buf, reason)

    def flush_all(self, reason: str = "shutdown") -> int:
        """Force-close every buffered trace."""
        return sum(self._force_close(buf, reason) for buf in list(self._buffers.values()))

    # ------------------------------------------------------------------ #
    # Background sweeper
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Start the background thread that calls :meth:`flush_expired`."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, name="spanline-sweeper", daemon=True
        )
        self._sweeper.start()

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self._sweep_interval):
            try:
                self.flush_expired()
            except Exception:
                logger.error("trace_sweep_failed", exc_info=True)

    def shutdown(self, flush: bool = True, close_sinks: bool = True) -> None:
        """Stop the sweeper, optionally force-flush pending traces and close sinks."""
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=self._sweep_interval + 1.0)
            self._sweeper = None
        if flush:
            self.flush_all()
        if close_sinks:
            for sink in self._sinks:
                try:
                    sink.close()
                except Exception:
                    logger.warning(
                        "sink_close_error",
                        sink=type(sink).__name__,
                        exc_info=True,
                    )
