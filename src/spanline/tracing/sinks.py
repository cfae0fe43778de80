"""Pluggable trace sinks: in-memory, JSONL file, structlog and HTTP."""

from __future__ import annotations

import json
import queue
import threading
from abc import ABC, abstractmethod
from collections import deque
from pathlib import Path

import httpx
import structlog

from spanline.core.exceptions import SinkUnavailableError
from spanline.tracing.models import TraceTree

logger = structlog.get_logger(__name__)


class TraceSink(ABC):
    """Abstract base for trace sinks.

    :meth:`emit` is fire-and-forget: it must return quickly and must not
    wait on the network. A sink that cannot take a trace raises
    :class:`SinkUnavailableError`; the collector logs it and moves on.
    """

    @abstractmethod
    def emit(self, tree: TraceTree) -> None:
        """Hand over a completed trace."""

    def close(self) -> None:
        """Release resources held by the sink."""


class InMemoryTraceSink(TraceSink):
    """Circular-buffer sink backed by :class:`collections.deque`.

    Args:
        max_entries: Maximum number of traces to retain (default 1 000).
    """

    def __init__(self, max_entries: int = 1000) -> None:
        self._traces: deque[TraceTree] = deque(maxlen=max_entries)

    def emit(self, tree: TraceTree) -> None:
        self._traces.append(tree)

    @property
    def traces(self) -> list[TraceTree]:
        """Return all stored traces (oldest first)."""
        return list(self._traces)

    def get(self, trace_id: str) -> TraceTree | None:
        for tree in reversed(self._traces):
            if tree.trace_id == trace_id:
                return tree
        return None

    def clear(self) -> None:
        self._traces.clear()


class FileTraceSink(TraceSink):
    """Append-only JSONL file sink; one nested trace per line."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    def emit(self, tree: TraceTree) -> None:
        line = json.dumps(tree.to_nested(), default=str, sort_keys=True)
        try:
            with self._lock, self._path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        except OSError as exc:
            raise SinkUnavailableError(
                f"Cannot write trace to {self._path}: {exc}",
                code="FILE_SINK_IO",
                details={"path": str(self._path)},
            ) from exc

    def read(self) -> list[dict[str, object]]:
        """Load every stored trace back as nested dicts."""
        if not self._path.exists():
            return []
        with self._path.open("r", encoding="utf-8") as fh:
            return [json.loads(line) for line in fh if line.strip()]


class StructlogTraceSink(TraceSink):
    """Sink that emits a one-line summary of each trace via :mod:`structlog`."""

    def __init__(self, log_level: str = "info") -> None:
        self._log_level = log_level
        self._logger = structlog.get_logger("spanline.traces")

    def emit(self, tree: TraceTree) -> None:
        log_fn = getattr(self._logger, self._log_level, self._logger.info)
        log_fn(
            "trace_emitted",
            trace_id=tree.trace_id,
            root=tree.root.name,
            operation=tree.root.operation,
            status=str(tree.root.status),
            span_count=tree.span_count,
            duration_ms=round(tree.root.duration_ms, 3),
            has_errors=tree.has_errors,
            environment=tree.environment,
        )


class HttpTraceSink(TraceSink):
    """POSTs traces as JSON to a collector endpoint using httpx.

    :meth:`emit` only enqueues; a daemon worker thread drains the bounded
    queue, so bursts are absorbed up to ``max_queue_size`` and a slow or
    unreachable endpoint never blocks the caller. Delivery failures are
    logged and counted, never raised.

    Args:
        url: Endpoint receiving ``POST`` requests with the nested trace.
        api_key: Sent as a bearer token when given.
        max_queue_size: Traces buffered before :meth:`emit` starts raising
            :class:`SinkUnavailableError`.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use
            :class:`httpx.MockTransport`).
    """

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        max_queue_size: int = 1000,
        timeout: float = 10.0,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._url = url
        request_headers = dict(headers or {})
        if api_key:
            request_headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            headers=request_headers, timeout=timeout, transport=transport
        )
        self._queue: queue.Queue[TraceTree | None] = queue.Queue(maxsize=max_queue_size)
        self._closed = False
        self.delivered = 0
        self.failed = 0
        self._worker = threading.Thread(
            target=self._run, name="spanline-http-sink", daemon=True
        )
        self._worker.start()

    def emit(self, tree: TraceTree) -> None:
        if self._closed:
            raise SinkUnavailableError(
                "HTTP sink is closed", code="SINK_CLOSED", details={"url": self._url}
            )
        try:
            self._queue.put_nowait(tree)
        except queue.Full as exc:
            raise SinkUnavailableError(
                "HTTP sink queue is full",
                code="SINK_QUEUE_FULL",
                details={"url": self._url, "trace_id": tree.trace_id},
            ) from exc

    def flush(self) -> None:
        """Block until every queued trace has been attempted."""
        self._queue.join()

    def close(self, timeout: float = 5.0) -> None:
        """Stop accepting traces, drain the queue and close the client."""
        if self._closed:
            return
        self._closed = True
        self._queue.put(None)
        self._worker.join(timeout)
        self._client.close()

    def _run(self) -> None:
        while True:
            tree = self._queue.get()
            try:
                if tree is None:
                    return
                self._deliver(tree)
            finally:
                self._queue.task_done()

    def _deliver(self, tree: TraceTree) -> None:
        try:
            resp = self._client.post(self._url, json=tree.to_nested())
        except httpx.HTTPError as exc:
            self.failed += 1
            logger.warning(
                "http_sink_delivery_failed",
                url=self._url,
                trace_id=tree.trace_id,
                error=str(exc),
            )
            return
        if resp.status_code >= 400:  # noqa: PLR2004
            self.failed += 1
            logger.warning(
                "http_sink_rejected",
                url=self._url,
                trace_id=tree.trace_id,
                status_code=resp.status_code,
            )
            return
        self.delivered += 1
