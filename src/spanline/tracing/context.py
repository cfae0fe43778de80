"""Active-span tracking per logical unit of work.

The active span lives in a :class:`contextvars.ContextVar`, so every thread
and every asyncio task sees its own value. Tasks created while a span is
active start with that span as their active span (asyncio copies the
context on task creation); changes made inside a task never leak back to
the code that spawned it.
"""

from __future__ import annotations

import contextvars
import functools
import inspect
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Iterator, TypeVar

from spanline.tracing.span import Span

_T = TypeVar("_T")


class SpanStack:
    """Tracks the currently active :class:`Span` for the calling context.

    Each instance owns its own context variable, so two stacks (e.g. two
    tracers in one test run) never see each other's spans.

    Usage::

        stack = SpanStack()
        root = Span.start("request")
        stack.run_with_span(root, handle_request, payload)

        async def handler() -> dict:
            child = Span.start("db.query", parent=stack.current_span())
            ...

        await stack.run_with_span(root, handler)
    """

    def __init__(self, name: str = "spanline_active_span") -> None:
        self._active: contextvars.ContextVar[Span | None] = contextvars.ContextVar(
            name, default=None
        )

    def current_span(self) -> Span | None:
        """Return the active span of the calling unit of work, or ``None``."""
        return self._active.get()

    @contextmanager
    def use_span(self, span: Span) -> Iterator[Span]:
        """Make *span* active inside the ``with`` block.

        The previous active span is restored on exit, whether the block
        returns or raises.
        """
        token = self._active.set(span)
        try:
            yield span
        finally:
            self._active.reset(token)

    def run_with_span(
        self, span: Span, fn: Callable[..., _T], *args: Any, **kwargs: Any
    ) -> _T:
        """Call *fn* with *span* active and return its result unchanged.

        If *fn* is a coroutine function, the return value is a coroutine;
        *span* stays active across every await inside it once the caller
        awaits it. Exceptions propagate unchanged in both cases.
        """
        if inspect.iscoroutinefunction(fn):
            return self._run_async(span, fn, *args, **kwargs)  # type: ignore[return-value]
        with self.use_span(span):
            return fn(*args, **kwargs)

    async def _run_async(
        self,
        span: Span,
        fn: Callable[..., Awaitable[_T]],
        *args: Any,
        **kwargs: Any,
    ) -> _T:
        with self.use_span(span):
            return await fn(*args, **kwargs)

    def wrap(self, span: Span, fn: Callable[..., _T]) -> Callable[..., _T]:
        """Bind *span* to *fn* for a later call, e.g. on another thread.

        ``executor.submit(stack.wrap(span, work))`` runs ``work`` with
        *span* active on the worker thread.
        """

        @functools.wraps(fn)
        def _wrapped(*args: Any, **kwargs: Any) -> _T:
            return self.run_with_span(span, fn, *args, **kwargs)

        return _wrapped
