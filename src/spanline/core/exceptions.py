from __future__ import annotations

from typing import Any


class SpanlineError(Exception):
    """Base exception for all spanline errors.

    Attributes:
        code: Optional machine-readable error code (e.g. ``"SPAN_CLOSED"``).
        details: Arbitrary key/value context about the error.
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}


class ConfigurationError(SpanlineError): ...


class InvalidStateError(SpanlineError):
    """An operation was attempted on a span in the wrong lifecycle state.

    Raised synchronously to the caller, e.g. when setting an attribute on a
    span that has already ended or asking an open span for its duration.
    """


class SinkUnavailableError(SpanlineError):
    """A sink could not accept a trace.

    The collector catches this, logs it and drops the trace -- it never
    reaches business code.
    """


# ---------------------------------------------------------------------------
# Warnings
# ---------------------------------------------------------------------------


class OrphanedSpanWarning(UserWarning):
    """A child span outlived its parent or never closed.

    Not a hard failure: the span is still recorded (force-closed with status
    ``error`` when it never closes).
    """
