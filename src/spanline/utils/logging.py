from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any, cast

import structlog

if TYPE_CHECKING:
    from spanline.core.config import TracingConfig
    from spanline.tracing.context import SpanStack


def span_context_processor(stack: SpanStack) -> structlog.types.Processor:
    """Return a structlog processor that stamps log entries with the active span.

    Adds ``trace_id`` and ``span_id`` keys when a span is active in the
    calling context; entries logged outside any span pass through untouched.
    """

    def _add_span_context(
        _logger: Any, _method: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        span = stack.current_span()
        if span is not None:
            event_dict.setdefault("trace_id", span.trace_id)
            event_dict.setdefault("span_id", span.span_id)
        return event_dict

    return _add_span_context


def configure_logging(
    level: str = "INFO",
    json: bool = True,
    stack: SpanStack | None = None,
) -> None:
    """Configure structlog for spanline.

    Output goes through stdlib logging on stdout. ``json=True`` renders
    machine-parseable JSON lines, ``json=False`` coloured console output.

    Args:
        level: Standard logging level string, e.g. "DEBUG", "INFO", "WARNING".
        json: Render entries as JSON when true.
        stack: When given, every entry logged inside an active span carries
            that span's ``trace_id`` and ``span_id``.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if stack is not None:
        shared_processors.append(span_context_processor(stack))

    renderer: structlog.types.Processor
    if json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)


def configure_from_config(config: TracingConfig, stack: SpanStack | None = None) -> None:
    """Apply the logging fields of a :class:`TracingConfig`."""
    configure_logging(config.log_level, json=config.log_json, stack=stack)


def get_logger(name: str) -> structlog.BoundLogger:
    """Return a named structlog logger."""
    return cast(structlog.BoundLogger, structlog.get_logger(name))
