"""structlog setup for stageflow with OpenTelemetry trace correlation.

Every component logs through ``structlog.get_logger(__name__)`` with
snake_case event names. Log lines emitted while a pipeline span is active
carry its ``trace_id`` and ``span_id``, so an execution's log lines can be
joined with its stage and health check spans.
"""

from __future__ import annotations

import logging
from collections.abc import MutableMapping
from typing import Any

import structlog
from opentelemetry import trace

EventDict = MutableMapping[str, Any]


def add_trace_context(_logger: Any, _method_name: str, event_dict: EventDict) -> EventDict:
    """structlog processor adding the active span's ids to a log event.

    Events logged outside a recording span pass through unchanged.
    """
    context = trace.get_current_span().get_span_context()
    if context.is_valid:
        event_dict["trace_id"] = trace.format_trace_id(context.trace_id)
        event_dict["span_id"] = trace.format_span_id(context.span_id)
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Install the stageflow structlog pipeline.

    Hosts call this once at start-up. Libraries embedding stageflow can
    skip it and keep their own structlog configuration; the trace
    processor is exported for them to add.

    Args:
        log_level: Lowest level emitted, by name (case-insensitive).
        json_output: Render JSON lines instead of the coloured console format.

    Raises:
        ValueError: If ``log_level`` is not a standard level name.

    Examples:
        >>> configure_logging(log_level="DEBUG", json_output=False)
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    renderer: Any = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            add_trace_context,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=False,
    )


__all__ = ["add_trace_context", "configure_logging"]
