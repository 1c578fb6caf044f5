"""OpenTelemetry tracing utilities for stageflow.

Spans wrap pipeline executions, stages and health checks. Only the
OpenTelemetry API is required; without an SDK configured by the host the
spans are no-ops.

Span Names:
    - stageflow.execution: One pass of the orchestrator loop
    - stageflow.stage: One environment's stage
    - stageflow.deploy: Strategy run against one environment
    - stageflow.health_check: One health check with its retries
    - stageflow.rollback: Rollback deployment
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

if TYPE_CHECKING:
    from opentelemetry.trace import Span, Tracer

_TRACER_NAME = "stageflow"

_tracer_override: Tracer | None = None


def get_tracer() -> Tracer:
    """Get the tracer used for stageflow spans.

    Returns:
        The injected test tracer if one is set, otherwise the global tracer.
    """
    if _tracer_override is not None:
        return _tracer_override
    return trace.get_tracer(_TRACER_NAME)


def set_tracer(tracer: Tracer | None) -> None:
    """Set the module-level tracer (for testing).

    Args:
        tracer: Tracer instance to use, or None to reset.
    """
    global _tracer_override
    _tracer_override = tracer


@contextmanager
def create_span(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Create a span as a context manager.

    Exceptions leaving the block mark the span as errored and are re-raised.

    Args:
        name: The name for the span.
        attributes: Optional attributes set on the span. None values are skipped.

    Yields:
        The created span for additional attribute setting.

    Examples:
        >>> with create_span("stageflow.stage", attributes={"environment": "dev"}) as span:
        ...     span.set_attribute("stage.status", "promoted")
    """
    tracer = get_tracer()
    with tracer.start_as_current_span(
        name,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.set_attribute("exception.type", type(e).__name__)
            span.set_attribute("exception.message", str(e))
            raise


__all__ = ["create_span", "get_tracer", "set_tracer"]
