"""OpenTelemetry and structlog integration for stageflow.

- create_span: Span context manager used around executions, stages and checks
- configure_logging / add_trace_context: structlog setup with trace correlation
- PipelineMetrics: Counters and histograms for executions, stages, rollbacks

Example:
    >>> from stageflow.telemetry import configure_logging
    >>> configure_logging(log_level="INFO", json_output=True)
"""

from __future__ import annotations

from stageflow.telemetry.logging import add_trace_context, configure_logging
from stageflow.telemetry.metrics import (
    PipelineMetrics,
    get_pipeline_metrics,
    set_pipeline_metrics,
)
from stageflow.telemetry.tracing import create_span, get_tracer, set_tracer

__all__ = [
    "PipelineMetrics",
    "add_trace_context",
    "configure_logging",
    "create_span",
    "get_pipeline_metrics",
    "get_tracer",
    "set_pipeline_metrics",
    "set_tracer",
]
