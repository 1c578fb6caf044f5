"""Unit tests for tracing, log correlation and pipeline metrics."""

from __future__ import annotations

from collections.abc import Generator
from typing import Any

import pytest
import structlog
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from stageflow.telemetry import (
    PipelineMetrics,
    add_trace_context,
    configure_logging,
    create_span,
    set_tracer,
)


@pytest.fixture
def span_exporter() -> Generator[InMemorySpanExporter, None, None]:
    """Route stageflow spans to an in-memory exporter."""
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    set_tracer(provider.get_tracer("stageflow-test"))
    yield exporter
    set_tracer(None)


@pytest.fixture
def metric_reader() -> InMemoryMetricReader:
    return InMemoryMetricReader()


@pytest.fixture
def pipeline_metrics(metric_reader: InMemoryMetricReader) -> PipelineMetrics:
    """PipelineMetrics backed by an SDK provider with an in-memory reader."""
    return PipelineMetrics(meter_provider=MeterProvider(metric_readers=[metric_reader]))


def collected(reader: InMemoryMetricReader) -> dict[str, list[Any]]:
    """Map metric name to its data points."""
    data = reader.get_metrics_data()
    points: dict[str, list[Any]] = {}
    if data is None:
        return points
    for resource_metrics in data.resource_metrics:
        for scope_metrics in resource_metrics.scope_metrics:
            for metric in scope_metrics.metrics:
                points.setdefault(metric.name, []).extend(metric.data.data_points)
    return points


class TestCreateSpan:
    def test_attributes_skip_none(self, span_exporter: InMemorySpanExporter) -> None:
        with create_span("stageflow.stage", attributes={"environment": "dev", "execution.id": None}):
            pass

        (span,) = span_exporter.get_finished_spans()
        assert span.name == "stageflow.stage"
        assert dict(span.attributes or {}) == {"environment": "dev"}

    def test_exception_marks_span_as_error(self, span_exporter: InMemorySpanExporter) -> None:
        with pytest.raises(RuntimeError), create_span("stageflow.deploy"):
            raise RuntimeError("cluster unreachable")

        (span,) = span_exporter.get_finished_spans()
        assert span.status.status_code == StatusCode.ERROR
        assert (span.attributes or {})["exception.type"] == "RuntimeError"


class TestAddTraceContext:
    def test_no_active_span(self) -> None:
        assert add_trace_context(None, "info", {"event": "x"}) == {"event": "x"}

    def test_active_span_ids_are_added(self, span_exporter: InMemorySpanExporter) -> None:
        with create_span("stageflow.execution") as span:
            event = add_trace_context(None, "info", {"event": "x"})
            context = span.get_span_context()

        assert event["trace_id"] == format(context.trace_id, "032x")
        assert event["span_id"] == format(context.span_id, "016x")


class TestConfigureLogging:
    def test_unknown_level_is_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown log level"):
            configure_logging(log_level="LOUD")

    def test_configures_structlog(self) -> None:
        try:
            configure_logging(log_level="warning", json_output=True)
            assert add_trace_context in structlog.get_config()["processors"]
        finally:
            structlog.reset_defaults()


class TestPipelineMetrics:
    def test_execution_and_stage_counters(
        self, pipeline_metrics: PipelineMetrics, metric_reader: InMemoryMetricReader
    ) -> None:
        pipeline_metrics.record_execution("web", "failed")
        pipeline_metrics.record_stage("staging", "rolled_back", duration_seconds=42.0)
        pipeline_metrics.record_stage("staging", "rolled_back", duration_seconds=18.0)

        points = collected(metric_reader)

        (execution,) = points[PipelineMetrics.EXECUTIONS_TOTAL]
        assert execution.value == 1
        assert dict(execution.attributes) == {"pipeline": "web", "status": "failed"}
        (stages,) = points[PipelineMetrics.STAGES_TOTAL]
        assert stages.value == 2
        (duration,) = points[PipelineMetrics.STAGE_DURATION_SECONDS]
        assert duration.sum == 60.0
        assert duration.count == 2

    def test_rollback_outcomes_are_separate_series(
        self, pipeline_metrics: PipelineMetrics, metric_reader: InMemoryMetricReader
    ) -> None:
        pipeline_metrics.record_rollback("prod", success=False)
        pipeline_metrics.record_rollback("prod", success=True)

        points = collected(metric_reader)[PipelineMetrics.ROLLBACKS_TOTAL]

        assert sorted(dict(point.attributes)["outcome"] for point in points) == [
            "failure",
            "success",
        ]

    def test_health_check_counter(
        self, pipeline_metrics: PipelineMetrics, metric_reader: InMemoryMetricReader
    ) -> None:
        pipeline_metrics.record_health_check("http", "timeout")

        (point,) = collected(metric_reader)[PipelineMetrics.HEALTH_CHECKS_TOTAL]
        assert dict(point.attributes) == {"type": "http", "status": "timeout"}

    def test_instruments_are_created_once(self, pipeline_metrics: PipelineMetrics) -> None:
        assert pipeline_metrics.stages_counter is pipeline_metrics.stages_counter
