"""OpenTelemetry metrics for pipeline executions.

Metrics Emitted:
    Counters:
        - stageflow_executions_total: Settled executions by pipeline and status
        - stageflow_stages_total: Settled stages by environment and status
        - stageflow_rollbacks_total: Rollback deployments by environment and outcome
        - stageflow_health_checks_total: Health checks by type and status

    Histograms:
        - stageflow_stage_duration_seconds: Stage duration distribution

Example:
    >>> metrics = PipelineMetrics()
    >>> metrics.record_stage("staging", "promoted", duration_seconds=42.0)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from opentelemetry import metrics

if TYPE_CHECKING:
    from opentelemetry.metrics import Counter, Histogram, MeterProvider

logger = structlog.get_logger(__name__)


class PipelineMetrics:
    """OpenTelemetry metrics collector for pipeline operations.

    Instruments are created lazily on first use. All metric names carry the
    ``stageflow_`` prefix.

    Args:
        meter_name: Name for the OpenTelemetry meter.
        meter_version: Version for the meter.
        meter_provider: Provider to use instead of the global one.
    """

    EXECUTIONS_TOTAL = "stageflow_executions_total"
    STAGES_TOTAL = "stageflow_stages_total"
    ROLLBACKS_TOTAL = "stageflow_rollbacks_total"
    HEALTH_CHECKS_TOTAL = "stageflow_health_checks_total"
    STAGE_DURATION_SECONDS = "stageflow_stage_duration_seconds"

    def __init__(
        self,
        meter_name: str = "stageflow",
        meter_version: str = "0.1.0",
        meter_provider: MeterProvider | None = None,
    ) -> None:
        self._meter = metrics.get_meter(meter_name, meter_version, meter_provider=meter_provider)

        self._executions_counter: Counter | None = None
        self._stages_counter: Counter | None = None
        self._rollbacks_counter: Counter | None = None
        self._health_checks_counter: Counter | None = None
        self._stage_duration_histogram: Histogram | None = None

    @property
    def executions_counter(self) -> Counter:
        """Get or create the executions counter."""
        if self._executions_counter is None:
            self._executions_counter = self._meter.create_counter(
                self.EXECUTIONS_TOTAL,
                unit="1",
                description="Settled pipeline executions by pipeline and status",
            )
        return self._executions_counter

    @property
    def stages_counter(self) -> Counter:
        """Get or create the stages counter."""
        if self._stages_counter is None:
            self._stages_counter = self._meter.create_counter(
                self.STAGES_TOTAL,
                unit="1",
                description="Settled stages by environment and status",
            )
        return self._stages_counter

    @property
    def rollbacks_counter(self) -> Counter:
        """Get or create the rollbacks counter."""
        if self._rollbacks_counter is None:
            self._rollbacks_counter = self._meter.create_counter(
                self.ROLLBACKS_TOTAL,
                unit="1",
                description="Rollback deployments by environment and outcome",
            )
        return self._rollbacks_counter

    @property
    def health_checks_counter(self) -> Counter:
        """Get or create the health checks counter."""
        if self._health_checks_counter is None:
            self._health_checks_counter = self._meter.create_counter(
                self.HEALTH_CHECKS_TOTAL,
                unit="1",
                description="Health checks by type and status",
            )
        return self._health_checks_counter

    @property
    def stage_duration_histogram(self) -> Histogram:
        """Get or create the stage duration histogram."""
        if self._stage_duration_histogram is None:
            self._stage_duration_histogram = self._meter.create_histogram(
                self.STAGE_DURATION_SECONDS,
                unit="s",
                description="Duration of pipeline stages in seconds",
            )
        return self._stage_duration_histogram

    def record_execution(self, pipeline: str, status: str) -> None:
        """Record an execution leaving the running state."""
        self.executions_counter.add(1, attributes={"pipeline": pipeline, "status": status})

    def record_stage(self, environment: str, status: str, *, duration_seconds: float) -> None:
        """Record a settled stage and its duration."""
        attributes: dict[str, Any] = {"environment": environment, "status": status}
        self.stages_counter.add(1, attributes=attributes)
        self.stage_duration_histogram.record(duration_seconds, attributes=attributes)
        logger.debug(
            "stage_metrics_recorded",
            environment=environment,
            status=status,
            duration_seconds=duration_seconds,
        )

    def record_rollback(self, environment: str, *, success: bool) -> None:
        """Record a rollback deployment attempt."""
        self.rollbacks_counter.add(
            1,
            attributes={
                "environment": environment,
                "outcome": "success" if success else "failure",
            },
        )

    def record_health_check(self, check_type: str, status: str) -> None:
        """Record a completed health check."""
        self.health_checks_counter.add(1, attributes={"type": check_type, "status": status})


_default_metrics: PipelineMetrics | None = None


def get_pipeline_metrics() -> PipelineMetrics:
    """Get the default PipelineMetrics instance."""
    global _default_metrics
    if _default_metrics is None:
        _default_metrics = PipelineMetrics()
    return _default_metrics


def set_pipeline_metrics(metrics_instance: PipelineMetrics | None) -> None:
    """Set the default PipelineMetrics instance (for testing).

    Args:
        metrics_instance: PipelineMetrics instance or None to reset.
    """
    global _default_metrics
    _default_metrics = metrics_instance


__all__ = [
    "PipelineMetrics",
    "get_pipeline_metrics",
    "set_pipeline_metrics",
]
