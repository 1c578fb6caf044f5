"""Execution record schemas.

A PipelineExecution is the mutable run record the orchestrator owns for
the lifetime of one release. It is persisted after every stage so an
execution paused for approval can be resumed by another process.

Key Components:
    ExecutionStatus: Overall status with a monotonic transition table
    StageStatus: Per-environment state machine states
    HealthCheckResult: Outcome of one health check
    PhaseMetrics: Metrics observed during one strategy phase
    DeploymentResult: Outcome of a strategy run
    StageExecution: One environment's pass through the pipeline
    ExecutionMetrics: Aggregates computed when an execution settles
    PipelineExecution: The run record
    DeploymentRecord: Entry of an environment's deployment history
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from stageflow.errors import InvalidTransitionError
from stageflow.schemas.pipeline import (
    DeploymentStrategy,
    PipelineConfig,
    RollbackCondition,
    TriggerType,
    UpdateType,
)


class ExecutionStatus(str, Enum):
    """Overall status of a pipeline execution.

    Attributes:
        PENDING: Created, not started.
        RUNNING: Stages are being executed.
        PENDING_APPROVAL: Paused at an approval gate.
        SUCCEEDED: Every attempted stage was promoted.
        FAILED: At least one stage did not promote, or approval expired.
        CANCELLED: Stopped by an operator.
    """

    PENDING = "pending"
    RUNNING = "running"
    PENDING_APPROVAL = "pending_approval"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is possible."""
        return self in _TERMINAL


_TERMINAL = frozenset(
    {ExecutionStatus.SUCCEEDED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset(
        {ExecutionStatus.RUNNING, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
    ),
    ExecutionStatus.RUNNING: frozenset(
        {
            ExecutionStatus.PENDING_APPROVAL,
            ExecutionStatus.SUCCEEDED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        }
    ),
    ExecutionStatus.PENDING_APPROVAL: frozenset(
        {ExecutionStatus.RUNNING, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
    ),
    ExecutionStatus.SUCCEEDED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}


class StageStatus(str, Enum):
    """State of one environment within an execution.

    ``PENDING → DEPLOYING → HEALTH_CHECKING → {PROMOTED | AWAITING_APPROVAL | FAILED | ROLLED_BACK}``
    """

    PENDING = "pending"
    DEPLOYING = "deploying"
    HEALTH_CHECKING = "health_checking"
    PROMOTED = "promoted"
    AWAITING_APPROVAL = "awaiting_approval"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_settled(self) -> bool:
        """Whether the stage has reached one of its outcome states."""
        return self in {
            StageStatus.PROMOTED,
            StageStatus.AWAITING_APPROVAL,
            StageStatus.FAILED,
            StageStatus.ROLLED_BACK,
        }


class HealthCheckStatus(str, Enum):
    """Outcome of a health check. TIMEOUT and FAIL both block promotion."""

    PASS = "pass"
    FAIL = "fail"
    TIMEOUT = "timeout"


class DeploymentRecordStatus(str, Enum):
    """Outcome stored in an environment's deployment history."""

    SUCCESS = "success"
    PENDING_APPROVAL = "pending_approval"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class HealthCheckResult(BaseModel):
    """Outcome of one health check across all of its attempts."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    check_name: str = Field(..., description="Name of the check")
    status: HealthCheckStatus = Field(..., description="pass, fail or timeout")
    response_time_ms: float = Field(..., ge=0, description="Latency of the last attempt")
    message: str = Field(default="", description="Diagnostic detail")
    timestamp: datetime = Field(..., description="When the result was produced")
    attempts: int = Field(default=1, ge=0, description="Attempts made")

    @property
    def passed(self) -> bool:
        return self.status == HealthCheckStatus.PASS


class PhaseMetrics(BaseModel):
    """Metrics observed during one traffic-shift phase."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    percentage: int = Field(..., ge=0, le=100, description="Traffic share")
    error_rate: float = Field(..., ge=0, description="Error rate in percent")
    response_time_ms: float = Field(..., ge=0, description="Response time in ms")
    success_rate: float = Field(..., description="Success rate in percent")
    recorded_at: datetime = Field(..., description="When the sample was taken")


class DeploymentResult(BaseModel):
    """Outcome of running a deployment strategy against one environment.

    The top-level metrics are the worst values seen across executed
    phases: highest error rate, highest response time, lowest success rate.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    deployment_id: str = Field(..., description="Id returned by the deployer")
    strategy: DeploymentStrategy = Field(..., description="Strategy used")
    version: str = Field(..., description="Version deployed")
    phases: list[PhaseMetrics] = Field(default_factory=list, description="Executed phases")
    skipped_phases: list[int] = Field(
        default_factory=list,
        description="Percentages not executed after an early stop",
    )
    stopped_early: bool = Field(default=False, description="Canary aborted")
    stop_phase: int | None = Field(default=None, description="Percentage that triggered the stop")
    stop_reason: str | None = Field(default=None, description="Why the rollout stopped")
    error_rate: float = Field(default=0.0, description="Worst error rate")
    response_time_ms: float = Field(default=0.0, description="Worst response time")
    success_rate: float = Field(default=100.0, description="Worst success rate")
    duration_seconds: float = Field(default=0.0, ge=0, description="Strategy duration")
    rollback_deployment_id: str | None = Field(
        default=None,
        description="Id of the rollback deployment, if one ran",
    )


class StageExecution(BaseModel):
    """One environment's run within a pipeline execution."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    environment: str = Field(..., description="Environment name")
    order: int = Field(..., description="Environment order")
    status: StageStatus = Field(default=StageStatus.PENDING, description="Stage state")
    start_time: datetime = Field(..., description="Stage start")
    end_time: datetime | None = Field(default=None, description="Stage end")
    health_results: list[HealthCheckResult] = Field(default_factory=list)
    deployment_result: DeploymentResult | None = Field(default=None)
    logs: list[str] = Field(default_factory=list, description="Append-only audit trail")
    failure_reason: str | None = Field(default=None)
    breaches: list[RollbackCondition] = Field(
        default_factory=list,
        description="Rollback conditions found breached",
    )
    approval_requested_at: datetime | None = Field(default=None)
    approved_by: str | None = Field(default=None)
    attempt: int = Field(default=1, ge=1, description="Attempt number for this environment")

    def log(self, message: str) -> None:
        """Append a line to the stage's audit trail."""
        self.logs.append(message)

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return max((self.end_time - self.start_time).total_seconds(), 0.0)


class ExecutionMetrics(BaseModel):
    """Aggregates computed when an execution leaves the running state."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    total_duration_seconds: float = Field(default=0.0, ge=0)
    deployment_duration_seconds: float = Field(default=0.0, ge=0)
    health_check_duration_ms: float = Field(default=0.0, ge=0)
    success_rate: float = Field(default=0.0, ge=0, le=100)
    error_count: int = Field(default=0, ge=0)
    warning_count: int = Field(default=0, ge=0)


class PipelineExecution(BaseModel):
    """Run record of one pipeline execution.

    Holds a snapshot of the config it runs so a paused execution can be
    resumed from the store alone.

    Examples:
        >>> execution.transition(ExecutionStatus.RUNNING)
        >>> execution.transition(ExecutionStatus.SUCCEEDED)
        >>> execution.transition(ExecutionStatus.RUNNING)
        Traceback (most recent call last):
            ...
        InvalidTransitionError: Cannot transition execution from succeeded to running
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    execution_id: str = Field(..., min_length=1, description="Unique execution id")
    config: PipelineConfig = Field(..., description="Config snapshot")
    config_ref: str = Field(..., description="Pipeline name")
    trigger: TriggerType = Field(..., description="What started the run")
    triggered_by: str = Field(default="system", description="Who started the run")
    version: str = Field(..., description="Version being released")
    update_type: UpdateType = Field(default=UpdateType.PATCH)
    start_time: datetime = Field(..., description="Run start")
    end_time: datetime | None = Field(default=None)
    status: ExecutionStatus = Field(default=ExecutionStatus.PENDING)
    current_stage: str | None = Field(
        default=None,
        description="Environment the execution is at or paused on",
    )
    stages: list[StageExecution] = Field(default_factory=list)
    aggregate_metrics: ExecutionMetrics | None = Field(default=None)

    def transition(self, target: ExecutionStatus) -> None:
        """Move to ``target``.

        Raises:
            InvalidTransitionError: If the table does not allow the move.
        """
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status.value, target.value)
        self.status = target

    def record_stage(self, stage: StageExecution) -> None:
        """Append ``stage``, replacing the latest attempt for the same environment."""
        if self.stages and self.stages[-1].environment == stage.environment:
            stage.attempt = self.stages[-1].attempt + 1
            self.stages[-1] = stage
            return
        self.stages.append(stage)

    def stage_for(self, environment: str) -> StageExecution | None:
        for stage in self.stages:
            if stage.environment == environment:
                return stage
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class DeploymentRecord(BaseModel):
    """Entry in an environment's deployment history.

    History is kept per pipeline and environment; ``deployment_id`` identifies
    the entry, so recording the same deployment again replaces it.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    deployment_id: str = Field(..., description="Deployer id")
    pipeline: str = Field(..., description="Pipeline that deployed it")
    environment: str = Field(..., description="Environment name")
    version: str = Field(..., description="Version deployed")
    execution_id: str | None = Field(default=None, description="Owning execution")
    deployed_at: datetime = Field(..., description="Deployment time")
    deployed_by: str = Field(..., description="Who triggered it")
    status: DeploymentRecordStatus = Field(..., description="Outcome")
    duration_seconds: float = Field(default=0.0, ge=0)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "DeploymentRecord",
    "DeploymentRecordStatus",
    "DeploymentResult",
    "ExecutionMetrics",
    "ExecutionStatus",
    "HealthCheckResult",
    "HealthCheckStatus",
    "PhaseMetrics",
    "PipelineExecution",
    "StageExecution",
    "StageStatus",
]
