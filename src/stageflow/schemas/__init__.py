"""Schema definitions for stageflow.

Pipeline Definition Models (immutable):
    PipelineConfig: Root pipeline definition
    EnvironmentSpec: One stage, with its health checks and timeouts
    HealthCheckSpec: One probe
    RollbackPolicy, RollbackCondition: Rollback rules
    ApprovalPolicy, MaintenanceWindow, NotificationSettings: Gates and routing

Execution Models (owned by the orchestrator):
    PipelineExecution: Run record with monotonic status transitions
    StageExecution: One environment's run
    DeploymentResult, PhaseMetrics, HealthCheckResult: Stage outcomes
    DeploymentRecord: Deployment history entry

Example:
    >>> from stageflow.schemas import PipelineConfig
    >>> import yaml
    >>> with open("pipeline.yaml") as f:
    ...     config = PipelineConfig.model_validate(yaml.safe_load(f))
"""

from __future__ import annotations

from stageflow.schemas.execution import (
    DeploymentRecord,
    DeploymentRecordStatus,
    DeploymentResult,
    ExecutionMetrics,
    ExecutionStatus,
    HealthCheckResult,
    HealthCheckStatus,
    PhaseMetrics,
    PipelineExecution,
    StageExecution,
    StageStatus,
)
from stageflow.schemas.pipeline import (
    ApprovalPolicy,
    ChannelType,
    ComparisonOperator,
    DeploymentStrategy,
    EnvironmentSpec,
    HealthCheckSpec,
    HealthCheckType,
    MaintenanceWindow,
    NotificationChannel,
    NotificationEvent,
    NotificationSettings,
    PipelineConfig,
    RollbackCondition,
    RollbackPolicy,
    Severity,
    TriggerType,
    UpdateType,
)

__all__ = [
    "ApprovalPolicy",
    "ChannelType",
    "ComparisonOperator",
    "DeploymentRecord",
    "DeploymentRecordStatus",
    "DeploymentResult",
    "DeploymentStrategy",
    "EnvironmentSpec",
    "ExecutionMetrics",
    "ExecutionStatus",
    "HealthCheckResult",
    "HealthCheckSpec",
    "HealthCheckStatus",
    "HealthCheckType",
    "MaintenanceWindow",
    "NotificationChannel",
    "NotificationEvent",
    "NotificationSettings",
    "PhaseMetrics",
    "PipelineConfig",
    "PipelineExecution",
    "RollbackCondition",
    "RollbackPolicy",
    "Severity",
    "StageExecution",
    "StageStatus",
    "TriggerType",
    "UpdateType",
]
