"""stageflow: multi-environment deployment pipeline orchestrator.

This package provides:
- PipelineConfig and friends: Declarative pipeline definitions (stageflow.schemas)
- load_pipeline_config / validate_pipeline_config: YAML loading and validation
- PipelineOrchestrator: Runs a release across ordered environments
- StageRunner: Per-environment deploy → health check → decide state machine
- DeploymentStrategyExecutor: Rolling, blue-green and canary rollouts
- HealthChecker: HTTP/TCP/database/custom probes with retries and timeouts
- MetricsWindow / RollbackEvaluator: Sustained-breach rollback decisions
- Deployer, Notifier, ExecutionStore: Interfaces for external collaborators
- MonitorRegistry: One background monitor per tenant key

Example:
    >>> from stageflow import PipelineOrchestrator, TriggerType, load_pipeline_config
    >>> config = load_pipeline_config("pipeline.yaml")
    >>> orchestrator = PipelineOrchestrator(deployer=MyDeployer())
    >>> execution = await orchestrator.execute(config, TriggerType.MANUAL, "1.4.2")
    >>> execution.status
    <ExecutionStatus.SUCCEEDED: 'succeeded'>
"""

from __future__ import annotations

__version__ = "0.1.0"

from stageflow.clock import Clock, SystemClock
from stageflow.config import (
    ensure_valid,
    load_pipeline_config,
    pipeline_config_from_dict,
    validate_pipeline_config,
)
from stageflow.errors import (
    ApprovalError,
    ApprovalTimeoutError,
    ConfigValidationError,
    DeployerError,
    DeploymentCancelled,
    ExecutionNotFoundError,
    HealthCheckError,
    HealthCheckFailure,
    HealthCheckTimeout,
    InvalidTransitionError,
    MaintenanceWindowError,
    RollbackError,
    StageflowError,
)
from stageflow.health import HealthChecker, HttpProbe, ProbeOutcome, TcpProbe
from stageflow.interfaces import Deployer, ExecutionStore, Notifier
from stageflow.metrics_window import MetricsWindow
from stageflow.monitor_registry import MonitorRegistry
from stageflow.notifications import LogNotifier, NotificationRouter, PipelineNotification
from stageflow.orchestrator import PipelineOrchestrator
from stageflow.rollback import RollbackDecision, RollbackEvaluator
from stageflow.schemas import (
    DeploymentStrategy,
    EnvironmentSpec,
    ExecutionStatus,
    HealthCheckSpec,
    HealthCheckStatus,
    PipelineConfig,
    PipelineExecution,
    RollbackCondition,
    RollbackPolicy,
    StageExecution,
    StageStatus,
    TriggerType,
    UpdateType,
)
from stageflow.stage import StageRunner
from stageflow.store import InMemoryExecutionStore, SqlExecutionStore
from stageflow.strategies import (
    DeploymentStrategyExecutor,
    MetricsSource,
    PhaseSample,
    SimulatedMetricsSource,
)

__all__ = [
    "__version__",
    "ApprovalError",
    "ApprovalTimeoutError",
    "Clock",
    "ConfigValidationError",
    "Deployer",
    "DeployerError",
    "DeploymentCancelled",
    "DeploymentStrategy",
    "DeploymentStrategyExecutor",
    "EnvironmentSpec",
    "ExecutionNotFoundError",
    "ExecutionStatus",
    "ExecutionStore",
    "HealthCheckError",
    "HealthCheckFailure",
    "HealthCheckSpec",
    "HealthCheckStatus",
    "HealthCheckTimeout",
    "HealthChecker",
    "HttpProbe",
    "InMemoryExecutionStore",
    "InvalidTransitionError",
    "LogNotifier",
    "MaintenanceWindowError",
    "MetricsSource",
    "MetricsWindow",
    "MonitorRegistry",
    "NotificationRouter",
    "Notifier",
    "PhaseSample",
    "PipelineConfig",
    "PipelineExecution",
    "PipelineNotification",
    "PipelineOrchestrator",
    "ProbeOutcome",
    "RollbackCondition",
    "RollbackDecision",
    "RollbackError",
    "RollbackEvaluator",
    "RollbackPolicy",
    "SimulatedMetricsSource",
    "SqlExecutionStore",
    "StageExecution",
    "StageRunner",
    "StageStatus",
    "StageflowError",
    "SystemClock",
    "TcpProbe",
    "TriggerType",
    "UpdateType",
    "ensure_valid",
    "load_pipeline_config",
    "pipeline_config_from_dict",
    "validate_pipeline_config",
]
