"""Pipeline definition schemas.

This module defines the immutable Pydantic v2 models that describe a
deployment pipeline: its ordered environments, their health checks, the
rollout strategy, rollback rules, approval gates and notification routing.

Key Components:
    DeploymentStrategy: Rollout shape (rolling, blue-green, canary)
    HealthCheckSpec: One probe against an environment
    EnvironmentSpec: One stage of the pipeline
    RollbackCondition: Threshold rule evaluated over a sustained window
    RollbackPolicy: Set of rollback conditions and how to act on them
    ApprovalPolicy: Auto-approval and expiry rules for approval gates
    MaintenanceWindow: Weekly slot in which automatic runs may start
    PipelineConfig: Top-level pipeline definition

Pydantic enforces types and ranges when a definition is loaded. Rules
that span several fields (unique orders, at least one health check,
positive timeouts) are collected by ``stageflow.config.validate_pipeline_config``
so every problem is reported at once.
"""

from __future__ import annotations

import operator as op
from collections.abc import Callable
from datetime import datetime, time
from datetime import timezone as dt_timezone
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

# =============================================================================
# Enums
# =============================================================================


class DeploymentStrategy(str, Enum):
    """Rollout shape used when deploying to an environment.

    Attributes:
        ROLLING: Gradual traffic shift over 25/50/75/100 percent.
        BLUE_GREEN: Single atomic switch to the new version.
        CANARY: Small initial exposure with early abort, then widening.
    """

    ROLLING = "rolling"
    BLUE_GREEN = "blue-green"
    CANARY = "canary"


class UpdateType(str, Enum):
    """Semantic size of the release being deployed."""

    PATCH = "patch"
    MINOR = "minor"
    MAJOR = "major"


class TriggerType(str, Enum):
    """What started a pipeline execution."""

    MANUAL = "manual"
    AUTOMATIC = "automatic"
    SCHEDULED = "scheduled"


class HealthCheckType(str, Enum):
    """Kind of probe a health check performs."""

    HTTP = "http"
    TCP = "tcp"
    DATABASE = "database"
    CUSTOM = "custom"


_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    ">": op.gt,
    "<": op.lt,
    ">=": op.ge,
    "<=": op.le,
    "==": op.eq,
    "!=": op.ne,
}


class ComparisonOperator(str, Enum):
    """Comparison applied between a metric sample and a threshold.

    Examples:
        >>> ComparisonOperator.GT.evaluate(8.0, 5.0)
        True
        >>> ComparisonOperator.LE.evaluate(8.0, 5.0)
        False
    """

    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    EQ = "=="
    NE = "!="

    def evaluate(self, value: float, threshold: float) -> bool:
        """Return True if ``value <op> threshold`` holds."""
        return _OPERATORS[self.value](value, threshold)


class NotificationEvent(str, Enum):
    """Pipeline lifecycle events a notifier can subscribe to."""

    PIPELINE_START = "PIPELINE_START"
    STAGE_SUCCESS = "STAGE_SUCCESS"
    STAGE_FAILURE = "STAGE_FAILURE"
    PIPELINE_SUCCESS = "PIPELINE_SUCCESS"
    PIPELINE_FAILURE = "PIPELINE_FAILURE"
    ROLLBACK_START = "ROLLBACK_START"
    ROLLBACK_SUCCESS = "ROLLBACK_SUCCESS"


class ChannelType(str, Enum):
    """Delivery channel of a notification."""

    EMAIL = "email"
    SLACK = "slack"
    WEBHOOK = "webhook"
    SMS = "sms"


class Severity(str, Enum):
    """Notification severity, ordered info < warning < error < critical."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# =============================================================================
# Health checks and environments
# =============================================================================


class HealthCheckSpec(BaseModel):
    """One probe run against an environment after it is deployed.

    Attributes:
        name: Check identifier, unique within its environment.
        type: Probe kind.
        endpoint: URL for HTTP checks, ``host:port`` for TCP checks, or an
            opaque target understood by a registered probe.
        expected_status: HTTP status code that counts as healthy.
        timeout_seconds: Upper bound for a single attempt.
        retry_count: Attempts after the first one.
        interval_seconds: Pause between attempts.

    Examples:
        >>> check = HealthCheckSpec(name="api", type="http", endpoint="https://api/health")
        >>> check.retry_count
        2
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, description="Check identifier")
    type: HealthCheckType = Field(default=HealthCheckType.HTTP, description="Probe kind")
    endpoint: str = Field(default="", description="Probe target")
    expected_status: int = Field(
        default=200,
        ge=100,
        le=599,
        description="HTTP status code that counts as healthy",
    )
    timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Upper bound for a single attempt in seconds",
    )
    retry_count: int = Field(default=2, ge=0, description="Attempts after the first")
    interval_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Pause between attempts in seconds",
    )


class EnvironmentSpec(BaseModel):
    """One stage of a pipeline.

    Attributes:
        name: Environment name (e.g. "dev", "staging", "prod").
        order: Position in the pipeline. Must be unique within a config.
        auto_promote: If False, a healthy stage waits for manual promotion.
        approval_required: If True, a healthy stage waits for an approver.
        health_checks: Probes that must all pass before promotion.
        deployment_timeout_minutes: Bound on the health checking phase.
        rollback_timeout_minutes: Bound on a single rollback deployment.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., description="Environment name")
    order: int = Field(..., description="Position in the pipeline")
    auto_promote: bool = Field(default=True, description="Promote without manual action")
    approval_required: bool = Field(default=False, description="Require approver")
    health_checks: tuple[HealthCheckSpec, ...] = Field(
        default=(),
        description="Probes that must pass before promotion",
    )
    deployment_timeout_minutes: float = Field(
        default=30,
        description="Bound on health checking in minutes",
    )
    rollback_timeout_minutes: float = Field(
        default=15,
        description="Bound on a rollback deployment in minutes",
    )

    @property
    def requires_gate(self) -> bool:
        """Whether a healthy stage pauses before promotion."""
        return self.approval_required or not self.auto_promote


# =============================================================================
# Rollback
# =============================================================================


class RollbackCondition(BaseModel):
    """Threshold rule judged over a sustained window of metric samples.

    Examples:
        >>> cond = RollbackCondition(
        ...     metric="error_rate", operator=">", threshold=5, sustained_seconds=30
        ... )
        >>> cond.describe()
        'error_rate > 5.0 sustained 30s'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    metric: str = Field(..., min_length=1, description="Metric name")
    operator: ComparisonOperator = Field(..., description="Comparison against threshold")
    threshold: float = Field(..., description="Threshold value")
    sustained_seconds: float = Field(
        default=0,
        ge=0,
        description="How long the breach must hold before it counts",
    )

    def is_breached_by(self, value: float) -> bool:
        """Return True if a single sample breaches this condition."""
        return self.operator.evaluate(value, self.threshold)

    def describe(self) -> str:
        """Human-readable form used in stage logs."""
        return (
            f"{self.metric} {self.operator.value} {self.threshold} "
            f"sustained {self.sustained_seconds:g}s"
        )


class RollbackPolicy(BaseModel):
    """Rollback rules for a pipeline.

    Attributes:
        enabled: Evaluate conditions at all.
        automatic: Execute a rollback on breach instead of deferring to an operator.
        conditions: Ordered rules; any sustained breach triggers the policy.
        max_rollback_attempts: Bound on rollback deployment retries.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = Field(default=True, description="Evaluate conditions")
    automatic: bool = Field(default=False, description="Roll back without operator")
    conditions: tuple[RollbackCondition, ...] = Field(
        default=(),
        description="Ordered rollback conditions",
    )
    max_rollback_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum rollback deployment attempts",
    )


# =============================================================================
# Notifications, approvals, maintenance windows
# =============================================================================


def _all_events() -> tuple[NotificationEvent, ...]:
    return tuple(NotificationEvent)


class NotificationChannel(BaseModel):
    """Destination for pipeline notifications."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: ChannelType = Field(..., description="Delivery channel")
    target: str = Field(..., min_length=1, description="Address, channel or URL")
    min_severity: Severity = Field(
        default=Severity.INFO,
        description="Lowest severity delivered to this channel",
    )


class NotificationSettings(BaseModel):
    """Which events are published and where."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = Field(default=True, description="Publish notifications")
    channels: tuple[NotificationChannel, ...] = Field(default=(), description="Destinations")
    events: tuple[NotificationEvent, ...] = Field(
        default_factory=_all_events,
        description="Subscribed events",
    )


class ApprovalPolicy(BaseModel):
    """Approval gate behaviour.

    Major updates are never auto-approved regardless of these flags.

    Attributes:
        auto_approve_patch: Skip the gate for patch releases.
        auto_approve_minor: Skip the gate for minor releases.
        expiry_minutes: Paused executions fail after this long without approval.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    auto_approve_patch: bool = Field(default=True, description="Auto-approve patch releases")
    auto_approve_minor: bool = Field(default=False, description="Auto-approve minor releases")
    expiry_minutes: int | None = Field(
        default=None,
        gt=0,
        description="Approval expiry in minutes (None = never)",
    )

    def auto_approves(self, update_type: UpdateType) -> bool:
        """Return True if a release of this size skips the approval gate."""
        if update_type == UpdateType.PATCH:
            return self.auto_approve_patch
        if update_type == UpdateType.MINOR:
            return self.auto_approve_minor
        return False


class MaintenanceWindow(BaseModel):
    """Weekly slot during which automatic and scheduled runs may start.

    Attributes:
        day_of_week: 0 = Sunday ... 6 = Saturday.
        start_time: Inclusive start of the slot, local to ``timezone``.
        end_time: Inclusive end of the slot, local to ``timezone``.
        timezone: IANA zone the day and times are expressed in.

    Examples:
        >>> window = MaintenanceWindow(
        ...     day_of_week=0, start_time=time(2), end_time=time(4), timezone="Europe/London"
        ... )
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    day_of_week: int = Field(..., ge=0, le=6, description="0 = Sunday")
    start_time: time = Field(..., description="Slot start")
    end_time: time = Field(..., description="Slot end")
    timezone: str = Field(default="UTC", description="IANA timezone")

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Reject names missing from the IANA timezone database."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(
                f"Invalid timezone: '{v}'. Expected an IANA timezone such as "
                "'UTC' or 'America/New_York'"
            ) from e
        return v

    def contains(self, moment: datetime) -> bool:
        """Return True if ``moment`` falls inside this window.

        Naive datetimes are taken to be UTC.
        """
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=dt_timezone.utc)
        local = moment.astimezone(ZoneInfo(self.timezone))
        if (local.weekday() + 1) % 7 != self.day_of_week:
            return False
        current = local.time()
        return self.start_time <= current <= self.end_time


# =============================================================================
# Pipeline
# =============================================================================


class PipelineConfig(BaseModel):
    """Top-level pipeline definition.

    A config is never mutated; a new version replaces the old one.

    Attributes:
        name: Pipeline name.
        environments: Stages, in any order; ``order`` decides sequencing.
        strategy: Rollout shape applied to every environment.
        auto_promote: Continue past failed stages (best-effort rollout).
        rollback_policy: Rollback rules.
        notifications: Notification routing.
        approval_policy: Approval gate behaviour.
        maintenance_windows: Slots for non-manual triggers (empty = always).
        reliability_factor: Error-rate scale for blue-green switches.
        phase_interval_seconds: Pause between strategy phases.

    Examples:
        >>> config = PipelineConfig(
        ...     name="web",
        ...     environments=[
        ...         EnvironmentSpec(name="prod", order=2),
        ...         EnvironmentSpec(name="dev", order=1),
        ...     ],
        ... )
        >>> [env.name for env in config.sorted_environments()]
        ['dev', 'prod']
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., description="Pipeline name")
    environments: tuple[EnvironmentSpec, ...] = Field(default=(), description="Stages")
    strategy: DeploymentStrategy = Field(
        default=DeploymentStrategy.ROLLING,
        description="Rollout shape",
    )
    auto_promote: bool = Field(default=False, description="Continue past failed stages")
    rollback_policy: RollbackPolicy = Field(
        default_factory=RollbackPolicy,
        description="Rollback rules",
    )
    notifications: NotificationSettings = Field(
        default_factory=NotificationSettings,
        description="Notification routing",
    )
    approval_policy: ApprovalPolicy = Field(
        default_factory=ApprovalPolicy,
        description="Approval gate behaviour",
    )
    maintenance_windows: tuple[MaintenanceWindow, ...] = Field(
        default=(),
        description="Slots for non-manual triggers",
    )
    reliability_factor: float = Field(
        default=0.5,
        gt=0,
        lt=1.0,
        description="Error-rate scale applied to blue-green switches",
    )
    phase_interval_seconds: float = Field(
        default=10.0,
        ge=0,
        description="Pause between strategy phases in seconds",
    )

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        """Normalize surrounding whitespace so blank names are caught as empty."""
        return v.strip()

    def sorted_environments(self) -> list[EnvironmentSpec]:
        """Return environments by ascending ``order``."""
        return sorted(self.environments, key=lambda env: env.order)

    def environment(self, name: str) -> EnvironmentSpec:
        """Return the environment called ``name``.

        Raises:
            KeyError: If no environment has that name.
        """
        for env in self.environments:
            if env.name == name:
                return env
        raise KeyError(name)

    def in_maintenance_window(self, moment: datetime) -> bool:
        """Return True if non-manual runs may start at ``moment``."""
        if not self.maintenance_windows:
            return True
        return any(window.contains(moment) for window in self.maintenance_windows)


__all__ = [
    "ApprovalPolicy",
    "ChannelType",
    "ComparisonOperator",
    "DeploymentStrategy",
    "EnvironmentSpec",
    "HealthCheckSpec",
    "HealthCheckType",
    "MaintenanceWindow",
    "NotificationChannel",
    "NotificationEvent",
    "NotificationSettings",
    "PipelineConfig",
    "RollbackCondition",
    "RollbackPolicy",
    "Severity",
    "TriggerType",
    "UpdateType",
]
