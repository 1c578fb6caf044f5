"""Shared pytest fixtures for stageflow tests.

This module provides fakes for the external collaborators (deployer,
metrics source, notifier) and a manual clock, plus factory fixtures for
building pipeline definitions.

NOTE: Do NOT add __init__.py to test directories - pytest uses importlib mode
which can cause namespace collisions with __init__.py files.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from stageflow.errors import DeployerError
from stageflow.health import HealthChecker, ProbeOutcome
from stageflow.interfaces import Deployer, Notifier
from stageflow.notifications import NotificationRouter, PipelineNotification
from stageflow.orchestrator import PipelineOrchestrator
from stageflow.schemas.pipeline import (
    ApprovalPolicy,
    DeploymentStrategy,
    EnvironmentSpec,
    HealthCheckSpec,
    HealthCheckType,
    NotificationChannel,
    NotificationSettings,
    PipelineConfig,
    RollbackCondition,
    RollbackPolicy,
    UpdateType,
)
from stageflow.store.memory import InMemoryExecutionStore
from stageflow.strategies import PhaseSample

START = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)  # a Monday

HEALTHY = PhaseSample(error_rate=0.5, response_time_ms=900.0, success_rate=99.5)


class ManualClock:
    """Clock whose sleeps advance time instantly."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class FakeDeployer(Deployer):
    """Deployer that records calls and fails on request."""

    def __init__(self) -> None:
        self.deployments: list[tuple[str, str]] = []
        self.rollbacks: list[tuple[str, str | None, str]] = []
        self.fail_deploy: set[str] = set()
        self.rollback_failures: dict[str, int] = {}
        self._counter = 0

    async def deploy(self, environment: EnvironmentSpec, version: str) -> str:
        if environment.name in self.fail_deploy:
            raise DeployerError(environment.name, "cluster unreachable")
        self._counter += 1
        self.deployments.append((environment.name, version))
        return f"deploy-{environment.name}-{self._counter}"

    async def rollback(
        self,
        environment: EnvironmentSpec,
        target_deployment_id: str | None,
        reason: str,
    ) -> str:
        self.rollbacks.append((environment.name, target_deployment_id, reason))
        remaining = self.rollback_failures.get(environment.name, 0)
        if remaining > 0:
            self.rollback_failures[environment.name] = remaining - 1
            raise DeployerError(environment.name, "rollback rejected")
        self._counter += 1
        return f"rollback-{environment.name}-{self._counter}"

    @property
    def deployed_environments(self) -> list[str]:
        return [name for name, _version in self.deployments]


class ScriptedMetricsSource:
    """Metrics source returning fixed samples per environment.

    ``script`` maps an environment name to either a PhaseSample used for
    every phase or a callable receiving the phase percentage.
    """

    def __init__(
        self,
        script: dict[str, PhaseSample | Callable[[int], PhaseSample]] | None = None,
        default: PhaseSample = HEALTHY,
    ) -> None:
        self.script = dict(script or {})
        self.default = default
        self.collected: list[tuple[str, int]] = []

    async def collect(
        self,
        environment: EnvironmentSpec,
        strategy: DeploymentStrategy,
        percentage: int,
        update_type: UpdateType,
    ) -> PhaseSample:
        self.collected.append((environment.name, percentage))
        entry = self.script.get(environment.name, self.default)
        if callable(entry):
            return entry(percentage)
        return entry


class RecordingNotifier(Notifier):
    """Notifier that keeps every delivered notification."""

    def __init__(self) -> None:
        self.sent: list[tuple[PipelineNotification, NotificationChannel]] = []

    async def send(self, notification: PipelineNotification, channel: NotificationChannel) -> bool:
        self.sent.append((notification, channel))
        return True

    @property
    def events(self) -> list[str]:
        return [notification.event.value for notification, _channel in self.sent]


async def always_healthy(check: HealthCheckSpec) -> ProbeOutcome:
    return ProbeOutcome(healthy=True, message="ok")


def smoke_check(**overrides: Any) -> HealthCheckSpec:
    """A custom health check that passes with the default probes."""
    values: dict[str, Any] = {
        "name": "smoke",
        "type": HealthCheckType.CUSTOM,
        "endpoint": "smoke",
        "timeout_seconds": 1,
        "retry_count": 0,
        "interval_seconds": 0,
    }
    values.update(overrides)
    return HealthCheckSpec(**values)


@pytest.fixture
def clock() -> ManualClock:
    """Manual clock starting on a Monday at 10:00 UTC."""
    return ManualClock()


@pytest.fixture
def deployer() -> FakeDeployer:
    return FakeDeployer()


@pytest.fixture
def metrics_source() -> ScriptedMetricsSource:
    """Metrics source reporting healthy samples unless scripted otherwise."""
    return ScriptedMetricsSource()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def router(notifier: RecordingNotifier) -> NotificationRouter:
    """Router delivering every channel type to the recording notifier."""
    return NotificationRouter(default=notifier)


@pytest.fixture
def health_checker(clock: ManualClock) -> HealthChecker:
    """Health checker whose custom probe always passes."""
    return HealthChecker(probes={HealthCheckType.CUSTOM: always_healthy}, clock=clock)


@pytest.fixture
def store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore()


@pytest.fixture
def make_config() -> Callable[..., PipelineConfig]:
    """Factory fixture building pipeline definitions.

    Usage:
        config = make_config(["dev", "prod"], approval={"prod"})

    Approval gates hold for every release size unless a test passes its own
    ``approval_policy``.
    """

    def _make(
        environments: list[str] | None = None,
        *,
        strategy: DeploymentStrategy = DeploymentStrategy.ROLLING,
        approval: set[str] | None = None,
        rollback_policy: RollbackPolicy | None = None,
        checks: dict[str, list[HealthCheckSpec]] | None = None,
        **kwargs: Any,
    ) -> PipelineConfig:
        names = environments or ["dev", "staging", "prod"]
        approval = approval or set()
        checks = checks or {}
        kwargs.setdefault("approval_policy", ApprovalPolicy(auto_approve_patch=False))
        kwargs.setdefault(
            "notifications",
            NotificationSettings(
                channels=(NotificationChannel(type="slack", target="#releases"),),
            ),
        )
        return PipelineConfig(
            name="web",
            strategy=strategy,
            environments=[
                EnvironmentSpec(
                    name=name,
                    order=(index + 1) * 10,
                    approval_required=name in approval,
                    health_checks=checks.get(name, [smoke_check()]),
                )
                for index, name in enumerate(names)
            ],
            rollback_policy=rollback_policy or RollbackPolicy(),
            **kwargs,
        )

    return _make


@pytest.fixture
def error_rate_policy() -> RollbackPolicy:
    """Automatic rollback when error rate stays above 5% for 30 seconds."""
    return RollbackPolicy(
        enabled=True,
        automatic=True,
        conditions=[
            RollbackCondition(metric="error_rate", operator=">", threshold=5, sustained_seconds=30)
        ],
    )


@pytest.fixture
def make_orchestrator(
    deployer: FakeDeployer,
    store: InMemoryExecutionStore,
    health_checker: HealthChecker,
    metrics_source: ScriptedMetricsSource,
    router: NotificationRouter,
    clock: ManualClock,
) -> Callable[..., PipelineOrchestrator]:
    """Factory fixture for orchestrators wired to the shared fakes."""

    def _make(**overrides: Any) -> PipelineOrchestrator:
        options: dict[str, Any] = {
            "store": store,
            "health_checker": health_checker,
            "metrics_source": metrics_source,
            "router": router,
            "clock": clock,
        }
        options.update(overrides)
        return PipelineOrchestrator(deployer=options.pop("deployer", deployer), **options)

    return _make
