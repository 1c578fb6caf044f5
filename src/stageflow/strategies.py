"""Deployment strategies and the executor that drives them.

A strategy is a shape of traffic shift: which percentages are exposed, in
what order, how the observed metrics are interpreted and when to stop.
All three variants share one phase loop in DeploymentStrategyExecutor:

    rolling      25% → 50% → 75% → 100%
    blue-green   100% (single switch, error rate scaled by reliability_factor)
    canary       5% → 10% → 25% → 50% → 100% (abort if the 5% phase is too noisy)

Each phase's metrics are recorded into the caller's MetricsWindow before
the next phase starts, so rollback evaluation sees them as they arrive.
The result carries the worst value of each metric across executed phases.
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Protocol

import structlog

from stageflow.clock import Clock, SystemClock
from stageflow.errors import DeploymentCancelled
from stageflow.interfaces import Deployer
from stageflow.metrics_window import MetricsWindow
from stageflow.schemas.execution import DeploymentResult, PhaseMetrics
from stageflow.schemas.pipeline import DeploymentStrategy, EnvironmentSpec, UpdateType
from stageflow.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

# Metric names recorded into the window for every phase
ERROR_RATE = "error_rate"
RESPONSE_TIME = "response_time"
SUCCESS_RATE = "success_rate"

CANARY_ABORT_ERROR_RATE = 2.0
CANARY_ABORT_REASON = "High error rate detected in canary"


@dataclass(frozen=True)
class PhaseSample:
    """Metrics observed at one traffic percentage."""

    error_rate: float
    response_time_ms: float
    success_rate: float


class MetricsSource(Protocol):
    """Capability that observes an environment during a rollout phase."""

    async def collect(
        self,
        environment: EnvironmentSpec,
        strategy: DeploymentStrategy,
        percentage: int,
        update_type: UpdateType,
    ) -> PhaseSample: ...


@dataclass(frozen=True)
class RiskMultiplier:
    """Scaling of simulated metrics by release size."""

    error_rate: float
    response_time: float
    success_rate_offset: float


RISK_MULTIPLIERS: dict[UpdateType, RiskMultiplier] = {
    UpdateType.PATCH: RiskMultiplier(error_rate=0.5, response_time=1.0, success_rate_offset=0.0),
    UpdateType.MINOR: RiskMultiplier(error_rate=1.5, response_time=1.1, success_rate_offset=-1.0),
    UpdateType.MAJOR: RiskMultiplier(error_rate=2.0, response_time=1.2, success_rate_offset=-2.0),
}

FULL_TRAFFIC_RESPONSE_FACTOR = 1.1


class SimulatedMetricsSource:
    """Synthetic metrics for dry runs and demos.

    Baselines are drawn from a seeded generator (error rate 0-2%, response
    time 800-1200ms, success rate 98-100%) then scaled by the release's
    risk multiplier. The full-traffic phase adds 10% response time. The
    same seed always yields the same sequence.

    Args:
        seed: Seed for the generator.
        rng: Generator to use instead of a seeded one.
    """

    def __init__(self, seed: int = 0, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random(seed)

    async def collect(
        self,
        environment: EnvironmentSpec,  # noqa: ARG002
        strategy: DeploymentStrategy,  # noqa: ARG002
        percentage: int,
        update_type: UpdateType,
    ) -> PhaseSample:
        risk = RISK_MULTIPLIERS[update_type]
        error_rate = self._rng.uniform(0.0, 2.0) * risk.error_rate
        response_time = self._rng.uniform(800.0, 1200.0) * risk.response_time
        success_rate = self._rng.uniform(98.0, 100.0) + risk.success_rate_offset

        if percentage == 100:
            response_time *= FULL_TRAFFIC_RESPONSE_FACTOR

        return PhaseSample(
            error_rate=round(error_rate, 2),
            response_time_ms=float(round(response_time)),
            success_rate=round(success_rate, 2),
        )


# =============================================================================
# Strategy variants
# =============================================================================


class Strategy(ABC):
    """Shape of a rollout. Subclasses set the phases and may adjust or stop."""

    @property
    @abstractmethod
    def kind(self) -> DeploymentStrategy:
        """Strategy this variant implements."""

    @property
    @abstractmethod
    def phases(self) -> tuple[int, ...]:
        """Traffic percentages, in rollout order, ending at 100."""

    def adjust(self, sample: PhaseSample, reliability_factor: float) -> PhaseSample:  # noqa: ARG002
        """Interpret a raw sample for this strategy."""
        return sample

    def stop_reason(self, percentage: int, sample: PhaseSample) -> str | None:  # noqa: ARG002
        """Reason to stop after this phase, or None to continue."""
        return None


class RollingStrategy(Strategy):
    kind = DeploymentStrategy.ROLLING
    phases = (25, 50, 75, 100)


class BlueGreenStrategy(Strategy):
    """Atomic switch; a failed switch is undone wholesale, so its error rate
    is scaled by the pipeline's reliability factor."""

    kind = DeploymentStrategy.BLUE_GREEN
    phases = (100,)

    def adjust(self, sample: PhaseSample, reliability_factor: float) -> PhaseSample:
        return replace(sample, error_rate=round(sample.error_rate * reliability_factor, 4))


class CanaryStrategy(Strategy):
    kind = DeploymentStrategy.CANARY
    phases = (5, 10, 25, 50, 100)

    def stop_reason(self, percentage: int, sample: PhaseSample) -> str | None:
        if percentage == self.phases[0] and sample.error_rate > CANARY_ABORT_ERROR_RATE:
            return CANARY_ABORT_REASON
        return None


STRATEGIES: dict[DeploymentStrategy, Strategy] = {
    DeploymentStrategy.ROLLING: RollingStrategy(),
    DeploymentStrategy.BLUE_GREEN: BlueGreenStrategy(),
    DeploymentStrategy.CANARY: CanaryStrategy(),
}


def strategy_for(kind: DeploymentStrategy) -> Strategy:
    """Return the variant implementing ``kind``.

    Raises:
        ValueError: If no variant implements ``kind``.
    """
    try:
        return STRATEGIES[kind]
    except KeyError:
        raise ValueError(f"Unsupported deployment strategy: {kind}") from None


# =============================================================================
# Executor
# =============================================================================


class DeploymentStrategyExecutor:
    """Deploys a version to one environment using a strategy's phase shape.

    Args:
        deployer: Performs the actual infrastructure change.
        metrics_source: Observes each phase. Defaults to SimulatedMetricsSource.
        clock: Time source for phase pacing and sample timestamps.
        phase_interval_seconds: Pause between consecutive phases.
    """

    def __init__(
        self,
        deployer: Deployer,
        metrics_source: MetricsSource | None = None,
        clock: Clock | None = None,
        phase_interval_seconds: float = 10.0,
    ) -> None:
        if phase_interval_seconds < 0:
            raise ValueError(f"phase_interval_seconds must be >= 0, got {phase_interval_seconds}")
        self._deployer = deployer
        self._source: MetricsSource = metrics_source or SimulatedMetricsSource()
        self._clock = clock or SystemClock()
        self._phase_interval = phase_interval_seconds
        self._log = logger.bind(component="strategy_executor")

    @property
    def deployer(self) -> Deployer:
        return self._deployer

    async def deploy(
        self,
        environment: EnvironmentSpec,
        strategy: DeploymentStrategy,
        version: str,
        window: MetricsWindow,
        *,
        update_type: UpdateType = UpdateType.PATCH,
        reliability_factor: float = 0.5,
        cancel_event: asyncio.Event | None = None,
        phase_interval_seconds: float | None = None,
    ) -> DeploymentResult:
        """Deploy ``version`` and walk the strategy's phases.

        Args:
            environment: Target environment.
            strategy: Rollout shape.
            version: Release version.
            window: Receives each phase's metrics as it completes.
            update_type: Release size, forwarded to the metrics source.
            reliability_factor: Blue-green error-rate scale.
            cancel_event: Checked before the deployment and before every phase.
            phase_interval_seconds: Overrides the executor's phase interval.

        Returns:
            The deployment result, possibly stopped early.

        Raises:
            DeploymentCancelled: If ``cancel_event`` is set.
            DeployerError: If the deployer fails.
        """
        variant = strategy_for(strategy)
        interval = self._phase_interval if phase_interval_seconds is None else phase_interval_seconds
        log = self._log.bind(environment=environment.name, strategy=strategy.value, version=version)
        started_at = self._clock.now()

        with create_span(
            "stageflow.deploy",
            attributes={
                "environment": environment.name,
                "strategy": strategy.value,
                "version": version,
            },
        ) as span:
            self._raise_if_cancelled(environment, cancel_event)
            deployment_id = await self._deployer.deploy(environment, version)
            log.info("deployment_started", deployment_id=deployment_id)

            result = DeploymentResult(
                deployment_id=deployment_id,
                strategy=strategy,
                version=version,
            )

            for index, percentage in enumerate(variant.phases):
                if index > 0:
                    await self._clock.sleep(interval)
                self._raise_if_cancelled(environment, cancel_event)

                raw = await self._source.collect(environment, strategy, percentage, update_type)
                sample = variant.adjust(raw, reliability_factor)
                at = self._clock.now()
                window.record_many(
                    {
                        ERROR_RATE: sample.error_rate,
                        RESPONSE_TIME: sample.response_time_ms,
                        SUCCESS_RATE: sample.success_rate,
                    },
                    at,
                )
                result.phases.append(
                    PhaseMetrics(
                        percentage=percentage,
                        error_rate=sample.error_rate,
                        response_time_ms=sample.response_time_ms,
                        success_rate=sample.success_rate,
                        recorded_at=at,
                    )
                )
                log.info(
                    "deployment_phase_completed",
                    percentage=percentage,
                    error_rate=sample.error_rate,
                    response_time_ms=sample.response_time_ms,
                    success_rate=sample.success_rate,
                )

                reason = variant.stop_reason(percentage, sample)
                if reason is not None:
                    result.stopped_early = True
                    result.stop_phase = percentage
                    result.stop_reason = reason
                    result.skipped_phases = list(variant.phases[index + 1 :])
                    log.warning(
                        "deployment_stopped_early",
                        percentage=percentage,
                        reason=reason,
                        skipped_phases=result.skipped_phases,
                    )
                    break

            _apply_worst_of(result)
            result.duration_seconds = max((self._clock.now() - started_at).total_seconds(), 0.0)
            span.set_attribute("deployment.id", deployment_id)
            span.set_attribute("deployment.stopped_early", result.stopped_early)

        return result

    @staticmethod
    def _raise_if_cancelled(environment: EnvironmentSpec, cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise DeploymentCancelled(environment.name)


def _apply_worst_of(result: DeploymentResult) -> None:
    """Set the result's metrics to the worst value seen across phases."""
    if not result.phases:
        return
    result.error_rate = max(phase.error_rate for phase in result.phases)
    result.response_time_ms = max(phase.response_time_ms for phase in result.phases)
    result.success_rate = min(phase.success_rate for phase in result.phases)


__all__ = [
    "CANARY_ABORT_ERROR_RATE",
    "CANARY_ABORT_REASON",
    "ERROR_RATE",
    "RESPONSE_TIME",
    "RISK_MULTIPLIERS",
    "STRATEGIES",
    "SUCCESS_RATE",
    "BlueGreenStrategy",
    "CanaryStrategy",
    "DeploymentStrategyExecutor",
    "MetricsSource",
    "PhaseSample",
    "RollingStrategy",
    "SimulatedMetricsSource",
    "Strategy",
    "strategy_for",
]
