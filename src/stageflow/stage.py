"""StageRunner - drives one environment through a pipeline stage.

State machine per stage:

    PENDING → DEPLOYING → HEALTH_CHECKING → PROMOTED
                                          → AWAITING_APPROVAL
                                          → FAILED
                                          → ROLLED_BACK

- DEPLOYING: the strategy executor deploys and walks its phases. Any
  deployer error fails the stage. A canary that stopped early skips
  health checks and is rolled back (automatic policy) or failed.
- HEALTH_CHECKING: every configured check must pass; a single ``fail``
  or ``timeout`` fails the stage.
- Rollback evaluation: an automatic breach triggers a rollback deployment,
  retried up to ``max_rollback_attempts``; a non-automatic breach fails
  the stage with the breaches attached for an operator.
- Approval gate: environments that require approval (or do not
  auto-promote) pause unless the release size is auto-approved.

Stage errors never propagate; they are recorded in the stage's logs.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from stageflow.clock import Clock, SystemClock
from stageflow.errors import DeployerError, DeploymentCancelled
from stageflow.health import HealthChecker
from stageflow.metrics_window import MetricsWindow
from stageflow.notifications import NotificationRouter, build_notification
from stageflow.rollback import RollbackEvaluator
from stageflow.schemas.execution import StageExecution, StageStatus
from stageflow.schemas.pipeline import (
    EnvironmentSpec,
    NotificationEvent,
    PipelineConfig,
    UpdateType,
)
from stageflow.strategies import DeploymentStrategyExecutor
from stageflow.telemetry.metrics import PipelineMetrics, get_pipeline_metrics
from stageflow.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

CANCELLED_REASON = "cancelled"
AUTO_APPROVER = "auto-approval"


class StageRunner:
    """Runs a single environment's stage.

    Args:
        executor: Deployment strategy executor (owns the Deployer).
        health_checker: Runs the environment's health checks.
        evaluator: Rollback policy evaluator.
        router: Notification router for rollback events.
        clock: Time source.
        metrics: Metrics collector (defaults to the process-wide one).
    """

    def __init__(
        self,
        executor: DeploymentStrategyExecutor,
        health_checker: HealthChecker,
        evaluator: RollbackEvaluator | None = None,
        router: NotificationRouter | None = None,
        clock: Clock | None = None,
        metrics: PipelineMetrics | None = None,
    ) -> None:
        self._executor = executor
        self._health = health_checker
        self._evaluator = evaluator or RollbackEvaluator()
        self._router = router or NotificationRouter()
        self._clock = clock or SystemClock()
        self._metrics = metrics or get_pipeline_metrics()
        self._log = logger.bind(component="stage_runner")

    async def run(
        self,
        environment: EnvironmentSpec,
        config: PipelineConfig,
        version: str,
        *,
        execution_id: str | None = None,
        update_type: UpdateType = UpdateType.PATCH,
        previous_deployment_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> StageExecution:
        """Run ``environment``'s stage to one of its outcome states.

        Args:
            environment: Environment to deploy.
            config: Pipeline the environment belongs to.
            version: Release version.
            execution_id: Owning execution, for logs and notifications.
            update_type: Release size (affects auto-approval).
            previous_deployment_id: Last successful deployment of this
                environment, used as the rollback target.
            cancel_event: Set to stop issuing new phases and health checks.

        Returns:
            The settled StageExecution.
        """
        stage = StageExecution(
            environment=environment.name,
            order=environment.order,
            start_time=self._clock.now(),
        )
        log = self._log.bind(execution_id=execution_id, environment=environment.name)

        with create_span(
            "stageflow.stage",
            attributes={
                "execution.id": execution_id,
                "environment": environment.name,
                "version": version,
            },
        ) as span:
            await self._drive(
                stage,
                environment,
                config,
                version,
                execution_id=execution_id,
                update_type=update_type,
                previous_deployment_id=previous_deployment_id,
                cancel_event=cancel_event,
            )
            span.set_attribute("stage.status", stage.status.value)

        if stage.end_time is None:
            stage.end_time = self._clock.now()
        self._metrics.record_stage(
            environment.name,
            stage.status.value,
            duration_seconds=stage.duration_seconds,
        )
        log.info(
            "stage_completed",
            status=stage.status.value,
            failure_reason=stage.failure_reason,
            duration_seconds=stage.duration_seconds,
        )
        return stage

    async def _drive(
        self,
        stage: StageExecution,
        environment: EnvironmentSpec,
        config: PipelineConfig,
        version: str,
        *,
        execution_id: str | None,
        update_type: UpdateType,
        previous_deployment_id: str | None,
        cancel_event: asyncio.Event | None,
    ) -> None:
        window = MetricsWindow()

        # Deploying
        stage.status = StageStatus.DEPLOYING
        stage.log(
            f"Deploying {version} to {environment.name} using {config.strategy.value} strategy"
        )
        try:
            result = await self._executor.deploy(
                environment,
                config.strategy,
                version,
                window,
                update_type=update_type,
                reliability_factor=config.reliability_factor,
                cancel_event=cancel_event,
                phase_interval_seconds=config.phase_interval_seconds,
            )
        except DeploymentCancelled:
            self._fail(stage, CANCELLED_REASON)
            return
        except DeployerError as e:
            self._fail(stage, str(e))
            return
        except Exception as e:
            self._log.error(
                "deployment_error",
                environment=environment.name,
                error=str(e),
                exc_info=True,
            )
            self._fail(stage, f"Deployment error: {type(e).__name__}: {e}")
            return

        stage.deployment_result = result
        for phase in result.phases:
            stage.log(
                f"Phase {phase.percentage}%: error_rate={phase.error_rate} "
                f"response_time_ms={phase.response_time_ms} success_rate={phase.success_rate}"
            )

        if result.stopped_early:
            stage.log(
                f"Rollout stopped at {result.stop_phase}%: {result.stop_reason}; "
                f"skipped phases {result.skipped_phases}"
            )
            reason = result.stop_reason or "rollout stopped early"
            policy = config.rollback_policy
            if policy.enabled and policy.automatic:
                await self._rollback(
                    stage, environment, config, previous_deployment_id, reason, execution_id
                )
            else:
                self._fail(stage, reason)
            return

        if _cancelled(cancel_event):
            self._fail(stage, CANCELLED_REASON)
            return

        # Health checking
        stage.status = StageStatus.HEALTH_CHECKING
        stage.log(f"Running {len(environment.health_checks)} health checks")
        results = await self._health.run_all(
            environment.health_checks,
            deadline_seconds=environment.deployment_timeout_minutes * 60,
            cancel_event=cancel_event,
        )
        stage.health_results = results
        for check in results:
            stage.log(
                f"Health check {check.check_name}: {check.status.value} "
                f"({check.response_time_ms:.0f}ms) {check.message}".rstrip()
            )

        if _cancelled(cancel_event):
            self._fail(stage, CANCELLED_REASON)
            return

        unhealthy = [check for check in results if not check.passed]
        if unhealthy:
            summary = ", ".join(f"{c.check_name} ({c.status.value})" for c in unhealthy)
            self._fail(stage, f"Health checks did not pass: {summary}")
            return

        # Rollback evaluation
        decision = self._evaluator.should_rollback(
            config.rollback_policy, window, self._clock.now()
        )
        if decision.breached:
            stage.breaches = list(decision.breaches)
            described = "; ".join(condition.describe() for condition in decision.breaches)
            reason = f"Rollback conditions breached: {described}"
            if decision.should_rollback:
                await self._rollback(
                    stage, environment, config, previous_deployment_id, reason, execution_id
                )
            else:
                self._fail(stage, f"{reason}; awaiting manual rollback decision")
            return

        # Approval gate
        if environment.requires_gate:
            if config.approval_policy.auto_approves(update_type):
                stage.approved_by = AUTO_APPROVER
                stage.log(f"Approval gate passed automatically for {update_type.value} release")
            else:
                now = self._clock.now()
                stage.status = StageStatus.AWAITING_APPROVAL
                stage.approval_requested_at = now
                stage.end_time = now
                stage.log("Awaiting approval")
                return

        stage.status = StageStatus.PROMOTED
        stage.end_time = self._clock.now()
        stage.log(f"Promoted {version} in {environment.name}")

    async def _rollback(
        self,
        stage: StageExecution,
        environment: EnvironmentSpec,
        config: PipelineConfig,
        target_deployment_id: str | None,
        reason: str,
        execution_id: str | None,
    ) -> None:
        """Roll the environment back, bounded by the policy's attempt limit."""
        attempts = config.rollback_policy.max_rollback_attempts
        timeout = environment.rollback_timeout_minutes * 60
        deployer = self._executor.deployer
        stage.log(f"Rolling back {environment.name}: {reason}")
        await self._notify(
            NotificationEvent.ROLLBACK_START,
            config,
            f"Rolling back {environment.name}: {reason}",
            execution_id=execution_id,
            environment=environment.name,
            details={"target_deployment_id": target_deployment_id},
        )

        last_error = ""
        with create_span(
            "stageflow.rollback",
            attributes={"environment": environment.name, "max_attempts": attempts},
        ) as span:
            for attempt in range(1, attempts + 1):
                try:
                    rollback_id = await asyncio.wait_for(
                        deployer.rollback(environment, target_deployment_id, reason),
                        timeout=timeout,
                    )
                except asyncio.TimeoutError:
                    last_error = f"timed out after {timeout:g}s"
                except Exception as e:
                    last_error = str(e)
                else:
                    span.set_attribute("rollback.attempts", attempt)
                    self._metrics.record_rollback(environment.name, success=True)
                    if stage.deployment_result is not None:
                        stage.deployment_result.rollback_deployment_id = rollback_id
                    stage.status = StageStatus.ROLLED_BACK
                    stage.failure_reason = reason
                    stage.end_time = self._clock.now()
                    stage.log(f"Rolled back {environment.name} with deployment {rollback_id}")
                    await self._notify(
                        NotificationEvent.ROLLBACK_SUCCESS,
                        config,
                        f"Rolled back {environment.name}",
                        execution_id=execution_id,
                        environment=environment.name,
                        details={"rollback_deployment_id": rollback_id},
                    )
                    return

                self._metrics.record_rollback(environment.name, success=False)
                stage.log(f"Rollback attempt {attempt}/{attempts} failed: {last_error}")
                self._log.warning(
                    "rollback_attempt_failed",
                    environment=environment.name,
                    attempt=attempt,
                    max_attempts=attempts,
                    error=last_error,
                )

            span.set_attribute("rollback.attempts", attempts)

        self._fail(stage, f"Rollback failed after {attempts} attempts: {last_error}")

    async def _notify(
        self,
        event: NotificationEvent,
        config: PipelineConfig,
        message: str,
        **kwargs: Any,
    ) -> None:
        await self._router.route(
            build_notification(
                event,
                pipeline=config.name,
                message=message,
                timestamp=self._clock.now(),
                **kwargs,
            ),
            config.notifications,
        )

    def _fail(self, stage: StageExecution, reason: str) -> None:
        stage.status = StageStatus.FAILED
        stage.failure_reason = reason
        stage.end_time = self._clock.now()
        stage.log(f"Stage failed: {reason}")


def _cancelled(cancel_event: asyncio.Event | None) -> bool:
    return cancel_event is not None and cancel_event.is_set()


__all__ = ["AUTO_APPROVER", "CANCELLED_REASON", "StageRunner"]
