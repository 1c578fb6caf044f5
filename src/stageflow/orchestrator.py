"""PipelineOrchestrator - sequences stages across environments.

One execution is a single sequential task: environments run strictly in
ascending ``order`` and a later environment never starts before an
earlier one settled. After every stage the execution is saved to the
ExecutionStore, which is what lets an execution paused at an approval
gate be resumed later, by another process if need be.

Continuation policy:
    PROMOTED            → next environment
    AWAITING_APPROVAL   → execution pauses (PENDING_APPROVAL)
    FAILED/ROLLED_BACK  → execution fails, unless the pipeline auto-promotes,
                          in which case the failure is recorded and the
                          rollout continues

An execution SUCCEEDS only if every attempted stage was promoted.

Example:
    >>> orchestrator = PipelineOrchestrator(deployer=MyDeployer(), store=store)
    >>> execution = await orchestrator.execute(config, TriggerType.MANUAL, "2.4.0")
    >>> execution.status
    <ExecutionStatus.PENDING_APPROVAL: 'pending_approval'>
    >>> execution = await orchestrator.resume(execution.execution_id, approver_id="alice")
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from stageflow.clock import Clock, SystemClock
from stageflow.config import ensure_valid
from stageflow.errors import (
    ApprovalError,
    ApprovalTimeoutError,
    ExecutionNotFoundError,
    MaintenanceWindowError,
    RollbackError,
    StageflowError,
)
from stageflow.health import HealthChecker
from stageflow.interfaces import Deployer, ExecutionStore
from stageflow.notifications import NotificationRouter, build_notification
from stageflow.rollback import RollbackEvaluator
from stageflow.schemas.execution import (
    DeploymentRecord,
    DeploymentRecordStatus,
    ExecutionMetrics,
    ExecutionStatus,
    PipelineExecution,
    StageExecution,
    StageStatus,
)
from stageflow.schemas.pipeline import (
    EnvironmentSpec,
    NotificationEvent,
    PipelineConfig,
    TriggerType,
    UpdateType,
)
from stageflow.stage import CANCELLED_REASON, StageRunner
from stageflow.store.memory import InMemoryExecutionStore
from stageflow.strategies import DeploymentStrategyExecutor, MetricsSource
from stageflow.telemetry.metrics import PipelineMetrics, get_pipeline_metrics
from stageflow.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

APPROVAL_EXPIRED_REASON = "approval expired"


def _new_execution_id() -> str:
    return f"exec-{uuid.uuid4().hex[:12]}"


class PipelineOrchestrator:
    """Executes pipelines and owns their execution records.

    Args:
        deployer: Infrastructure collaborator used for deployments and rollbacks.
        store: Execution persistence (in-memory if not given).
        health_checker: Health checker (built with the orchestrator's clock if not given).
        metrics_source: Phase metrics source (simulated if not given).
        router: Notification router (logs notifications if not given).
        evaluator: Rollback evaluator.
        clock: Time source shared by every component.
        metrics: Metrics collector (defaults to the process-wide one).
        id_factory: Produces execution ids.
    """

    def __init__(
        self,
        deployer: Deployer,
        store: ExecutionStore | None = None,
        *,
        health_checker: HealthChecker | None = None,
        metrics_source: MetricsSource | None = None,
        router: NotificationRouter | None = None,
        evaluator: RollbackEvaluator | None = None,
        clock: Clock | None = None,
        metrics: PipelineMetrics | None = None,
        id_factory: Callable[[], str] = _new_execution_id,
    ) -> None:
        self._deployer = deployer
        self._store = store or InMemoryExecutionStore()
        self._clock = clock or SystemClock()
        self._router = router or NotificationRouter()
        self._metrics = metrics or get_pipeline_metrics()
        self._id_factory = id_factory
        self._runner = StageRunner(
            DeploymentStrategyExecutor(deployer, metrics_source, self._clock),
            health_checker or HealthChecker(clock=self._clock, metrics=self._metrics),
            evaluator=evaluator,
            router=self._router,
            clock=self._clock,
            metrics=self._metrics,
        )
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._log = logger.bind(component="pipeline_orchestrator")

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def execute(
        self,
        config: PipelineConfig,
        trigger: TriggerType,
        version: str,
        *,
        triggered_by: str = "system",
        update_type: UpdateType = UpdateType.PATCH,
    ) -> PipelineExecution:
        """Start a new execution of ``config`` and run it until it settles or pauses.

        Args:
            config: Pipeline definition.
            trigger: What started the run. Manual runs ignore maintenance windows.
            version: Release version.
            triggered_by: User or system that started the run.
            update_type: Release size.

        Returns:
            The execution, SUCCEEDED, FAILED, CANCELLED or PENDING_APPROVAL.

        Raises:
            ConfigValidationError: If ``config`` is invalid; nothing is persisted.
            MaintenanceWindowError: If a non-manual trigger fires outside the
                pipeline's maintenance windows.
        """
        ensure_valid(config)
        now = self._clock.now()
        if trigger != TriggerType.MANUAL and not config.in_maintenance_window(now):
            self._log.warning(
                "execution_outside_maintenance_window",
                pipeline=config.name,
                trigger=trigger.value,
            )
            raise MaintenanceWindowError(config.name, trigger.value)

        execution = PipelineExecution(
            execution_id=self._id_factory(),
            config=config,
            config_ref=config.name,
            trigger=trigger,
            triggered_by=triggered_by,
            version=version,
            update_type=update_type,
            start_time=now,
        )
        execution.transition(ExecutionStatus.RUNNING)
        cancel_event = self._claim(execution.execution_id)
        if cancel_event is None:
            raise StageflowError(f"Execution {execution.execution_id} is already active")
        try:
            await self._store.save(execution)
            self._log.info(
                "execution_started",
                execution_id=execution.execution_id,
                pipeline=config.name,
                version=version,
                trigger=trigger.value,
                triggered_by=triggered_by,
            )
            await self._notify(
                NotificationEvent.PIPELINE_START,
                execution,
                f"Pipeline {config.name} started for version {version}",
            )
            return await self._drive(execution, cancel_event)
        finally:
            self._release(execution.execution_id, cancel_event)

    async def resume(self, execution_id: str, approver_id: str) -> PipelineExecution:
        """Approve the paused stage of an execution and continue it.

        Runs environments until the next approval gate or until the
        execution settles. A cancel requested while the approval is being
        applied wins: the execution is cancelled instead of continuing.

        Args:
            execution_id: Paused execution.
            approver_id: Who approved.

        Returns:
            The execution after continuing.

        Raises:
            ExecutionNotFoundError: If the execution is unknown.
            ApprovalError: If the execution is not paused, is being processed
                by another call, or no approver is given.
            ApprovalTimeoutError: If the approval expired; the execution is failed.
        """
        if not approver_id or not approver_id.strip():
            raise ApprovalError(execution_id, "approver id is required")

        cancel_event = self._claim(execution_id)
        if cancel_event is None:
            raise ApprovalError(execution_id, "execution is already being processed")
        try:
            execution = await self.get_execution(execution_id)
            if execution.status != ExecutionStatus.PENDING_APPROVAL:
                raise ApprovalError(
                    execution_id,
                    f"execution is {execution.status.value}, not pending approval",
                )

            stage = execution.stages[-1]
            expiry = execution.config.approval_policy.expiry_minutes
            if await self._expire_if_stale(execution):
                raise ApprovalTimeoutError(execution_id, stage.environment, expiry or 0)
            if cancel_event.is_set():
                await self._cancel_stored(execution)
                return execution

            stage.status = StageStatus.PROMOTED
            stage.approved_by = approver_id
            stage.end_time = self._clock.now()
            stage.log(f"Approved by {approver_id}")
            execution.transition(ExecutionStatus.RUNNING)
            await self._record_history(execution, stage)
            await self._store.save(execution)
            self._log.info(
                "execution_resumed",
                execution_id=execution_id,
                environment=stage.environment,
                approver_id=approver_id,
            )
            await self._notify(
                NotificationEvent.STAGE_SUCCESS,
                execution,
                f"{stage.environment} promoted after approval by {approver_id}",
                environment=stage.environment,
            )
            return await self._drive(execution, cancel_event)
        finally:
            self._release(execution_id, cancel_event)

    async def cancel(self, execution_id: str) -> PipelineExecution:
        """Cancel an execution.

        A running execution stops issuing new phases and health checks; its
        current stage fails with reason ``cancelled``. A paused execution is
        cancelled immediately. Stages already settled are left untouched.

        Returns:
            The execution as currently stored.

        Raises:
            ExecutionNotFoundError: If the execution is unknown.
            InvalidTransitionError: If the execution already settled.
        """
        cancel_event = self._claim(execution_id)
        if cancel_event is None:
            self._cancel_events[execution_id].set()
            self._log.info("execution_cancel_requested", execution_id=execution_id)
            return await self.get_execution(execution_id)

        try:
            execution = await self.get_execution(execution_id)
            await self._cancel_stored(execution)
            return execution
        finally:
            self._release(execution_id, cancel_event)

    async def expire_stale_approvals(self) -> list[str]:
        """Fail every paused execution whose approval expired.

        Returns:
            Ids of the executions that were failed.
        """
        expired: list[str] = []
        for paused in await self._store.list(status=ExecutionStatus.PENDING_APPROVAL):
            cancel_event = self._claim(paused.execution_id)
            if cancel_event is None:
                continue
            try:
                execution = await self.get_execution(paused.execution_id)
                if await self._expire_if_stale(execution):
                    expired.append(execution.execution_id)
                elif cancel_event.is_set() and not execution.is_terminal:
                    await self._cancel_stored(execution)
            finally:
                self._release(paused.execution_id, cancel_event)
        return expired

    async def request_rollback(
        self,
        config: PipelineConfig,
        environment: str,
        target_deployment_id: str,
        reason: str,
        *,
        requested_by: str = "operator",
    ) -> DeploymentRecord:
        """Roll an environment back to an earlier successful deployment.

        Args:
            config: Pipeline the environment belongs to.
            environment: Environment name.
            target_deployment_id: Deployment to return to.
            reason: Why, for history and notifications.
            requested_by: Operator requesting the rollback.

        Returns:
            History record of the rollback deployment.

        Raises:
            RollbackError: If the target is unknown or the deployer fails.
        """
        try:
            env = config.environment(environment)
        except KeyError:
            raise RollbackError(environment, "unknown environment") from None

        history = await self._store.deployments(environment, limit=100, pipeline=config.name)
        target = next(
            (
                record
                for record in history
                if record.deployment_id == target_deployment_id
                and record.status == DeploymentRecordStatus.SUCCESS
            ),
            None,
        )
        if target is None:
            raise RollbackError(
                environment,
                f"{target_deployment_id} is not a successful deployment of {environment}",
            )

        start = self._clock.now()
        details: dict[str, Any] = {
            "target_deployment_id": target_deployment_id,
            "requested_by": requested_by,
        }
        await self._notify_config(
            NotificationEvent.ROLLBACK_START,
            config,
            f"Rolling back {environment} to {target.version}: {reason}",
            environment=environment,
            details=details,
        )
        with create_span(
            "stageflow.rollback",
            attributes={"environment": environment, "target_deployment_id": target_deployment_id},
        ):
            try:
                rollback_id = await self._deployer.rollback(env, target_deployment_id, reason)
            except Exception as e:
                self._metrics.record_rollback(environment, success=False)
                self._log.error(
                    "manual_rollback_failed",
                    environment=environment,
                    target_deployment_id=target_deployment_id,
                    error=str(e),
                )
                raise RollbackError(environment, str(e)) from e

        self._metrics.record_rollback(environment, success=True)
        now = self._clock.now()
        record = DeploymentRecord(
            deployment_id=rollback_id,
            pipeline=config.name,
            environment=environment,
            version=target.version,
            deployed_at=now,
            deployed_by=requested_by,
            status=DeploymentRecordStatus.SUCCESS,
            duration_seconds=max((now - start).total_seconds(), 0.0),
        )
        await self._store.record_deployment(record)
        self._log.info(
            "manual_rollback_completed",
            environment=environment,
            target_deployment_id=target_deployment_id,
            rollback_deployment_id=rollback_id,
        )
        await self._notify_config(
            NotificationEvent.ROLLBACK_SUCCESS,
            config,
            f"Rolled back {environment} to {target.version}",
            environment=environment,
            details={**details, "rollback_deployment_id": rollback_id},
        )
        return record

    async def get_execution(self, execution_id: str) -> PipelineExecution:
        """Return a stored execution.

        Raises:
            ExecutionNotFoundError: If the execution is unknown.
        """
        execution = await self._store.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def list_executions(
        self,
        pipeline_name: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[PipelineExecution]:
        return await self._store.list(pipeline_name=pipeline_name, status=status)

    async def deployment_history(
        self,
        environment: str,
        limit: int = 10,
        *,
        pipeline: str | None = None,
    ) -> list[DeploymentRecord]:
        """Return an environment's deployments, newest first.

        Pass ``pipeline`` to see only that pipeline's deployments; pipelines
        that share an environment name otherwise share its history.
        """
        return await self._store.deployments(environment, limit=limit, pipeline=pipeline)

    # -------------------------------------------------------------------------
    # Execution loop
    # -------------------------------------------------------------------------

    async def _drive(
        self, execution: PipelineExecution, cancel_event: asyncio.Event
    ) -> PipelineExecution:
        """Run remaining environments until the execution pauses or settles.

        A cancel that arrived before the first stage settles the execution
        without deploying anything.
        """
        config = execution.config
        log = self._log.bind(execution_id=execution.execution_id, pipeline=config.name)

        with create_span(
            "stageflow.execution",
            attributes={
                "execution.id": execution.execution_id,
                "pipeline": config.name,
                "version": execution.version,
            },
        ) as span:
            for environment in self._remaining_environments(execution):
                if cancel_event.is_set():
                    break

                execution.current_stage = environment.name
                stage = await self._runner.run(
                    environment,
                    config,
                    execution.version,
                    execution_id=execution.execution_id,
                    update_type=execution.update_type,
                    previous_deployment_id=await self._rollback_target(
                        config.name, environment.name
                    ),
                    cancel_event=cancel_event,
                )
                execution.record_stage(stage)
                await self._record_history(execution, stage)
                await self._store.save(execution)

                if stage.status == StageStatus.PROMOTED:
                    await self._notify(
                        NotificationEvent.STAGE_SUCCESS,
                        execution,
                        f"{environment.name} promoted",
                        environment=environment.name,
                    )
                    continue

                if stage.status == StageStatus.AWAITING_APPROVAL:
                    execution.aggregate_metrics = compute_execution_metrics(
                        execution, self._clock.now()
                    )
                    execution.transition(ExecutionStatus.PENDING_APPROVAL)
                    await self._store.save(execution)
                    span.set_attribute("execution.status", execution.status.value)
                    log.info("execution_awaiting_approval", environment=environment.name)
                    return execution

                await self._notify(
                    NotificationEvent.STAGE_FAILURE,
                    execution,
                    f"{environment.name} {stage.status.value}: {stage.failure_reason}",
                    environment=environment.name,
                    details={"status": stage.status.value},
                )
                if cancel_event.is_set():
                    break
                if not config.auto_promote:
                    log.info("execution_halted", environment=environment.name)
                    break
                log.info("stage_failure_tolerated", environment=environment.name)

            if cancel_event.is_set():
                final = ExecutionStatus.CANCELLED
            elif execution.stages and all(
                stage.status == StageStatus.PROMOTED for stage in execution.stages
            ):
                final = ExecutionStatus.SUCCEEDED
            else:
                final = ExecutionStatus.FAILED
            span.set_attribute("execution.status", final.value)

        await self._settle(execution, final)
        return execution

    @staticmethod
    def _remaining_environments(execution: PipelineExecution) -> list[EnvironmentSpec]:
        environments = execution.config.sorted_environments()
        if not execution.stages:
            return environments
        last_order = execution.stages[-1].order
        return [env for env in environments if env.order > last_order]

    def _claim(self, execution_id: str) -> asyncio.Event | None:
        """Mark ``execution_id`` as being worked on by this call.

        Returns the execution's cancel event, or None if another call in this
        process already holds it. Must be called before the caller's first
        await so a concurrent cancel always finds the event.
        """
        if execution_id in self._cancel_events:
            return None
        event = asyncio.Event()
        self._cancel_events[execution_id] = event
        return event

    def _release(self, execution_id: str, event: asyncio.Event) -> None:
        if self._cancel_events.get(execution_id) is event:
            del self._cancel_events[execution_id]

    async def _cancel_stored(self, execution: PipelineExecution) -> None:
        """Cancel an execution that no task in this process is driving."""
        if execution.stages and not execution.is_terminal:
            stage = execution.stages[-1]
            if stage.status == StageStatus.AWAITING_APPROVAL:
                stage.status = StageStatus.FAILED
                stage.failure_reason = CANCELLED_REASON
                stage.end_time = self._clock.now()
                stage.log("Stage failed: cancelled")
                await self._record_history(execution, stage)
        await self._settle(execution, ExecutionStatus.CANCELLED)

    async def _rollback_target(self, pipeline: str, environment: str) -> str | None:
        """Most recent successful deployment of ``environment`` by ``pipeline``."""
        history = await self._store.deployments(environment, limit=100, pipeline=pipeline)
        for record in history:
            if record.status == DeploymentRecordStatus.SUCCESS:
                return record.deployment_id
        return None

    async def _record_history(self, execution: PipelineExecution, stage: StageExecution) -> None:
        """Write the stage's deployment to history, replacing any earlier entry for it.

        A deployment waiting on approval is recorded as PENDING_APPROVAL and
        only becomes SUCCESS once approved, so it is never a rollback target
        before then.
        """
        result = stage.deployment_result
        if result is None:
            return

        if stage.status == StageStatus.PROMOTED:
            status = DeploymentRecordStatus.SUCCESS
        elif stage.status == StageStatus.AWAITING_APPROVAL:
            status = DeploymentRecordStatus.PENDING_APPROVAL
        elif stage.status == StageStatus.ROLLED_BACK:
            status = DeploymentRecordStatus.ROLLED_BACK
        else:
            status = DeploymentRecordStatus.FAILED

        await self._store.record_deployment(
            DeploymentRecord(
                deployment_id=result.deployment_id,
                pipeline=execution.config_ref,
                environment=stage.environment,
                version=result.version,
                execution_id=execution.execution_id,
                deployed_at=stage.start_time,
                deployed_by=execution.triggered_by,
                status=status,
                duration_seconds=stage.duration_seconds,
            )
        )

    async def _expire_if_stale(self, execution: PipelineExecution) -> bool:
        """Fail ``execution`` if its pending approval outlived the expiry."""
        expiry = execution.config.approval_policy.expiry_minutes
        if expiry is None or execution.status != ExecutionStatus.PENDING_APPROVAL:
            return False

        stage = execution.stages[-1]
        requested_at = stage.approval_requested_at or stage.start_time
        now = self._clock.now()
        if (now - requested_at).total_seconds() <= expiry * 60:
            return False

        stage.status = StageStatus.FAILED
        stage.failure_reason = APPROVAL_EXPIRED_REASON
        stage.end_time = now
        stage.log(f"Stage failed: approval not received within {expiry} minutes")
        await self._record_history(execution, stage)
        self._log.warning(
            "approval_expired",
            execution_id=execution.execution_id,
            environment=stage.environment,
            expiry_minutes=expiry,
        )
        await self._notify(
            NotificationEvent.STAGE_FAILURE,
            execution,
            f"{stage.environment} approval expired",
            environment=stage.environment,
        )
        await self._settle(execution, ExecutionStatus.FAILED)
        return True

    async def _settle(self, execution: PipelineExecution, status: ExecutionStatus) -> None:
        """Move ``execution`` to a terminal status, persist it and announce it."""
        execution.transition(status)
        execution.end_time = self._clock.now()
        execution.aggregate_metrics = compute_execution_metrics(execution, execution.end_time)
        await self._store.save(execution)
        self._metrics.record_execution(execution.config_ref, status.value)
        self._log.info(
            "execution_completed",
            execution_id=execution.execution_id,
            pipeline=execution.config_ref,
            status=status.value,
            stages=[stage.environment for stage in execution.stages],
        )

        if status == ExecutionStatus.SUCCEEDED:
            await self._notify(
                NotificationEvent.PIPELINE_SUCCESS,
                execution,
                f"Pipeline {execution.config_ref} released {execution.version}",
            )
        else:
            await self._notify(
                NotificationEvent.PIPELINE_FAILURE,
                execution,
                f"Pipeline {execution.config_ref} {status.value} for {execution.version}",
                details={"status": status.value},
            )

    async def _notify(
        self,
        event: NotificationEvent,
        execution: PipelineExecution,
        message: str,
        **kwargs: Any,
    ) -> None:
        await self._notify_config(
            event,
            execution.config,
            message,
            execution_id=execution.execution_id,
            **kwargs,
        )

    async def _notify_config(
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


def compute_execution_metrics(execution: PipelineExecution, now: datetime) -> ExecutionMetrics:
    """Aggregate an execution's stages.

    Errors count failed or rolled back stages and non-passing health checks.
    Warnings count breached rollback conditions and early-stopped rollouts.
    """
    stages = execution.stages
    end = execution.end_time or now
    promoted = sum(1 for stage in stages if stage.status == StageStatus.PROMOTED)
    health_results = [result for stage in stages for result in stage.health_results]

    error_count = sum(
        1 for stage in stages if stage.status in (StageStatus.FAILED, StageStatus.ROLLED_BACK)
    )
    error_count += sum(1 for result in health_results if not result.passed)
    warning_count = sum(len(stage.breaches) for stage in stages)
    warning_count += sum(
        1
        for stage in stages
        if stage.deployment_result is not None and stage.deployment_result.stopped_early
    )

    return ExecutionMetrics(
        total_duration_seconds=max((end - execution.start_time).total_seconds(), 0.0),
        deployment_duration_seconds=sum(
            stage.deployment_result.duration_seconds
            for stage in stages
            if stage.deployment_result is not None
        ),
        health_check_duration_ms=sum(result.response_time_ms for result in health_results),
        success_rate=round(promoted / len(stages) * 100, 2) if stages else 0.0,
        error_count=error_count,
        warning_count=warning_count,
    )


__all__ = [
    "APPROVAL_EXPIRED_REASON",
    "PipelineOrchestrator",
    "compute_execution_metrics",
]
