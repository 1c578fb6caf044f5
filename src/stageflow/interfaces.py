"""External collaborator interfaces.

The orchestrator never touches infrastructure, notification transports or
durable storage directly. Hosts provide implementations of these ABCs.

Example:
    A concrete deployer backed by a cloud API::

        class KubernetesDeployer(Deployer):
            async def deploy(self, environment: EnvironmentSpec, version: str) -> str:
                # apply manifests, return the rollout id
                ...

            async def rollback(
                self, environment: EnvironmentSpec, target_deployment_id: str | None, reason: str
            ) -> str:
                # undo to the target rollout, return the new rollout id
                ...
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from stageflow.notifications import PipelineNotification
    from stageflow.schemas.execution import (
        DeploymentRecord,
        ExecutionStatus,
        PipelineExecution,
    )
    from stageflow.schemas.pipeline import EnvironmentSpec, NotificationChannel


class Deployer(ABC):
    """Mutates real infrastructure on behalf of the pipeline.

    Implementations raise DeployerError on failure; any other exception is
    treated the same way by the stage runner.
    """

    @abstractmethod
    async def deploy(self, environment: EnvironmentSpec, version: str) -> str:
        """Deploy ``version`` to ``environment``.

        Args:
            environment: Target environment.
            version: Release version.

        Returns:
            Deployment id identifying this rollout.

        Raises:
            DeployerError: If the environment could not be changed.
        """
        ...

    @abstractmethod
    async def rollback(
        self,
        environment: EnvironmentSpec,
        target_deployment_id: str | None,
        reason: str,
    ) -> str:
        """Return ``environment`` to an earlier deployment.

        Args:
            environment: Environment to roll back.
            target_deployment_id: Deployment to return to, or None for the
                deployer's notion of "previous".
            reason: Why the rollback happens, for the deployer's audit trail.

        Returns:
            Deployment id of the rollback deployment.

        Raises:
            DeployerError: If the rollback deployment failed.
        """
        ...


class Notifier(ABC):
    """Delivers pipeline notifications to one kind of channel.

    Delivery is fire-and-forget: return False on failure, the router logs it
    and does not retry.
    """

    @abstractmethod
    async def send(self, notification: PipelineNotification, channel: NotificationChannel) -> bool:
        """Deliver ``notification`` to ``channel``.

        Returns:
            True if delivery succeeded, False otherwise.
        """
        ...


class ExecutionStore(ABC):
    """Durable persistence of executions and deployment history.

    Executions must survive process restarts so a paused execution can be
    resumed by another process.
    """

    @abstractmethod
    async def save(self, execution: PipelineExecution) -> None:
        """Insert or replace ``execution`` keyed by its execution id."""
        ...

    @abstractmethod
    async def get(self, execution_id: str) -> PipelineExecution | None:
        """Return the stored execution, or None if unknown."""
        ...

    @abstractmethod
    async def list(
        self,
        *,
        pipeline_name: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[PipelineExecution]:
        """Return executions ordered by start time, optionally filtered."""
        ...

    @abstractmethod
    async def record_deployment(self, record: DeploymentRecord) -> None:
        """Add a history entry, replacing any entry with the same deployment_id."""
        ...

    @abstractmethod
    async def deployments(
        self,
        environment: str,
        limit: int = 10,
        *,
        pipeline: str | None = None,
    ) -> list[DeploymentRecord]:
        """Return the newest ``limit`` history entries for ``environment``, newest first.

        ``pipeline`` restricts the entries to one pipeline's deployments.
        """
        ...


__all__ = ["Deployer", "ExecutionStore", "Notifier"]
