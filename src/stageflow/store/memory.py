"""In-process ExecutionStore.

Executions are held as JSON documents and rebuilt on every read, so
callers never share mutable state with the store, the same as with a
database-backed store.
"""

from __future__ import annotations

from typing import Any

import structlog

from stageflow.interfaces import ExecutionStore
from stageflow.schemas.execution import DeploymentRecord, ExecutionStatus, PipelineExecution

logger = structlog.get_logger(__name__)


class InMemoryExecutionStore(ExecutionStore):
    """ExecutionStore backed by dictionaries. Contents are lost on exit."""

    def __init__(self) -> None:
        self._executions: dict[str, dict[str, Any]] = {}
        self._deployments: dict[str, dict[str, Any]] = {}
        self._log = logger.bind(component="memory_execution_store")

    async def save(self, execution: PipelineExecution) -> None:
        self._executions[execution.execution_id] = execution.model_dump(mode="json")
        self._log.debug(
            "execution_saved",
            execution_id=execution.execution_id,
            status=execution.status.value,
        )

    async def get(self, execution_id: str) -> PipelineExecution | None:
        document = self._executions.get(execution_id)
        if document is None:
            return None
        return PipelineExecution.model_validate(document)

    async def list(
        self,
        *,
        pipeline_name: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[PipelineExecution]:
        executions = [PipelineExecution.model_validate(doc) for doc in self._executions.values()]
        if pipeline_name is not None:
            executions = [e for e in executions if e.config_ref == pipeline_name]
        if status is not None:
            executions = [e for e in executions if e.status == status]
        return sorted(executions, key=lambda e: e.start_time)

    async def record_deployment(self, record: DeploymentRecord) -> None:
        self._deployments[record.deployment_id] = record.model_dump(mode="json")
        self._log.debug(
            "deployment_recorded",
            deployment_id=record.deployment_id,
            environment=record.environment,
        )

    async def deployments(
        self,
        environment: str,
        limit: int = 10,
        *,
        pipeline: str | None = None,
    ) -> list[DeploymentRecord]:
        records = [
            DeploymentRecord.model_validate(doc)
            for doc in reversed(self._deployments.values())
            if doc["environment"] == environment
            and (pipeline is None or doc["pipeline"] == pipeline)
        ]
        records.sort(key=lambda r: r.deployed_at, reverse=True)
        return records[:limit]


__all__ = ["InMemoryExecutionStore"]
