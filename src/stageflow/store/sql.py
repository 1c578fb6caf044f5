"""Database-backed ExecutionStore using SQLAlchemy async sessions.

Each operation runs in its own session and commits, so a paused execution
is durable as soon as save() returns.

Example:
    >>> engine = create_async_engine("postgresql+asyncpg://.../stageflow")
    >>> await create_schema(engine)
    >>> store = SqlExecutionStore(async_sessionmaker(engine, expire_on_commit=False))
"""

from __future__ import annotations

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from stageflow.interfaces import ExecutionStore
from stageflow.schemas.execution import DeploymentRecord, ExecutionStatus, PipelineExecution
from stageflow.store.models import Base, DeploymentRecordModel, PipelineExecutionModel

logger = structlog.get_logger(__name__)


async def create_schema(engine: AsyncEngine) -> None:
    """Create the stageflow tables if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class SqlExecutionStore(ExecutionStore):
    """ExecutionStore persisting to a relational database.

    Args:
        session_factory: Factory producing AsyncSessions bound to the database.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._log = logger.bind(component="sql_execution_store")

    async def save(self, execution: PipelineExecution) -> None:
        async with self._session_factory() as session:
            await session.merge(
                PipelineExecutionModel(
                    execution_id=execution.execution_id,
                    pipeline_name=execution.config_ref,
                    status=execution.status.value,
                    start_time=execution.start_time,
                    end_time=execution.end_time,
                    document=execution.model_dump(mode="json"),
                )
            )
            await session.commit()
        self._log.debug(
            "execution_saved",
            execution_id=execution.execution_id,
            status=execution.status.value,
        )

    async def get(self, execution_id: str) -> PipelineExecution | None:
        async with self._session_factory() as session:
            row = await session.get(PipelineExecutionModel, execution_id)
            if row is None:
                return None
            return PipelineExecution.model_validate(row.document)

    async def list(
        self,
        *,
        pipeline_name: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[PipelineExecution]:
        stmt = select(PipelineExecutionModel).order_by(PipelineExecutionModel.start_time)
        if pipeline_name is not None:
            stmt = stmt.where(PipelineExecutionModel.pipeline_name == pipeline_name)
        if status is not None:
            stmt = stmt.where(PipelineExecutionModel.status == status.value)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [PipelineExecution.model_validate(row.document) for row in rows]

    async def record_deployment(self, record: DeploymentRecord) -> None:
        stmt = select(DeploymentRecordModel).where(
            DeploymentRecordModel.deployment_id == record.deployment_id
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                row = DeploymentRecordModel(deployment_id=record.deployment_id)
                session.add(row)
            row.pipeline_name = record.pipeline
            row.environment = record.environment
            row.status = record.status.value
            row.deployed_at = record.deployed_at
            row.document = record.model_dump(mode="json")
            await session.commit()
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
        stmt = select(DeploymentRecordModel).where(DeploymentRecordModel.environment == environment)
        if pipeline is not None:
            stmt = stmt.where(DeploymentRecordModel.pipeline_name == pipeline)
        stmt = stmt.order_by(
            DeploymentRecordModel.deployed_at.desc(), DeploymentRecordModel.id.desc()
        ).limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [DeploymentRecord.model_validate(row.document) for row in rows]


__all__ = ["SqlExecutionStore", "create_schema"]
