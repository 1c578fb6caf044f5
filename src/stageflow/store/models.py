"""SQLAlchemy async models for execution persistence.

The execution document is stored whole as JSON; the indexed columns
mirror the fields executions are queried by.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all stageflow models."""

    pass


class PipelineExecutionModel(Base):
    """Persisted PipelineExecution."""

    __tablename__ = "pipeline_executions"

    execution_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    pipeline_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    __table_args__ = (Index("ix_executions_pipeline_start", "pipeline_name", "start_time"),)


class DeploymentRecordModel(Base):
    """Persisted deployment history entry."""

    __tablename__ = "deployment_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deployment_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    pipeline_name: Mapped[str] = mapped_column(String(255), nullable=False)
    environment: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    deployed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    __table_args__ = (
        Index("ix_deployments_environment_time", "environment", "deployed_at"),
        Index("ix_deployments_pipeline_environment", "pipeline_name", "environment"),
    )


__all__ = ["Base", "DeploymentRecordModel", "PipelineExecutionModel"]
