"""Contract tests run against every ExecutionStore implementation.

The SQL store runs on a file-backed SQLite database via aiosqlite.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from stageflow.interfaces import ExecutionStore
from stageflow.schemas.execution import (
    DeploymentRecord,
    DeploymentRecordStatus,
    ExecutionStatus,
    PipelineExecution,
    StageExecution,
    StageStatus,
)
from stageflow.schemas.pipeline import EnvironmentSpec, PipelineConfig, TriggerType
from stageflow.store import InMemoryExecutionStore, SqlExecutionStore, create_schema

pytestmark = pytest.mark.integration

T0 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture(params=["memory", "sql"])
async def execution_store(
    request: pytest.FixtureRequest, tmp_path: Path
) -> AsyncGenerator[ExecutionStore, None]:
    """Each store implementation, empty."""
    if request.param == "memory":
        yield InMemoryExecutionStore()
        return

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'stageflow.db'}")
    await create_schema(engine)
    try:
        yield SqlExecutionStore(async_sessionmaker(engine, expire_on_commit=False))
    finally:
        await engine.dispose()


def make_execution(execution_id: str, pipeline: str = "web", offset: int = 0) -> PipelineExecution:
    config = PipelineConfig(name=pipeline, environments=[EnvironmentSpec(name="dev", order=1)])
    execution = PipelineExecution(
        execution_id=execution_id,
        config=config,
        config_ref=pipeline,
        trigger=TriggerType.MANUAL,
        version="1.0.0",
        start_time=T0 + timedelta(minutes=offset),
    )
    execution.transition(ExecutionStatus.RUNNING)
    return execution


def make_record(
    deployment_id: str,
    offset: int,
    environment: str = "prod",
    pipeline: str = "web",
    status: DeploymentRecordStatus = DeploymentRecordStatus.SUCCESS,
) -> DeploymentRecord:
    return DeploymentRecord(
        deployment_id=deployment_id,
        pipeline=pipeline,
        environment=environment,
        version="1.0.0",
        deployed_at=T0 + timedelta(minutes=offset),
        deployed_by="ci",
        status=status,
    )


@pytest.mark.asyncio
async def test_save_and_get_round_trip(execution_store: ExecutionStore) -> None:
    execution = make_execution("exec-1")
    stage = StageExecution(environment="dev", order=1, start_time=T0, status=StageStatus.PROMOTED)
    stage.log("Promoted 1.0.0 in dev")
    execution.record_stage(stage)

    await execution_store.save(execution)
    loaded = await execution_store.get("exec-1")

    assert loaded is not None
    assert loaded.status == ExecutionStatus.RUNNING
    assert loaded.stages[0].logs == ["Promoted 1.0.0 in dev"]
    assert loaded.config == execution.config


@pytest.mark.asyncio
async def test_save_replaces_by_id(execution_store: ExecutionStore) -> None:
    execution = make_execution("exec-1")
    await execution_store.save(execution)
    execution.transition(ExecutionStatus.SUCCEEDED)
    await execution_store.save(execution)

    loaded = await execution_store.get("exec-1")

    assert loaded is not None
    assert loaded.status == ExecutionStatus.SUCCEEDED
    assert len(await execution_store.list()) == 1


@pytest.mark.asyncio
async def test_loaded_copies_are_independent(execution_store: ExecutionStore) -> None:
    await execution_store.save(make_execution("exec-1"))

    loaded = await execution_store.get("exec-1")
    assert loaded is not None
    loaded.transition(ExecutionStatus.FAILED)

    again = await execution_store.get("exec-1")
    assert again is not None
    assert again.status == ExecutionStatus.RUNNING


@pytest.mark.asyncio
async def test_unknown_execution(execution_store: ExecutionStore) -> None:
    assert await execution_store.get("exec-missing") is None


@pytest.mark.asyncio
async def test_list_filters_and_orders(execution_store: ExecutionStore) -> None:
    await execution_store.save(make_execution("exec-b", offset=2))
    await execution_store.save(make_execution("exec-a", offset=1))
    paused = make_execution("exec-c", pipeline="api", offset=3)
    paused.transition(ExecutionStatus.PENDING_APPROVAL)
    await execution_store.save(paused)

    everything = await execution_store.list()
    web = await execution_store.list(pipeline_name="web")
    waiting = await execution_store.list(status=ExecutionStatus.PENDING_APPROVAL)

    assert [e.execution_id for e in everything] == ["exec-a", "exec-b", "exec-c"]
    assert [e.execution_id for e in web] == ["exec-a", "exec-b"]
    assert [e.execution_id for e in waiting] == ["exec-c"]


@pytest.mark.asyncio
async def test_deployments_newest_first(execution_store: ExecutionStore) -> None:
    await execution_store.record_deployment(make_record("d-1", offset=0))
    await execution_store.record_deployment(make_record("d-3", offset=20))
    await execution_store.record_deployment(make_record("d-2", offset=10))
    await execution_store.record_deployment(make_record("other", offset=30, environment="dev"))

    history = await execution_store.deployments("prod")
    latest = await execution_store.deployments("prod", limit=1)

    assert [record.deployment_id for record in history] == ["d-3", "d-2", "d-1"]
    assert [record.deployment_id for record in latest] == ["d-3"]
    assert history[0].deployed_at == T0 + timedelta(minutes=20)


@pytest.mark.asyncio
async def test_deployments_filtered_by_pipeline(execution_store: ExecutionStore) -> None:
    await execution_store.record_deployment(make_record("web-1", offset=0, pipeline="web"))
    await execution_store.record_deployment(make_record("api-1", offset=10, pipeline="api"))

    everything = await execution_store.deployments("prod")
    web = await execution_store.deployments("prod", pipeline="web")

    assert [record.deployment_id for record in everything] == ["api-1", "web-1"]
    assert [record.deployment_id for record in web] == ["web-1"]
    assert web[0].pipeline == "web"


@pytest.mark.asyncio
async def test_recording_a_deployment_again_replaces_it(execution_store: ExecutionStore) -> None:
    await execution_store.record_deployment(
        make_record("d-1", offset=0, status=DeploymentRecordStatus.PENDING_APPROVAL)
    )
    await execution_store.record_deployment(
        make_record("d-1", offset=0, status=DeploymentRecordStatus.FAILED)
    )

    history = await execution_store.deployments("prod")

    assert [(record.deployment_id, record.status) for record in history] == [
        ("d-1", DeploymentRecordStatus.FAILED)
    ]
