"""Unit tests for MonitorRegistry."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from stageflow.monitor_registry import MonitorRegistry
from tests.conftest import ManualClock


async def settle(rounds: int = 5) -> None:
    """Let background monitor tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest_asyncio.fixture
async def registry(clock: ManualClock) -> AsyncGenerator[MonitorRegistry, None]:
    """Registry on the manual clock, stopped after the test."""
    registry = MonitorRegistry(clock=clock)
    yield registry
    await registry.stop_all()


@pytest.mark.asyncio
async def test_monitor_runs_immediately_then_periodically(registry: MonitorRegistry) -> None:
    calls: list[str] = []

    async def check(key: str) -> None:
        calls.append(key)

    await registry.start("practice-1", check, interval_seconds=60)
    await settle()

    assert registry.is_running("practice-1")
    assert calls[0] == "practice-1"
    assert registry.run_count("practice-1") >= 2


@pytest.mark.asyncio
async def test_starting_again_replaces_the_old_monitor(registry: MonitorRegistry) -> None:
    old_calls: list[str] = []
    new_calls: list[str] = []

    async def old(key: str) -> None:
        old_calls.append(key)

    async def new(key: str) -> None:
        new_calls.append(key)

    await registry.start("practice-1", old, interval_seconds=60)
    await settle()
    await registry.start("practice-1", new, interval_seconds=60)
    old_count = len(old_calls)
    await settle()

    assert len(old_calls) == old_count
    assert new_calls
    assert registry.keys == ["practice-1"]


@pytest.mark.asyncio
async def test_replace_requires_existing_monitor(registry: MonitorRegistry) -> None:
    async def check(key: str) -> None:
        return None

    with pytest.raises(KeyError):
        await registry.replace("practice-2", check, interval_seconds=60)

    await registry.start("practice-2", check, interval_seconds=60)
    await registry.replace("practice-2", check, interval_seconds=30)
    assert registry.is_running("practice-2")


@pytest.mark.asyncio
async def test_callback_errors_do_not_stop_the_monitor(registry: MonitorRegistry) -> None:
    async def broken(key: str) -> None:
        raise RuntimeError("backup api down")

    await registry.start("practice-3", broken, interval_seconds=60)
    await settle()

    assert registry.is_running("practice-3")
    assert registry.run_count("practice-3") >= 2


@pytest.mark.asyncio
async def test_stop(registry: MonitorRegistry) -> None:
    async def check(key: str) -> None:
        return None

    await registry.start("practice-4", check, interval_seconds=60)
    await registry.stop("practice-4")

    assert registry.is_running("practice-4") is False
    with pytest.raises(KeyError):
        await registry.stop("practice-4")


@pytest.mark.asyncio
async def test_interval_must_be_positive(registry: MonitorRegistry) -> None:
    async def check(key: str) -> None:
        return None

    with pytest.raises(ValueError, match="interval_seconds"):
        await registry.start("practice-5", check, interval_seconds=0)


@pytest.mark.asyncio
async def test_stop_all(registry: MonitorRegistry) -> None:
    async def check(key: str) -> None:
        return None

    for key in ("a", "b", "c"):
        await registry.start(key, check, interval_seconds=60)
    await registry.stop_all()

    assert registry.keys == []


@pytest.mark.asyncio
async def test_concurrent_starts_leave_one_monitor(registry: MonitorRegistry) -> None:
    ticks: dict[str, int] = {"a": 0, "b": 0, "c": 0}

    def counting(name: str):
        async def check(key: str) -> None:
            ticks[name] += 1

        return check

    await registry.start("tenant-1", counting("a"), interval_seconds=60)
    await settle()
    await asyncio.gather(
        registry.start("tenant-1", counting("b"), interval_seconds=60),
        registry.start("tenant-1", counting("c"), interval_seconds=60),
    )
    before = dict(ticks)
    await settle(10)

    assert registry.keys == ["tenant-1"]
    assert ticks["a"] == before["a"]
    assert ticks["b"] == before["b"]
    assert ticks["c"] > before["c"]

    await registry.stop_all()
    stopped = dict(ticks)
    await settle(10)

    assert ticks == stopped
