"""MonitorRegistry - one background polling task per tenant.

Hosts that poll tenant health outside of pipeline runs (backup freshness,
replica lag) register a monitor per tenant key. Starting a monitor for a
key that already has one stops the old monitor first, and waits for it to
finish, so two timers never run for the same key.

The registry is an ordinary object owned by the host process; there is no
module-level instance.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from stageflow.clock import Clock, SystemClock

logger = structlog.get_logger(__name__)

MonitorCallback = Callable[[str], Awaitable[Any]]


class MonitorRegistry:
    """Registry of periodic monitors keyed by tenant id.

    Monitors run their callback immediately, then every ``interval_seconds``.
    A callback that raises is logged and the monitor keeps running. A slow
    callback delays the next run rather than overlapping with it.

    Args:
        clock: Time source for the interval sleeps.

    Example:
        >>> registry = MonitorRegistry()
        >>> await registry.start("practice-42", check_backups, interval_seconds=300)
        >>> registry.is_running("practice-42")
        True
        >>> await registry.stop("practice-42")
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._runs: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._log = logger.bind(component="monitor_registry")

    def _lock(self, key: str) -> asyncio.Lock:
        # Serializes stop-then-start for one key; held across the await on the old task.
        return self._locks.setdefault(key, asyncio.Lock())

    async def start(
        self,
        key: str,
        callback: MonitorCallback,
        interval_seconds: float,
    ) -> None:
        """Start a monitor for ``key``, replacing any existing one.

        Concurrent starts for the same key are applied one after the other;
        the last one to run wins and every earlier monitor is stopped.

        Args:
            key: Tenant id.
            callback: Async function called with ``key`` on every tick.
            interval_seconds: Seconds between ticks (must be > 0).

        Raises:
            ValueError: If interval_seconds <= 0.
        """
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")

        async with self._lock(key):
            if key in self._tasks:
                self._log.info(
                    "replacing_existing_monitor", key=key, interval_seconds=interval_seconds
                )
                await self._cancel(key)

            self._runs[key] = 0
            self._tasks[key] = asyncio.create_task(
                self._run_periodic(key, callback, interval_seconds)
            )
        self._log.info("monitor_started", key=key, interval_seconds=interval_seconds)

    async def replace(
        self,
        key: str,
        callback: MonitorCallback,
        interval_seconds: float,
    ) -> None:
        """Replace the monitor running for ``key``.

        Raises:
            KeyError: If no monitor is running for ``key``.
        """
        if key not in self._tasks:
            raise KeyError(f"Monitor not found: {key}")
        await self.start(key, callback, interval_seconds)

    async def _run_periodic(
        self,
        key: str,
        callback: MonitorCallback,
        interval_seconds: float,
    ) -> None:
        first_run = True
        while True:
            if not first_run:
                await self._clock.sleep(interval_seconds)
            first_run = False

            try:
                await callback(key)
            except Exception as e:
                self._log.error("monitor_callback_error", key=key, error=str(e), exc_info=True)
            finally:
                self._runs[key] = self._runs.get(key, 0) + 1

    async def stop(self, key: str) -> None:
        """Stop the monitor for ``key`` and wait for it to finish.

        Raises:
            KeyError: If no monitor is running for ``key``.
        """
        async with self._lock(key):
            if key not in self._tasks:
                raise KeyError(f"Monitor not found: {key}")
            await self._cancel(key)

    async def stop_all(self) -> None:
        """Stop every monitor."""
        for key in list(self._tasks):
            async with self._lock(key):
                if key in self._tasks:
                    await self._cancel(key)
        self._log.info("all_monitors_stopped")

    async def _cancel(self, key: str) -> None:
        """Cancel the monitor for ``key`` and wait for it; caller holds the key's lock."""
        task = self._tasks.pop(key)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        self._log.info("monitor_stopped", key=key)

    def is_running(self, key: str) -> bool:
        return key in self._tasks

    def run_count(self, key: str) -> int:
        """Number of completed ticks for the current monitor of ``key``."""
        return self._runs.get(key, 0)

    @property
    def keys(self) -> list[str]:
        return list(self._tasks)


__all__ = ["MonitorCallback", "MonitorRegistry"]
