"""Time source used by the pipeline components.

Phase pacing, retry intervals and sustained-breach windows all read time
through a Clock so hosts can run against wall time and tests can advance
time instantly.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Source of the current time and of delays."""

    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock time in UTC with asyncio sleeps."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)


__all__ = ["Clock", "SystemClock"]
