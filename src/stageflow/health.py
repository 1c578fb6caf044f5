"""Health checks run against an environment after deployment.

Each check makes up to ``retry_count + 1`` attempts spaced
``interval_seconds`` apart. Every attempt is bounded by
``timeout_seconds``; the first passing attempt ends the check. A check
whose last attempt ran out of time is reported ``timeout``, any other
unsuccessful outcome is ``fail``. Both block promotion.

Probes are async callables keyed by HealthCheckType. HTTP (httpx) and
TCP (asyncio streams) probes are built in; database and custom probes
are registered by the host.

Example:
    >>> checker = HealthChecker()
    >>> checker.register_probe(HealthCheckType.DATABASE, ping_database)
    >>> results = await checker.run_all(env.health_checks, deadline_seconds=1800)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

import httpx
import structlog

from stageflow.clock import Clock, SystemClock
from stageflow.errors import HealthCheckFailure, HealthCheckTimeout
from stageflow.schemas.execution import HealthCheckResult, HealthCheckStatus
from stageflow.schemas.pipeline import HealthCheckSpec, HealthCheckType
from stageflow.telemetry.metrics import PipelineMetrics, get_pipeline_metrics
from stageflow.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProbeOutcome:
    """Result of a single probe attempt that completed in time."""

    healthy: bool
    message: str = ""


Probe = Callable[[HealthCheckSpec], Awaitable[ProbeOutcome]]


class HttpProbe:
    """GET the check's endpoint and compare the status code.

    Args:
        client: Shared client to use. If None, a client is created per attempt.
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client

    async def __call__(self, check: HealthCheckSpec) -> ProbeOutcome:
        try:
            if self._client is not None:
                response = await self._client.get(check.endpoint, timeout=check.timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=check.timeout_seconds) as client:
                    response = await client.get(check.endpoint)
        except httpx.TimeoutException as e:
            raise HealthCheckTimeout(check.name, check.timeout_seconds) from e
        except httpx.HTTPError as e:
            raise HealthCheckFailure(check.name, f"request failed: {e}") from e

        if response.status_code != check.expected_status:
            return ProbeOutcome(
                healthy=False,
                message=f"HTTP {response.status_code}, expected {check.expected_status}",
            )
        return ProbeOutcome(healthy=True, message=f"HTTP {response.status_code}")


class TcpProbe:
    """Open a TCP connection to ``host:port``."""

    async def __call__(self, check: HealthCheckSpec) -> ProbeOutcome:
        host, _, port = check.endpoint.rpartition(":")
        if not host or not port.isdigit():
            raise HealthCheckFailure(check.name, f"invalid TCP endpoint {check.endpoint!r}")

        try:
            _reader, writer = await asyncio.open_connection(host, int(port))
        except OSError as e:
            raise HealthCheckFailure(check.name, f"connection failed: {e}") from e

        writer.close()
        await writer.wait_closed()
        return ProbeOutcome(healthy=True, message=f"Connected to {check.endpoint}")


def default_probes() -> dict[HealthCheckType, Probe]:
    """Probes available without host registration."""
    return {
        HealthCheckType.HTTP: HttpProbe(),
        HealthCheckType.TCP: TcpProbe(),
    }


class HealthChecker:
    """Runs health checks with retries, per-attempt timeouts and a stage deadline.

    Args:
        probes: Probes keyed by check type, merged over the defaults.
        clock: Time source for retry intervals and result timestamps.
        metrics: Metrics collector (defaults to the process-wide one).
    """

    def __init__(
        self,
        probes: dict[HealthCheckType, Probe] | None = None,
        clock: Clock | None = None,
        metrics: PipelineMetrics | None = None,
    ) -> None:
        self._probes = default_probes()
        self._probes.update(probes or {})
        self._clock = clock or SystemClock()
        self._metrics = metrics or get_pipeline_metrics()
        self._log = logger.bind(component="health_checker")

    def register_probe(self, check_type: HealthCheckType, probe: Probe) -> None:
        """Register or replace the probe for ``check_type``."""
        self._probes[check_type] = probe

    async def run(
        self,
        check: HealthCheckSpec,
        cancel_event: asyncio.Event | None = None,
    ) -> HealthCheckResult:
        """Run one check to completion.

        Never raises for probe errors; they become ``fail`` or ``timeout``
        results.

        Args:
            check: The check to run.
            cancel_event: When set, no further attempt is started.

        Returns:
            The check's result.
        """
        probe = self._probes.get(check.type)
        if probe is None:
            return self._finish(
                check,
                HealthCheckStatus.FAIL,
                f"No probe registered for {check.type.value} checks",
                response_time_ms=0.0,
                attempts=0,
            )

        status = HealthCheckStatus.FAIL
        message = ""
        response_time_ms = 0.0
        attempts = 0

        with create_span(
            "stageflow.health_check",
            attributes={"check.name": check.name, "check.type": check.type.value},
        ) as span:
            for attempt in range(check.retry_count + 1):
                if attempt > 0:
                    await self._clock.sleep(check.interval_seconds)
                if cancel_event is not None and cancel_event.is_set():
                    status, message = HealthCheckStatus.FAIL, "cancelled"
                    break

                attempts += 1
                start = time.monotonic()
                status, message = await self._attempt(probe, check)
                response_time_ms = (time.monotonic() - start) * 1000

                if status == HealthCheckStatus.PASS:
                    break
                self._log.debug(
                    "health_check_attempt_failed",
                    check_name=check.name,
                    attempt=attempts,
                    status=status.value,
                    message=message,
                )

            span.set_attribute("check.status", status.value)
            span.set_attribute("check.attempts", attempts)

        return self._finish(check, status, message, response_time_ms, attempts)

    async def _attempt(
        self,
        probe: Probe,
        check: HealthCheckSpec,
    ) -> tuple[HealthCheckStatus, str]:
        try:
            outcome = await asyncio.wait_for(probe(check), timeout=check.timeout_seconds)
        except (asyncio.TimeoutError, HealthCheckTimeout):
            return HealthCheckStatus.TIMEOUT, f"Timed out after {check.timeout_seconds:g}s"
        except HealthCheckFailure as e:
            return HealthCheckStatus.FAIL, e.reason
        except Exception as e:
            return HealthCheckStatus.FAIL, f"{type(e).__name__}: {e}"

        if outcome.healthy:
            return HealthCheckStatus.PASS, outcome.message
        return HealthCheckStatus.FAIL, outcome.message

    def _finish(
        self,
        check: HealthCheckSpec,
        status: HealthCheckStatus,
        message: str,
        response_time_ms: float,
        attempts: int,
    ) -> HealthCheckResult:
        self._metrics.record_health_check(check.type.value, status.value)
        self._log.info(
            "health_check_completed",
            check_name=check.name,
            status=status.value,
            attempts=attempts,
            response_time_ms=round(response_time_ms, 2),
        )
        return HealthCheckResult(
            check_name=check.name,
            status=status,
            response_time_ms=response_time_ms,
            message=message,
            timestamp=self._clock.now(),
            attempts=attempts,
        )

    async def run_all(
        self,
        checks: Sequence[HealthCheckSpec],
        deadline_seconds: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> list[HealthCheckResult]:
        """Run checks concurrently, bounded by an overall deadline.

        Checks still running at the deadline are cancelled and reported as
        ``timeout``.

        Args:
            checks: Checks to run.
            deadline_seconds: Overall bound, or None to wait for every check.
            cancel_event: Forwarded to each check.

        Returns:
            One result per check, in the order of ``checks``.
        """
        if not checks:
            return []

        tasks = [asyncio.create_task(self.run(check, cancel_event)) for check in checks]
        _done, pending = await asyncio.wait(tasks, timeout=deadline_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            self._log.warning(
                "health_check_deadline_exceeded",
                deadline_seconds=deadline_seconds,
                pending=len(pending),
            )

        results: list[HealthCheckResult] = []
        for check, task in zip(checks, tasks):
            if task in pending:
                results.append(
                    self._finish(
                        check,
                        HealthCheckStatus.TIMEOUT,
                        f"Stage deadline of {deadline_seconds:g}s exceeded",
                        response_time_ms=(deadline_seconds or 0.0) * 1000,
                        attempts=0,
                    )
                )
            else:
                results.append(task.result())
        return results


__all__ = [
    "HealthChecker",
    "HttpProbe",
    "Probe",
    "ProbeOutcome",
    "TcpProbe",
    "default_probes",
]
