"""Unit tests for HealthChecker and the built-in probes."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

import httpx
import pytest

from stageflow.errors import HealthCheckFailure
from stageflow.health import HealthChecker, HttpProbe, ProbeOutcome, TcpProbe
from stageflow.schemas.execution import HealthCheckStatus
from stageflow.schemas.pipeline import HealthCheckSpec, HealthCheckType
from tests.conftest import ManualClock, always_healthy, smoke_check


class ScriptedProbe:
    """Probe returning a sequence of outcomes, then repeating the last."""

    def __init__(self, *outcomes: ProbeOutcome | Exception) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, check: HealthCheckSpec) -> ProbeOutcome:
        outcome = self.outcomes[min(self.calls, len(self.outcomes) - 1)]
        self.calls += 1
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


async def never_responds(check: HealthCheckSpec) -> ProbeOutcome:
    await asyncio.sleep(3600)
    return ProbeOutcome(healthy=True)


def checker_with(probe: Callable[..., object], clock: ManualClock) -> HealthChecker:
    return HealthChecker(probes={HealthCheckType.CUSTOM: probe}, clock=clock)  # type: ignore[dict-item]


class TestRun:
    """Tests for a single health check."""

    @pytest.mark.asyncio
    async def test_first_pass_ends_the_check(self, clock: ManualClock) -> None:
        probe = ScriptedProbe(ProbeOutcome(healthy=True, message="ok"))
        checker = checker_with(probe, clock)

        result = await checker.run(smoke_check(retry_count=3, interval_seconds=5))

        assert result.status == HealthCheckStatus.PASS
        assert result.attempts == 1
        assert probe.calls == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_retries_until_pass(self, clock: ManualClock) -> None:
        probe = ScriptedProbe(
            ProbeOutcome(healthy=False, message="warming up"),
            ProbeOutcome(healthy=False, message="warming up"),
            ProbeOutcome(healthy=True, message="ok"),
        )
        checker = checker_with(probe, clock)

        result = await checker.run(smoke_check(retry_count=2, interval_seconds=5))

        assert result.status == HealthCheckStatus.PASS
        assert result.attempts == 3
        assert clock.sleeps == [5, 5]

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail(self, clock: ManualClock) -> None:
        probe = ScriptedProbe(ProbeOutcome(healthy=False, message="HTTP 503, expected 200"))
        checker = checker_with(probe, clock)

        result = await checker.run(smoke_check(retry_count=2, interval_seconds=1))

        assert result.status == HealthCheckStatus.FAIL
        assert result.attempts == 3
        assert result.message == "HTTP 503, expected 200"
        assert result.passed is False

    @pytest.mark.asyncio
    async def test_unresponsive_probe_times_out(self, clock: ManualClock) -> None:
        checker = checker_with(never_responds, clock)

        started = time.monotonic()
        result = await checker.run(smoke_check(timeout_seconds=1, retry_count=0))
        elapsed = time.monotonic() - started

        assert result.status == HealthCheckStatus.TIMEOUT
        assert result.message == "Timed out after 1s"
        assert elapsed < 2.0

    @pytest.mark.asyncio
    async def test_timeout_is_distinct_from_fail(self, clock: ManualClock) -> None:
        probe = ScriptedProbe(HealthCheckFailure("smoke", "connection refused"))
        checker = checker_with(probe, clock)

        result = await checker.run(smoke_check())

        assert result.status == HealthCheckStatus.FAIL
        assert result.message == "connection refused"

    @pytest.mark.asyncio
    async def test_unexpected_probe_error_fails(self, clock: ManualClock) -> None:
        probe = ScriptedProbe(RuntimeError("boom"))
        checker = checker_with(probe, clock)

        result = await checker.run(smoke_check())

        assert result.status == HealthCheckStatus.FAIL
        assert result.message == "RuntimeError: boom"

    @pytest.mark.asyncio
    async def test_unregistered_probe_fails_without_attempts(self, clock: ManualClock) -> None:
        checker = HealthChecker(clock=clock)

        result = await checker.run(smoke_check(type=HealthCheckType.DATABASE))

        assert result.status == HealthCheckStatus.FAIL
        assert result.attempts == 0
        assert result.message == "No probe registered for database checks"

    @pytest.mark.asyncio
    async def test_register_probe(self, clock: ManualClock) -> None:
        checker = HealthChecker(clock=clock)
        checker.register_probe(HealthCheckType.DATABASE, always_healthy)

        result = await checker.run(smoke_check(type=HealthCheckType.DATABASE))

        assert result.passed is True

    @pytest.mark.asyncio
    async def test_cancel_event_stops_further_attempts(self, clock: ManualClock) -> None:
        cancel = asyncio.Event()

        async def fail_then_cancel(check: HealthCheckSpec) -> ProbeOutcome:
            cancel.set()
            return ProbeOutcome(healthy=False, message="down")

        checker = checker_with(fail_then_cancel, clock)

        result = await checker.run(smoke_check(retry_count=5), cancel_event=cancel)

        assert result.status == HealthCheckStatus.FAIL
        assert result.message == "cancelled"
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_result_timestamp_comes_from_clock(self, clock: ManualClock) -> None:
        checker = checker_with(always_healthy, clock)
        result = await checker.run(smoke_check())
        assert result.timestamp == clock.now()


class TestRunAll:
    """Tests for running an environment's checks together."""

    @pytest.mark.asyncio
    async def test_results_keep_check_order(self, clock: ManualClock) -> None:
        checker = checker_with(always_healthy, clock)
        checks = [smoke_check(name=name) for name in ("api", "db", "cache")]

        results = await checker.run_all(checks)

        assert [result.check_name for result in results] == ["api", "db", "cache"]

    @pytest.mark.asyncio
    async def test_no_checks(self, clock: ManualClock) -> None:
        assert await checker_with(always_healthy, clock).run_all([]) == []

    @pytest.mark.asyncio
    async def test_deadline_marks_pending_checks_timed_out(self, clock: ManualClock) -> None:
        checker = checker_with(always_healthy, clock)
        checker.register_probe(HealthCheckType.TCP, never_responds)
        checks = [
            smoke_check(name="fast"),
            smoke_check(name="slow", type=HealthCheckType.TCP, timeout_seconds=60),
        ]

        results = await checker.run_all(checks, deadline_seconds=0.2)

        assert results[0].status == HealthCheckStatus.PASS
        assert results[1].status == HealthCheckStatus.TIMEOUT
        assert results[1].message == "Stage deadline of 0.2s exceeded"


class TestHttpProbe:
    """Tests for the httpx-backed probe."""

    @staticmethod
    def client_returning(status_code: int) -> httpx.AsyncClient:
        transport = httpx.MockTransport(lambda request: httpx.Response(status_code))
        return httpx.AsyncClient(transport=transport)

    @pytest.mark.asyncio
    async def test_expected_status_is_healthy(self) -> None:
        async with self.client_returning(200) as client:
            outcome = await HttpProbe(client)(smoke_check(endpoint="http://svc/health"))

        assert outcome.healthy is True
        assert outcome.message == "HTTP 200"

    @pytest.mark.asyncio
    async def test_other_status_is_unhealthy(self) -> None:
        async with self.client_returning(503) as client:
            outcome = await HttpProbe(client)(smoke_check(endpoint="http://svc/health"))

        assert outcome.healthy is False
        assert outcome.message == "HTTP 503, expected 200"

    @pytest.mark.asyncio
    async def test_transport_error_raises_failure(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
            with pytest.raises(HealthCheckFailure, match="request failed"):
                await HttpProbe(client)(smoke_check(endpoint="http://svc/health"))


class TestTcpProbe:
    """Tests for the TCP connect probe."""

    @pytest.mark.asyncio
    async def test_open_port_is_healthy(self) -> None:
        async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            outcome = await TcpProbe()(smoke_check(endpoint=f"127.0.0.1:{port}"))
        finally:
            server.close()
            await server.wait_closed()

        assert outcome.healthy is True

    @pytest.mark.asyncio
    async def test_malformed_endpoint_fails(self) -> None:
        with pytest.raises(HealthCheckFailure, match="invalid TCP endpoint"):
            await TcpProbe()(smoke_check(endpoint="no-port"))
