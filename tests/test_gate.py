"""Tests for the readiness gate and the HTTP health probe."""

from __future__ import annotations

import asyncio
from unittest.mock import Mock

import httpx
import pytest

from trainsim.cli.backend.gate import HttpHealthProbe, ReadinessGate
from trainsim.models import (
    FailureDiagnostic,
    FailureReason,
    HealthCheckResult,
    ReadinessState,
    RetryPolicy,
    SupervisorEvent,
)


class ScriptedProbe:
    """Answers health checks from a script of outcomes; the last one repeats.

    An outcome of None blocks until `release` is set (an in-flight attempt).
    """

    def __init__(self, outcomes: list[bool | None], delay: float = 0.0):
        self.outcomes: list[bool | None] = outcomes
        self.delay: float = delay
        self.calls: int = 0
        self.in_flight: int = 0
        self.max_in_flight: int = 0
        self.release: asyncio.Event = asyncio.Event()

    async def __call__(self) -> HealthCheckResult:
        outcome = self.outcomes[min(self.calls, len(self.outcomes) - 1)]
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if outcome is None:
                await self.release.wait()
                return HealthCheckResult.success(200)
            await asyncio.sleep(self.delay)
            if outcome:
                return HealthCheckResult.success(200)
            return HealthCheckResult.failure(
                "HealthCheckConnectionError: connection refused"
            )
        finally:
            self.in_flight -= 1


class FakeSleep:
    """Records requested delays instead of waiting them out."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


def make_gate(
    probe: ScriptedProbe,
    *,
    max_attempts: int = 3,
    interval_ms: int = 100,
    timeout_ms: int = 5000,
) -> tuple[ReadinessGate, Mock, Mock, FakeSleep]:
    on_ready = Mock()
    on_failed = Mock()
    sleep = FakeSleep()
    gate = ReadinessGate(
        probe,
        RetryPolicy(
            max_attempts=max_attempts, interval_ms=interval_ms, timeout_ms=timeout_ms
        ),
        on_ready=on_ready,
        on_failed=on_failed,
        sleep=sleep,
        health_url="http://127.0.0.1:8080/api/health",
    )
    return gate, on_ready, on_failed, sleep


async def wait_for_calls(probe: ScriptedProbe, calls: int) -> None:
    for _ in range(1000):
        if probe.calls >= calls:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"probe reached only {probe.calls} call(s)")


class TestReadinessGatePolling:
    """Bounded polling, terminal states and notifications."""

    @pytest.mark.asyncio
    async def test_ready_on_second_attempt(self) -> None:
        probe = ScriptedProbe([False, True])
        gate, on_ready, on_failed, sleep = make_gate(probe, max_attempts=3, interval_ms=100)

        gate.start()
        state = await asyncio.wait_for(gate.wait(), timeout=5)

        assert state == ReadinessState.READY
        assert probe.calls == 2
        assert gate.attempts == 2
        assert sleep.delays == [pytest.approx(0.1)]
        on_ready.assert_called_once_with()
        on_failed.assert_not_called()
        assert [r.reachable for r in gate.history] == [False, True]

    @pytest.mark.asyncio
    async def test_exhausted_when_never_healthy(self) -> None:
        probe = ScriptedProbe([False])
        gate, on_ready, on_failed, sleep = make_gate(probe, max_attempts=3)

        gate.start()
        state = await asyncio.wait_for(gate.wait(), timeout=5)

        assert state == ReadinessState.EXHAUSTED
        assert probe.calls == 3
        assert len(sleep.delays) == 2
        on_ready.assert_not_called()
        on_failed.assert_called_once()
        diagnostic: FailureDiagnostic = on_failed.call_args.args[0]
        assert diagnostic.attempts == 3
        assert diagnostic.reason == FailureReason.RETRY_BUDGET_EXHAUSTED
        assert diagnostic.last_error == "HealthCheckConnectionError: connection refused"
        assert "after 3 attempt(s)" in diagnostic.summary()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_attempts", [1, 2, 5])
    async def test_exactly_max_attempts(self, max_attempts: int) -> None:
        probe = ScriptedProbe([False])
        gate, _, on_failed, _ = make_gate(probe, max_attempts=max_attempts)

        gate.start()
        await asyncio.wait_for(gate.wait(), timeout=5)
        await asyncio.sleep(0)

        assert probe.calls == max_attempts
        assert on_failed.call_args.args[0].attempts == max_attempts

    @pytest.mark.asyncio
    async def test_slow_attempt_counts_as_timeout(self) -> None:
        probe = ScriptedProbe([None])
        gate, _, on_failed, _ = make_gate(probe, max_attempts=2, interval_ms=1, timeout_ms=20)

        gate.start()
        state = await asyncio.wait_for(gate.wait(), timeout=5)

        assert state == ReadinessState.EXHAUSTED
        assert probe.calls == 2
        assert on_failed.call_args.args[0].last_error.startswith("HealthCheckTimeout")

    @pytest.mark.asyncio
    async def test_attempts_never_overlap(self) -> None:
        probe = ScriptedProbe([False, False, False, True], delay=0.01)
        gate, on_ready, _, _ = make_gate(probe, max_attempts=5, interval_ms=1, timeout_ms=1000)

        gate.start()
        await asyncio.wait_for(gate.wait(), timeout=5)

        assert probe.max_in_flight == 1
        assert probe.calls == 4
        on_ready.assert_called_once()

    @pytest.mark.asyncio
    async def test_probe_exception_is_a_failed_attempt(self) -> None:
        async def broken_probe() -> HealthCheckResult:
            raise OSError("network unreachable")

        on_failed = Mock()
        gate = ReadinessGate(
            broken_probe,
            RetryPolicy(max_attempts=2, interval_ms=1, timeout_ms=100),
            on_ready=Mock(),
            on_failed=on_failed,
            sleep=FakeSleep(),
        )
        gate.start()
        assert await asyncio.wait_for(gate.wait(), timeout=5) == ReadinessState.EXHAUSTED
        assert on_failed.call_args.args[0].last_error == "OSError: network unreachable"


class TestReadinessGateSupervisorEvents:
    """Interaction with process-level events from the supervisor."""

    @pytest.mark.asyncio
    async def test_process_exit_short_circuits(self) -> None:
        probe = ScriptedProbe([False, None])
        gate, on_ready, on_failed, _ = make_gate(
            probe, max_attempts=10, interval_ms=1, timeout_ms=60_000
        )

        gate.start()
        await wait_for_calls(probe, 2)
        gate.handle_supervisor_event(SupervisorEvent(kind="exited", exit_code=1))
        state = await asyncio.wait_for(gate.wait(), timeout=1)
        await asyncio.sleep(0.01)

        assert state == ReadinessState.EXHAUSTED
        assert probe.calls == 2
        on_ready.assert_not_called()
        on_failed.assert_called_once()
        diagnostic: FailureDiagnostic = on_failed.call_args.args[0]
        assert diagnostic.reason == FailureReason.PROCESS_EXITED
        assert diagnostic.exit_code == 1
        assert diagnostic.attempts == 2

    @pytest.mark.asyncio
    async def test_spawn_failure_before_polling(self) -> None:
        probe = ScriptedProbe([True])
        gate, on_ready, on_failed, _ = make_gate(probe)

        gate.handle_supervisor_event(
            SupervisorEvent(kind="spawn_failed", detail="FileNotFoundError: missing")
        )
        gate.start()

        assert await gate.wait() == ReadinessState.EXHAUSTED
        assert probe.calls == 0
        on_ready.assert_not_called()
        diagnostic: FailureDiagnostic = on_failed.call_args.args[0]
        assert diagnostic.reason == FailureReason.SPAWN_FAILED
        assert diagnostic.attempts == 0
        assert diagnostic.last_error == "FileNotFoundError: missing"

    @pytest.mark.asyncio
    async def test_stop_mid_poll_abandons_without_callbacks(self) -> None:
        probe = ScriptedProbe([False, None])
        gate, on_ready, on_failed, _ = make_gate(
            probe, max_attempts=3, interval_ms=1, timeout_ms=60_000
        )

        gate.start()
        await wait_for_calls(probe, 2)
        gate.handle_supervisor_event(SupervisorEvent(kind="stopping", intentional=True))
        # The in-flight attempt would now succeed; its result must be discarded.
        probe.release.set()
        state = await asyncio.wait_for(gate.wait(), timeout=1)
        await asyncio.sleep(0.01)

        assert state == ReadinessState.CANCELLED
        assert probe.calls == 2
        on_ready.assert_not_called()
        on_failed.assert_not_called()

    @pytest.mark.asyncio
    async def test_single_notification_after_ready(self) -> None:
        probe = ScriptedProbe([True])
        gate, on_ready, on_failed, _ = make_gate(probe)

        gate.start()
        await gate.wait()
        gate.handle_supervisor_event(SupervisorEvent(kind="exited", exit_code=1))
        gate.cancel()

        assert gate.state == ReadinessState.READY
        on_ready.assert_called_once()
        on_failed.assert_not_called()

    @pytest.mark.asyncio
    async def test_callback_error_does_not_escape(self) -> None:
        probe = ScriptedProbe([True])
        gate, on_ready, _, _ = make_gate(probe)
        on_ready.side_effect = RuntimeError("window already closed")

        gate.start()
        assert await asyncio.wait_for(gate.wait(), timeout=5) == ReadinessState.READY
        on_ready.assert_called_once()


class TestReadinessGateReset:
    """Explicit reset of a terminal gate."""

    @pytest.mark.asyncio
    async def test_start_after_exhausted_is_noop(self) -> None:
        probe = ScriptedProbe([False])
        gate, _, on_failed, _ = make_gate(probe, max_attempts=2)

        gate.start()
        await gate.wait()
        gate.start()
        await asyncio.sleep(0.01)

        assert probe.calls == 2
        on_failed.assert_called_once()

    @pytest.mark.asyncio
    async def test_reset_allows_new_polling(self) -> None:
        probe = ScriptedProbe([False, False, True])
        gate, on_ready, on_failed, _ = make_gate(probe, max_attempts=2)

        gate.start()
        assert await gate.wait() == ReadinessState.EXHAUSTED

        gate.reset()
        assert gate.state == ReadinessState.PENDING
        assert gate.attempts == 0
        assert gate.history == []

        gate.start()
        assert await asyncio.wait_for(gate.wait(), timeout=5) == ReadinessState.READY
        assert gate.attempts == 1
        on_failed.assert_called_once()
        on_ready.assert_called_once()

    @pytest.mark.asyncio
    async def test_reset_pending_gate_rejected(self) -> None:
        gate, _, _, _ = make_gate(ScriptedProbe([True]))
        with pytest.raises(RuntimeError):
            gate.reset()


class TestHttpHealthProbe:
    """Classification of HTTP outcomes."""

    @staticmethod
    def _probe(handler) -> HttpHealthProbe:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return HttpHealthProbe("http://backend.test/api/health", timeout=1.0, client=client)

    @pytest.mark.asyncio
    async def test_success_status(self) -> None:
        probe = self._probe(lambda request: httpx.Response(200, json={"status": "ok"}))
        result = await probe()
        assert result.reachable is True
        assert result.status_code == 200
        assert result.error_detail is None

    @pytest.mark.asyncio
    async def test_error_status(self) -> None:
        probe = self._probe(lambda request: httpx.Response(503))
        result = await probe()
        assert result.reachable is False
        assert result.status_code == 503
        assert result.error_detail == "HealthCheckStatusError: Health endpoint returned HTTP 503"

    @pytest.mark.asyncio
    async def test_connection_refused(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        result = await self._probe(handler)()
        assert result.reachable is False
        assert result.error_detail.startswith("HealthCheckConnectionError")

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        result = await self._probe(handler)()
        assert result.reachable is False
        assert result.error_detail.startswith("HealthCheckTimeout")

    @pytest.mark.asyncio
    async def test_owned_client_lifecycle(self) -> None:
        probe = HttpHealthProbe("http://127.0.0.1:1/api/health")
        client = probe._get_client()
        assert client is probe._get_client()
        await probe.aclose()
        assert client.is_closed
