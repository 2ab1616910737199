"""Readiness gate: bounded health polling of the backend's liveness endpoint.

State machine::

    PENDING -> PENDING      failed attempt, budget left
    PENDING -> READY        successful attempt
    PENDING -> EXHAUSTED    budget spent, or the backend process died
    PENDING -> CANCELLED    the supervisor is stopping the backend on purpose

READY, EXHAUSTED and CANCELLED are terminal until `reset()`. Exactly one of
`on_ready` / `on_failed` is called per lifecycle, and neither on CANCELLED.

Attempts run on a single task: the next health check is only issued after
the previous one resolved or hit its timeout.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

from trainsim.cli.backend.logging import ShellLogComponent, get_logger
from trainsim.constants import DEFAULT_TIMEOUT_MS
from trainsim.errors import (
    HealthCheckConnectionError,
    HealthCheckStatusError,
    HealthCheckTimeout,
    ProcessExitedUnexpectedly,
    describe_error,
)
from trainsim.models import (
    FailureDiagnostic,
    FailureReason,
    HealthCheckResult,
    ReadinessState,
    RetryPolicy,
    SupervisorEvent,
)

if TYPE_CHECKING:
    from trainsim.cli.backend.supervisor import ProcessSupervisor

HealthProbe = Callable[[], Awaitable[HealthCheckResult]]
SleepFn = Callable[[float], Awaitable[None]]
ReadyCallback = Callable[[], Any]
FailedCallback = Callable[[FailureDiagnostic], Any]

logger = get_logger(ShellLogComponent.GATE)


class HttpHealthProbe:
    """GET the liveness endpoint; any 2xx answer means healthy."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_MS / 1000,
        client: httpx.AsyncClient | None = None,
    ):
        self.url: str = url
        self.timeout: float = timeout
        self._client: httpx.AsyncClient | None = client
        self._owns_client: bool = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient()
            self._owns_client = True
        return self._client

    async def __call__(self) -> HealthCheckResult:
        try:
            response = await self._get_client().get(self.url, timeout=self.timeout)
        except httpx.TimeoutException:
            return HealthCheckResult.failure(
                describe_error(
                    HealthCheckTimeout(f"{self.url} did not answer within {self.timeout}s")
                )
            )
        except httpx.TransportError as e:
            return HealthCheckResult.failure(
                describe_error(HealthCheckConnectionError(f"{self.url}: {e}"))
            )

        if response.is_success:
            return HealthCheckResult.success(response.status_code)
        return HealthCheckResult.failure(
            describe_error(HealthCheckStatusError(response.status_code)),
            status_code=response.status_code,
        )

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class ReadinessGate:
    """Blocks UI presentation until the backend answers its health check."""

    def __init__(
        self,
        probe: HealthProbe,
        policy: RetryPolicy,
        *,
        on_ready: ReadyCallback,
        on_failed: FailedCallback,
        sleep: SleepFn = asyncio.sleep,
        health_url: str | None = None,
    ):
        """Initialize the gate.

        Args:
            probe: Performs one health check and reports the outcome
            policy: Attempt budget, interval and per-attempt timeout
            on_ready: Called once when the backend answered successfully
            on_failed: Called once with a diagnostic when the gate gives up
            sleep: Delay between attempts; injectable for deterministic tests
            health_url: Only used to enrich diagnostics and log lines
        """
        self._probe: HealthProbe = probe
        self.policy: RetryPolicy = policy
        self._on_ready: ReadyCallback = on_ready
        self._on_failed: FailedCallback = on_failed
        self._sleep: SleepFn = sleep
        self.health_url: str | None = health_url

        self.state: ReadinessState = ReadinessState.PENDING
        self.attempts: int = 0
        self.last_error: str | None = None
        self.diagnostic: FailureDiagnostic | None = None
        self.history: list[HealthCheckResult] = []
        self._task: asyncio.Task[None] | None = None
        self._settled: asyncio.Event = asyncio.Event()

    # === Wiring ===

    def attach(self, supervisor: ProcessSupervisor) -> None:
        """Observe process-level events of the supervisor."""
        supervisor.add_listener(self.handle_supervisor_event)

    def detach(self, supervisor: ProcessSupervisor) -> None:
        supervisor.remove_listener(self.handle_supervisor_event)

    # === Lifecycle ===

    def start(self) -> None:
        """Begin polling. No-op if already polling or terminal."""
        if self.state.is_terminal:
            logger.debug(f"Readiness gate is {self.state.value}; not polling")
            return
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="backend-readiness-gate")

    async def wait(self) -> ReadinessState:
        """Wait until the gate reaches a terminal state and return it."""
        await self._settled.wait()
        return self.state

    def cancel(self) -> None:
        """Abandon polling without notifying the shell."""
        self._settle(ReadinessState.CANCELLED)

    def reset(self) -> None:
        """Return a terminal gate to PENDING with a fresh budget."""
        if not self.state.is_terminal:
            raise RuntimeError("Cannot reset a readiness gate that is still pending")
        self._cancel_task()
        self.state = ReadinessState.PENDING
        self.attempts = 0
        self.last_error = None
        self.diagnostic = None
        self.history = []
        self._task = None
        self._settled = asyncio.Event()

    # === Polling ===

    async def _run(self) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=wait_fixed(self.policy.interval_seconds),
            retry=retry_if_result(self._should_retry),
            before_sleep=self._log_retry_attempt,
            sleep=self._sleep,
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
        )
        result: HealthCheckResult = await retrying(self._attempt)

        if self.state != ReadinessState.PENDING:
            # Settled by a supervisor event while the last attempt was in flight.
            return
        if result.reachable:
            self._settle(ReadinessState.READY)
        else:
            self._settle(
                ReadinessState.EXHAUSTED,
                self._diagnostic(FailureReason.RETRY_BUDGET_EXHAUSTED),
            )

    async def _attempt(self) -> HealthCheckResult:
        self.attempts += 1
        logger.debug(f"Health check attempt {self.attempts}/{self.policy.max_attempts}")
        result = await self._check_once()
        if self.state == ReadinessState.PENDING:
            self.history.append(result)
            if not result.reachable:
                self.last_error = result.error_detail
        return result

    def _should_retry(self, result: HealthCheckResult) -> bool:
        return not result.reachable and self.state == ReadinessState.PENDING

    def _log_retry_attempt(self, retry_state: RetryCallState) -> None:
        logger.info(
            f"Backend not ready yet (attempt {retry_state.attempt_number}/"
            f"{self.policy.max_attempts}): {self.last_error}"
        )

    async def _check_once(self) -> HealthCheckResult:
        try:
            return await asyncio.wait_for(
                self._probe(), timeout=self.policy.timeout_seconds
            )
        except asyncio.TimeoutError:
            return HealthCheckResult.failure(
                describe_error(
                    HealthCheckTimeout(
                        f"no answer within {self.policy.timeout_ms}ms"
                    )
                )
            )
        except Exception as e:
            return HealthCheckResult.failure(describe_error(e))

    # === Supervisor events ===

    def handle_supervisor_event(self, event: SupervisorEvent) -> None:
        if self.state.is_terminal:
            return

        if event.kind == "stopping" or (event.kind == "exited" and event.intentional):
            logger.info("Backend is being stopped; abandoning readiness polling")
            self._settle(ReadinessState.CANCELLED)
        elif event.kind == "spawn_failed":
            self.last_error = event.detail
            self._settle(
                ReadinessState.EXHAUSTED,
                self._diagnostic(FailureReason.SPAWN_FAILED),
            )
        elif event.kind == "exited":
            self.last_error = describe_error(ProcessExitedUnexpectedly(event.exit_code))
            self._settle(
                ReadinessState.EXHAUSTED,
                self._diagnostic(FailureReason.PROCESS_EXITED, exit_code=event.exit_code),
            )

    # === Settlement ===

    def _diagnostic(
        self, reason: FailureReason, *, exit_code: int | None = None
    ) -> FailureDiagnostic:
        return FailureDiagnostic(
            attempts=self.attempts,
            last_error=self.last_error,
            reason=reason,
            exit_code=exit_code,
            health_url=self.health_url,
        )

    def _cancel_task(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    def _settle(
        self, state: ReadinessState, diagnostic: FailureDiagnostic | None = None
    ) -> None:
        if self.state.is_terminal:
            return
        self.state = state
        self.diagnostic = diagnostic
        self._cancel_task()
        self._settled.set()

        if state == ReadinessState.READY:
            logger.info(f"Backend is healthy after {self.attempts} attempt(s)")
            self._notify(self._on_ready)
        elif state == ReadinessState.EXHAUSTED and diagnostic is not None:
            logger.error(diagnostic.summary())
            self._notify(self._on_failed, diagnostic)

    def _notify(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception(f"Shell callback {getattr(callback, '__name__', callback)} failed")
