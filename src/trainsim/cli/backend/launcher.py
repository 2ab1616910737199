"""Owner of one supervisor + readiness gate pair per application run.

The launcher wires the pair to a shell controller (the UI host) and makes sure
the backend is stopped on every exit path: normal return, exceptions,
SIGINT/SIGTERM and, as a last resort, interpreter shutdown via atexit.
"""

from __future__ import annotations

import asyncio
import atexit
import signal
from types import TracebackType
from typing import Protocol

from trainsim.cli.backend.gate import HealthProbe, HttpHealthProbe, ReadinessGate, SleepFn
from trainsim.cli.backend.logging import ShellLogComponent, get_logger
from trainsim.cli.backend.process_control import (
    find_listeners_for_port,
    is_port_available,
)
from trainsim.cli.backend.supervisor import ProcessSupervisor
from trainsim.errors import AlreadyRunningError, SpawnError
from trainsim.models import (
    BackendConfig,
    FailureDiagnostic,
    ReadinessState,
    SupervisorEvent,
)

logger = get_logger(ShellLogComponent.SHELL)


class ShellController(Protocol):
    """The UI host. Receives exactly one of these calls per launch."""

    def on_backend_ready(self) -> None: ...

    def on_backend_failed(self, diagnostic: FailureDiagnostic) -> None: ...


def install_signal_handlers(stop_event: asyncio.Event) -> list[signal.Signals]:
    """Route SIGINT/SIGTERM into stop_event. Returns the signals that were hooked.

    Windows event loops don't support signal handlers; there Ctrl+C surfaces as
    KeyboardInterrupt and the launcher's context manager still cleans up.
    """
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            continue
    return installed


class BackendLauncher:
    """Brings the backend up, gates readiness, and tears it down."""

    def __init__(
        self,
        config: BackendConfig,
        controller: ShellController,
        *,
        supervisor: ProcessSupervisor | None = None,
        probe: HealthProbe | None = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.config: BackendConfig = config
        self.controller: ShellController = controller
        self.supervisor: ProcessSupervisor = supervisor or ProcessSupervisor(
            stop_grace=config.stop_grace_seconds
        )
        self.gate: ReadinessGate | None = None
        self._probe: HealthProbe | None = probe
        self._owned_probe: HttpHealthProbe | None = None
        self._sleep: SleepFn = sleep
        self._backend_gone: asyncio.Event = asyncio.Event()
        self.backend_lost: bool = False
        self._atexit_registered: bool = False
        self.supervisor.add_listener(self._on_supervisor_event)

    async def __aenter__(self) -> BackendLauncher:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.shutdown()

    def _on_supervisor_event(self, event: SupervisorEvent) -> None:
        if event.kind in ("exited", "spawn_failed"):
            self._backend_gone.set()

    def _make_probe(self) -> HealthProbe:
        if self._probe is not None:
            return self._probe
        if self._owned_probe is None:
            self._owned_probe = HttpHealthProbe(
                self.config.health_url, timeout=self.config.policy.timeout_seconds
            )
        return self._owned_probe

    def _warn_if_port_taken(self) -> None:
        port = self.config.port
        if is_port_available(port, self.config.host):
            return
        listeners = find_listeners_for_port(port)
        logger.warning(
            f"Port {port} is already in use (listening PIDs: {listeners or 'unknown'}); "
            "health checks may reach a different process"
        )

    def _register_atexit(self) -> None:
        if not self._atexit_registered:
            atexit.register(self.supervisor.kill_now)
            self._atexit_registered = True

    def _unregister_atexit(self) -> None:
        if self._atexit_registered:
            atexit.unregister(self.supervisor.kill_now)
            self._atexit_registered = False

    async def launch(self) -> ReadinessState:
        """Start the backend and wait for the readiness gate to settle.

        Failures never raise: they reach the controller through
        `on_backend_failed` and are reflected in the returned state.

        Raises:
            AlreadyRunningError: If this launcher's backend is already up
        """
        if self.supervisor.state.is_active:
            raise AlreadyRunningError("Backend is already running; shut it down first")

        self._warn_if_port_taken()

        if self.gate is not None:
            self.gate.detach(self.supervisor)
        gate = ReadinessGate(
            self._make_probe(),
            self.config.policy,
            on_ready=self.controller.on_backend_ready,
            on_failed=self.controller.on_backend_failed,
            sleep=self._sleep,
            health_url=self.config.health_url,
        )
        # Attach before spawning so a spawn failure settles the gate immediately.
        gate.attach(self.supervisor)
        self.gate = gate
        self._backend_gone = asyncio.Event()
        self.backend_lost = False

        logger.info(
            f"Launching backend on port {self.config.port} "
            f"(up to {self.config.policy.max_attempts} health checks, "
            f"every {self.config.policy.interval_ms}ms)"
        )
        self._register_atexit()
        try:
            await self.supervisor.start(
                self.config.launch_command(), self.config.working_directory
            )
        except SpawnError as e:
            logger.debug(f"Spawn failure reported to shell: {e}")

        gate.start()
        return await gate.wait()

    async def serve(self, stop_event: asyncio.Event) -> ReadinessState:
        """Launch, then keep the backend up until stop_event is set or it dies.

        The backend is always stopped before this returns. If it exited on its
        own after becoming ready, `backend_lost` is set.
        """
        async with self:
            state = await self.launch()
            if state != ReadinessState.READY:
                return state

            stop_wait = asyncio.create_task(stop_event.wait())
            gone_wait = asyncio.create_task(self._backend_gone.wait())
            try:
                await asyncio.wait(
                    {stop_wait, gone_wait}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                stop_wait.cancel()
                gone_wait.cancel()

            if self._backend_gone.is_set() and not stop_event.is_set():
                self.backend_lost = True
                handle = self.supervisor.handle
                code = handle.exit_code if handle else None
                logger.error(f"Backend exited while the shell was running (code {code})")
            return state

    async def shutdown(self) -> None:
        """Stop the backend and abandon any pending readiness polling. Idempotent."""
        await self.supervisor.stop()
        if self.gate is not None and not self.gate.state.is_terminal:
            self.gate.cancel()
        if self._owned_probe is not None:
            await self._owned_probe.aclose()
            self._owned_probe = None
        self._unregister_atexit()
