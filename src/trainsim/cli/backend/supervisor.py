"""Lifecycle owner for the external simulation backend process.

The supervisor is the only component allowed to spawn or kill the backend.
Everyone else observes it through `SupervisorEvent`s:

- ``spawn_failed``: the executable could not be started at all
- ``exited``: the process terminated (clean or not, intended or not)
- ``stopping``: an intentional shutdown has begun

There is no automatic respawn; restarting is the caller's decision.
"""

from __future__ import annotations

import asyncio
import os
import signal
import subprocess
from collections.abc import Awaitable, Callable
from pathlib import Path

from trainsim.cli.backend.logging import ShellLogComponent, get_logger
from trainsim.cli.backend.process_control import (
    kill_tracked_tree,
    list_descendants,
    signal_group,
    sweep_descendants,
    track_process,
)
from trainsim.constants import DEFAULT_STOP_GRACE_MS
from trainsim.errors import AlreadyRunningError, SpawnError, describe_error
from trainsim.models import (
    BackendProcessHandle,
    BackendState,
    LaunchCommand,
    SupervisorEvent,
    TrackedProcess,
)

SpawnFn = Callable[..., Awaitable[asyncio.subprocess.Process]]
SupervisorListener = Callable[[SupervisorEvent], None]

logger = get_logger(ShellLogComponent.SUPERVISOR)
backend_logger = get_logger(ShellLogComponent.BACKEND)


class ProcessSupervisor:
    """Starts, observes and stops exactly one backend process at a time."""

    def __init__(
        self,
        *,
        spawn: SpawnFn | None = None,
        stop_grace: float = DEFAULT_STOP_GRACE_MS / 1000,
    ):
        """Initialize the supervisor.

        Args:
            spawn: Coroutine used to create the process. Defaults to
                `asyncio.create_subprocess_exec`; tests inject fakes here.
            stop_grace: Seconds to wait after graceful termination before killing
        """
        self._spawn: SpawnFn = spawn or asyncio.create_subprocess_exec
        self.stop_grace: float = stop_grace
        self._state: BackendState = BackendState.NOT_STARTED
        self._handle: BackendProcessHandle | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._watcher: asyncio.Task[None] | None = None
        self._stopping: bool = False
        self._listeners: list[SupervisorListener] = []
        self._lock: asyncio.Lock = asyncio.Lock()

    # === Observation ===

    @property
    def state(self) -> BackendState:
        return self._state

    @property
    def handle(self) -> BackendProcessHandle | None:
        return self._handle

    @property
    def is_running(self) -> bool:
        return self._state == BackendState.RUNNING

    def add_listener(self, listener: SupervisorListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: SupervisorListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: SupervisorEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Supervisor listener failed on {event.kind} event")

    def _set_state(self, state: BackendState) -> None:
        if state == self._state:
            return
        logger.debug(f"Backend state {self._state.value} -> {state.value}")
        self._state = state
        if self._handle is not None:
            self._handle.current_state = state

    # === Start ===

    async def start(
        self,
        launch_command: LaunchCommand,
        working_directory: Path | None = None,
    ) -> BackendProcessHandle:
        """Spawn the backend and start observing it.

        Raises:
            AlreadyRunningError: If a backend is already starting, running or stopping
            SpawnError: If the backend could not be started. The supervisor is
                left in FAILED and a ``spawn_failed`` event has been emitted.
        """
        if self._state.is_active or self._state == BackendState.STOPPING:
            pid = self._handle.process_id if self._handle else None
            raise AlreadyRunningError(
                f"Backend is already {self._state.value} (pid={pid})"
            )

        self._handle = BackendProcessHandle(launch_command=launch_command)
        self._stopping = False
        self._set_state(BackendState.STARTING)

        async with self._lock:
            logger.info(f"Starting backend: {launch_command}")

            # Own session/process group so shutdown can signal the whole tree.
            creationflags = 0
            start_new_session = False
            if os.name == "nt":
                creationflags = subprocess.CREATE_NEW_PROCESS_GROUP  # type: ignore[attr-defined]
            else:
                start_new_session = True

            try:
                process = await self._spawn(
                    *launch_command.argv,
                    cwd=working_directory,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=start_new_session,
                    creationflags=creationflags,
                )
            except Exception as e:
                # OSError for a missing or non-executable file, ValueError or
                # TypeError for a malformed command line.
                detail = describe_error(e)
                self._set_state(BackendState.FAILED)
                logger.error(
                    f"Failed to spawn backend {launch_command.executable}: {detail}"
                )
                self._emit(SupervisorEvent(kind="spawn_failed", detail=detail))
                raise SpawnError(str(launch_command.executable), e) from e

            self._process = process
            self._handle.process_id = process.pid
            self._handle.tracked = track_process(process.pid)
            self._set_state(BackendState.RUNNING)
            logger.info(f"Backend started with pid={process.pid}")

            self._watcher = asyncio.create_task(
                self._watch(process, self._handle), name="backend-exit-watcher"
            )
            return self._handle

    async def _pump(self, stream: asyncio.StreamReader | None, stream_name: str) -> None:
        """Forward each output line of the backend to the backend logger."""
        if stream is None:
            return
        async for line in stream:
            decoded_line = line.decode("utf-8", errors="replace").rstrip()
            if decoded_line:
                backend_logger.info(f"{stream_name} | {decoded_line}")

    async def _watch(
        self, process: asyncio.subprocess.Process, handle: BackendProcessHandle
    ) -> None:
        pumps = [
            asyncio.create_task(self._pump(process.stdout, "stdout")),
            asyncio.create_task(self._pump(process.stderr, "stderr")),
        ]
        exit_code = await process.wait()

        # Grandchildren may keep the pipes open after the backend itself is gone.
        _, pending = await asyncio.wait(pumps, timeout=1.0)
        for task in pending:
            task.cancel()

        handle.exit_code = exit_code
        intentional = self._stopping
        if intentional or exit_code == 0:
            logger.info(f"Backend pid={process.pid} exited with code {exit_code}")
            self._set_state(BackendState.STOPPED)
        else:
            logger.error(
                f"Backend pid={process.pid} exited unexpectedly with code {exit_code}"
            )
            self._set_state(BackendState.FAILED)

        self._emit(
            SupervisorEvent(kind="exited", exit_code=exit_code, intentional=intentional)
        )

    # === Stop ===

    async def stop(self) -> None:
        """Stop the backend: terminate, wait up to the grace period, then kill.

        Idempotent. Always leaves the supervisor in STOPPED or FAILED.
        """
        async with self._lock:
            if not self._state.is_active:
                if self._state == BackendState.NOT_STARTED:
                    self._set_state(BackendState.STOPPED)
                return

            process = self._process
            watcher = self._watcher
            if process is None or watcher is None:
                self._set_state(BackendState.STOPPED)
                return

            tracked = self._handle.tracked if self._handle else None
            descendants = list_descendants(tracked) if tracked else []

            self._stopping = True
            self._set_state(BackendState.STOPPING)
            self._emit(SupervisorEvent(kind="stopping", intentional=True))

            logger.info(f"Stopping backend pid={process.pid}")
            self._send_termination(process, tracked, force=False)
            if not await self._wait_for_watcher(watcher):
                logger.warning(
                    f"Backend pid={process.pid} did not exit within "
                    f"{self.stop_grace:.1f}s, killing it"
                )
                self._send_termination(process, tracked, force=True)
                if not await self._wait_for_watcher(watcher):
                    logger.error(f"Backend pid={process.pid} could not be killed")
                    self._set_state(BackendState.FAILED)

            await asyncio.to_thread(sweep_descendants, descendants)

            if self._state == BackendState.STOPPING:
                self._set_state(BackendState.STOPPED)

    async def _wait_for_watcher(self, watcher: asyncio.Task[None]) -> bool:
        try:
            await asyncio.wait_for(asyncio.shield(watcher), timeout=self.stop_grace)
            return True
        except asyncio.TimeoutError:
            return False

    def _send_termination(
        self,
        process: asyncio.subprocess.Process,
        tracked: TrackedProcess | None,
        *,
        force: bool,
    ) -> None:
        if os.name != "nt" and tracked is not None:
            sig = signal.SIGKILL if force else signal.SIGTERM
            if signal_group(tracked, sig):
                return
        try:
            if force:
                process.kill()
            else:
                process.terminate()
        except ProcessLookupError:
            pass

    def kill_now(self) -> None:
        """Synchronously kill the backend tree. For atexit, where no loop is running."""
        if not self._state.is_active and self._state != BackendState.STOPPING:
            return
        logger.warning("Killing backend during interpreter shutdown")
        if self._handle is not None and self._handle.tracked is not None:
            kill_tracked_tree(self._handle.tracked)
        elif self._process is not None and self._process.returncode is None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
        self._stopping = True
        self._set_state(BackendState.STOPPED)
