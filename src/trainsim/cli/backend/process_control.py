"""Cross-platform process tracking and port inspection for the backend supervisor.

Design goals:
- Only kill processes we started (tracked by pid + create_time).
- Escalate deterministically: terminate, wait, kill.
- Sweep descendants so no backend child outlives the shell.
"""

from __future__ import annotations

import os
import signal
import socket

import psutil

from trainsim.cli.backend.logging import ShellLogComponent, get_logger
from trainsim.models import TrackedProcess

logger = get_logger(ShellLogComponent.PROCESS_CONTROL)


def _get_pgid_safe(pid: int) -> int | None:
    # Windows doesn't have pgid.
    if os.name == "nt":
        return None
    try:
        return os.getpgid(pid)
    except OSError:
        return None


def track_process(pid: int) -> TrackedProcess | None:
    """Record create_time and pgid for a freshly spawned PID."""
    try:
        proc = psutil.Process(pid)
        return TrackedProcess(
            pid=pid,
            create_time=float(proc.create_time()),
            pgid=_get_pgid_safe(pid),
        )
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def validate_tracked(tp: TrackedProcess) -> psutil.Process | None:
    """Return a psutil.Process only if PID matches create_time (prevents PID reuse bugs)."""
    if tp.pid is None or tp.create_time is None:
        return None
    try:
        proc = psutil.Process(tp.pid)
        if abs(float(proc.create_time()) - float(tp.create_time)) > 0.001:
            return None
        return proc
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def list_descendants(tp: TrackedProcess) -> list[psutil.Process]:
    proc = validate_tracked(tp)
    if proc is None:
        return []
    try:
        return proc.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []


def signal_group(tp: TrackedProcess, sig: signal.Signals) -> bool:
    """Signal the tracked process group (POSIX). Returns False if nothing was signalled."""
    if os.name == "nt" or tp.pgid is None:
        return False
    # Never signal our own group: the backend runs in its own session.
    if tp.pgid == _get_pgid_safe(os.getpid()):
        return False
    try:
        os.killpg(tp.pgid, sig)
        return True
    except (ProcessLookupError, PermissionError):
        return False


def terminate_processes(procs: list[psutil.Process], *, timeout: float) -> int:
    """Terminate, wait, then kill whatever is left. Returns how many had to be killed."""
    if not procs:
        return 0
    for p in procs:
        try:
            p.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue

    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for p in alive:
        try:
            p.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    if alive:
        psutil.wait_procs(alive, timeout=max(0.5, timeout / 2))
    return len(alive)


def sweep_descendants(
    descendants: list[psutil.Process], *, timeout: float = 1.0
) -> int:
    """Stop descendants that survived their parent. Returns the number swept."""
    survivors: list[psutil.Process] = []
    for p in descendants:
        try:
            if p.is_running() and p.status() != psutil.STATUS_ZOMBIE:
                survivors.append(p)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    if survivors:
        logger.warning(
            f"Stopping {len(survivors)} leftover backend child process(es): "
            f"{[p.pid for p in survivors]}"
        )
        terminate_processes(survivors, timeout=timeout)
    return len(survivors)


def kill_tracked_tree(tp: TrackedProcess) -> None:
    """Synchronously kill a tracked process and its children (no grace period).

    Used from atexit hooks, where the event loop may already be gone.
    """
    proc = validate_tracked(tp)
    targets = [*list_descendants(tp), proc] if proc is not None else []

    # The group may outlive its leader, so signal it even when proc is gone.
    if os.name != "nt" and signal_group(tp, signal.SIGKILL):
        psutil.wait_procs(targets, timeout=1.0)
        return

    for p in targets:
        try:
            p.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    psutil.wait_procs(targets, timeout=1.0)


def is_port_available(port: int, host: str = "127.0.0.1") -> bool:
    """Return True if nothing is accepting connections on host:port."""
    try:
        with socket.create_connection((host, port), timeout=0.2):
            return False
    except OSError:
        return True


def find_listeners_for_port(port: int) -> list[int]:
    """Return PIDs that have a LISTEN socket bound to the port (best-effort)."""
    pids: set[int] = set()
    try:
        for conn in psutil.net_connections(kind="inet"):
            if not conn.laddr or conn.laddr.port != port:
                continue
            if conn.status != psutil.CONN_LISTEN:
                continue
            if conn.pid:
                pids.add(int(conn.pid))
    except (psutil.AccessDenied, PermissionError):
        # macOS needs elevated privileges for system-wide connections; the
        # listener list is diagnostic only, so an empty answer is acceptable.
        logger.debug(f"Not permitted to list listeners for port {port}")
    return sorted(pids)
