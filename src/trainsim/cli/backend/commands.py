"""Backend commands for the trainsim-shell CLI."""

import asyncio
import json
import time
from pathlib import Path
from typing import Annotated

import httpx
from pydantic import ValidationError
from rich.markup import escape
from typer import Argument, Exit, Option, Typer

from trainsim.cli.backend.client import BackendClient
from trainsim.cli.backend.config import (
    DEFAULT_CONFIG_FILENAME,
    resolve_backend_config,
    write_shell_config,
)
from trainsim.cli.backend.launcher import BackendLauncher, install_signal_handlers
from trainsim.cli.backend.logging import configure_shell_logging
from trainsim.models import BackendConfig, FailureDiagnostic, ReadinessState, ShellConfig
from trainsim.utils import console, format_elapsed_ms


backend_app = Typer(name="backend", help="Launch and inspect the simulation backend")


class ConsoleShellController:
    """Shell controller for terminal use: reports readiness on the console."""

    def __init__(self, started_at: float):
        self.started_at: float = started_at
        self.diagnostic: FailureDiagnostic | None = None

    def on_backend_ready(self) -> None:
        console.print(
            f"[green]✅ Backend is ready ({format_elapsed_ms(self.started_at)})[/green]"
        )

    def on_backend_failed(self, diagnostic: FailureDiagnostic) -> None:
        self.diagnostic = diagnostic
        console.print(f"[red]❌ {escape(diagnostic.summary())}[/red]")


def _load_config(
    config_file: Path | None, overrides: dict[str, object]
) -> BackendConfig:
    if config_file is None and Path(DEFAULT_CONFIG_FILENAME).exists():
        config_file = Path(DEFAULT_CONFIG_FILENAME)
    try:
        return resolve_backend_config(
            config_file=config_file,
            dotenv_path=Path(".env"),
            overrides=overrides,
        )
    except (FileNotFoundError, ValidationError, ValueError) as e:
        console.print(f"[red]❌ Invalid configuration: {escape(str(e))}[/red]")
        raise Exit(code=1)


async def _serve(
    config: BackendConfig,
    controller: ConsoleShellController,
    exit_when_ready: bool,
) -> tuple[ReadinessState, bool]:
    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)
    if exit_when_ready:
        stop_event.set()
    launcher = BackendLauncher(config, controller)
    state = await launcher.serve(stop_event)
    return state, launcher.backend_lost


@backend_app.command(name="launch", help="Start the backend and wait until it is healthy")
def backend_launch(
    executable: Annotated[
        Path | None,
        Argument(help="Path to the backend executable (overrides config and environment)"),
    ] = None,
    config_file: Annotated[
        Path | None, Option("--config", help="Path to a trainsim-shell.json config file")
    ] = None,
    host: Annotated[str | None, Option(help="Host the backend listens on")] = None,
    port: Annotated[int | None, Option(help="Port passed to the backend")] = None,
    health_path: Annotated[
        str | None, Option("--health-path", help="Liveness endpoint path")
    ] = None,
    working_directory: Annotated[
        Path | None, Option("--cwd", help="Working directory for the backend process")
    ] = None,
    extra_args: Annotated[
        list[str] | None,
        Option("--arg", help="Extra argument for the backend (repeatable)"),
    ] = None,
    max_attempts: Annotated[
        int | None, Option(help="Maximum number of health checks before giving up")
    ] = None,
    interval_ms: Annotated[
        int | None, Option(help="Delay between health checks in milliseconds")
    ] = None,
    timeout_ms: Annotated[
        int | None, Option(help="Timeout of a single health check in milliseconds")
    ] = None,
    exit_when_ready: Annotated[
        bool,
        Option(
            "--exit-when-ready",
            help="Stop the backend again as soon as it is healthy (smoke test)",
        ),
    ] = False,
    quiet: Annotated[
        bool, Option("--quiet", "-q", help="Do not echo backend output")
    ] = False,
):
    """Start the backend, gate on its health check, and keep it up until Ctrl+C."""
    config = _load_config(
        config_file,
        {
            "executable": executable,
            "host": host,
            "port": port,
            "health_path": health_path,
            "working_directory": working_directory,
            "extra_args": extra_args or None,
            "max_attempts": max_attempts,
            "interval_ms": interval_ms,
            "timeout_ms": timeout_ms,
        },
    )
    configure_shell_logging(echo=not quiet)

    console.print(f"[cyan]🔧 Starting backend: {escape(str(config.launch_command()))}[/cyan]")
    console.print(f"[dim]Health endpoint: {config.health_url}[/dim]")

    controller = ConsoleShellController(started_at=time.perf_counter())
    if not exit_when_ready:
        console.print("[dim]Press Ctrl+C to stop the backend[/dim]")

    try:
        state, backend_lost = asyncio.run(_serve(config, controller, exit_when_ready))
    except KeyboardInterrupt:
        # Windows path: the launcher has already stopped the backend.
        state, backend_lost = ReadinessState.CANCELLED, False

    console.print("[cyan]🧹 Backend stopped[/cyan]")
    if backend_lost:
        console.print("[red]❌ Backend exited while the shell was running[/red]")
    if state == ReadinessState.EXHAUSTED or backend_lost:
        raise Exit(code=1)


@backend_app.command(name="check", help="Run a single health check against a running backend")
def backend_check(
    config_file: Annotated[
        Path | None, Option("--config", help="Path to a trainsim-shell.json config file")
    ] = None,
    host: Annotated[str | None, Option(help="Backend host")] = None,
    port: Annotated[int | None, Option(help="Backend port")] = None,
    health_path: Annotated[
        str | None, Option("--health-path", help="Liveness endpoint path")
    ] = None,
):
    """Check whether a backend is answering on the configured port."""
    config = _load_config(
        config_file, {"host": host, "port": port, "health_path": health_path}
    )
    client = BackendClient.from_config(config)

    try:
        payload = client.health()
    except httpx.HTTPError as e:
        console.print(
            f"[red]❌ Backend at {config.health_url} is not healthy: {escape(str(e))}[/red]"
        )
        raise Exit(code=1)

    console.print(f"[green]✅ Backend at {config.health_url} is healthy[/green]")
    console.print(escape(json.dumps(payload, indent=2)))


@backend_app.command(name="init-config", help="Write a config file with the default settings")
def backend_init_config(
    path: Annotated[
        Path, Argument(help="Where to write the config file")
    ] = Path(DEFAULT_CONFIG_FILENAME),
    executable: Annotated[
        Path | None, Option(help="Path to the backend executable")
    ] = None,
    force: Annotated[bool, Option("--force", help="Overwrite an existing file")] = False,
):
    """Write a config file with explicit defaults so they can be edited."""
    if path.exists() and not force:
        console.print(
            f"[yellow]⚠️  {path} already exists. Use --force to overwrite.[/yellow]"
        )
        raise Exit(code=1)

    backend = BackendConfig() if executable is None else BackendConfig(executable=executable)
    write_shell_config(path, ShellConfig(backend=backend))
    console.print(f"[green]✅ Wrote {path}[/green]")
