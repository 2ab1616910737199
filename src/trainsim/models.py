"""Centralized Pydantic models, enums, and type aliases for trainsim-shell."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import ClassVar, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, JsonValue, model_validator

from trainsim.constants import (
    DEFAULT_BACKEND_EXECUTABLE,
    DEFAULT_BACKEND_PORT,
    DEFAULT_HEALTH_PATH,
    DEFAULT_HOST,
    DEFAULT_INTERVAL_MS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_STOP_GRACE_MS,
    DEFAULT_TIMEOUT_MS,
    HEADLESS_FLAG,
    PORT_FLAG_PREFIX,
)
from trainsim.errors import (
    ProcessExitedUnexpectedly,
    RetryBudgetExhausted,
    ShellError,
)


# === Type Aliases ===

JsonObject: TypeAlias = dict[str, JsonValue]

ParameterKind = Literal["train", "electrical", "running", "track"]

SupervisorEventKind = Literal["spawn_failed", "exited", "stopping"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# === Enums ===


class BackendState(str, Enum):
    """Lifecycle of the supervised backend process."""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (BackendState.STARTING, BackendState.RUNNING)


class ReadinessState(str, Enum):
    """State of the readiness gate. Everything except PENDING is terminal."""

    PENDING = "pending"
    READY = "ready"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not ReadinessState.PENDING


class FailureReason(str, Enum):
    """Why the readiness gate gave up."""

    SPAWN_FAILED = "spawn_failed"
    PROCESS_EXITED = "process_exited"
    RETRY_BUDGET_EXHAUSTED = "retry_budget_exhausted"


class LogChannel(str, Enum):
    """Logical log channel: our own messages vs. backend process output."""

    SHELL = "shell"
    BACKEND = "backend"


# === Process Models ===


class TrackedProcess(BaseModel):
    """A process we started and are allowed to kill.

    create_time protects against PID reuse. pgid lets POSIX shutdown signal the
    whole group even after the original PID has exited.
    """

    pid: int | None = None
    create_time: float | None = None
    pgid: int | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


class LaunchCommand(BaseModel):
    """Executable path plus its fixed argument list."""

    executable: Path
    args: tuple[str, ...] = ()

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)

    @property
    def argv(self) -> list[str]:
        return [str(self.executable), *self.args]

    def __str__(self) -> str:
        return " ".join(self.argv)


class BackendProcessHandle(BaseModel):
    """The spawned backend as seen by its supervisor (the only writer)."""

    launch_command: LaunchCommand
    process_id: int | None = None
    current_state: BackendState = BackendState.NOT_STARTED
    exit_code: int | None = None
    tracked: TrackedProcess | None = None


class SupervisorEvent(BaseModel):
    """Process-level event emitted by the supervisor to its listeners."""

    kind: SupervisorEventKind
    exit_code: int | None = None
    detail: str | None = None
    intentional: bool = False

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


# === Readiness Models ===


class RetryPolicy(BaseModel):
    """Bounds for health polling. All values are milliseconds except max_attempts."""

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, gt=0)
    interval_ms: int = Field(default=DEFAULT_INTERVAL_MS, gt=0)
    timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)

    @property
    def interval_seconds(self) -> float:
        return self.interval_ms / 1000

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000


class HealthCheckResult(BaseModel):
    """Outcome of one poll of the liveness endpoint."""

    reachable: bool
    timestamp: datetime = Field(default_factory=utc_now)
    status_code: int | None = None
    error_detail: str | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _error_only_when_unreachable(self) -> HealthCheckResult:
        if self.reachable and self.error_detail is not None:
            raise ValueError("error_detail must be empty for a reachable result")
        if not self.reachable and not self.error_detail:
            raise ValueError("error_detail is required for an unreachable result")
        return self

    @classmethod
    def success(cls, status_code: int | None = None) -> HealthCheckResult:
        return cls(reachable=True, status_code=status_code)

    @classmethod
    def failure(
        cls, error_detail: str, status_code: int | None = None
    ) -> HealthCheckResult:
        return cls(reachable=False, error_detail=error_detail, status_code=status_code)


class FailureDiagnostic(BaseModel):
    """Payload handed to `on_backend_failed`: what was tried, how often, what went wrong."""

    attempts: int
    last_error: str | None = None
    reason: FailureReason
    exit_code: int | None = None
    health_url: str | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)

    def summary(self) -> str:
        if self.reason == FailureReason.SPAWN_FAILED:
            return f"Backend could not be started: {self.last_error}"
        if self.reason == FailureReason.PROCESS_EXITED:
            return (
                f"Backend exited with code {self.exit_code} before becoming healthy "
                f"(after {self.attempts} health check(s))"
            )
        target = f" at {self.health_url}" if self.health_url else ""
        return (
            f"Backend not healthy{target} after {self.attempts} attempt(s). "
            f"Last error: {self.last_error}"
        )

    def as_exception(self) -> ShellError:
        """Map the diagnostic back onto the error taxonomy."""
        if self.reason == FailureReason.PROCESS_EXITED:
            return ProcessExitedUnexpectedly(self.exit_code)
        if self.reason == FailureReason.RETRY_BUDGET_EXHAUSTED:
            return RetryBudgetExhausted(self.attempts, self.last_error)
        return ShellError(self.summary())


# === Configuration Models ===


class BackendConfig(BaseModel):
    """Complete configuration for launching and gating the backend.

    This is the single source of truth for defaults; they live in
    `trainsim.constants` and are not repeated elsewhere.
    """

    executable: Path = Path(DEFAULT_BACKEND_EXECUTABLE)
    host: str = DEFAULT_HOST
    port: int = Field(default=DEFAULT_BACKEND_PORT, gt=0, lt=65536)
    health_path: str = DEFAULT_HEALTH_PATH
    working_directory: Path | None = None
    extra_args: list[str] = Field(default_factory=list)
    policy: RetryPolicy = Field(default_factory=RetryPolicy)
    stop_grace_ms: int = Field(default=DEFAULT_STOP_GRACE_MS, gt=0)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def health_url(self) -> str:
        path = self.health_path if self.health_path.startswith("/") else f"/{self.health_path}"
        return f"{self.base_url}{path}"

    @property
    def stop_grace_seconds(self) -> float:
        return self.stop_grace_ms / 1000

    def launch_command(self) -> LaunchCommand:
        return LaunchCommand(
            executable=self.executable,
            args=(HEADLESS_FLAG, f"{PORT_FLAG_PREFIX}{self.port}", *self.extra_args),
        )


class ShellConfig(BaseModel):
    """Configuration file contents (e.g. trainsim-shell.json)."""

    backend: BackendConfig = Field(default_factory=BackendConfig)


# === Log Models ===


class LogEntry(BaseModel):
    """A buffered log line."""

    timestamp: str
    level: str
    channel: LogChannel
    component: str
    content: str
