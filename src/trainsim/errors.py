"""Error taxonomy for backend supervision and readiness gating."""

from __future__ import annotations


class ShellError(Exception):
    """Base class for all trainsim-shell errors."""


class AlreadyRunningError(ShellError):
    """Raised when starting a supervisor whose backend is already starting or running."""


class SpawnError(ShellError):
    """The backend executable could not be spawned (missing, not executable, OS failure)."""

    def __init__(self, executable: str, cause: BaseException):
        self.executable: str = executable
        self.cause: BaseException = cause
        super().__init__(f"Failed to spawn {executable}: {cause}")


class HealthCheckError(ShellError):
    """A single health check attempt did not succeed. Transient, counted against the budget."""


class HealthCheckTimeout(HealthCheckError):
    """The liveness endpoint did not answer within the per-attempt timeout."""


class HealthCheckConnectionError(HealthCheckError):
    """The liveness endpoint refused or dropped the connection."""


class HealthCheckStatusError(HealthCheckError):
    """The liveness endpoint answered with a non-success status."""

    def __init__(self, status_code: int):
        self.status_code: int = status_code
        super().__init__(f"Health endpoint returned HTTP {status_code}")


class ProcessExitedUnexpectedly(ShellError):
    """The backend process exited while the readiness gate was still pending."""

    def __init__(self, exit_code: int | None):
        self.exit_code: int | None = exit_code
        super().__init__(f"Backend process exited with code {exit_code}")


class RetryBudgetExhausted(ShellError):
    """Every health check attempt allowed by the retry policy failed."""

    def __init__(self, attempts: int, last_error: str | None):
        self.attempts: int = attempts
        self.last_error: str | None = last_error
        super().__init__(
            f"Backend not healthy after {attempts} attempt(s): {last_error}"
        )


def describe_error(exc: BaseException) -> str:
    """Render an exception as `<TypeName>: <message>` for diagnostics."""
    message = str(exc)
    name = type(exc).__name__
    return f"{name}: {message}" if message else name
