"""Backend supervision, readiness gating and API access for the desktop shell."""

from trainsim.cli.backend.client import BackendClient
from trainsim.cli.backend.gate import HttpHealthProbe, ReadinessGate
from trainsim.cli.backend.launcher import BackendLauncher, ShellController
from trainsim.cli.backend.supervisor import ProcessSupervisor
from trainsim.models import (
    BackendConfig,
    BackendProcessHandle,
    BackendState,
    FailureDiagnostic,
    HealthCheckResult,
    LaunchCommand,
    ReadinessState,
    RetryPolicy,
)

__all__ = [
    "BackendClient",
    "BackendConfig",
    "BackendLauncher",
    "BackendProcessHandle",
    "BackendState",
    "FailureDiagnostic",
    "HealthCheckResult",
    "HttpHealthProbe",
    "LaunchCommand",
    "ProcessSupervisor",
    "ReadinessGate",
    "ReadinessState",
    "RetryPolicy",
    "ShellController",
]
