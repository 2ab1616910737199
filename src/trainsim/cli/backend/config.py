"""Configuration loading for the backend shell.

Precedence, lowest to highest: built-in defaults, config file, environment
(including a `.env` file), explicit overrides (CLI options).
"""

import json
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from trainsim.constants import ENV_BACKEND_PATH, ENV_BACKEND_PORT
from trainsim.models import BackendConfig, ShellConfig

DEFAULT_CONFIG_FILENAME = "trainsim-shell.json"


def read_shell_config(file_path: Path) -> ShellConfig:
    """Read shell config from file.

    Args:
        file_path: Path to the JSON config file

    Returns:
        ShellConfig instance

    Raises:
        FileNotFoundError: If the file does not exist
        pydantic.ValidationError: If the file content is not a valid config
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Shell config not found at {file_path}")

    data: dict[str, Any] = json.loads(file_path.read_text())

    # A bare backend section is accepted as shorthand for {"backend": {...}}
    if "backend" not in data and ("executable" in data or "port" in data):
        data = {"backend": data}

    return ShellConfig.model_validate(data)


def write_shell_config(file_path: Path, config: ShellConfig) -> None:
    """Write shell config to file, creating parent directories."""
    file_path.parent.mkdir(parents=True, exist_ok=True)
    file_path.write_text(config.model_dump_json(indent=2))


def _env_overrides(dotenv_path: Path | None) -> dict[str, Any]:
    if dotenv_path is not None and dotenv_path.exists():
        load_dotenv(dotenv_path)

    overrides: dict[str, Any] = {}
    if executable := os.environ.get(ENV_BACKEND_PATH):
        overrides["executable"] = Path(executable)
    if port := os.environ.get(ENV_BACKEND_PORT):
        try:
            overrides["port"] = int(port)
        except ValueError:
            raise ValueError(f"{ENV_BACKEND_PORT} must be an integer, got {port!r}")
    return overrides


def resolve_backend_config(
    *,
    config_file: Path | None = None,
    dotenv_path: Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> BackendConfig:
    """Merge defaults, config file, environment and overrides into a BackendConfig.

    `None` values in overrides are ignored so CLI options can be passed through
    unconditionally. Retry settings may be given flat (`max_attempts`,
    `interval_ms`, `timeout_ms`) and are folded into the policy.
    """
    base = (
        read_shell_config(config_file).backend
        if config_file is not None
        else BackendConfig()
    )
    data: dict[str, Any] = base.model_dump()
    data.update(_env_overrides(dotenv_path))

    policy: dict[str, Any] = dict(data["policy"])
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if key in ("max_attempts", "interval_ms", "timeout_ms"):
            policy[key] = value
        else:
            data[key] = value
    data["policy"] = policy

    return BackendConfig.model_validate(data)
