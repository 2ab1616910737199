"""Global constants for trainsim-shell."""

# Backend process defaults

DEFAULT_BACKEND_EXECUTABLE = "TrainSimulationApp"
HEADLESS_FLAG = "--headless"
PORT_FLAG_PREFIX = "--port="

# URL/Routing defaults
DEFAULT_HOST = "localhost"
DEFAULT_BACKEND_PORT = 8080
DEFAULT_HEALTH_PATH = "/api/health"
DEFAULT_API_TIMEOUT_SECONDS = 5.0

# Readiness polling configuration
DEFAULT_MAX_ATTEMPTS = 30
DEFAULT_INTERVAL_MS = 2000
DEFAULT_TIMEOUT_MS = 5000

# Grace period between graceful termination and a forced kill
DEFAULT_STOP_GRACE_MS = 3000

# Environment overrides (also read from a .env file)
ENV_BACKEND_PATH = "TRAINSIM_BACKEND_PATH"
ENV_BACKEND_PORT = "TRAINSIM_BACKEND_PORT"

# Parameter groups exposed by the backend API
PARAMETER_KINDS = ("train", "electrical", "running", "track")
