"""HTTP client for the simulation backend's JSON API."""

from __future__ import annotations

import httpx

from trainsim.cli.backend.logging import ShellLogComponent, get_logger
from trainsim.constants import (
    DEFAULT_API_TIMEOUT_SECONDS,
    DEFAULT_HEALTH_PATH,
    PARAMETER_KINDS,
)
from trainsim.models import BackendConfig, JsonObject, ParameterKind

logger = get_logger(ShellLogComponent.CLIENT)


class BackendClient:
    """Client for the headless backend once it has passed its health check.

    Payloads are forwarded as-is; the backend owns parameter validation.
    """

    def __init__(
        self,
        base_url: str | None = None,
        port: int | None = None,
        timeout: float = DEFAULT_API_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
        health_path: str = DEFAULT_HEALTH_PATH,
    ):
        """Initialize the backend client.

        Args:
            base_url: Full base URL (e.g., "http://localhost:8080"). If provided, port is ignored.
            port: Port number for localhost connection. Used if base_url is None.
            timeout: Default timeout for requests in seconds
            transport: Optional httpx transport (used by tests)
            health_path: Liveness endpoint used by `health` and `is_healthy`
        """
        if base_url:
            self.base_url: str = base_url.rstrip("/")
        elif port:
            self.base_url = f"http://localhost:{port}"
        else:
            raise ValueError("Either base_url or port must be provided")

        self.timeout: float = timeout
        self._transport: httpx.BaseTransport | None = transport
        self.health_path: str = (
            health_path if health_path.startswith("/") else f"/{health_path}"
        )

    @classmethod
    def from_config(cls, config: BackendConfig) -> BackendClient:
        return cls(
            base_url=config.base_url,
            timeout=config.policy.timeout_seconds,
            health_path=config.health_path,
        )

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={"Content-Type": "application/json"},
        )

    def _get(self, path: str) -> JsonObject:
        with self._client() as client:
            response = client.get(path)
            response.raise_for_status()
            return response.json()

    def _post(self, path: str, payload: JsonObject | None = None) -> JsonObject:
        with self._client() as client:
            response = client.post(path, json=payload if payload is not None else {})
            response.raise_for_status()
            return response.json()

    @staticmethod
    def _parameters_path(kind: ParameterKind) -> str:
        if kind not in PARAMETER_KINDS:
            raise ValueError(
                f"Unknown parameter group {kind!r}; expected one of {', '.join(PARAMETER_KINDS)}"
            )
        return f"/api/parameters/{kind}"

    def health(self) -> JsonObject:
        """Return the health payload (e.g. {"status": ..., "dataStatus": ...}).

        Raises:
            httpx.HTTPError: If the request fails
        """
        return self._get(self.health_path)

    def status(self) -> JsonObject:
        """Return the server status payload."""
        return self._get("/status")

    def is_healthy(self) -> bool:
        """Check if the backend is up and answering its health check."""
        try:
            with self._client() as client:
                return client.get(self.health_path).is_success
        except httpx.HTTPError as e:
            logger.debug(f"Health check against {self.base_url} failed: {e}")
            return False

    def get_parameters(self, kind: ParameterKind) -> JsonObject:
        """Fetch one parameter group (train, electrical, running, track)."""
        return self._get(self._parameters_path(kind))

    def update_parameters(self, kind: ParameterKind, payload: JsonObject) -> JsonObject:
        """Replace one parameter group and return the backend's answer."""
        logger.info(f"Updating {kind} parameters ({len(payload)} field(s))")
        return self._post(self._parameters_path(kind), payload)

    def start_simulation(self) -> JsonObject:
        return self._post("/api/simulation/start")

    def simulation_status(self) -> JsonObject:
        return self._get("/api/simulation/status")

    def simulation_results(self) -> JsonObject:
        return self._get("/api/simulation/results")

    def export_results(self, payload: JsonObject | None = None) -> JsonObject:
        """Ask the backend to export results to CSV on its side."""
        return self._post("/api/export/results", payload)
