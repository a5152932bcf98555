"""HTTP client for communicating with the testexecutor daemon API."""

from __future__ import annotations

from pathlib import Path

import httpx

from testexecutor.config import load_config


class APIClient:
    """Client for the testexecutor daemon API."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        config_path: Path | None = None,
        timeout: float = 30.0,
    ):
        """Initialize the API client.

        Args:
            base_url: Base URL for the API (default: from config)
            token: Authentication token (default: from config)
            config_path: Config file used to find the daemon
            timeout: Request timeout in seconds
        """
        if base_url is None:
            config = load_config(config_path)
            base_url = f"http://{config.daemon.host}:{config.daemon.port}"
            if config.api.auth.enabled and token is None:
                token = config.api.auth.token

        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        """Get or create the HTTP client."""
        if self._client is None:
            headers = {}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.Client(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "APIClient":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def is_daemon_running(self) -> bool:
        """Check if the daemon is running and responding."""
        try:
            response = self._get_client().get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    def status(self) -> dict:
        """Get the runner state and the last result."""
        response = self._get_client().get("/api/v1/status")
        response.raise_for_status()
        return response.json()

    def pause(self, duration: float | None = None) -> dict:
        """Pause the background runs."""
        params = {"duration": duration} if duration is not None else {}
        response = self._get_client().post("/api/v1/pause", params=params)
        response.raise_for_status()
        return response.json()

    def resume(self) -> dict:
        """Resume the background runs."""
        response = self._get_client().post("/api/v1/resume")
        response.raise_for_status()
        return response.json()
