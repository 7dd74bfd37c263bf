"""Base HTTP Client for the jobcore API"""

from typing import Any

import httpx
from rich.console import Console
from rich.panel import Panel

console = Console()


class JobCoreError(Exception):
    """Base exception for jobcore API errors"""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class APIClient:
    """Thin httpx wrapper that unwraps the jobcore response envelope"""

    def __init__(self, base_url: str = "http://localhost:8000", timeout: int = 30):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(base_url=self.base_url, timeout=timeout)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.client.close()

    def _unwrap(self, response: httpx.Response) -> dict[str, Any]:
        """Return the envelope's data, raising JobCoreError for error envelopes"""
        try:
            body = response.json()
        except ValueError:
            console.print(f"[red]Failed to parse response: {response.text}[/red]")
            raise JobCoreError(
                f"Invalid JSON response: {response.status_code}", response.status_code
            ) from None

        if not isinstance(body, dict):
            raise JobCoreError(
                f"Unexpected response shape: {type(body).__name__}", response.status_code
            )

        if response.status_code >= 400 or body.get("ok") is False:
            # FastAPI's own 422s carry "detail" instead of an envelope
            error_msg = (body.get("error") or {}).get("message") or body.get(
                "detail", "Unknown error"
            )
            console.print(Panel(f"[red]{error_msg}[/red]", title="API Error"))
            raise JobCoreError(
                f"API Error {response.status_code}: {error_msg}", response.status_code
            )

        return body.get("data", body) if "ok" in body else body

    def request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self.client.request(method, f"/v1{path}", **kwargs)
        except httpx.RequestError as e:
            console.print(f"[red]Connection error: {e}[/red]")
            raise JobCoreError(f"Connection failed: {e}") from None
        return self._unwrap(response)

    def get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("GET", path, params=params)

    def post(self, path: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("POST", path, json=json)
