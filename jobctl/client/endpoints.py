"""API Endpoint Wrappers - Typed jobcore API calls"""

import os
from typing import Any

from .base import APIClient, JobCoreError

DEFAULT_API_URL = "http://localhost:8000"

__all__ = ["DEFAULT_API_URL", "JobCoreClient", "JobCoreError", "resolve_api_url"]


def resolve_api_url(base_url: str | None = None) -> str:
    """Explicit URL, then JOBCORE_API_URL, then the local default."""
    return base_url or os.environ.get("JOBCORE_API_URL") or DEFAULT_API_URL


class JobCoreClient:
    """High-level client with typed endpoint methods"""

    def __init__(self, base_url: str | None = None, timeout: int = 30):
        self.api = APIClient(base_url=resolve_api_url(base_url), timeout=timeout)

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    # Health Check
    def health_check(self) -> dict[str, Any]:
        """Check API health status"""
        return self.api.get("/healthz")

    # Jobs
    def submit_job(
        self,
        type: str,
        payload: dict[str, Any] | None = None,
        priority: str | None = None,
        tenant_id: str | None = None,
        user_id: str | None = None,
        correlation_id: str | None = None,
    ) -> dict[str, Any]:
        """Submit a job"""
        body: dict[str, Any] = {"type": type, "payload": payload or {}}
        if priority:
            body["priority"] = priority
        if tenant_id:
            body["owner_context"] = {"tenant_id": tenant_id, "user_id": user_id}
        if correlation_id:
            body["correlation_id"] = correlation_id
        return self.api.post("/jobs", body)

    def job_types(self) -> dict[str, Any]:
        """List registered job types"""
        return self.api.get("/jobs/types")

    def stats(self, limit: int | None = None) -> dict[str, Any]:
        """Operational snapshot"""
        params = {"limit": limit} if limit else None
        return self.api.get("/jobs/stats", params)

    # Dead letters
    def list_dead_letters(self, limit: int = 20) -> dict[str, Any]:
        """Most recent dead letters"""
        return self.api.get("/jobs/dead-letters", {"limit": limit})

    def get_dead_letter(self, job_id: str) -> dict[str, Any]:
        """Dead-letter record of one job"""
        return self.api.get(f"/jobs/dead-letters/{job_id}")
