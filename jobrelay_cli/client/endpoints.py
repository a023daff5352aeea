"""API Endpoint Wrappers - Typed calls to the JobRelay API"""

from typing import Any

import httpx

from ..utils.config_manager import config
from .base import APIClient, JobRelayError

__all__ = ["JobRelayClient", "JobRelayError"]


class JobRelayClient:
    """High-level client with typed endpoint methods"""

    def __init__(
        self,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        # Use config values if not provided
        api_config = config.load_config().get("api", {})
        final_base_url = base_url or api_config.get("base_url", "http://localhost:8000")
        final_headers = headers or api_config.get("headers", {})

        self.api = APIClient(
            base_url=final_base_url,
            timeout=int(api_config.get("timeout", 30)),
            headers=final_headers,
            transport=transport,
        )

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    # Health Check
    def health_check(self) -> dict[str, Any]:
        """Check API health status"""
        return self.api.get("/healthz")

    # Jobs Endpoints
    def create_job(
        self,
        type: str,
        payload: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        max_attempts: int | None = None,
    ) -> dict[str, Any]:
        """Create a job"""
        data: dict[str, Any] = {"type": type, "payload": payload or {}}
        if idempotency_key:
            data["idempotency_key"] = idempotency_key
        if max_attempts is not None:
            data["max_attempts"] = max_attempts
        return self.api.post("/jobs", data)

    def get_job(self, job_id: str) -> dict[str, Any]:
        """Get a job by ID (reconciled against the execution engine)"""
        return self.api.get(f"/jobs/{job_id}")

    def list_jobs(
        self,
        status: str | None = None,
        type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        """List the caller's jobs"""
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if status:
            params["status"] = status
        if type:
            params["type"] = type
        return self.api.get("/jobs", params)

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        """Cancel a pending or processing job"""
        return self.api.post(f"/jobs/{job_id}/cancel")

    def job_stats(self) -> dict[str, Any]:
        """Get job statistics and queue depth"""
        return self.api.get("/jobs/stats/overview")
