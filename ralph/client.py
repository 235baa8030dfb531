"""HTTP client for a running Ralph server."""

import asyncio
import logging
import os
from typing import Any

import httpx

from ralph.errors import RalphError

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://localhost:3001"
FINISHED_STATUSES = frozenset({"completed", "failed"})


def default_server_url() -> str:
    return os.getenv("RALPH_SERVER_URL", DEFAULT_SERVER_URL)


class RalphAPIError(RalphError):
    """Request to the Ralph server failed."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.details = details or {}


class RalphClient:
    """Async client for the Ralph HTTP API.

    Usage:
        async with RalphClient("http://localhost:3001") as client:
            started = await client.execute("my-plan")
            final = await client.wait_for_completion(started["sessionId"])
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or default_server_url()).rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self.client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "RalphClient":
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={"Content-Type": "application/json"},
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None

    async def _request(self, method: str, endpoint: str, **kwargs: Any) -> dict[str, Any]:
        if not self.client:
            raise RalphAPIError("Client not initialized. Use async context manager.")

        try:
            logger.debug(f"{method} {endpoint}")
            response = await self.client.request(method, endpoint, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            try:
                error_data = e.response.json()
            except ValueError:
                error_data = {"message": e.response.text}
            message = error_data.get("message") or error_data.get("error") or "Unknown error"
            raise RalphAPIError(
                f"HTTP {e.response.status_code}: {message}",
                status_code=e.response.status_code,
                details=error_data,
            ) from e
        except httpx.RequestError as e:
            raise RalphAPIError(f"Could not reach Ralph server at {self.base_url}: {e}") from e

    async def health(self) -> dict[str, Any]:
        return await self._request("GET", "/health")

    async def list_plans(self) -> list[dict[str, Any]]:
        response = await self._request("GET", "/plans")
        return response.get("plans", [])

    async def get_plan(self, plan_id: str) -> dict[str, Any]:
        response = await self._request("GET", f"/plans/{plan_id}")
        return response["plan"]

    async def execute(
        self,
        plan: str,
        directory: str | None = None,
        no_commit: bool = False,
        auto_test: bool = False,
        max_retries: int | None = None,
        max_parallel: int | None = None,
        require_acceptance_criteria: bool = False,
        model: str | None = None,
        resume: bool = False,
    ) -> dict[str, Any]:
        """Start a run; returns the server's ``{sessionId, status, plan, ...}`` body."""
        body: dict[str, Any] = {
            "plan": plan,
            "directory": directory,
            "noCommit": no_commit,
            "autoTest": auto_test,
            "maxRetries": max_retries,
            "maxParallel": max_parallel,
            "requireAcceptanceCriteria": require_acceptance_criteria,
            "model": model,
            "resume": resume,
        }
        return await self._request(
            "POST", "/execute", json={k: v for k, v in body.items() if v is not None}
        )

    async def restart(self, plan_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/plans/{plan_id}/restart")

    async def status(self, session_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/status/{session_id}")

    async def sessions(self) -> list[dict[str, Any]]:
        response = await self._request("GET", "/sessions")
        return response.get("sessions", [])

    async def delete_session(self, session_id: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/sessions/{session_id}")

    async def wait_for_completion(
        self,
        session_id: str,
        poll_interval: float = 2.0,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Poll /status until the run finishes.

        Raises:
            RalphAPIError: If the run does not finish within ``timeout``
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            status = await self.status(session_id)
            if status.get("status") in FINISHED_STATUSES:
                return status
            if deadline is not None and loop.time() >= deadline:
                raise RalphAPIError(f"Session {session_id} still running after {timeout:g}s")
            await asyncio.sleep(poll_interval)
