"""Client for a FlareSolverr browser-automation proxy."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from leadfinder.config import settings

logger = logging.getLogger(__name__)


class FlareSolverrError(RuntimeError):
    """Base error for FlareSolverr client failures."""

    def __init__(self, message: str, code: str = "FLARESOLVERR_ERROR") -> None:
        super().__init__(message)
        self.code = code


class FlareSolverrTimeoutError(FlareSolverrError):
    """Raised when FlareSolverr does not answer within the client timeout."""

    def __init__(self, message: str = "FlareSolverr request timed out") -> None:
        super().__init__(message, code="FLARESOLVERR_TIMEOUT")


class FlareSolverrSchemaError(FlareSolverrError):
    """Raised when a FlareSolverr response is missing expected fields."""

    def __init__(self, message: str = "Unexpected FlareSolverr response schema") -> None:
        super().__init__(message, code="FLARESOLVERR_SCHEMA_ERR")


class FlareSolverrClient:
    """Thin async wrapper over the FlareSolverr ``/v1`` command endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        max_timeout_ms: int = 60000,
        timeout: float = 70.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("FLARESOLVERR_URL is required to create a FlareSolverrClient.")
        self._endpoint = f"{base_url.rstrip('/')}/v1"
        self._max_timeout_ms = max_timeout_ms
        self._timeout = timeout
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, http_client: httpx.AsyncClient | None = None) -> "FlareSolverrClient":
        return cls(
            settings.flaresolverr_url,
            max_timeout_ms=settings.flaresolverr_max_timeout_ms,
            timeout=settings.flaresolverr_timeout_seconds,
            http_client=http_client,
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    async def create_session(self) -> str:
        data = await self._command({"cmd": "sessions.create"})
        session_id = data.get("session")
        if not isinstance(session_id, str) or not session_id:
            raise FlareSolverrSchemaError("`session` missing from sessions.create response.")
        return session_id

    async def destroy_session(self, session_id: str) -> None:
        await self._command({"cmd": "sessions.destroy", "session": session_id})

    async def request_get(self, url: str, *, session_id: str | None = None) -> str:
        """Fetch ``url`` through the headless browser and return the page HTML."""
        payload: dict[str, Any] = {
            "cmd": "request.get",
            "url": url,
            "maxTimeout": self._max_timeout_ms,
        }
        if session_id:
            payload["session"] = session_id
        data = await self._command(payload)
        solution = data.get("solution")
        if not isinstance(solution, dict):
            raise FlareSolverrSchemaError("`solution` missing from request.get response.")
        upstream_status = solution.get("status")
        if upstream_status != 200:
            raise FlareSolverrError(
                f"Upstream page returned status {upstream_status}",
                code="FLARESOLVERR_UPSTREAM",
            )
        html = solution.get("response")
        if not isinstance(html, str):
            raise FlareSolverrSchemaError("`solution.response` missing from request.get response.")
        return html

    async def _command(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._http.post(self._endpoint, json=payload, timeout=self._timeout)
        except httpx.TimeoutException as exc:
            raise FlareSolverrTimeoutError() from exc
        except httpx.HTTPError as exc:
            raise FlareSolverrError(f"HTTP error calling FlareSolverr: {exc}") from exc

        if response.status_code >= 400:
            raise FlareSolverrError(f"FlareSolverr request failed: {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise FlareSolverrSchemaError("Failed to decode FlareSolverr response JSON.") from exc
        if not isinstance(data, dict):
            raise FlareSolverrSchemaError()
        if data.get("status") != "ok":
            raise FlareSolverrError(
                f"FlareSolverr command {payload['cmd']} failed: {data.get('message', 'unknown error')}",
                code="FLARESOLVERR_COMMAND_FAILED",
            )
        return data

    async def __aenter__(self) -> "FlareSolverrClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
