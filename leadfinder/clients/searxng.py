"""Client for a self-hosted SearXNG metasearch instance."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from leadfinder.config import settings
from leadfinder.models.discovery import SearchResult
from leadfinder.utils.backoff import exponential_backoff

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class SearxngError(RuntimeError):
    """Base error for SearXNG client failures."""

    def __init__(self, message: str, code: str = "SEARXNG_ERROR") -> None:
        super().__init__(message)
        self.code = code


class SearxngRateLimitError(SearxngError):
    """Raised when SearXNG responds with HTTP 429."""

    def __init__(self, message: str = "Rate limited by SearXNG") -> None:
        super().__init__(message, code="SEARXNG_429")


class SearxngTimeoutError(SearxngError):
    """Raised when a SearXNG request times out."""

    def __init__(self, message: str = "SearXNG request timed out") -> None:
        super().__init__(message, code="SEARXNG_TIMEOUT")


class SearxngSchemaError(SearxngError):
    """Raised when the SearXNG response schema is not as expected."""

    def __init__(self, message: str = "Unexpected SearXNG response schema") -> None:
        super().__init__(message, code="SEARXNG_SCHEMA_ERR")


class SearxngClient:
    """Minimal async SearXNG JSON API client."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
        max_attempts: int = 3,
        sleep: SleepFn | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("SEARXNG_URL is required to create a SearxngClient.")
        self._base = base_url.rstrip("/")
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._sleep = sleep or asyncio.sleep

    @classmethod
    def from_settings(cls, http_client: httpx.AsyncClient | None = None) -> "SearxngClient":
        return cls(
            settings.searxng_url,
            timeout=settings.search_timeout_seconds,
            http_client=http_client,
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    async def query(self, search: str) -> list[SearchResult]:
        """Run a search and return its result rows.

        HTTP 429 responses are retried with exponential backoff; every other
        failure raises immediately.
        """
        if not search or not search.strip():
            raise ValueError("search must be a non-empty string.")
        for attempt, delay in exponential_backoff(max_attempts=self._max_attempts, base_delay=1.0):
            try:
                return await self._query_once(search)
            except SearxngRateLimitError as exc:
                logger.warning(
                    "searxng.retry",
                    extra={"attempt": attempt, "code": exc.code, "delay": round(delay, 2)},
                )
                if attempt == self._max_attempts:
                    raise
                await self._sleep(delay)
        raise SearxngError("SearXNG search was not attempted.", code="SEARXNG_NO_ATTEMPT")

    async def _query_once(self, search: str) -> list[SearchResult]:
        try:
            response = await self._http.get(
                f"{self._base}/search",
                params={"q": search, "format": "json"},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise SearxngTimeoutError() from exc
        except httpx.HTTPError as exc:
            raise SearxngError(f"HTTP error calling SearXNG: {exc}") from exc

        if response.status_code == 429:
            raise SearxngRateLimitError()
        if response.status_code in (408, 504):
            raise SearxngTimeoutError()
        if response.status_code >= 400:
            raise SearxngError(f"SearXNG request failed: {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise SearxngSchemaError("Failed to decode SearXNG response JSON.") from exc
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            raise SearxngSchemaError("`results` missing from SearXNG response.")
        return [_to_result(entry) for entry in results if isinstance(entry, dict)]

    async def __aenter__(self) -> "SearxngClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


def _to_result(entry: dict[str, Any]) -> SearchResult:
    score = entry.get("score")
    return SearchResult(
        title=str(entry.get("title") or ""),
        url=str(entry.get("url") or ""),
        content=str(entry.get("content") or ""),
        score=float(score) if isinstance(score, (int, float)) else None,
    )
