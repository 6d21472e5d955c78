"""Client for an ipapi.co style IP geolocation endpoint."""

from __future__ import annotations

from typing import Any

import httpx

from leadfinder.config import settings


class GeolocationError(RuntimeError):
    """Base error for geolocation lookups."""

    def __init__(self, message: str, code: str = "GEOLOCATION_ERROR") -> None:
        super().__init__(message)
        self.code = code


class GeolocationTimeoutError(GeolocationError):
    def __init__(self, message: str = "Geolocation request timed out") -> None:
        super().__init__(message, code="GEOLOCATION_TIMEOUT")


class GeolocationClient:
    """Looks up coarse location details for a public IP address."""

    def __init__(
        self,
        base_url: str = "https://ipapi.co",
        *,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base = base_url.rstrip("/")
        self._timeout = timeout
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, http_client: httpx.AsyncClient | None = None) -> "GeolocationClient":
        return cls(
            settings.geolocation_url,
            timeout=settings.geolocation_timeout_seconds,
            http_client=http_client,
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    async def lookup(self, ip_address: str) -> dict[str, Any]:
        """Return the raw lookup payload; provider-reported errors raise."""
        try:
            response = await self._http.get(f"{self._base}/{ip_address}/json/", timeout=self._timeout)
        except httpx.TimeoutException as exc:
            raise GeolocationTimeoutError() from exc
        except httpx.HTTPError as exc:
            raise GeolocationError(f"HTTP error calling geolocation API: {exc}") from exc

        if response.status_code >= 400:
            raise GeolocationError(f"Geolocation request failed: {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise GeolocationError("Failed to decode geolocation response JSON.") from exc
        if not isinstance(data, dict):
            raise GeolocationError("Geolocation response was not a JSON object.")
        if data.get("error"):
            raise GeolocationError(
                str(data.get("reason") or "Geolocation provider reported an error."),
                code="GEOLOCATION_PROVIDER_ERROR",
            )
        return data
