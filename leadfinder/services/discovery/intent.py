"""Resolves a free-text query into a directory search term and location."""

from __future__ import annotations

import ipaddress
import logging
from typing import Any, Final

from pydantic import BaseModel, Field

from leadfinder.clients.geolocation import GeolocationClient, GeolocationError
from leadfinder.clients.llm import InferenceError, TextInferenceModel
from leadfinder.config import settings
from leadfinder.models.discovery import QueryIntent
from leadfinder.observability.metrics import metrics

logger = logging.getLogger(__name__)

INTENT_SYSTEM_PROMPT: Final = (
    "You prepare business-directory searches. Reply with a single JSON object and nothing else."
)

INTENT_PROMPT_TEMPLATE: Final = """Analyze this business search query: "{query}"

Decide whether it names a specific place (city, state, region or postal code).
- If it does, standardize the place ("City, ST" for US cities, postal codes as given).
- Remove location words (in, near, around, at) together with the place.
- Reduce the remaining words to a 1-3 keyword business category a directory understands.

Return JSON with keys:
  "has_specific_location": boolean,
  "extracted_location": string or null,
  "stripped_query": string,
  "optimized_query": string,
  "reasoning": string

Examples:
"restaurants in New York" -> has_specific_location true, extracted_location "New York, NY", optimized_query "restaurants"
"divorce lawyers near 90210" -> has_specific_location true, extracted_location "90210", optimized_query "divorce attorney"
"law firms in Chicago" -> has_specific_location true, extracted_location "Chicago, IL", optimized_query "law firms"
"investment banking firms" -> has_specific_location false, optimized_query "investment banks"
"""


class LocationAnalysis(BaseModel):
    has_specific_location: bool = False
    extracted_location: str | None = None
    stripped_query: str = ""
    optimized_query: str = ""
    reasoning: str = ""


class QueryIntentResolver:
    """Turns a query into a ``QueryIntent``; never raises.

    The model decides whether the query carries a location. Without one, the
    caller's network origin is geolocated; any failure along that path yields
    the configured default location.
    """

    def __init__(
        self,
        *,
        model: TextInferenceModel | None,
        geolocation: GeolocationClient | None = None,
        default_location: str | None = None,
        model_name: str | None = None,
    ) -> None:
        self._model = model
        self._geolocation = geolocation
        self._default_location = default_location or settings.default_location
        self._model_name = model_name or settings.intent_model

    async def resolve(self, query: str, caller_network_origin: str | None = None) -> QueryIntent:
        query = (query or "").strip()
        analysis = await self._analyze(query)
        search_term = (analysis.optimized_query or analysis.stripped_query or query).strip() or query
        location = (analysis.extracted_location or "").strip()

        if analysis.has_specific_location and location:
            intent = QueryIntent(search_term=search_term, location=location, had_explicit_location=True)
        else:
            intent = QueryIntent(
                search_term=search_term,
                location=await self._locate_origin(caller_network_origin),
                had_explicit_location=False,
            )
        logger.info(
            "intent.resolved",
            extra={
                "query": query,
                "search_term": intent.search_term,
                "location": intent.location,
                "explicit": intent.had_explicit_location,
            },
        )
        return intent

    async def _analyze(self, query: str) -> LocationAnalysis:
        fallback = LocationAnalysis(stripped_query=query, optimized_query=query)
        if self._model is None or not query:
            return fallback
        try:
            return await self._model.complete(
                INTENT_PROMPT_TEMPLATE.format(query=query),
                LocationAnalysis,
                system_prompt=INTENT_SYSTEM_PROMPT,
                model=self._model_name,
            )
        except InferenceError as exc:
            metrics.increment("intent.fallback", tags={"code": exc.code})
            logger.warning("intent.analysis_failed", extra={"code": exc.code})
            return fallback

    async def _locate_origin(self, origin: str | None) -> str:
        if not is_public_address(origin) or self._geolocation is None:
            return self._default_location
        try:
            payload = await self._geolocation.lookup(str(origin).strip())
        except GeolocationError as exc:
            metrics.increment("intent.geolocation_failed", tags={"code": exc.code})
            logger.warning("intent.geolocation_failed", extra={"code": exc.code})
            return self._default_location
        return location_from_payload(payload, default=self._default_location)


def is_public_address(origin: str | None) -> bool:
    """True only for a parsable, globally routable IP address."""
    if not origin or not origin.strip():
        return False
    try:
        address = ipaddress.ip_address(origin.strip())
    except ValueError:
        return False
    return not (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_unspecified
        or address.is_reserved
        or address.is_multicast
    )


def location_from_payload(payload: dict[str, Any], *, default: str) -> str:
    """Pick the most specific usable location from a geolocation payload."""
    city = _text(payload.get("city"))
    region_code = _text(payload.get("region_code"))
    region = _text(payload.get("region"))
    postal = _text(payload.get("postal"))
    if city and region_code:
        return f"{city}, {region_code}"
    if city and region:
        return f"{city}, {region}"
    if postal:
        return postal
    if region_code:
        return region_code
    return default


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""
