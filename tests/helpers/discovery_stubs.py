"""Stub collaborators shared by the discovery tests."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import parse_qs, urlsplit

from pydantic import BaseModel

from leadfinder.clients.llm import InferenceProviderError
from leadfinder.models.discovery import SearchResult
from leadfinder.services.discovery.repositories import build_memory_stores
from leadfinder.services.discovery.service import DiscoveryService


class StubModel:
    """Returns queued payloads per schema name; exceptions in the queue are raised."""

    def __init__(self, responses: dict[str, list[Any]] | None = None) -> None:
        self._responses = {key: list(value) for key, value in (responses or {}).items()}
        self.prompts: list[tuple[str, str]] = []

    async def complete(self, prompt, schema, *, system_prompt=None, model=None):
        self.prompts.append((schema.__name__, prompt))
        queue = self._responses.get(schema.__name__)
        if not queue:
            raise InferenceProviderError("no stubbed response", code="502_INFERENCE_UPSTREAM")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, BaseModel):
            return item
        return schema.model_validate(item)


class StubSearch:
    """Answers queries through a handler; records every query string."""

    def __init__(self, handler: Callable[[str], list[SearchResult]] | None = None) -> None:
        self._handler = handler or (lambda _: [])
        self.queries: list[str] = []

    async def query(self, search: str) -> list[SearchResult]:
        self.queries.append(search)
        return self._handler(search)


class StubListingSource:
    """Serves canned HTML per result page and tracks session scope."""

    def __init__(self, pages: dict[int, str | None] | None = None) -> None:
        self._pages = pages or {}
        self.fetched_pages: list[int] = []
        self.urls: list[str] = []
        self.opened = 0
        self.closed = 0

    async def fetch(self, url: str) -> str | None:
        page = int(parse_qs(urlsplit(url).query).get("page", ["1"])[0])
        self.fetched_pages.append(page)
        self.urls.append(url)
        return self._pages.get(page, "<html><body></body></html>")

    @asynccontextmanager
    async def scope(self) -> AsyncIterator["StubListingSource"]:
        self.opened += 1
        try:
            yield self
        finally:
            self.closed += 1


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def listing_html(entries: list[dict[str, str | None]], *, container: str = "result organic") -> str:
    """Render directory-style result markup for the given listings."""
    blocks = []
    for index, entry in enumerate(entries, start=1):
        website = entry.get("website")
        website_link = f'<a class="track-visit-website" href="{website}">Website</a>' if website else ""
        blocks.append(
            f"""
            <div class="{container}">
              <h2 class="n"><a class="business-name" href="/chicago-il/mip/x-{index}"><span>{index}. {entry['name']}</span></a></h2>
              <div class="adr">{entry.get('address') or ''}</div>
              <div class="phones phone primary">{entry.get('phone') or ''}</div>
              <div class="categories"><a>{entry.get('category') or 'Attorneys'}</a></div>
              <a href="https://www.yellowpages.com/chicago-il/mip/x-{index}">More info</a>
              {website_link}
            </div>
            """
        )
    return f"<html><body><div class='search-results organic'>{''.join(blocks)}</div></body></html>"


def profile_result(name: str, slug: str, company: str = "Acme Co", bio: str = "") -> SearchResult:
    return SearchResult(
        title=f"{name} - Partner - {company} | LinkedIn",
        url=f"https://www.linkedin.com/in/{slug}",
        content=bio or f"{name} works at {company}.",
    )


ACME_PAGE = listing_html(
    [
        {"name": "Acme Co", "address": "100 Main St, Chicago, IL", "website": "https://www.acme.com"},
        {"name": "Bolt Works", "address": "5 Oak St, Chicago, IL", "website": "https://boltworks.io"},
    ]
)


def intent_response(search_term: str = "law firms", location: str | None = "Chicago, IL") -> dict[str, Any]:
    return {
        "has_specific_location": location is not None,
        "extracted_location": location,
        "stripped_query": search_term,
        "optimized_query": search_term,
        "reasoning": "stub",
    }


def pattern_response(*templates: str) -> dict[str, Any]:
    return {
        "patterns": [
            {"company_id": str(index), "template": template, "confidence": 0.9}
            for index, template in enumerate(templates, start=1)
        ]
    }


def acme_search(query: str) -> list[SearchResult]:
    """Evidence for Acme, one Acme employee, and nothing for anyone else."""
    if "email format" in query and "Acme" in query:
        return [SearchResult(title="Acme Co email format", content="Acme Co uses first.last@acme.com")]
    if "linkedin.com/in" in query and "Acme" in query:
        return [profile_result("Jane Doe", "jane-doe")]
    return []


def build_stub_service(
    *,
    pages: dict[int, str | None] | None = None,
    search_handler: Callable[[str], list[SearchResult]] = acme_search,
    model: StubModel | None = None,
    inference_configured: bool = True,
) -> tuple[DiscoveryService, StubListingSource]:
    """A service wired to in-memory stores and stubbed remote collaborators."""
    source = StubListingSource({1: ACME_PAGE} if pages is None else pages)
    model = model or StubModel(
        {
            "LocationAnalysis": [intent_response()],
            "PatternBatch": [pattern_response("{first}.{last}@acme.com", "flastname@boltworks.io")],
        }
    )
    service = DiscoveryService(
        stores=build_memory_stores(),
        search=StubSearch(search_handler),
        model=model,
        source_scope=source.scope,
        inference_configured=inference_configured,
        sleep=RecordingSleep(),
    )
    return service, source
