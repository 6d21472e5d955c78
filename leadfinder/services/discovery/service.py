"""Wires clients, stores and discovery stages for the API and CLI."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass

import httpx
from pydantic import BaseModel

from leadfinder.clients.flaresolverr import FlareSolverrClient
from leadfinder.clients.geolocation import GeolocationClient
from leadfinder.clients.llm import OpenAIStructuredModel, TextInferenceModel
from leadfinder.clients.searxng import SearxngClient, SearxngError
from leadfinder.config import settings
from leadfinder.models.discovery import Company, Contact, EmailPattern, ResolvedContact
from leadfinder.services.discovery.collector import CompanyCollector
from leadfinder.services.discovery.contacts import ContactResolver, EmailValidator
from leadfinder.services.discovery.errors import DiscoveryError
from leadfinder.services.discovery.intent import QueryIntentResolver
from leadfinder.services.discovery.orchestrator import DisconnectCheck, DiscoveryOrchestrator
from leadfinder.services.discovery.patterns import EmailPatternEngine, SearchAggregator
from leadfinder.services.discovery.repositories import (
    DiscoveryStores,
    build_memory_stores,
    build_supabase_stores,
    persist_resolved_contacts,
)
from leadfinder.services.discovery.session import ListingSource, SessionManager

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]
SourceScope = Callable[[], AbstractAsyncContextManager[ListingSource]]


class CompanyNotFoundError(DiscoveryError):
    """Raised when a company id does not resolve to a stored company."""

    def __init__(self, company_id: str) -> None:
        super().__init__(f"Company {company_id} not found.", code="404_COMPANY_NOT_FOUND")


@dataclass(frozen=True)
class PatternLookup:
    patterns: list[EmailPattern]
    existing_count: int
    new_count: int


@dataclass(frozen=True)
class PeopleLookup:
    company: Company
    existing: list[ResolvedContact]
    found: list[ResolvedContact]


class DiscoveryService:
    """Long-lived collaborators shared by every discovery request."""

    def __init__(
        self,
        *,
        stores: DiscoveryStores,
        search: SearchAggregator | None,
        model: TextInferenceModel | None,
        source_scope: SourceScope,
        geolocation: GeolocationClient | None = None,
        validator: EmailValidator | None = None,
        inference_configured: bool | None = None,
        sleep: SleepFn | None = None,
        closers: Sequence[Callable[[], Awaitable[None]]] = (),
    ) -> None:
        self.stores = stores
        self._search = search
        self._model = model
        self._source_scope = source_scope
        self._geolocation = geolocation
        self._sleep = sleep or asyncio.sleep
        self._inference_configured = (
            inference_configured if inference_configured is not None else settings.inference_configured
        )
        self._closers = list(closers)
        self.pattern_engine = EmailPatternEngine(model=model, search=search)
        self.contact_resolver = ContactResolver(search=search, model=model, validator=validator)

    @classmethod
    def from_settings(cls) -> "DiscoveryService":
        http_client = httpx.AsyncClient(timeout=settings.search_timeout_seconds)
        search = SearxngClient.from_settings(http_client=http_client)
        flaresolverr = FlareSolverrClient.from_settings(http_client=http_client)
        geolocation = GeolocationClient.from_settings(http_client=http_client)
        model = OpenAIStructuredModel.from_settings() if settings.inference_configured else None
        stores = build_supabase_stores(http_client) if settings.supabase_configured else build_memory_stores()
        logger.info(
            "discovery.service_ready",
            extra={
                "inference": model is not None,
                "store": "supabase" if settings.supabase_configured else "memory",
            },
        )
        return cls(
            stores=stores,
            search=search,
            model=model,
            source_scope=lambda: SessionManager(flaresolverr).session(),
            geolocation=geolocation,
            closers=[http_client.aclose],
        )

    async def aclose(self) -> None:
        for close in self._closers:
            await close()

    def orchestrator(self) -> DiscoveryOrchestrator:
        """Build a fresh orchestrator; no run state is shared between requests."""
        return DiscoveryOrchestrator(
            intent_resolver=QueryIntentResolver(model=self._model, geolocation=self._geolocation),
            pattern_engine=self.pattern_engine,
            contact_resolver=self.contact_resolver,
            stores=self.stores,
            source_scope=self._source_scope,
            collector_factory=lambda source: CompanyCollector(source, sleep=self._sleep),
            inference_configured=self._inference_configured,
            sleep=self._sleep,
        )

    def discover(
        self,
        query: str,
        target_count: int,
        caller_network_origin: str | None = None,
        is_disconnected: DisconnectCheck | None = None,
    ) -> AsyncIterator[BaseModel]:
        return self.orchestrator().run(
            query,
            target_count,
            caller_network_origin=caller_network_origin,
            is_disconnected=is_disconnected,
        )

    async def find_email_patterns(self, company_ids: Sequence[str]) -> PatternLookup:
        """Return stored patterns, inferring and storing the missing ones."""
        existing = await self.stores.patterns.get_by_company_ids(company_ids)
        missing_ids = [company_id for company_id in company_ids if company_id not in existing]
        companies = await self.stores.companies.get_by_ids(missing_ids) if missing_ids else []

        pairs: list[tuple[Company, str]] = []
        for index, company in enumerate(companies):
            if index:
                await self._sleep(settings.evidence_delay_seconds)
            pairs.append((company, await self.pattern_engine.gather_evidence(company)))
        created = await self.stores.patterns.upsert(await self.pattern_engine.infer_many(pairs)) if pairs else []

        ordered = {**existing, **{pattern.company_id: pattern for pattern in created}}
        logger.info(
            "discovery.email_patterns",
            extra={"requested": len(company_ids), "existing": len(existing), "new": len(created)},
        )
        return PatternLookup(
            patterns=[ordered[company_id] for company_id in company_ids if company_id in ordered],
            existing_count=len(existing),
            new_count=len(created),
        )

    async def find_people(
        self,
        company_id: str,
        *,
        amount: int,
        already_found: Sequence[str] = (),
    ) -> PeopleLookup:
        """Return known contacts the caller lacks, topping up with new ones."""
        matches = await self.stores.companies.get_by_ids([company_id])
        if not matches:
            raise CompanyNotFoundError(company_id)
        company = matches[0]

        known = await self.stores.contacts.list_by_company(company_id)
        skip_ids = set(already_found)
        unseen = [contact for contact in known if contact.id not in skip_ids]
        existing = [await self._with_emails(contact) for contact in unseen[:amount]]
        if len(unseen) >= amount:
            return PeopleLookup(company=company, existing=existing, found=[])

        pattern = (await self.find_email_patterns([company_id])).patterns
        needed = amount - len(unseen)
        try:
            # Everything already stored is excluded; only the shortfall is kept.
            resolved = await self.contact_resolver.resolve(
                company,
                pattern[0] if pattern else None,
                known,
                max_results=len(known) + needed,
            )
        except SearxngError as exc:
            logger.warning("discovery.people_search_failed", extra={"company_id": company_id, "code": exc.code})
            return PeopleLookup(company=company, existing=existing, found=[])
        found = await persist_resolved_contacts(self.stores, resolved[:needed])
        return PeopleLookup(company=company, existing=existing, found=found)

    async def _with_emails(self, contact: Contact) -> ResolvedContact:
        emails = await self.stores.emails.list_by_contact(contact.id) if contact.id else []
        return ResolvedContact(contact=contact, emails=emails)


_SERVICE_INSTANCE: DiscoveryService | None = None


def get_discovery_service() -> DiscoveryService:
    """Singleton accessor used by API routes."""
    global _SERVICE_INSTANCE  # noqa: PLW0603
    if _SERVICE_INSTANCE is None:
        _SERVICE_INSTANCE = DiscoveryService.from_settings()
    return _SERVICE_INSTANCE


async def shutdown_discovery_service() -> None:
    global _SERVICE_INSTANCE  # noqa: PLW0603
    if _SERVICE_INSTANCE is not None:
        await _SERVICE_INSTANCE.aclose()
        _SERVICE_INSTANCE = None
