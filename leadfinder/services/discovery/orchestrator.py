"""Sequences collection, pattern inference and contact resolution for one request."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import Union

from pydantic import BaseModel

from leadfinder.clients.searxng import SearxngError
from leadfinder.config import settings
from leadfinder.models.discovery import Company, DiscoveryRequest, EmailPattern, ResolvedContact
from leadfinder.models.events import (
    CompanyFoundEvent,
    CompleteEvent,
    ContactFoundEvent,
    ErrorEvent,
    PatternGeneratedEvent,
    Stage,
    StatusEvent,
    WarningEvent,
)
from leadfinder.observability.metrics import metrics
from leadfinder.services.discovery.collector import CompanyCollector
from leadfinder.services.discovery.contacts import ContactResolver
from leadfinder.services.discovery.errors import DiscoveryError
from leadfinder.services.discovery.intent import QueryIntentResolver
from leadfinder.services.discovery.patterns import EmailPatternEngine
from leadfinder.services.discovery.repositories import DiscoveryStores, persist_resolved_contacts
from leadfinder.services.discovery.results import Fatal, Ok, Skip, StageResult
from leadfinder.services.discovery.session import ListingSource

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]
DisconnectCheck = Callable[[], Awaitable[bool]]
SourceScope = Callable[[], AbstractAsyncContextManager[ListingSource]]
CollectorFactory = Callable[[ListingSource], CompanyCollector]

CONTACTS_PER_COMPANY = 10


class _CollectionDone:
    """Queue sentinel marking the end of company collection."""


_DONE = _CollectionDone()
QueueItem = Union[Company, Skip, _CollectionDone]


class _Disconnected(Exception):
    """Internal signal: the caller went away, stop without a terminal event."""


@dataclass
class _RunState:
    request: DiscoveryRequest
    companies: list[Company] = field(default_factory=list)
    contacts_found: int = 0
    emails_generated: int = 0


class DiscoveryOrchestrator:
    """Runs one discovery request and yields its events as they happen.

    Exactly one terminal event (``complete`` or ``error``) ends the stream,
    unless the caller disconnects, in which case the run stops silently.
    """

    def __init__(
        self,
        *,
        intent_resolver: QueryIntentResolver,
        pattern_engine: EmailPatternEngine,
        contact_resolver: ContactResolver,
        stores: DiscoveryStores,
        source_scope: SourceScope,
        collector_factory: CollectorFactory | None = None,
        inference_configured: bool | None = None,
        max_target_companies: int | None = None,
        contacts_per_company: int = CONTACTS_PER_COMPANY,
        evidence_delay: float | None = None,
        company_delay: float | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self._intent = intent_resolver
        self._patterns = pattern_engine
        self._contacts = contact_resolver
        self._stores = stores
        self._source_scope = source_scope
        self._sleep = sleep or asyncio.sleep
        self._collector_factory = collector_factory or (
            lambda source: CompanyCollector(source, sleep=self._sleep)
        )
        self._inference_configured = (
            inference_configured if inference_configured is not None else settings.inference_configured
        )
        self._max_target = max_target_companies or settings.max_target_companies
        self._contacts_per_company = contacts_per_company
        self._evidence_delay = evidence_delay if evidence_delay is not None else settings.evidence_delay_seconds
        self._company_delay = company_delay if company_delay is not None else settings.company_delay_seconds

    async def run(
        self,
        query: str,
        target_count: int,
        caller_network_origin: str | None = None,
        is_disconnected: DisconnectCheck | None = None,
    ) -> AsyncIterator[BaseModel]:
        state = _RunState(request=DiscoveryRequest(query=query, target_count=target_count))
        check = is_disconnected or _never_disconnected
        start = time.perf_counter()
        outcome = "failed"

        preflight = self._preflight(query, target_count)
        if isinstance(preflight, Fatal):
            yield StatusEvent(message=preflight.reason, stage="error")
            yield ErrorEvent(message=preflight.reason)
            await self._finalize(state, "failed")
            metrics.increment("discovery.runs", tags={"status": "failed", "code": preflight.code})
            return

        try:
            await self._stores.requests.save(state.request)
            async with contextlib.aclosing(self._stages(state, caller_network_origin, check)) as stages:
                async for event in stages:
                    yield event
            outcome = "completed"
        except _Disconnected:
            outcome = "cancelled"
            logger.info("discovery.disconnected", extra={"request_id": state.request.id})
        except (asyncio.CancelledError, GeneratorExit):
            outcome = "cancelled"
            raise
        except DiscoveryError as exc:
            logger.error("discovery.failed", extra={"request_id": state.request.id, "code": exc.code})
            yield StatusEvent(message=str(exc), stage="error")
            yield ErrorEvent(message=str(exc))
        except Exception:  # pragma: no cover
            logger.exception("discovery.unexpected_error", extra={"request_id": state.request.id})
            yield StatusEvent(message="Discovery failed unexpectedly.", stage="error")
            yield ErrorEvent(message="Discovery failed unexpectedly.")
        finally:
            await self._finalize(state, outcome)
            elapsed_ms = (time.perf_counter() - start) * 1000
            metrics.timing("discovery.latency_ms", elapsed_ms, tags={"status": outcome})
            metrics.increment("discovery.runs", tags={"status": outcome})

        if outcome == "completed":
            yield CompleteEvent(
                companies_found=len(state.companies),
                contacts_found=state.contacts_found,
                emails_generated=state.emails_generated,
            )

    def _preflight(self, query: str, target_count: int) -> Ok[None] | Fatal:
        if not self._inference_configured:
            return Fatal("AI inference is not configured; set LLM_API_KEY.", code="500_INFERENCE_NOT_CONFIGURED")
        if not query or not query.strip():
            return Fatal("A search query is required.", code="422_INVALID_QUERY")
        if not 1 <= target_count <= self._max_target:
            return Fatal(
                f"Target company count must be between 1 and {self._max_target}.",
                code="422_INVALID_TARGET",
            )
        return Ok(None)

    async def _stages(
        self, state: _RunState, origin: str | None, check: DisconnectCheck
    ) -> AsyncIterator[BaseModel]:
        request = state.request
        yield _status("Analyzing your search.", "companies")
        intent = await self._intent.resolve(request.query, origin)
        request.search_term = intent.search_term
        request.resolved_location = intent.location
        await _ensure_connected(check)

        yield _status(f"Searching for {intent.search_term} in {intent.location}.", "companies")
        async with contextlib.aclosing(
            self._collect(state, intent.search_term, intent.location, check)
        ) as collecting:
            async for event in collecting:
                yield event
        await _ensure_connected(check)

        if not state.companies:
            yield _status("No companies with a website were found.", "complete")
            return

        yield _status(f"Working out email formats for {len(state.companies)} companies.", "patterns")
        patterns: dict[str, EmailPattern] = {}
        async with contextlib.aclosing(self._infer_patterns(state.companies, patterns, check)) as inferring:
            async for event in inferring:
                yield event
        await _ensure_connected(check)

        yield _status("Looking for people at each company.", "contacts")
        for index, company in enumerate(state.companies):
            if index:
                await self._sleep(self._company_delay)
            await _ensure_connected(check)
            result = await self._resolve_company(company, patterns.get(company.id or ""))
            if isinstance(result, Skip):
                yield WarningEvent(message=result.reason)
                continue
            for resolved in result.value:
                state.contacts_found += 1
                state.emails_generated += len(resolved.emails)
                yield ContactFoundEvent(contact=resolved.contact, emails=resolved.emails)

        yield _status("Discovery complete.", "complete")

    async def _collect(
        self, state: _RunState, search_term: str, location: str, check: DisconnectCheck
    ) -> AsyncIterator[BaseModel]:
        queue: asyncio.Queue[QueueItem] = asyncio.Queue()
        task = asyncio.create_task(self._run_collector(queue, search_term, location, state.request.target_count))
        try:
            while True:
                item = await queue.get()
                if isinstance(item, _CollectionDone):
                    break
                if isinstance(item, Skip):
                    yield WarningEvent(message=item.reason)
                    continue
                await _ensure_connected(check)
                persisted = await self._stores.companies.upsert_by_domain([item])
                if not persisted:
                    continue
                company = persisted[0]
                state.companies.append(company)
                yield CompanyFoundEvent(company=company)
            await task
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    async def _run_collector(
        self, queue: asyncio.Queue[QueueItem], search_term: str, location: str, target_count: int
    ) -> None:
        try:
            async with self._source_scope() as source:
                collector = self._collector_factory(source)
                await collector.collect(
                    search_term,
                    location,
                    target_count,
                    on_found=queue.put,
                    on_skip=queue.put,
                )
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pragma: no cover
            logger.exception("discovery.collector_failed")
            await queue.put(Skip(f"Company search stopped early: {type(exc).__name__}."))
        finally:
            queue.put_nowait(_DONE)

    async def _infer_patterns(
        self,
        companies: Sequence[Company],
        patterns: dict[str, EmailPattern],
        check: DisconnectCheck,
    ) -> AsyncIterator[BaseModel]:
        ids = [company.id for company in companies if company.id]
        patterns.update(await self._stores.patterns.get_by_company_ids(ids))
        missing = [company for company in companies if company.id not in patterns]
        logger.info(
            "discovery.patterns",
            extra={"existing": len(companies) - len(missing), "missing": len(missing)},
        )
        if not missing:
            return

        pairs: list[tuple[Company, str]] = []
        for index, company in enumerate(missing):
            if index:
                await self._sleep(self._evidence_delay)
            await _ensure_connected(check)
            pairs.append((company, await self._patterns.gather_evidence(company)))

        inferred = await self._patterns.infer_many(pairs)
        stored = await self._stores.patterns.upsert(inferred)
        for pattern in stored:
            patterns[pattern.company_id] = pattern
            yield PatternGeneratedEvent(
                company_id=pattern.company_id,
                pattern=pattern,
                confidence=pattern.confidence,
            )

    async def _resolve_company(
        self, company: Company, pattern: EmailPattern | None
    ) -> StageResult[list[ResolvedContact]]:
        company_id = company.id or ""
        try:
            known = await self._stores.contacts.list_by_company(company_id)
            resolved = await self._contacts.resolve(
                company, pattern, known, max_results=self._contacts_per_company
            )
        except SearxngError as exc:
            metrics.increment("discovery.company_skipped", tags={"code": exc.code})
            logger.warning(
                "discovery.contacts_failed",
                extra={"company_id": company_id, "code": exc.code},
            )
            return Skip(f"Could not search for people at {company.name}.")
        except DiscoveryError as exc:
            metrics.increment("discovery.company_skipped", tags={"code": exc.code})
            logger.warning(
                "discovery.contacts_failed",
                extra={"company_id": company_id, "code": exc.code},
            )
            return Skip(f"Could not load known people at {company.name}.")
        try:
            return Ok(await persist_resolved_contacts(self._stores, resolved))
        except DiscoveryError as exc:
            metrics.increment("discovery.company_skipped", tags={"code": exc.code})
            logger.warning(
                "discovery.contacts_save_failed",
                extra={"company_id": company_id, "code": exc.code},
            )
            return Skip(f"Could not save people found at {company.name}.")

    async def _finalize(self, state: _RunState, outcome: str) -> None:
        request = state.request
        if request.is_finalized:
            return
        request.finalize(
            outcome,  # type: ignore[arg-type]
            companies_found=len(state.companies),
            contacts_found=state.contacts_found,
            emails_generated=state.emails_generated,
        )
        try:
            await self._stores.requests.save(request)
        except DiscoveryError as exc:
            logger.warning("discovery.request_save_failed", extra={"request_id": request.id, "code": exc.code})
        logger.info(
            "discovery.finished",
            extra={
                "request_id": request.id,
                "status": request.status,
                "companies": request.companies_found,
                "contacts": request.contacts_found,
                "emails": request.emails_generated,
            },
        )


def _status(message: str, stage: Stage) -> StatusEvent:
    return StatusEvent(message=message, stage=stage)


async def _never_disconnected() -> bool:
    return False


async def _ensure_connected(check: DisconnectCheck) -> None:
    if await check():
        raise _Disconnected()
