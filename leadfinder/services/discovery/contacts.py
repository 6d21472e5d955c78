"""Finds likely employees of a company and proposes their email addresses."""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from typing import Final, Protocol

from pydantic import BaseModel, Field

from leadfinder.clients.llm import InferenceError, TextInferenceModel
from leadfinder.config import settings
from leadfinder.models.discovery import (
    CandidateEmail,
    Company,
    Contact,
    EmailPattern,
    ResolvedContact,
    SearchResult,
    contact_identity,
)
from leadfinder.observability.metrics import metrics
from leadfinder.services.discovery.names import (
    is_individual_profile,
    parse_profile_title,
    profile_id_from_url,
)
from leadfinder.services.discovery.patterns import (
    ALTERNATE_LOCAL_PARTS,
    SearchAggregator,
    apply_template,
)

logger = logging.getLogger(__name__)

MAX_EXCLUSION_TERMS: Final = 20
BIO_MAX_CHARS: Final = 500
ALTERNATE_DECAY_START: Final = 0.5
ALTERNATE_DECAY_STEP: Final = 0.1
ALTERNATE_DECAY_MIN: Final = 0.1


class EmailValidator(Protocol):
    """Optional deliverability check; returns ``valid``, ``invalid`` or ``unknown``."""

    async def check(self, address: str) -> str:
        ...


class RefinedPerson(BaseModel):
    index: int
    is_person: bool = True


class RefinedPeople(BaseModel):
    people: list[RefinedPerson] = Field(default_factory=list)


REFINEMENT_PROMPT: Final = """The search results below were returned for people working at "{company}".
Mark each entry as a real individual employee or not (company pages, job posts,
directories and groups are not people).

{rows}

Return JSON: {{"people": [{{"index": <number>, "is_person": <bool>}}]}}
"""


def build_contact_query(company_name: str, known_profile_ids: Sequence[str]) -> str:
    """Professional-network search with best-effort exclusion of known profiles."""
    query = f'site:linkedin.com/in "{company_name}"'
    exclusions = [f"-inurl:{profile_id}" for profile_id in known_profile_ids[:MAX_EXCLUSION_TERMS]]
    return " ".join([query, *exclusions])


def _name_key(contact: Contact) -> tuple[str, ...]:
    return contact_identity(
        contact.company_id,
        profile_id=None,
        first_name=contact.first_name,
        last_name=contact.last_name,
    )


class ContactResolver:
    """Turns search snippets into ranked contacts with candidate emails."""

    def __init__(
        self,
        *,
        search: SearchAggregator | None,
        model: TextInferenceModel | None = None,
        validator: EmailValidator | None = None,
        refinement_enabled: bool | None = None,
        confidence_floor: float | None = None,
        emails_per_contact: int | None = None,
        model_name: str | None = None,
    ) -> None:
        self._search = search
        self._model = model
        self._validator = validator
        self._refinement_enabled = (
            refinement_enabled if refinement_enabled is not None else settings.contact_refinement_enabled
        )
        self._floor = confidence_floor if confidence_floor is not None else settings.contact_confidence_floor
        self._emails_per_contact = (
            emails_per_contact if emails_per_contact is not None else settings.emails_per_contact
        )
        self._model_name = model_name or settings.contact_model

    async def resolve(
        self,
        company: Company,
        pattern: EmailPattern | None,
        already_known: Sequence[Contact],
        max_results: int | None = None,
    ) -> list[ResolvedContact]:
        """Resolve new contacts for ``company``.

        Known identities are filtered locally even when the search ignores the
        exclusion terms. Search failures propagate to the caller.
        """
        limit = max_results if max_results is not None else settings.contact_max_results
        if limit <= 0 or len(already_known) >= limit or self._search is None:
            return []

        start = time.perf_counter()
        company_id = company.id or ""
        known_identities = {contact.identity_key for contact in already_known}
        known_names = {
            _name_key(contact) for contact in already_known if not contact.profile_id
        }
        known_profiles = [contact.profile_id for contact in already_known if contact.profile_id]

        results = await self._search.query(build_contact_query(company.name, known_profiles))
        candidates = self._parse_candidates(results, company_id, pattern)
        if self._refinement_enabled and self._model is not None and candidates:
            candidates = await self._refine(company, candidates)

        unique: dict[tuple[str, ...], Contact] = {}
        for contact in candidates:
            key = contact.identity_key
            if key in known_identities or _name_key(contact) in known_names:
                continue
            current = unique.get(key)
            if current is None or contact.confidence > current.confidence:
                unique[key] = contact
        ranked = sorted(unique.values(), key=lambda item: item.confidence, reverse=True)[:limit]

        resolved = [
            ResolvedContact(contact=contact, emails=await self._candidate_emails(contact, company, pattern))
            for contact in ranked
        ]
        elapsed_ms = (time.perf_counter() - start) * 1000
        metrics.timing("contacts.latency_ms", elapsed_ms)
        metrics.increment("contacts.resolved", value=len(resolved))
        logger.info(
            "contacts.resolved",
            extra={
                "company_id": company_id,
                "results": len(results),
                "candidates": len(candidates),
                "resolved": len(resolved),
                "known": len(already_known),
            },
        )
        return resolved

    def _parse_candidates(
        self, results: Sequence[SearchResult], company_id: str, pattern: EmailPattern | None
    ) -> list[Contact]:
        pattern_confidence = pattern.confidence if pattern is not None else 0.0
        contacts: list[Contact] = []
        for result in results:
            if not is_individual_profile(result.url):
                continue
            parsed = parse_profile_title(result.title)
            if parsed is None:
                continue
            confidence = round(parsed.clarity * pattern_confidence, 4)
            if confidence < self._floor:
                metrics.increment("contacts.below_floor")
                continue
            contacts.append(
                Contact(
                    company_id=company_id,
                    first_name=parsed.first_name,
                    last_name=parsed.last_name,
                    profile_url=result.url,
                    profile_id=profile_id_from_url(result.url),
                    bio_snippet=result.content[:BIO_MAX_CHARS],
                    confidence=confidence,
                )
            )
        return contacts

    async def _refine(self, company: Company, candidates: list[Contact]) -> list[Contact]:
        rows = "\n".join(
            f"{index}. {contact.first_name} {contact.last_name or ''} | {contact.bio_snippet[:200]}"
            for index, contact in enumerate(candidates)
        )
        try:
            verdict = await self._model.complete(  # type: ignore[union-attr]
                REFINEMENT_PROMPT.format(company=company.name, rows=rows),
                RefinedPeople,
                model=self._model_name,
            )
        except InferenceError as exc:
            metrics.increment("contacts.refinement_failed", tags={"code": exc.code})
            logger.warning(
                "contacts.refinement_failed",
                extra={"company_id": company.id, "code": exc.code},
            )
            return []
        keep = {person.index for person in verdict.people if person.is_person}
        return [contact for index, contact in enumerate(candidates) if index in keep]

    async def _candidate_emails(
        self, contact: Contact, company: Company, pattern: EmailPattern | None
    ) -> list[CandidateEmail]:
        proposals: list[CandidateEmail] = []
        seen: set[str] = set()

        def _propose(address: str | None, confidence: float, basis: str) -> None:
            if not address or address in seen:
                return
            seen.add(address)
            rounded = round(confidence, 4)
            if rounded < self._floor:
                return
            proposals.append(
                CandidateEmail(contact_id=contact.id, address=address, confidence=rounded, basis=basis)
            )

        if pattern is not None:
            _propose(
                apply_template(pattern.template, contact.first_name, contact.last_name),
                contact.confidence,
                pattern.source,
            )
        domain = company.normalized_domain
        if domain:
            decay = ALTERNATE_DECAY_START
            for local in ALTERNATE_LOCAL_PARTS:
                address = apply_template(f"{local}@{domain}", contact.first_name, contact.last_name)
                if address is None or address in seen:
                    continue
                _propose(address, contact.confidence * decay, f"alternate:{local}")
                decay = max(decay - ALTERNATE_DECAY_STEP, ALTERNATE_DECAY_MIN)

        if self._validator is not None:
            proposals = [email for email in proposals if await self._is_deliverable(email.address)]
        proposals.sort(key=lambda email: email.confidence, reverse=True)
        return proposals[: self._emails_per_contact]

    async def _is_deliverable(self, address: str) -> bool:
        # A failed check counts as an unknown verdict.
        try:
            verdict = await self._validator.check(address)  # type: ignore[union-attr]
        except Exception as exc:
            metrics.increment("contacts.validator_failed")
            logger.warning(
                "contacts.validator_failed",
                extra={"address": address, "error": type(exc).__name__},
            )
            return True
        return verdict != "invalid"
