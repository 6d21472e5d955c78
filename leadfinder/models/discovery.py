"""Domain models for company, contact and email discovery."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field, confloat, model_validator

from leadfinder.services.discovery.domains import normalize_domain
from leadfinder.services.discovery.errors import RequestAlreadyFinalizedError

PatternSource = Literal["search_inference", "model_knowledge", "fallback_default"]
RequestStatus = Literal["running", "completed", "failed", "cancelled"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ListingRecord(BaseModel):
    """One business listing parsed from a directory results page."""

    name: str
    address: str | None = None
    website: str | None = None
    normalized_domain: str = ""
    phone: str | None = None
    category: str | None = None
    description: str | None = None
    hours: str | None = None
    rating: float | None = None
    review_count: int | None = None

    @model_validator(mode="after")
    def _derive_domain(self) -> "ListingRecord":
        self.normalized_domain = normalize_domain(self.website)
        return self

    @property
    def dedup_key(self) -> str:
        return f"{self.name.strip().lower()}_{(self.address or '').strip().lower()}"


class Company(BaseModel):
    """A discovered business; ``id`` is assigned by persistence."""

    id: str | None = None
    name: str
    address: str | None = None
    website: str | None = None
    normalized_domain: str = ""
    phone: str | None = None
    category: str | None = None
    description: str | None = None
    hours: str | None = None
    rating: float | None = None
    review_count: int | None = None

    @model_validator(mode="after")
    def _derive_domain(self) -> "Company":
        # The website wins; an explicit domain survives only when there is no website.
        self.normalized_domain = normalize_domain(self.website or self.normalized_domain)
        return self


def company_from_listing(record: ListingRecord) -> Company:
    """Promote an extracted listing into an unpersisted company."""
    return Company(**record.model_dump(exclude={"normalized_domain"}))


class EmailPattern(BaseModel):
    """The single current email template inferred for a company."""

    company_id: str
    template: str
    confidence: confloat(ge=0.0, le=1.0)  # type: ignore[valid-type]
    source_snippet: str = ""
    source: PatternSource = "fallback_default"


class Contact(BaseModel):
    """A person believed to work at a company."""

    id: str | None = None
    company_id: str
    first_name: str
    last_name: str | None = None
    profile_url: str | None = None
    profile_id: str | None = None
    bio_snippet: str = ""
    confidence: confloat(ge=0.0, le=1.0)  # type: ignore[valid-type]

    @property
    def identity_key(self) -> tuple[str, ...]:
        return contact_identity(
            self.company_id,
            profile_id=self.profile_id,
            first_name=self.first_name,
            last_name=self.last_name,
        )


def contact_identity(
    company_id: str,
    *,
    profile_id: str | None,
    first_name: str,
    last_name: str | None,
) -> tuple[str, ...]:
    """Identity key: profile id when present, otherwise the lowercased name pair."""
    if profile_id:
        return ("profile", company_id, profile_id.lower())
    return ("name", company_id, first_name.lower(), (last_name or "").lower())


class CandidateEmail(BaseModel):
    """A probable address for a contact, unique per (contact_id, address)."""

    contact_id: str | None = None
    address: str
    confidence: confloat(ge=0.0, le=1.0)  # type: ignore[valid-type]
    basis: str


class ResolvedContact(BaseModel):
    """Contact plus its ranked candidate emails, as produced by the resolver."""

    contact: Contact
    emails: list[CandidateEmail] = Field(default_factory=list)


class SearchResult(BaseModel):
    """One row returned by the search aggregator."""

    title: str = ""
    url: str = ""
    content: str = ""
    score: float | None = None


class QueryIntent(BaseModel):
    search_term: str
    location: str
    had_explicit_location: bool = False


class DiscoveryRequest(BaseModel):
    """Bookkeeping for one discovery run; finalized exactly once."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    query: str
    target_count: int
    resolved_location: str | None = None
    search_term: str | None = None
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None
    companies_found: int = 0
    contacts_found: int = 0
    emails_generated: int = 0
    status: RequestStatus = "running"

    @property
    def is_finalized(self) -> bool:
        return self.finished_at is not None

    def finalize(
        self,
        status: RequestStatus,
        *,
        companies_found: int,
        contacts_found: int,
        emails_generated: int,
    ) -> "DiscoveryRequest":
        if self.is_finalized:
            raise RequestAlreadyFinalizedError(
                f"Discovery request {self.id} already finalized as {self.status}.",
                code="409_REQUEST_FINALIZED",
            )
        if status == "running":
            raise ValueError("A request cannot be finalized as running.")
        self.status = status
        self.companies_found = companies_found
        self.contacts_found = contacts_found
        self.emails_generated = emails_generated
        self.finished_at = _utcnow()
        return self
