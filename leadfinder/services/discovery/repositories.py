"""Persistence backends for discovered companies, patterns, contacts and emails."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from threading import Lock
from typing import Any, Protocol
from uuid import uuid4

import httpx

from leadfinder.config import settings
from leadfinder.models.discovery import (
    CandidateEmail,
    Company,
    Contact,
    DiscoveryRequest,
    EmailPattern,
    ResolvedContact,
)
from leadfinder.observability.metrics import metrics
from leadfinder.services.discovery.errors import DiscoveryPersistenceError

logger = logging.getLogger(__name__)


class CompanyStore(Protocol):
    async def upsert_by_domain(self, companies: Sequence[Company]) -> list[Company]:
        ...

    async def get_by_ids(self, ids: Sequence[str]) -> list[Company]:
        ...


class PatternStore(Protocol):
    async def get_by_company_ids(self, ids: Sequence[str]) -> dict[str, EmailPattern]:
        ...

    async def upsert(self, patterns: Sequence[EmailPattern]) -> list[EmailPattern]:
        ...


class ContactStore(Protocol):
    async def list_by_company(
        self, company_id: str, exclude_ids: Iterable[str] = ()
    ) -> list[Contact]:
        ...

    async def upsert_by_identity(self, contacts: Sequence[Contact]) -> list[Contact]:
        ...


class EmailStore(Protocol):
    async def upsert(
        self, contact_id: str, address: str, confidence: float, basis: str
    ) -> CandidateEmail | None:
        ...

    async def list_by_contact(self, contact_id: str) -> list[CandidateEmail]:
        ...


class DiscoveryRequestStore(Protocol):
    async def save(self, request: DiscoveryRequest) -> DiscoveryRequest:
        ...


@dataclass
class DiscoveryStores:
    """Bundle of the stores a discovery run writes to."""

    companies: CompanyStore
    patterns: PatternStore
    contacts: ContactStore
    emails: EmailStore
    requests: DiscoveryRequestStore


def _merge(existing: Company, incoming: Company) -> Company:
    updates = {
        field: value
        for field, value in incoming.model_dump(exclude={"id", "normalized_domain"}).items()
        if value not in (None, "")
    }
    return existing.model_copy(update=updates)


class InMemoryCompanyStore(CompanyStore):
    """Thread-safe company store keyed by id and normalized domain."""

    def __init__(self) -> None:
        self._companies: dict[str, Company] = {}
        self._domain_index: dict[str, str] = {}
        self._lock = Lock()

    async def upsert_by_domain(self, companies: Sequence[Company]) -> list[Company]:
        persisted: list[Company] = []
        with self._lock:
            for company in companies:
                domain = company.normalized_domain
                existing_id = self._domain_index.get(domain) if domain else None
                if existing_id is not None:
                    stored = _merge(self._companies[existing_id], company)
                else:
                    stored = company.model_copy(update={"id": company.id or str(uuid4())})
                self._companies[stored.id] = stored
                if domain:
                    self._domain_index[domain] = stored.id
                persisted.append(stored)
        metrics.increment("persistence.companies", value=len(persisted), tags={"repository": "memory"})
        return persisted

    async def get_by_ids(self, ids: Sequence[str]) -> list[Company]:
        with self._lock:
            return [self._companies[company_id] for company_id in ids if company_id in self._companies]


class InMemoryPatternStore(PatternStore):
    """At most one current pattern per company."""

    def __init__(self) -> None:
        self._patterns: dict[str, EmailPattern] = {}
        self._lock = Lock()

    async def get_by_company_ids(self, ids: Sequence[str]) -> dict[str, EmailPattern]:
        with self._lock:
            return {company_id: self._patterns[company_id] for company_id in ids if company_id in self._patterns}

    async def upsert(self, patterns: Sequence[EmailPattern]) -> list[EmailPattern]:
        with self._lock:
            for pattern in patterns:
                self._patterns[pattern.company_id] = pattern
        metrics.increment("persistence.patterns", value=len(patterns), tags={"repository": "memory"})
        return list(patterns)


class InMemoryContactStore(ContactStore):
    """Contacts keyed by their identity key within a company."""

    def __init__(self) -> None:
        self._contacts: dict[str, Contact] = {}
        self._identity_index: dict[tuple[str, ...], str] = {}
        self._lock = Lock()

    async def list_by_company(
        self, company_id: str, exclude_ids: Iterable[str] = ()
    ) -> list[Contact]:
        excluded = set(exclude_ids)
        with self._lock:
            return [
                contact
                for contact in self._contacts.values()
                if contact.company_id == company_id and contact.id not in excluded
            ]

    async def upsert_by_identity(self, contacts: Sequence[Contact]) -> list[Contact]:
        persisted: list[Contact] = []
        with self._lock:
            for contact in contacts:
                key = contact.identity_key
                existing_id = self._identity_index.get(key)
                contact_id = existing_id or contact.id or str(uuid4())
                stored = contact.model_copy(update={"id": contact_id})
                self._contacts[contact_id] = stored
                self._identity_index[key] = contact_id
                persisted.append(stored)
        metrics.increment("persistence.contacts", value=len(persisted), tags={"repository": "memory"})
        return persisted

    async def get(self, contact_id: str) -> Contact | None:
        with self._lock:
            return self._contacts.get(contact_id)


class InMemoryEmailStore(EmailStore):
    """Candidate emails unique per (contact_id, address)."""

    def __init__(self) -> None:
        self._emails: dict[tuple[str, str], CandidateEmail] = {}
        self._lock = Lock()

    async def upsert(
        self, contact_id: str, address: str, confidence: float, basis: str
    ) -> CandidateEmail | None:
        if not contact_id or not address:
            return None
        email = CandidateEmail(
            contact_id=contact_id,
            address=address.strip().lower(),
            confidence=confidence,
            basis=basis,
        )
        with self._lock:
            self._emails[(contact_id, email.address)] = email
        return email

    async def list_by_contact(self, contact_id: str) -> list[CandidateEmail]:
        with self._lock:
            matches = [email for (owner, _), email in self._emails.items() if owner == contact_id]
        return sorted(matches, key=lambda email: email.confidence, reverse=True)


class InMemoryDiscoveryRequestStore(DiscoveryRequestStore):
    def __init__(self) -> None:
        self._requests: dict[str, DiscoveryRequest] = {}
        self._lock = Lock()

    async def save(self, request: DiscoveryRequest) -> DiscoveryRequest:
        with self._lock:
            self._requests[request.id] = request.model_copy()
        logger.info(
            "persistence.request_saved",
            extra={"request_id": request.id, "status": request.status, "backend": "memory"},
        )
        return request

    async def get(self, request_id: str) -> DiscoveryRequest | None:
        with self._lock:
            return self._requests.get(request_id)


def build_memory_stores() -> DiscoveryStores:
    return DiscoveryStores(
        companies=InMemoryCompanyStore(),
        patterns=InMemoryPatternStore(),
        contacts=InMemoryContactStore(),
        emails=InMemoryEmailStore(),
        requests=InMemoryDiscoveryRequestStore(),
    )


class SupabaseRestClient:
    """Minimal PostgREST access shared by the Supabase stores."""

    def __init__(self, *, base_url: str, service_key: str, http_client: httpx.AsyncClient) -> None:
        if not base_url or not service_key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY are required for Supabase stores.")
        self._base = base_url.rstrip("/")
        self._client = http_client
        self._headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
            "Prefer": "resolution=merge-duplicates,return=representation",
        }

    def _table_url(self, table: str) -> str:
        return f"{self._base}/rest/v1/{table}"

    async def upsert(
        self, table: str, rows: Sequence[dict[str, Any]], *, on_conflict: str | None
    ) -> list[dict[str, Any]]:
        if not rows:
            return []
        params = {"on_conflict": on_conflict} if on_conflict else None
        try:
            response = await self._client.post(
                self._table_url(table), json=list(rows), params=params, headers=self._headers
            )
        except httpx.HTTPError as exc:
            raise DiscoveryPersistenceError(
                f"Supabase write to {table} failed: {exc}", code="E_SUPABASE_WRITE"
            ) from exc
        if response.status_code >= 400:
            logger.error(
                "persistence.write_failed",
                extra={"table": table, "status": response.status_code, "backend": "supabase"},
            )
            raise DiscoveryPersistenceError(
                f"Supabase write to {table} failed with status {response.status_code}",
                code="E_SUPABASE_WRITE",
            )
        metrics.increment(f"persistence.{table}", value=len(rows), tags={"repository": "supabase"})
        return _json_rows(response)

    async def select(self, table: str, params: dict[str, str]) -> list[dict[str, Any]]:
        try:
            response = await self._client.get(self._table_url(table), headers=self._headers, params=params)
        except httpx.HTTPError as exc:
            raise DiscoveryPersistenceError(
                f"Supabase query on {table} failed: {exc}", code="E_SUPABASE_FETCH"
            ) from exc
        if response.status_code >= 400:
            raise DiscoveryPersistenceError(
                f"Supabase query on {table} failed with status {response.status_code}",
                code="E_SUPABASE_FETCH",
            )
        return _json_rows(response)


def _json_rows(response: httpx.Response) -> list[dict[str, Any]]:
    if not response.content:
        return []
    try:
        payload = response.json()
    except ValueError as exc:
        raise DiscoveryPersistenceError("Supabase returned invalid JSON.", code="E_SUPABASE_SCHEMA") from exc
    if isinstance(payload, dict):
        return [payload]
    return [row for row in payload if isinstance(row, dict)]


def _in_filter(values: Iterable[str]) -> str:
    quoted = ",".join(f'"{value}"' for value in values)
    return f"in.({quoted})"


class SupabaseCompanyStore(CompanyStore):
    def __init__(self, rest: SupabaseRestClient, *, table: str = "companies") -> None:
        self._rest = rest
        self._table = table

    async def upsert_by_domain(self, companies: Sequence[Company]) -> list[Company]:
        with_domain = [c.model_dump(exclude_none=True) for c in companies if c.normalized_domain]
        without_domain = [c.model_dump(exclude_none=True) for c in companies if not c.normalized_domain]
        rows = await self._rest.upsert(self._table, with_domain, on_conflict="normalized_domain")
        rows += await self._rest.upsert(self._table, without_domain, on_conflict=None)
        return [Company.model_validate(_stringify_id(row)) for row in rows]

    async def get_by_ids(self, ids: Sequence[str]) -> list[Company]:
        if not ids:
            return []
        rows = await self._rest.select(self._table, {"select": "*", "id": _in_filter(ids)})
        return [Company.model_validate(_stringify_id(row)) for row in rows]


class SupabasePatternStore(PatternStore):
    def __init__(self, rest: SupabaseRestClient, *, table: str = "email_patterns") -> None:
        self._rest = rest
        self._table = table

    async def get_by_company_ids(self, ids: Sequence[str]) -> dict[str, EmailPattern]:
        if not ids:
            return {}
        rows = await self._rest.select(self._table, {"select": "*", "company_id": _in_filter(ids)})
        patterns = [EmailPattern.model_validate(_stringify_id(row, "company_id")) for row in rows]
        return {pattern.company_id: pattern for pattern in patterns}

    async def upsert(self, patterns: Sequence[EmailPattern]) -> list[EmailPattern]:
        rows = await self._rest.upsert(
            self._table, [pattern.model_dump() for pattern in patterns], on_conflict="company_id"
        )
        return [EmailPattern.model_validate(_stringify_id(row, "company_id")) for row in rows] or list(patterns)


class SupabaseContactStore(ContactStore):
    def __init__(self, rest: SupabaseRestClient, *, table: str = "contacts") -> None:
        self._rest = rest
        self._table = table

    async def list_by_company(
        self, company_id: str, exclude_ids: Iterable[str] = ()
    ) -> list[Contact]:
        rows = await self._rest.select(self._table, {"select": "*", "company_id": f"eq.{company_id}"})
        excluded = set(exclude_ids)
        contacts = [Contact.model_validate(_stringify_id(row, "id", "company_id")) for row in rows]
        return [contact for contact in contacts if contact.id not in excluded]

    async def upsert_by_identity(self, contacts: Sequence[Contact]) -> list[Contact]:
        profiled = [c for c in contacts if c.profile_id]
        unprofiled = [c for c in contacts if not c.profile_id]
        rows = await self._rest.upsert(
            self._table,
            [c.model_dump(exclude_none=True) for c in profiled],
            on_conflict="profile_id,company_id",
        )
        if unprofiled:
            rows += await self._rest.upsert(
                self._table,
                [c.model_dump(exclude_none=True) for c in await self._attach_known_ids(unprofiled)],
                on_conflict="id",
            )
        return [Contact.model_validate(_stringify_id(row, "id", "company_id")) for row in rows]

    async def _attach_known_ids(self, contacts: Sequence[Contact]) -> list[Contact]:
        known: dict[tuple[str, ...], str] = {}
        for company_id in {contact.company_id for contact in contacts}:
            for existing in await self.list_by_company(company_id):
                if existing.id and not existing.profile_id:
                    known[existing.identity_key] = existing.id
        return [
            contact.model_copy(update={"id": known.get(contact.identity_key) or contact.id or str(uuid4())})
            for contact in contacts
        ]


class SupabaseEmailStore(EmailStore):
    def __init__(self, rest: SupabaseRestClient, *, table: str = "candidate_emails") -> None:
        self._rest = rest
        self._table = table

    async def upsert(
        self, contact_id: str, address: str, confidence: float, basis: str
    ) -> CandidateEmail | None:
        if not contact_id or not address:
            return None
        row = {
            "contact_id": contact_id,
            "address": address.strip().lower(),
            "confidence": confidence,
            "basis": basis,
        }
        rows = await self._rest.upsert(self._table, [row], on_conflict="contact_id,address")
        return CandidateEmail.model_validate(_stringify_id(rows[0] if rows else row, "contact_id"))

    async def list_by_contact(self, contact_id: str) -> list[CandidateEmail]:
        rows = await self._rest.select(
            self._table, {"select": "*", "contact_id": f"eq.{contact_id}", "order": "confidence.desc"}
        )
        return [CandidateEmail.model_validate(_stringify_id(row, "contact_id")) for row in rows]


class SupabaseDiscoveryRequestStore(DiscoveryRequestStore):
    def __init__(self, rest: SupabaseRestClient, *, table: str = "discovery_requests") -> None:
        self._rest = rest
        self._table = table

    async def save(self, request: DiscoveryRequest) -> DiscoveryRequest:
        await self._rest.upsert(self._table, [request.model_dump(mode="json")], on_conflict="id")
        return request


def _stringify_id(row: dict[str, Any], *fields: str) -> dict[str, Any]:
    keys = fields or ("id",)
    return {key: (str(value) if key in keys and value is not None else value) for key, value in row.items()}


def build_supabase_stores(http_client: httpx.AsyncClient) -> DiscoveryStores:
    rest = SupabaseRestClient(
        base_url=settings.supabase_url or "",
        service_key=settings.supabase_service_key or "",
        http_client=http_client,
    )
    return DiscoveryStores(
        companies=SupabaseCompanyStore(rest),
        patterns=SupabasePatternStore(rest),
        contacts=SupabaseContactStore(rest),
        emails=SupabaseEmailStore(rest),
        requests=SupabaseDiscoveryRequestStore(rest),
    )


async def persist_resolved_contacts(
    stores: DiscoveryStores, resolved: Sequence[ResolvedContact]
) -> list[ResolvedContact]:
    """Upsert contacts by identity, then their candidate emails under the stored ids."""
    if not resolved:
        return []
    persisted = await stores.contacts.upsert_by_identity([item.contact for item in resolved])
    by_identity = {contact.identity_key: contact for contact in persisted}
    output: list[ResolvedContact] = []
    for item in resolved:
        contact = by_identity.get(item.contact.identity_key)
        if contact is None:
            logger.warning(
                "persistence.contact_missing",
                extra={"company_id": item.contact.company_id, "profile_id": item.contact.profile_id},
            )
            continue
        emails: list[CandidateEmail] = []
        for email in item.emails:
            saved = await stores.emails.upsert(contact.id or "", email.address, email.confidence, email.basis)
            if saved is not None:
                emails.append(saved)
        output.append(ResolvedContact(contact=contact, emails=emails))
    return output
