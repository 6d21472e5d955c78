"""Streaming events emitted by a discovery run."""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from leadfinder.models.discovery import CandidateEmail, Company, Contact, EmailPattern

Stage = Literal["companies", "patterns", "contacts", "complete", "error"]


class StatusEvent(BaseModel):
    type: Literal["status"] = "status"
    message: str
    stage: Stage


class CompanyFoundEvent(BaseModel):
    type: Literal["company_found"] = "company_found"
    company: Company


class PatternGeneratedEvent(BaseModel):
    type: Literal["pattern_generated"] = "pattern_generated"
    company_id: str
    pattern: EmailPattern
    confidence: float


class ContactFoundEvent(BaseModel):
    type: Literal["contact_found"] = "contact_found"
    contact: Contact
    emails: list[CandidateEmail] = Field(default_factory=list)


class WarningEvent(BaseModel):
    type: Literal["warning"] = "warning"
    message: str


class CompleteEvent(BaseModel):
    type: Literal["complete"] = "complete"
    companies_found: int
    contacts_found: int
    emails_generated: int


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str


DiscoveryEvent = Annotated[
    Union[
        StatusEvent,
        CompanyFoundEvent,
        PatternGeneratedEvent,
        ContactFoundEvent,
        WarningEvent,
        CompleteEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]

TERMINAL_EVENT_TYPES = frozenset({"complete", "error"})

event_adapter: TypeAdapter[DiscoveryEvent] = TypeAdapter(DiscoveryEvent)


def to_sse(event: BaseModel) -> str:
    """Frame an event as one server-sent-events ``data:`` block."""
    return f"data: {event.model_dump_json()}\n\n"


def parse_event(payload: str | bytes) -> BaseModel:
    """Decode a JSON event back into its typed model."""
    return event_adapter.validate_json(payload)
