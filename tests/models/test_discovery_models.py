import json

import pytest

from leadfinder.models.discovery import Company, Contact, DiscoveryRequest, ListingRecord, company_from_listing
from leadfinder.models.events import (
    CompleteEvent,
    ContactFoundEvent,
    ErrorEvent,
    StatusEvent,
    WarningEvent,
    parse_event,
    to_sse,
)
from leadfinder.services.discovery.errors import RequestAlreadyFinalizedError


def test_company_derives_normalized_domain():
    company = Company(name="Acme Co", website="https://WWW.Acme.com/about")

    assert company.normalized_domain == "acme.com"
    assert Company(name="No Site").normalized_domain == ""


def test_company_keeps_explicit_domain_without_website():
    assert Company(name="Acme Co", normalized_domain="WWW.Acme.com").normalized_domain == "acme.com"
    assert Company(name="Acme Co", website="https://bolt.io", normalized_domain="acme.com").normalized_domain == "bolt.io"


def test_company_from_listing_keeps_fields():
    record = ListingRecord(name="Acme Co", website="acme.com", phone="555", rating=4.5)

    company = company_from_listing(record)

    assert company.id is None
    assert company.normalized_domain == "acme.com"
    assert (company.phone, company.rating) == ("555", 4.5)


def test_contact_identity_prefers_profile_id():
    with_profile = Contact(company_id="c-1", first_name="Jane", last_name="Doe", profile_id="Jane-Doe", confidence=0.9)
    without_profile = Contact(company_id="c-1", first_name="Jane", last_name="Doe", confidence=0.9)

    assert with_profile.identity_key == ("profile", "c-1", "jane-doe")
    assert without_profile.identity_key == ("name", "c-1", "jane", "doe")


def test_request_finalizes_exactly_once():
    request = DiscoveryRequest(query="law firms in Chicago", target_count=3)
    assert request.status == "running"
    assert not request.is_finalized

    request.finalize("completed", companies_found=3, contacts_found=5, emails_generated=12)

    assert request.is_finalized
    assert request.finished_at >= request.started_at
    with pytest.raises(RequestAlreadyFinalizedError) as excinfo:
        request.finalize("failed", companies_found=0, contacts_found=0, emails_generated=0)
    assert excinfo.value.code == "409_REQUEST_FINALIZED"
    assert request.status == "completed"


def test_request_cannot_finalize_as_running():
    with pytest.raises(ValueError):
        DiscoveryRequest(query="x", target_count=1).finalize(
            "running", companies_found=0, contacts_found=0, emails_generated=0
        )


def test_sse_framing_round_trips_through_discriminator():
    event = ContactFoundEvent(
        contact=Contact(id="k-1", company_id="c-1", first_name="Jane", last_name="Doe", confidence=0.9),
        emails=[],
    )

    frame = to_sse(event)

    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    payload = json.loads(frame[len("data: ") :])
    assert payload["type"] == "contact_found"
    assert parse_event(frame[len("data: ") :].strip()) == event


@pytest.mark.parametrize(
    "event",
    [
        StatusEvent(message="Analyzing your search.", stage="companies"),
        WarningEvent(message="Listing page 2 could not be fetched."),
        CompleteEvent(companies_found=1, contacts_found=0, emails_generated=0),
        ErrorEvent(message="boom"),
    ],
)
def test_parse_event_returns_typed_models(event):
    assert type(parse_event(event.model_dump_json())) is type(event)
