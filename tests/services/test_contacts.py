import pytest

from leadfinder.clients.llm import InferenceProviderError
from leadfinder.clients.searxng import SearxngError
from leadfinder.models.discovery import Company, Contact, EmailPattern, SearchResult
from leadfinder.services.discovery import contacts as contacts_module
from leadfinder.services.discovery.contacts import ContactResolver, build_contact_query
from tests.helpers.discovery_stubs import StubModel, StubSearch, profile_result
from tests.helpers.metrics_stub import StubMetrics

COMPANY = Company(id="c-1", name="Acme Co", website="https://www.acme.com")


def _pattern(template="firstname.lastname@acme.com", confidence=0.9, source="search_inference"):
    return EmailPattern(company_id="c-1", template=template, confidence=confidence, source=source)


def _resolver(search, **overrides):
    options = {
        "search": search,
        "refinement_enabled": False,
        "confidence_floor": 0.3,
        "emails_per_contact": 4,
        "model_name": "test-model",
    }
    options.update(overrides)
    return ContactResolver(**options)


class StubValidator:
    def __init__(self, invalid):
        self.invalid = set(invalid)
        self.calls = 0

    async def check(self, address):
        self.calls += 1
        return "invalid" if address in self.invalid else "unknown"


@pytest.fixture(autouse=True)
def stub_metrics(monkeypatch):
    stub = StubMetrics()
    monkeypatch.setattr(contacts_module, "metrics", stub)
    return stub


def test_build_contact_query_caps_exclusions():
    query = build_contact_query("Acme Co", [f"person-{index}" for index in range(30)])

    assert query.startswith('site:linkedin.com/in "Acme Co"')
    assert query.count("-inurl:") == 20
    assert "-inurl:person-19" in query
    assert "-inurl:person-20" not in query


@pytest.mark.asyncio
async def test_resolve_builds_contact_with_ranked_emails():
    search = StubSearch(lambda query: [profile_result("Jane Doe", "jane-doe")])

    resolved = await _resolver(search).resolve(COMPANY, _pattern(), [], max_results=5)

    assert len(resolved) == 1
    contact = resolved[0].contact
    assert (contact.first_name, contact.last_name) == ("Jane", "Doe")
    assert contact.profile_id == "jane-doe"
    assert contact.confidence == pytest.approx(0.9)
    emails = resolved[0].emails
    assert [email.address for email in emails] == ["jane.doe@acme.com", "jane@acme.com", "jdoe@acme.com"]
    assert emails[0].basis == "search_inference"
    assert emails[0].confidence == pytest.approx(0.9)
    assert emails[1].basis == "alternate:firstname"
    assert emails[1].confidence == pytest.approx(0.45)
    assert all(email.confidence >= 0.3 for email in emails)


@pytest.mark.asyncio
async def test_resolve_drops_candidates_below_floor():
    search = StubSearch(
        lambda query: [
            profile_result("Jane Doe", "jane-doe"),
            SearchResult(title="Cher | LinkedIn", url="https://www.linkedin.com/in/cher", content=""),
        ]
    )

    resolved = await _resolver(search).resolve(COMPANY, _pattern(confidence=0.5, source="fallback_default"), [])

    assert [item.contact.first_name for item in resolved] == ["Jane"]
    assert resolved[0].contact.confidence == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_resolve_ignores_non_profile_results():
    search = StubSearch(
        lambda query: [
            SearchResult(title="Acme Co | LinkedIn", url="https://www.linkedin.com/company/acme"),
            SearchResult(title="Jane Doe profiles", url="https://www.linkedin.com/pub/dir/jane/doe"),
        ]
    )

    assert await _resolver(search).resolve(COMPANY, _pattern(), []) == []


@pytest.mark.asyncio
async def test_second_call_never_repeats_known_contacts():
    rows = [profile_result("Jane Doe", "jane-doe"), profile_result("John Roe", "john-roe")]
    search = StubSearch(lambda query: rows)
    resolver = _resolver(search)

    first = await resolver.resolve(COMPANY, _pattern(), [], max_results=10)
    known = [item.contact for item in first]
    second = await resolver.resolve(COMPANY, _pattern(), known, max_results=10)

    assert len(first) == 2
    assert second == []
    assert "-inurl:jane-doe" in search.queries[1]
    assert "-inurl:john-roe" in search.queries[1]


@pytest.mark.asyncio
async def test_known_contact_without_profile_matches_by_name():
    known = [Contact(id="k-1", company_id="c-1", first_name="jane", last_name="DOE", confidence=0.8)]
    search = StubSearch(lambda query: [profile_result("Jane Doe", "jane-doe"), profile_result("Mia Wong", "mia-wong")])

    resolved = await _resolver(search).resolve(COMPANY, _pattern(), known, max_results=10)

    assert [item.contact.first_name for item in resolved] == ["Mia"]


@pytest.mark.asyncio
async def test_resolve_short_circuits_when_enough_known():
    search = StubSearch(lambda query: [profile_result("Jane Doe", "jane-doe")])
    known = [
        Contact(id=f"k-{index}", company_id="c-1", first_name=f"Person{index}", last_name="X", confidence=0.8)
        for index in range(3)
    ]

    assert await _resolver(search).resolve(COMPANY, _pattern(), known, max_results=3) == []
    assert search.queries == []


@pytest.mark.asyncio
async def test_resolve_caps_results_by_confidence():
    search = StubSearch(
        lambda query: [
            profile_result("Cher", "cher"),
            profile_result("Jane Doe", "jane-doe"),
            profile_result("Ana Garcia Lopez", "ana-gl"),
        ]
    )

    resolved = await _resolver(search).resolve(COMPANY, _pattern(confidence=1.0), [], max_results=2)

    assert [item.contact.first_name for item in resolved] == ["Jane", "Ana"]


@pytest.mark.asyncio
async def test_resolve_without_pattern_yields_no_contacts():
    search = StubSearch(lambda query: [profile_result("Jane Doe", "jane-doe")])

    assert await _resolver(search).resolve(COMPANY, None, []) == []


@pytest.mark.asyncio
async def test_search_errors_propagate():
    def failing(query):
        raise SearxngError("upstream down")

    with pytest.raises(SearxngError):
        await _resolver(StubSearch(failing)).resolve(COMPANY, _pattern(), [])


@pytest.mark.asyncio
async def test_refinement_keeps_only_people():
    search = StubSearch(lambda query: [profile_result("Jane Doe", "jane-doe"), profile_result("Acme Careers", "acme-careers")])
    model = StubModel({"RefinedPeople": [{"people": [{"index": 0, "is_person": True}, {"index": 1, "is_person": False}]}]})

    resolved = await _resolver(search, model=model, refinement_enabled=True).resolve(COMPANY, _pattern(), [])

    assert [item.contact.profile_id for item in resolved] == ["jane-doe"]


@pytest.mark.asyncio
async def test_refinement_failure_returns_no_contacts(stub_metrics):
    search = StubSearch(lambda query: [profile_result("Jane Doe", "jane-doe")])
    model = StubModel({"RefinedPeople": [InferenceProviderError("bad", code="502_INFERENCE_SCHEMA")]})

    resolved = await _resolver(search, model=model, refinement_enabled=True).resolve(COMPANY, _pattern(), [])

    assert resolved == []
    assert "contacts.refinement_failed" in [call["metric"] for call in stub_metrics.increment_calls]


@pytest.mark.asyncio
async def test_validator_drops_invalid_addresses():
    search = StubSearch(lambda query: [profile_result("Jane Doe", "jane-doe")])
    validator = StubValidator(invalid={"jane.doe@acme.com"})

    resolved = await _resolver(search, validator=validator).resolve(COMPANY, _pattern(), [])

    addresses = [email.address for email in resolved[0].emails]
    assert "jane.doe@acme.com" not in addresses
    assert addresses[0] == "jane@acme.com"
    assert validator.calls == 3


class BrokenValidator:
    async def check(self, address):
        raise ConnectionError("validator unreachable")


@pytest.mark.asyncio
async def test_validator_failure_keeps_addresses(stub_metrics):
    search = StubSearch(lambda query: [profile_result("Jane Doe", "jane-doe")])

    resolved = await _resolver(search, validator=BrokenValidator()).resolve(COMPANY, _pattern(), [])

    assert resolved[0].emails[0].address == "jane.doe@acme.com"
    assert "contacts.validator_failed" in [call["metric"] for call in stub_metrics.increment_calls]
