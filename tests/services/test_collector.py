import pytest

from leadfinder.services.discovery import collector as collector_module
from leadfinder.services.discovery.collector import CompanyCollector
from tests.helpers.discovery_stubs import RecordingSleep, StubListingSource, listing_html
from tests.helpers.metrics_stub import StubMetrics


def _collector(source, sleep, **overrides):
    options = {
        "max_pages": 10,
        "max_empty_pages": 3,
        "page_delay": 2.0,
        "page_jitter": 0.0,
        "base_url": "https://directory.test/search",
        "sleep": sleep,
    }
    options.update(overrides)
    return CompanyCollector(source, **options)


@pytest.fixture(autouse=True)
def stub_metrics(monkeypatch):
    stub = StubMetrics()
    monkeypatch.setattr(collector_module, "metrics", stub)
    return stub


@pytest.mark.asyncio
async def test_collect_stops_once_target_reached():
    source = StubListingSource(
        {
            1: listing_html(
                [
                    {"name": "Alpha Law", "address": "1 A St", "website": "https://alpha.com"},
                    {"name": "Beta Law", "address": "2 B St", "website": "https://beta.com"},
                    {"name": "Gamma Law", "address": "3 C St", "website": "https://gamma.com"},
                ]
            )
        }
    )
    found = []

    async def on_found(company):
        found.append(company)

    companies = await _collector(source, RecordingSleep()).collect("law firms", "Chicago, IL", 2, on_found)

    assert [company.name for company in companies] == ["Alpha Law", "Beta Law"]
    assert found == companies
    assert source.fetched_pages == [1]


@pytest.mark.asyncio
async def test_collect_skips_listings_without_website_and_duplicate_domains():
    page_one = listing_html(
        [
            {"name": "No Site Diner", "address": "9 Z St"},
            {"name": "Acme Co", "address": "1 Elm St", "website": "https://www.acme.com"},
            {"name": "Acme Company", "address": "2 Elm St", "website": "http://acme.com/about"},
        ]
    )
    page_two = listing_html(
        [
            {"name": "Acme Co", "address": "1 Elm St", "website": "https://www.acme.com"},
            {"name": "Bolt Works", "address": "5 Oak St", "website": "https://boltworks.io"},
        ]
    )
    source = StubListingSource({1: page_one, 2: page_two})
    sleep = RecordingSleep()

    async def on_found(company):
        return None

    companies = await _collector(source, sleep).collect("shops", "Austin, TX", 2, on_found)

    assert [company.normalized_domain for company in companies] == ["acme.com", "boltworks.io"]
    assert source.fetched_pages == [1, 2]
    assert sleep.calls == [2.0]


@pytest.mark.asyncio
async def test_collect_stops_after_consecutive_empty_pages(stub_metrics):
    repeated = listing_html([{"name": "Only One", "address": "1 St", "website": "https://only.one"}])
    source = StubListingSource({1: repeated, 2: repeated, 3: repeated, 4: repeated})

    async def on_found(company):
        return None

    companies = await _collector(source, RecordingSleep(), max_empty_pages=2).collect(
        "x", "y", 5, on_found
    )

    assert len(companies) == 1
    assert source.fetched_pages == [1, 2, 3]
    timing = stub_metrics.timing_calls[-1]
    assert timing["metric"] == "collector.latency_ms"
    assert timing["tags"] == {"stop_reason": "empty_pages"}


@pytest.mark.asyncio
async def test_collect_respects_page_ceiling():
    pages = {
        page: listing_html([{"name": f"Listing {page}", "address": f"{page} Rd"}]) for page in range(1, 6)
    }
    source = StubListingSource(pages)
    sleep = RecordingSleep()

    async def on_found(company):
        return None

    companies = await _collector(source, sleep, max_pages=3).collect("x", "y", 5, on_found)

    assert companies == []
    assert source.fetched_pages == [1, 2, 3]
    assert len(sleep.calls) == 2


@pytest.mark.asyncio
async def test_failed_page_reports_skip_and_counts_as_empty():
    source = StubListingSource(
        {
            1: None,
            2: listing_html([{"name": "Late Find", "address": "7 Rd", "website": "https://late.find"}]),
        }
    )
    skips = []

    async def on_found(company):
        return None

    async def on_skip(skip):
        skips.append(skip)

    companies = await _collector(source, RecordingSleep()).collect("x", "y", 1, on_found, on_skip)

    assert [company.name for company in companies] == ["Late Find"]
    assert [skip.reason for skip in skips] == ["Listing page 1 could not be fetched."]


@pytest.mark.asyncio
async def test_collect_with_non_positive_target_fetches_nothing():
    source = StubListingSource()

    async def on_found(company):
        raise AssertionError("no company expected")

    assert await _collector(source, RecordingSleep()).collect("x", "y", 0, on_found) == []
    assert source.fetched_pages == []
