import httpx
import pytest

from leadfinder.clients.geolocation import GeolocationClient
from leadfinder.clients.llm import InferenceProviderError
from leadfinder.services.discovery import intent as intent_module
from leadfinder.services.discovery.intent import (
    QueryIntentResolver,
    is_public_address,
    location_from_payload,
)
from tests.helpers.discovery_stubs import StubModel
from tests.helpers.metrics_stub import StubMetrics

DEFAULT = "United States"


def _geolocation(handler):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeolocationClient("https://geo.test", http_client=http_client)


@pytest.fixture(autouse=True)
def stub_metrics(monkeypatch):
    stub = StubMetrics()
    monkeypatch.setattr(intent_module, "metrics", stub)
    return stub


@pytest.mark.asyncio
async def test_explicit_location_is_extracted():
    model = StubModel(
        {
            "LocationAnalysis": [
                {
                    "has_specific_location": True,
                    "extracted_location": "Chicago, IL",
                    "stripped_query": "law firms",
                    "optimized_query": "law firms",
                    "reasoning": "Chicago is a city.",
                }
            ]
        }
    )
    resolver = QueryIntentResolver(model=model, default_location=DEFAULT)

    intent = await resolver.resolve("law firms in Chicago")

    assert intent.search_term == "law firms"
    assert intent.location == "Chicago, IL"
    assert intent.had_explicit_location is True
    assert "law firms in Chicago" in model.prompts[0][1]


@pytest.mark.asyncio
async def test_model_failure_falls_back_to_verbatim_query_and_default_location(stub_metrics):
    model = StubModel({"LocationAnalysis": [InferenceProviderError("down", code="502_INFERENCE_UPSTREAM")]})
    resolver = QueryIntentResolver(model=model, default_location=DEFAULT)

    intent = await resolver.resolve("  investment banking firms ")

    assert intent.search_term == "investment banking firms"
    assert intent.location == DEFAULT
    assert intent.had_explicit_location is False
    assert stub_metrics.increment_calls[0]["metric"] == "intent.fallback"


@pytest.mark.asyncio
async def test_private_origin_skips_geolocation():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"city": "Nowhere"})

    model = StubModel({"LocationAnalysis": [{"has_specific_location": False, "optimized_query": "dentists"}]})
    resolver = QueryIntentResolver(model=model, geolocation=_geolocation(handler), default_location=DEFAULT)

    intent = await resolver.resolve("dentists", caller_network_origin="192.168.1.20")

    assert intent.search_term == "dentists"
    assert intent.location == DEFAULT
    assert calls == []


@pytest.mark.asyncio
async def test_public_origin_is_geolocated():
    def handler(request):
        assert request.url.path == "/8.8.8.8/json/"
        return httpx.Response(
            200, json={"city": "Mountain View", "region": "California", "region_code": "CA"}
        )

    model = StubModel({"LocationAnalysis": [{"has_specific_location": False, "optimized_query": "bakeries"}]})
    resolver = QueryIntentResolver(model=model, geolocation=_geolocation(handler), default_location=DEFAULT)

    intent = await resolver.resolve("bakeries", caller_network_origin="8.8.8.8")

    assert intent.location == "Mountain View, CA"
    assert intent.had_explicit_location is False


@pytest.mark.asyncio
async def test_geolocation_error_payload_uses_default():
    def handler(request):
        return httpx.Response(200, json={"error": True, "reason": "RateLimited"})

    model = StubModel({"LocationAnalysis": [{"has_specific_location": False, "optimized_query": "gyms"}]})
    resolver = QueryIntentResolver(model=model, geolocation=_geolocation(handler), default_location=DEFAULT)

    intent = await resolver.resolve("gyms", caller_network_origin="8.8.8.8")

    assert intent.location == DEFAULT


@pytest.mark.asyncio
async def test_location_flag_without_value_is_treated_as_missing():
    model = StubModel(
        {"LocationAnalysis": [{"has_specific_location": True, "extracted_location": "  ", "optimized_query": "spas"}]}
    )
    resolver = QueryIntentResolver(model=model, default_location=DEFAULT)

    intent = await resolver.resolve("spas near me")

    assert intent.location == DEFAULT
    assert intent.had_explicit_location is False


@pytest.mark.asyncio
async def test_resolver_without_model_uses_query_verbatim():
    resolver = QueryIntentResolver(model=None, default_location=DEFAULT)

    intent = await resolver.resolve("roofers in Denver")

    assert intent.search_term == "roofers in Denver"
    assert intent.location == DEFAULT


@pytest.mark.parametrize(
    ("origin", "expected"),
    [
        ("8.8.8.8", True),
        ("2606:4700:4700::1111", True),
        ("10.0.0.5", False),
        ("127.0.0.1", False),
        ("169.254.1.1", False),
        ("0.0.0.0", False),
        ("::1", False),
        ("not-an-ip", False),
        ("", False),
        (None, False),
    ],
)
def test_is_public_address(origin, expected):
    assert is_public_address(origin) is expected


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ({"city": "Austin", "region_code": "TX", "region": "Texas", "postal": "78701"}, "Austin, TX"),
        ({"city": "Lyon", "region": "Auvergne-Rhone-Alpes"}, "Lyon, Auvergne-Rhone-Alpes"),
        ({"postal": "10115", "region_code": "BE"}, "10115"),
        ({"region_code": "ON"}, "ON"),
        ({}, DEFAULT),
    ],
)
def test_location_from_payload_preference_order(payload, expected):
    assert location_from_payload(payload, default=DEFAULT) == expected
