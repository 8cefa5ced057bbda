"""Tests for the Google Places type resolver."""
from datetime import datetime, timezone

import httpx
import pytest

from city_scout.activity.aggregator import aggregate_activity
from city_scout.models import ActivityRecord
from city_scout.places.resolver import PlaceTypeCache, PlaceTypeResolver

pytestmark = pytest.mark.asyncio


def _places_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def test_resolve_twice_issues_one_lookup():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.params["input"])
        return httpx.Response(200, json={"status": "OK", "candidates": [{"types": ["neighborhood", "political"]}]})

    async with _places_client(handler) as client:
        resolver = PlaceTypeResolver(PlaceTypeCache(), api_key="k", client=client)
        first = await resolver.resolve("Le Marais")
        second = await resolver.resolve("Le Marais")

    assert first == second == ["neighborhood", "political"]
    assert calls == ["Le Marais"]


async def test_request_asks_for_types_only():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(request.url.params)
        return httpx.Response(200, json={"status": "OK", "candidates": [{"types": ["cafe"]}]})

    async with _places_client(handler) as client:
        await PlaceTypeResolver(PlaceTypeCache(), api_key="secret", client=client).resolve("Cafe Kitsune")

    assert seen == {"input": "Cafe Kitsune", "inputtype": "textquery", "fields": "types", "key": "secret"}


async def test_no_candidates_resolves_to_none_and_is_cached():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(200, json={"status": "ZERO_RESULTS", "candidates": []})

    cache = PlaceTypeCache()
    async with _places_client(handler) as client:
        resolver = PlaceTypeResolver(cache, api_key="k", client=client)
        assert await resolver.resolve("asdfgh") is None
        assert await resolver.resolve("asdfgh") is None

    assert "asdfgh" in cache
    assert len(calls) == 1


async def test_http_failure_returns_error_description_and_is_not_cached():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={})

    cache = PlaceTypeCache()
    async with _places_client(handler) as client:
        result = await PlaceTypeResolver(cache, api_key="k", client=client).resolve("Louvre")

    assert isinstance(result, str)
    assert result.startswith("HTTPStatusError")
    assert "Louvre" not in cache


async def test_places_error_status_is_soft_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "REQUEST_DENIED", "error_message": "bad key"})

    async with _places_client(handler) as client:
        result = await PlaceTypeResolver(PlaceTypeCache(), api_key="k", client=client).resolve("Louvre")

    assert result == "RuntimeError: Places API returned REQUEST_DENIED: bad key"


async def test_missing_api_key_is_soft_failure(monkeypatch):
    monkeypatch.delenv("GOOGLE_MAPS_API_KEY", raising=False)
    result = await PlaceTypeResolver(PlaceTypeCache()).resolve("Louvre")
    assert result == "RuntimeError: GOOGLE_MAPS_API_KEY is not set"


async def test_one_failed_lookup_does_not_stop_the_others():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["input"] == "Broken Place":
            raise httpx.ConnectError("boom", request=request)
        return httpx.Response(200, json={"status": "OK", "candidates": [{"types": ["museum"]}]})

    now = datetime.now(timezone.utc)
    records = [
        ActivityRecord(title="Searched for Broken Place", time=now.isoformat()),
        ActivityRecord(title="Searched for Louvre", time=now.isoformat()),
        ActivityRecord(title="Searched for Orsay", time=now.isoformat()),
    ]
    async with _places_client(handler) as client:
        resolver = PlaceTypeResolver(PlaceTypeCache(), api_key="k", client=client)
        result = await aggregate_activity(records, now, resolver)

    types = {e.title_cleaned: e.place_type for e in result.searches}
    assert types["Louvre"] == ["museum"]
    assert types["Orsay"] == ["museum"]
    assert types["Broken Place"] == "ConnectError: boom"


async def test_malformed_candidate_is_a_soft_error_for_that_title_only():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["input"] == "Odd Place":
            return httpx.Response(200, json={"status": "OK", "candidates": ["not-an-object"]})
        return httpx.Response(200, json={"status": "OK", "candidates": [{"types": ["museum"]}]})

    now = datetime.now(timezone.utc)
    records = [
        ActivityRecord(title="Searched for Odd Place", time=now.isoformat()),
        ActivityRecord(title="Searched for Louvre", time=now.isoformat()),
    ]
    async with _places_client(handler) as client:
        resolver = PlaceTypeResolver(PlaceTypeCache(), api_key="k", client=client)
        result = await aggregate_activity(records, now, resolver)

    types = {e.title_cleaned: e.place_type for e in result.searches}
    assert types["Louvre"] == ["museum"]
    assert types["Odd Place"].startswith("ValueError: ")


@pytest.mark.parametrize("payload", [
    {"status": "OK", "candidates": "museum"},
    {"status": "OK", "candidates": [{"types": "cafe"}]},
    {"status": "OK", "candidates": [{"types": ["cafe", 7]}]},
])
async def test_unexpected_payload_shapes_are_not_cached(payload):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.params["input"])
        return httpx.Response(200, json=payload)

    async with _places_client(handler) as client:
        resolver = PlaceTypeResolver(PlaceTypeCache(), api_key="k", client=client)
        first = await resolver.resolve("Cafe Kitsune")
        await resolver.resolve("Cafe Kitsune")

    assert first.startswith("ValueError: unexpected Places")
    assert len(calls) == 2


async def test_candidate_without_types_resolves_to_none():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "OK", "candidates": [{"name": "Somewhere"}]})

    async with _places_client(handler) as client:
        resolver = PlaceTypeResolver(PlaceTypeCache(), api_key="k", client=client)
        assert await resolver.resolve("Somewhere") is None
