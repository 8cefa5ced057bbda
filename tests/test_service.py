"""CityScout service flows against SQLite records and on-disk blobs."""
import json
from datetime import datetime, timedelta, timezone
import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from city_scout.errors import PreferenceSelectionError, ProfileNotFoundError, SynthesisError
from city_scout.models import PersonalityTiles
from city_scout.service import (
    REPORT_DATA_TYPE,
    REPORT_FILE,
    SEARCH_STATS_FILE,
    TILES_DATA_TYPE,
    TILES_FILE,
)
from tests.conftest import SAMPLE_TILES, completion, tiles_json

pytestmark = pytest.mark.asyncio

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _export() -> list[dict]:
    recent = (NOW - timedelta(days=30)).isoformat()
    return [
        {"title": "Searched for Eiffel Tower", "time": recent},
        {"title": "Searched for Eiffel Tower", "time": recent},
        {"title": "Searched for Le Bistro", "time": recent},
        {"title": "Directions to Louvre", "time": recent},
        {"title": "Viewed area around Le Marais", "time": recent},
        {"title": "Used Maps", "time": recent},
    ]


def _patch_openai(*contents: str):
    patcher = patch("city_scout.analyzers.personality_analyzer.AsyncOpenAI")
    MockClient = patcher.start()
    MockClient.return_value.chat.completions.create = AsyncMock(
        side_effect=[completion(c) for c in contents]
    )
    return patcher


async def _onboarded(service, user_id="u1"):
    await service.ensure_profile(user_id, full_name="Ada")
    await service.aggregate(user_id, _export(), as_of=NOW)


async def _onboarded_result(service):
    await service.ensure_profile("u1")
    return await service.aggregate("u1", json.dumps(_export()), as_of=NOW)


async def test_aggregate_writes_tables_and_stats(service):
    result = await _onboarded_result(service)

    assert result["searches_top_20"][0] == {
        "title_cleaned": "Eiffel Tower",
        "count": 2,
        "place_type": ["point_of_interest"],
    }
    assert result["raw_counts"] == {"searches": 3, "directions": 1, "views": 1}
    stats = await service.blobs.download("u1", SEARCH_STATS_FILE)
    assert stats.decode().splitlines()[:2] == ["title_cleaned,count", "Eiffel Tower,2"]

    loaded = await service.load_aggregate("u1")
    assert [e.title_cleaned for e in loaded.searches] == ["Eiffel Tower", "Le Bistro"]


async def test_synthesize_persists_report_and_tiles(service):
    await _onboarded(service)
    patcher = _patch_openai("A curious explorer.", tiles_json())
    try:
        result = await service.synthesize("u1")
    finally:
        patcher.stop()

    assert result["personality_tiles"] == SAMPLE_TILES
    assert (await service.blobs.download("u1", REPORT_FILE)).decode() == "A curious explorer."
    assert json.loads(await service.blobs.download("u1", TILES_FILE)) == SAMPLE_TILES
    assert await service.records.get_user_data("u1", REPORT_DATA_TYPE) == "A curious explorer."
    assert json.loads(await service.records.get_user_data("u1", TILES_DATA_TYPE)) == SAMPLE_TILES

    profile = await service.get_profile("u1")
    assert profile.personality_tiles == SAMPLE_TILES
    assert profile.preference_chosen is False
    assert profile.has_personality_insights is False


async def test_synthesize_invalid_tiles_json_writes_nothing(service):
    await _onboarded(service)
    patcher = _patch_openai("A curious explorer.", "this is not json")
    try:
        with pytest.raises(SynthesisError, match="Failed to generate personality insights"):
            await service.synthesize("u1")
    finally:
        patcher.stop()

    assert await service.blobs.download("u1", TILES_FILE) is None
    assert await service.blobs.download("u1", REPORT_FILE) is None
    assert await service.records.get_user_data("u1", TILES_DATA_TYPE) is None
    profile = await service.get_profile("u1")
    assert profile.personality_tiles is None
    assert not (profile.preference_chosen or profile.has_personality_insights or profile.onboarding_completed)


async def test_synthesize_without_aggregate_fails(service):
    await service.ensure_profile("u1")
    with pytest.raises(SynthesisError, match="upload activity data first"):
        await service.synthesize("u1")


async def test_review_before_tiles_redirects_to_onboarding(service):
    await service.ensure_profile("u1")
    assert await service.preference_review("u1") == {"redirect": "/onboarding", "stage": "no_tiles"}
    assert await service.confirm_tiles("u1", {}) == {"redirect": "/onboarding", "stage": "no_tiles"}


async def test_confirm_deselection_persists_reduced_list(service):
    await _onboarded(service)
    patcher = _patch_openai("Report.", tiles_json())
    try:
        await service.synthesize("u1")
    finally:
        patcher.stop()

    review = await service.preference_review("u1")
    assert review["stage"] == "tiles_pending_review"
    assert [s["title"] for s in review["steps"]][3] == "Favorite Places"
    selections = review["selections"]
    selections["Food & Drink Favorites"] = ["Coffee Snob", "Brunch Regular"]

    result = await service.confirm_tiles("u1", selections)

    assert result["stage"] == "confirmed"
    profile = await service.get_profile("u1")
    assert profile.personality_tiles["Food & Drink Favorites"] == ["Coffee Snob", "Brunch Regular"]
    for category in ("Lifestyle Vibes", "Go-to Activities", "Other"):
        assert profile.personality_tiles[category] == SAMPLE_TILES[category]
    assert profile.personality_tiles["Food & Drink Favorites Reason"] == SAMPLE_TILES["Food & Drink Favorites Reason"]
    assert profile.preference_chosen is True
    assert profile.has_personality_insights is True
    assert profile.onboarding_completed is True

    stored = json.loads(await service.records.get_user_data("u1", TILES_DATA_TYPE))
    assert stored["Food & Drink Favorites"] == ["Coffee Snob", "Brunch Regular"]


async def test_confirm_rejects_added_tag(service):
    await service.ensure_profile("u1")
    await service.records.update_profile("u1", personality_tiles=SAMPLE_TILES)

    with pytest.raises(PreferenceSelectionError):
        await service.confirm_tiles("u1", {"Other": ["Bookstores", "Skydiving"]})

    profile = await service.get_profile("u1")
    assert profile.preference_chosen is False


async def test_profile_view_gating(service):
    await service.ensure_profile("u1")
    assert (await service.profile_view("u1"))["redirect"] == "/onboarding"

    await service.records.update_profile("u1", personality_tiles=SAMPLE_TILES)
    assert await service.profile_view("u1") == {"redirect": "/preferences", "stage": "tiles_pending_review"}

    await service.confirm_tiles("u1", {})
    view = await service.profile_view("u1")
    assert view["stage"] == "confirmed"
    assert view["personality_tiles"] == SAMPLE_TILES
    assert view["personality_report"] is None


async def test_load_personality_falls_back_to_profile_and_blobs(service):
    await service.ensure_profile("u1")
    await service.records.update_profile("u1", personality_tiles=SAMPLE_TILES)
    await service.blobs.upload("u1", REPORT_FILE, b"Blob report", "text/plain")

    report, tiles = await service.load_personality("u1")

    assert report == "Blob report"
    assert tiles == SAMPLE_TILES


async def test_load_personality_prefers_user_data(service):
    await service.ensure_profile("u1")
    await service.records.upsert_user_data("u1", REPORT_DATA_TYPE, "Row report")
    await service.records.upsert_user_data("u1", TILES_DATA_TYPE, tiles_json(Other=["Chess"]))
    await service.blobs.upload("u1", REPORT_FILE, b"Blob report", "text/plain")

    report, tiles = await service.load_personality("u1")

    assert report == "Row report"
    assert tiles["Other"] == ["Chess"]


async def test_reset_clears_insights(service):
    await service.ensure_profile("u1")
    await service.records.update_profile(
        "u1", personality_tiles=SAMPLE_TILES, preference_chosen=True,
        has_personality_insights=True, onboarding_completed=True,
    )
    await service.records.upsert_user_data("u1", REPORT_DATA_TYPE, "Report")
    await service.blobs.upload("u1", REPORT_FILE, b"Report", "text/plain")

    profile = await service.reset("u1")

    assert profile.personality_tiles is None
    assert not (profile.preference_chosen or profile.has_personality_insights or profile.onboarding_completed)
    assert await service.records.get_user_data("u1", REPORT_DATA_TYPE) is None
    assert await service.blobs.download("u1", REPORT_FILE) is None


async def test_reset_unknown_user(service):
    with pytest.raises(ProfileNotFoundError):
        await service.reset("nobody")


async def test_delete_user_removes_everything(service):
    await _onboarded(service)
    await service.records.upsert_user_data("u1", REPORT_DATA_TYPE, "Report")

    await service.delete_user("u1")

    assert await service.records.get_profile("u1") is None
    assert await service.records.get_user_data("u1", REPORT_DATA_TYPE) is None
    assert await service.blobs.list_objects("u1") == []


async def test_synthesize_and_confirm_for_one_user_do_not_interleave(service):
    await _onboarded(service)
    await service.records.update_profile("u1", personality_tiles=SAMPLE_TILES)
    events = []

    async def _slow_report(*args):
        events.append("report started")
        await asyncio.sleep(0.05)
        events.append("report finished")
        return "Report."

    update_profile = service.records.update_profile

    async def _tracking_update(user_id, **fields):
        events.append("confirm write" if fields.get("preference_chosen") else "synthesis write")
        return await update_profile(user_id, **fields)

    service.records.update_profile = _tracking_update
    selections = {"Other": ["Bookstores"]}
    with patch("city_scout.service.generate_personality_report", new=_slow_report), \
         patch("city_scout.service.generate_personality_tiles",
               new=AsyncMock(return_value=PersonalityTiles.model_validate(SAMPLE_TILES))):
        await asyncio.gather(service.synthesize("u1"), service.confirm_tiles("u1", selections))

    assert events == ["report started", "report finished", "synthesis write", "confirm write"]
    profile = await service.get_profile("u1")
    assert profile.preference_chosen is True
    assert profile.personality_tiles["Other"] == ["Bookstores"]


async def test_delete_user_keeps_the_user_lock(service):
    await _onboarded(service)
    lock = service._lock("u1")

    await service.delete_user("u1")

    assert service._lock("u1") is lock
