"""CityScout core operations over the record store, blob store and place resolver.

Public surface: aggregate(user_id, export), synthesize(user_id),
confirm_tiles(user_id, selections), plus profile gating, reset and delete.
Writes for one user are serialized; different users run independently.
"""
from __future__ import annotations

import asyncio
import csv
import io
import json
import logging
from datetime import datetime, timezone
from typing import Any, Mapping

from pydantic import TypeAdapter

from city_scout.activity.aggregator import aggregate_activity
from city_scout.activity.export import parse_activity_export
from city_scout.analyzers.personality_analyzer import (
    generate_personality_report,
    generate_personality_tiles,
)
from city_scout.errors import ProfileNotFoundError, SynthesisError
from city_scout.models import AggregatedActivity, EnrichedEntry, FrequencyEntry, PersonalityTiles, UserProfile
from city_scout.places.resolver import PlaceTypeResolver
from city_scout.preferences import (
    ONBOARDING_ROUTE,
    REVIEW_STEPS,
    ProfileStage,
    apply_selections,
    initial_selections,
    profile_stage,
    required_route,
)
from city_scout.storage.blobs import BlobStore
from city_scout.storage.records import RecordStore

_log = logging.getLogger(__name__)

SEARCHES_FILE = "searches_top_20.json"
DIRECTIONS_FILE = "directions_top_20.json"
VIEWS_FILE = "views_top_20.json"
SEARCH_STATS_FILE = "search_stats.csv"
REPORT_FILE = "personality_report.txt"
TILES_FILE = "personality_tiles.json"

REPORT_DATA_TYPE = "personality_report"
TILES_DATA_TYPE = "personality_tiles"

_ENTRIES = TypeAdapter(list[EnrichedEntry])


def _dump_entries(entries: list[EnrichedEntry]) -> bytes:
    return json.dumps([e.model_dump() for e in entries], indent=2, ensure_ascii=False).encode()


def _stats_csv(stats: list[FrequencyEntry]) -> bytes:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=["title_cleaned", "count"])
    writer.writeheader()
    for entry in stats:
        writer.writerow(entry.model_dump())
    return buf.getvalue().encode()


def _parse_stats_csv(raw: bytes) -> list[FrequencyEntry]:
    reader = csv.DictReader(io.StringIO(raw.decode()))
    return [FrequencyEntry(title_cleaned=row["title_cleaned"], count=int(row["count"])) for row in reader]


def redirect(stage: ProfileStage, route: str) -> dict[str, Any]:
    return {"redirect": route, "stage": stage.value}


class CityScout:
    def __init__(self, records: RecordStore, blobs: BlobStore, resolver: PlaceTypeResolver) -> None:
        self.records = records
        self.blobs = blobs
        self.resolver = resolver
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, user_id: str) -> asyncio.Lock:
        if user_id not in self._locks:
            self._locks[user_id] = asyncio.Lock()
        return self._locks[user_id]

    # ── profiles ─────────────────────────────────────────────────────────────

    async def ensure_profile(self, user_id: str, **attrs: Any) -> UserProfile:
        row = await self.records.get_profile(user_id)
        if row is None:
            row = await self.records.create_profile(user_id, **attrs)
        return UserProfile.model_validate(row)

    async def get_profile(self, user_id: str) -> UserProfile:
        row = await self.records.get_profile(user_id)
        if row is None:
            raise ProfileNotFoundError(f"No profile for user {user_id}")
        return UserProfile.model_validate(row)

    # ── aggregate ────────────────────────────────────────────────────────────

    async def aggregate(
        self, user_id: str, raw_export: Any, as_of: datetime | None = None
    ) -> dict[str, Any]:
        """Validate an activity export, build the top-20 tables and store them."""
        records = parse_activity_export(raw_export)
        as_of = as_of or datetime.now(timezone.utc)
        _log.info("processing %d activity records for user %s", len(records), user_id)

        async with self._lock(user_id):
            result = await aggregate_activity(records, as_of, self.resolver)
            files = {
                SEARCHES_FILE: (_dump_entries(result.searches), "application/json"),
                DIRECTIONS_FILE: (_dump_entries(result.directions), "application/json"),
                VIEWS_FILE: (_dump_entries(result.views), "application/json"),
                SEARCH_STATS_FILE: (_stats_csv(result.search_stats), "text/csv"),
            }
            for name, (content, content_type) in files.items():
                await self.blobs.upload(user_id, name, content, content_type)

        return {
            "searches_top_20": [e.model_dump() for e in result.searches],
            "directions_top_20": [e.model_dump() for e in result.directions],
            "views_top_20": [e.model_dump() for e in result.views],
            "raw_counts": result.raw_counts.model_dump(),
            "files_created": list(files),
        }

    async def load_aggregate(self, user_id: str) -> AggregatedActivity:
        loaded: dict[str, bytes] = {}
        for name in (SEARCHES_FILE, DIRECTIONS_FILE, VIEWS_FILE, SEARCH_STATS_FILE):
            content = await self.blobs.download(user_id, name)
            if content is None:
                raise SynthesisError(f"Failed to download {name}: upload activity data first")
            loaded[name] = content
        searches = _ENTRIES.validate_json(loaded[SEARCHES_FILE])
        directions = _ENTRIES.validate_json(loaded[DIRECTIONS_FILE])
        views = _ENTRIES.validate_json(loaded[VIEWS_FILE])
        return AggregatedActivity(
            searches=searches,
            directions=directions,
            views=views,
            search_stats=_parse_stats_csv(loaded[SEARCH_STATS_FILE]),
        )

    # ── synthesize ───────────────────────────────────────────────────────────

    async def synthesize(self, user_id: str) -> dict[str, Any]:
        """Generate report + tiles from the latest aggregate and persist both.

        Both model calls finish before anything is written, so a failed stage
        leaves storage and profile flags as they were.
        """
        async with self._lock(user_id):
            try:
                await self.get_profile(user_id)
                data = await self.load_aggregate(user_id)
                _log.info("generating personality report for user %s", user_id)
                report = await generate_personality_report(
                    data.searches, data.directions, data.views, data.search_stats
                )
                _log.info("generating personality tiles for user %s", user_id)
                tiles = await generate_personality_tiles(
                    report, data.searches, data.directions, data.views
                )
                await self._persist_insights(user_id, report, tiles)
            except Exception as exc:
                # model, parse and storage failures all abort the run the same way
                _log.error("personality generation failed for user %s: %s", user_id, exc)
                raise SynthesisError(f"Failed to generate personality insights: {exc}") from exc

        return {
            "personality_report": report,
            "personality_tiles": tiles.to_json_dict(),
            "files_created": [REPORT_FILE, TILES_FILE],
        }

    async def _persist_insights(self, user_id: str, report: str, tiles: PersonalityTiles) -> None:
        tiles_json = json.dumps(tiles.to_json_dict(), indent=2, ensure_ascii=False)
        await self.blobs.upload(user_id, REPORT_FILE, report.encode(), "text/plain")
        await self.records.upsert_user_data(user_id, REPORT_DATA_TYPE, report)
        await self.blobs.upload(user_id, TILES_FILE, tiles_json.encode(), "application/json")
        await self.records.upsert_user_data(user_id, TILES_DATA_TYPE, tiles_json)
        # fresh tiles go back through review; has_personality_insights waits for confirmation
        await self.records.update_profile(
            user_id, personality_tiles=tiles.to_json_dict(), preference_chosen=False
        )

    # ── confirmation gate ────────────────────────────────────────────────────

    async def preference_review(self, user_id: str) -> dict[str, Any]:
        profile = await self.get_profile(user_id)
        if profile_stage(profile) is ProfileStage.NO_TILES:
            return redirect(ProfileStage.NO_TILES, ONBOARDING_ROUTE)
        tiles = PersonalityTiles.model_validate(profile.personality_tiles)
        return {
            "stage": profile_stage(profile).value,
            "steps": [
                {
                    "title": step.title,
                    "description": step.description,
                    "category": step.category,
                    "tags": tiles.tags(step.category),
                }
                for step in REVIEW_STEPS
            ],
            "selections": initial_selections(tiles),
        }

    async def confirm_tiles(
        self, user_id: str, selections: Mapping[str, list[str]]
    ) -> dict[str, Any]:
        """Commit the reviewed selections and mark preferences as chosen."""
        async with self._lock(user_id):
            profile = await self.get_profile(user_id)
            if profile_stage(profile) is ProfileStage.NO_TILES:
                return redirect(ProfileStage.NO_TILES, ONBOARDING_ROUTE)

            tiles = apply_selections(
                PersonalityTiles.model_validate(profile.personality_tiles), selections
            )
            tiles_dict = tiles.to_json_dict()
            tiles_json = json.dumps(tiles_dict, indent=2, ensure_ascii=False)
            await self.records.upsert_user_data(user_id, TILES_DATA_TYPE, tiles_json)
            await self.blobs.upload(user_id, TILES_FILE, tiles_json.encode(), "application/json")
            await self.records.update_profile(
                user_id,
                personality_tiles=tiles_dict,
                preference_chosen=True,
                has_personality_insights=True,
                onboarding_completed=True,
            )
        _log.info("preferences confirmed for user %s", user_id)
        return {"stage": ProfileStage.CONFIRMED.value, "personality_tiles": tiles_dict}

    async def profile_view(self, user_id: str) -> dict[str, Any]:
        """Confirmed tiles + report, or where to send the user first."""
        profile = await self.get_profile(user_id)
        route = required_route(profile)
        if route is not None:
            return redirect(profile_stage(profile), route)
        report = await self.blobs.download(user_id, REPORT_FILE)
        return {
            "stage": ProfileStage.CONFIRMED.value,
            "profile": profile.model_dump(),
            "personality_tiles": profile.personality_tiles,
            "personality_report": report.decode() if report is not None else None,
        }

    async def load_personality(self, user_id: str) -> tuple[str, dict[str, Any]]:
        """Report and tiles for chat context: user_data rows, then profile, then blobs."""
        report = await self.records.get_user_data(user_id, REPORT_DATA_TYPE) or ""
        tiles: dict[str, Any] = {}
        raw_tiles = await self.records.get_user_data(user_id, TILES_DATA_TYPE)
        if raw_tiles:
            try:
                tiles = json.loads(raw_tiles)
            except json.JSONDecodeError as exc:
                _log.error("stored personality tiles for user %s are not JSON: %s", user_id, exc)

        if report and tiles:
            return report, tiles

        row = await self.records.get_profile(user_id)
        if not tiles and row and row.get("personality_tiles"):
            tiles = row["personality_tiles"]
        if not report:
            blob = await self.blobs.download(user_id, REPORT_FILE)
            report = blob.decode() if blob is not None else ""
        if not tiles:
            blob = await self.blobs.download(user_id, TILES_FILE)
            if blob is not None:
                try:
                    tiles = json.loads(blob)
                except json.JSONDecodeError as exc:
                    _log.error("personality_tiles.json for user %s is not JSON: %s", user_id, exc)
        return report, tiles

    # ── lifecycle ────────────────────────────────────────────────────────────

    async def reset(self, user_id: str) -> UserProfile:
        """Forget generated insights so the user can start onboarding again."""
        async with self._lock(user_id):
            row = await self.records.update_profile(
                user_id,
                onboarding_completed=False,
                has_personality_insights=False,
                preference_chosen=False,
                personality_tiles=None,
            )
            if row is None:
                raise ProfileNotFoundError(f"No profile for user {user_id}")
            await self.records.delete_user_data(user_id)
            await self.blobs.remove(user_id, [REPORT_FILE, TILES_FILE])
        return UserProfile.model_validate(row)

    async def delete_user(self, user_id: str) -> None:
        async with self._lock(user_id):
            names = await self.blobs.list_objects(user_id)
            await self.blobs.remove(user_id, names)
            await self.records.delete_user_data(user_id)
            await self.records.delete_profile(user_id)
