"""Activity aggregation: recency filter, classification, frequency tables, enrichment.

Pipeline for one export:
  1. keep records from the year before `as_of`
  2. classify each title as search / direction / view and drop navigation noise
  3. strip the kind-specific prefix to get `title_cleaned`
  4. count per cleaned title, take the top 20 per kind
  5. attach a Google Places type to each top-20 entry
"""
from __future__ import annotations

import asyncio
import logging
import os
from collections import Counter
from datetime import datetime, timezone
from typing import Iterable, Protocol

from city_scout.models import (
    ActivityKind,
    ActivityRecord,
    AggregatedActivity,
    ClassifiedRecord,
    EnrichedEntry,
    FrequencyEntry,
    PlaceType,
    RawCounts,
)

_log = logging.getLogger(__name__)

TOP_N = 20

VIEW_EXCLUSIONS = frozenset({"Used Maps", "Explored on Google Maps", "Viewed your Timeline"})

_PREFIXES: dict[str, str] = {
    "search": "Searched for ",
    "direction": "Directions to",
    "view": "Viewed area around",
}


class Resolver(Protocol):
    async def resolve(self, text: str) -> PlaceType: ...


def parse_time(value: str) -> datetime | None:
    """Parse an export timestamp; naive values are read as UTC, junk gives None."""
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def one_year_before(as_of: datetime) -> datetime:
    try:
        return as_of.replace(year=as_of.year - 1)
    except ValueError:  # Feb 29
        return as_of.replace(year=as_of.year - 1, day=28)


def within_retention(records: Iterable[ActivityRecord], as_of: datetime) -> list[ActivityRecord]:
    if as_of.tzinfo is None:
        as_of = as_of.replace(tzinfo=timezone.utc)
    cutoff = one_year_before(as_of)
    kept = []
    for record in records:
        ts = parse_time(record.time)
        if ts is not None and ts >= cutoff:
            kept.append(record)
    return kept


def classify(record: ActivityRecord) -> ClassifiedRecord | None:
    """Return the classified record, or None for excluded navigation noise."""
    title = record.title
    kind: ActivityKind
    if "Searched" in title:
        kind = "search"
    elif "Directions to" in title:
        kind = "direction"
    else:
        if title in VIEW_EXCLUSIONS:
            return None
        kind = "view"
    return ClassifiedRecord(
        record=record,
        kind=kind,
        title_cleaned=title.replace(_PREFIXES[kind], "", 1),
    )


def count_titles(classified: Iterable[ClassifiedRecord]) -> list[FrequencyEntry]:
    """Frequency table, most frequent first; ties keep first-encounter order."""
    counts: Counter[str] = Counter(c.title_cleaned for c in classified)
    entries = [FrequencyEntry(title_cleaned=t, count=n) for t, n in counts.items()]
    return sorted(entries, key=lambda e: e.count, reverse=True)


async def enrich(
    entries: list[FrequencyEntry],
    resolver: Resolver,
    concurrency: int | None = None,
) -> list[EnrichedEntry]:
    if concurrency is None:
        concurrency = int(os.getenv("ENRICH_CONCURRENCY", "5"))
    if concurrency < 1:
        raise ValueError(f"enrichment concurrency must be at least 1, got {concurrency}")
    limit = asyncio.Semaphore(concurrency)

    async def _one(entry: FrequencyEntry) -> EnrichedEntry:
        async with limit:
            place_type = await resolver.resolve(entry.title_cleaned)
        return EnrichedEntry(**entry.model_dump(), place_type=place_type)

    return list(await asyncio.gather(*(_one(e) for e in entries)))


async def aggregate_activity(
    records: list[ActivityRecord],
    as_of: datetime,
    resolver: Resolver,
    *,
    top_n: int = TOP_N,
    concurrency: int | None = None,
) -> AggregatedActivity:
    recent = within_retention(records, as_of)
    _log.info("kept %d of %d activity records from the last year", len(recent), len(records))

    by_kind: dict[str, list[ClassifiedRecord]] = {"search": [], "direction": [], "view": []}
    for record in recent:
        classified = classify(record)
        if classified is not None:
            by_kind[classified.kind].append(classified)

    stats = {kind: count_titles(items) for kind, items in by_kind.items()}

    # kinds one after the other so titles repeated across kinds hit the cache
    top: dict[str, list[EnrichedEntry]] = {}
    for kind in ("search", "direction", "view"):
        top[kind] = await enrich(stats[kind][:top_n], resolver, concurrency)

    return AggregatedActivity(
        searches=top["search"],
        directions=top["direction"],
        views=top["view"],
        raw_counts=RawCounts(
            searches=len(by_kind["search"]),
            directions=len(by_kind["direction"]),
            views=len(by_kind["view"]),
        ),
        search_stats=stats["search"],
    )
