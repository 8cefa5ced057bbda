"""Two-stage personality generation: narrative report, then JSON preference tiles.

Stage B embeds stage A's output, so the calls always run in sequence.
"""
import json
import os
from typing import Any

from openai import AsyncOpenAI
from pydantic import ValidationError

from city_scout.errors import SynthesisError
from city_scout.models import TILE_CATEGORIES, EnrichedEntry, FrequencyEntry, PersonalityTiles, reason_key

MODEL = "gpt-4o"

REPORT_SYSTEM_PROMPT = (
    "You are an expert data analyst specializing in user behavior and persona creation. "
    "Analyze the provided Google Maps search and usage data to create a detailed persona report. "
    "Your report should be engaging, insightful, and formatted with emojis and bullet points "
    "for easy readability."
)

REPORT_PROMPT = """Analyze the provided Google Maps search and usage data and write a detailed persona report.

Data to analyze:
<top_views>
{views}
</top_views>

<top_directions>
{directions}
</top_directions>

<top_searches>
{searches}
</top_searches>

<full_searches>
{full_searches}
</full_searches>

Create a very detailed persona report with the following sections:

1. 🍜 Preferences & Interests
   - Food & Cuisine: favorite cuisines, restaurants, and food-related searches.
   - Other interests: hobbies, entertainment preferences, shopping habits, etc.
2. 🧘 Activities & Lifestyle
   - Fitness & Health: gym visits, sports activities, health-related searches.
   - Other regular activities: patterns in the user's daily or weekly routines.
3. 🎭 Interests & Personality Traits
   - Cultural activities (museums, theaters, events) and entertainment (movies, music, nightlife).
4. ✈️ Travel & Exploration
   - Domestic and international travel patterns; frequently visited or searched locations.
5. 🏙️ Work & Education Clues
   - Potential work locations, educational institutions, or professional interests.
6. 🔎 Personality Summary
   - A table of key personality traits and the data supporting each inference.
   - Activities the user likely enjoys.

Add any other section you find useful. In every section use bullet points, cite specific
examples from the data, use relevant emojis, and connect related data points.

Conclude with a brief overall summary of the user's lifestyle and personality.
Keep an objective tone; label speculation as such."""

TILES_SYSTEM_PROMPT = (
    "You are an AI assistant specializing in user profiling and personalization. "
    "You return the requested data as a single JSON object and nothing else."
)

TILES_PROMPT = """Create engaging user profile tiles for a personalized itinerary planner, based on the
user's Google Maps search and usage data and their persona report.

<top_views>
{views}
</top_views>
<top_directions>
{directions}
</top_directions>
<top_searches>
{searches}
</top_searches>

User Profile:
{report}

The tiles are used during onboarding, so they must be elegant, catchy, ultra specific to this
user and grounded in the data. Categories:

1. Lifestyle Vibes: short (1-3 word) descriptors of the user's overall personality.
2. Food & Drink Favorites: cuisines, dishes or drinks, from the most searched or visited food places.
3. Go-to Activities: leisure and practical activities, e.g. "Gym Workouts", "Museum Hopping".
4. Favorite Neighborhoods or Place Types: areas or kinds of places, e.g. "Trendy Cafés", "Montmartre & Pigalle 🎨".
5. Travel & Exploration: travel style, e.g. "Weekend Getaways", "Cultural Journeys".
6. Other: anything else, e.g. "Tech Enthusiast", "Pet Parent".

Give each category 5-10 tags with relevant emojis, prioritized by frequency and recency, and
diverse enough to cover different sides of the user.

Return ONLY a JSON object with exactly these keys:
{keys}
Each category key maps to an array of tag strings. Each "<Category> Reason" key maps to one
sentence addressed to the user in the second person ("You ...") explaining the tags."""

_RENAMED_TITLE = {
    "searches": "place_searched",
    "directions": "place_been_to",
    "views": "place_viewed",
}


def _entries_json(kind: str, entries: list[EnrichedEntry]) -> str:
    rows = []
    for e in entries:
        row = e.model_dump()
        row[_RENAMED_TITLE[kind]] = row.pop("title_cleaned")
        rows.append(row)
    return json.dumps(rows, indent=2, ensure_ascii=False)


def _format_place_type(place_type: Any) -> str:
    if isinstance(place_type, list):
        return ";".join(place_type)
    if place_type is None:
        return "unknown"
    return str(place_type)


def full_searches_summary(stats: list[FrequencyEntry], searches: list[EnrichedEntry]) -> str:
    """One line per search: index, cleaned title, count, resolved place type."""
    resolved = {e.title_cleaned: e.place_type for e in searches}
    return "\n".join(
        f"Search {i}: {s.title_cleaned}, Searched {s.count} times, "
        f"Place type: {_format_place_type(resolved.get(s.title_cleaned))}"
        for i, s in enumerate(stats, start=1)
    )


def _client() -> AsyncOpenAI:
    return AsyncOpenAI(
        api_key=os.getenv("OPENAI_API_KEY"),
        timeout=float(os.getenv("OPENAI_TIMEOUT", "120")),
        max_retries=0,
    )


async def generate_personality_report(
    searches: list[EnrichedEntry],
    directions: list[EnrichedEntry],
    views: list[EnrichedEntry],
    search_stats: list[FrequencyEntry],
) -> str:
    """Stage A: free-form narrative persona report."""
    client = _client()
    user_content = REPORT_PROMPT.format(
        views=_entries_json("views", views),
        directions=_entries_json("directions", directions),
        searches=_entries_json("searches", searches),
        full_searches=full_searches_summary(search_stats, searches),
    )
    response = await client.chat.completions.create(
        model=MODEL,
        temperature=0.7,
        max_tokens=4000,
        messages=[
            {"role": "system", "content": REPORT_SYSTEM_PROMPT},
            {"role": "user", "content": user_content},
        ],
    )
    report = response.choices[0].message.content or ""
    if not report.strip():
        raise SynthesisError("Personality report came back empty")
    return report


def parse_personality_tiles(raw: str) -> PersonalityTiles:
    """Parse stage B output. Anything short of all twelve non-empty keys is an error."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise SynthesisError(f"Failed to parse personality tiles JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise SynthesisError("Personality tiles response is not a JSON object")
    try:
        tiles = PersonalityTiles.model_validate(data)
    except ValidationError as exc:
        raise SynthesisError(f"Invalid personality tiles: {exc}") from exc
    for category in TILE_CATEGORIES:
        if not tiles.tags(category):
            raise SynthesisError(f"Missing required field: {category}")
    return tiles


async def generate_personality_tiles(
    report: str,
    searches: list[EnrichedEntry],
    directions: list[EnrichedEntry],
    views: list[EnrichedEntry],
) -> PersonalityTiles:
    """Stage B: structured category -> tags object derived from the report."""
    client = _client()
    keys = "\n".join(
        f'- "{key}"' for category in TILE_CATEGORIES for key in (category, reason_key(category))
    )
    user_content = TILES_PROMPT.format(
        views=_entries_json("views", views),
        directions=_entries_json("directions", directions),
        searches=_entries_json("searches", searches),
        report=report,
        keys=keys,
    )
    response = await client.chat.completions.create(
        model=MODEL,
        response_format={"type": "json_object"},
        messages=[
            {"role": "system", "content": TILES_SYSTEM_PROMPT},
            {"role": "user", "content": user_content},
        ],
    )
    return parse_personality_tiles(response.choices[0].message.content or "")
