"""CityScout chat assistant: personality-aware place recommendations."""
import json
from dataclasses import dataclass, field
from typing import Any

from agents import Agent, RunContextWrapper, WebSearchTool, function_tool

from city_scout.places.resolver import PlaceTypeResolver

CHAT_MODEL = "gpt-4o-mini"

CHAT_SYSTEM_PROMPT = """You are CityScout, a very friendly and knowledgeable travel and city exploration assistant.
Your job is to help the user plan trips, discover new places, create schedules, and explore cities based on their preferences.

IMPORTANT: Always keep in mind the user's personal preferences and interests when making recommendations.

THE USER'S PERSONALITY PROFILE:
{report}

THE USER'S INTERESTS AND PREFERENCES:
{tiles}

Guidelines:
You are a hyper-personalized planning assistant. Based on the user's personality and time availability, suggest fitting experiences.
Sound chill and friendly. Make the user feel that you know them personally.

- Avoid tourist traps and low-rated spots; prefer local gems with great reviews.
- For each suggestion give the name of the place, a one-line description, why the user might like it, and its vibe.
  A full address and a Google Maps link are good to have.

1. Focus exclusively on travel advice, city exploration, trip planning, scheduling, and place recommendations.
2. Use the user's preferences and interests to personalize your suggestions.
3. Try NOT to suggest places the user has already been to. Add a hint of surprise and exploration that this personality would like.
4. If asked about unrelated topics, politely steer back to how you can help with travel planning.
5. Be concise but helpful.
6. If you lack information for a personalized recommendation, ask follow-up questions about their preferences.
7. Prefer specific recommendations over general advice.
8. Use web_search to check that places are open and well reviewed.
9. Format responses with paragraph breaks. Don't use markdown formatting."""


@dataclass
class ChatContext:
    user_id: str
    report: str = ""
    tiles: dict[str, Any] = field(default_factory=dict)
    resolver: PlaceTypeResolver | None = None


def build_chat_instructions(report: str, tiles: dict[str, Any]) -> str:
    return CHAT_SYSTEM_PROMPT.format(
        report=report or "(no report available)",
        tiles=json.dumps(tiles or {}, indent=2, ensure_ascii=False),
    )


def _instructions(ctx: RunContextWrapper[ChatContext], agent: Agent[ChatContext]) -> str:
    return build_chat_instructions(ctx.context.report, ctx.context.tiles)


@function_tool
async def place_type(ctx: RunContextWrapper[ChatContext], place: str) -> str:
    """Look up the Google Places category tags of a place, e.g. to check a spot is a cafe or a park.

    Args:
        place: place name, optionally with its city
    """
    resolver = ctx.context.resolver
    if resolver is None:
        return "Place lookup is not available."
    result = await resolver.resolve(place)
    if result is None:
        return f"No place found for {place!r}."
    if isinstance(result, str):
        return f"Lookup failed for {place!r}: {result}"
    return f"{place}: {', '.join(result)}"


city_scout_agent = Agent[ChatContext](
    name="CityScout",
    instructions=_instructions,
    model=CHAT_MODEL,
    tools=[WebSearchTool(), place_type],
)
