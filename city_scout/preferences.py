"""Preference confirmation: the review steps and the subtract-only commit."""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from city_scout.errors import PreferenceSelectionError
from city_scout.models import TILE_CATEGORIES, PersonalityTiles, UserProfile


class ProfileStage(str, Enum):
    NO_TILES = "no_tiles"
    TILES_PENDING_REVIEW = "tiles_pending_review"
    CONFIRMED = "confirmed"


ONBOARDING_ROUTE = "/onboarding"
PREFERENCES_ROUTE = "/preferences"


@dataclass(frozen=True)
class ReviewStep:
    title: str
    description: str
    category: str


REVIEW_STEPS: tuple[ReviewStep, ...] = (
    ReviewStep(
        "Lifestyle Vibes",
        "These lifestyle choices were identified based on your activity data. "
        "Uncheck any that don't match your preferences.",
        "Lifestyle Vibes",
    ),
    ReviewStep(
        "Food & Drink Favorites",
        "These are the food and drink preferences we identified from your data. "
        "Uncheck any that don't match your taste.",
        "Food & Drink Favorites",
    ),
    ReviewStep(
        "Go-to Activities",
        "Here are activities you seem to enjoy. Uncheck any that don't interest you.",
        "Go-to Activities",
    ),
    ReviewStep(
        "Favorite Places",
        "These are neighborhoods and place types you frequently visit. "
        "Uncheck any that aren't your favorites.",
        "Favorite Neighborhoods or Place Types",
    ),
    ReviewStep(
        "Travel & Exploration",
        "Here are travel preferences based on your data. Uncheck any that don't match your style.",
        "Travel & Exploration",
    ),
    ReviewStep(
        "Other Interests",
        "Additional interests we identified from your data. Uncheck any that don't apply to you.",
        "Other",
    ),
)


def profile_stage(profile: UserProfile) -> ProfileStage:
    if not profile.personality_tiles:
        return ProfileStage.NO_TILES
    if not profile.preference_chosen:
        return ProfileStage.TILES_PENDING_REVIEW
    return ProfileStage.CONFIRMED


def required_route(profile: UserProfile) -> str | None:
    """Where a page that needs confirmed preferences should send this user, if anywhere."""
    stage = profile_stage(profile)
    if stage is ProfileStage.NO_TILES:
        return ONBOARDING_ROUTE
    if stage is ProfileStage.TILES_PENDING_REVIEW:
        return PREFERENCES_ROUTE
    return None


def initial_selections(tiles: PersonalityTiles) -> dict[str, list[str]]:
    return {category: tiles.tags(category) for category in TILE_CATEGORIES}


def apply_selections(
    tiles: PersonalityTiles, selections: Mapping[str, list[str]]
) -> PersonalityTiles:
    """Reduce each selected category to the kept tags, preserving generated order.

    Categories missing from `selections` and every Reason string stay as they were.
    """
    data: dict[str, Any] = tiles.to_json_dict()
    for category, kept in selections.items():
        if category not in TILE_CATEGORIES:
            raise PreferenceSelectionError(f"Unknown preference category: {category!r}")
        generated = data[category]
        added = [tag for tag in kept if tag not in generated]
        if added:
            raise PreferenceSelectionError(
                f"Tags can only be removed during review; not generated for {category!r}: {added}"
            )
        keep = set(kept)
        data[category] = [tag for tag in generated if tag in keep]
    return PersonalityTiles.model_validate(data)
