from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

ActivityKind = Literal["search", "direction", "view"]
PlaceType = list[str] | str | None  # str = lookup error description

TILE_CATEGORIES: tuple[str, ...] = (
    "Lifestyle Vibes",
    "Food & Drink Favorites",
    "Go-to Activities",
    "Favorite Neighborhoods or Place Types",
    "Travel & Exploration",
    "Other",
)


def reason_key(category: str) -> str:
    return f"{category} Reason"


class ActivityRecord(BaseModel):
    """One entry of a Google Maps "My Activity" export."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    title: str
    time: str
    titleUrl: str | None = None
    description: str | None = None


class ClassifiedRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    record: ActivityRecord
    kind: ActivityKind
    title_cleaned: str


class FrequencyEntry(BaseModel):
    title_cleaned: str
    count: int = Field(ge=1)


class EnrichedEntry(FrequencyEntry):
    place_type: PlaceType = None


class RawCounts(BaseModel):
    searches: int = 0
    directions: int = 0
    views: int = 0


class AggregatedActivity(BaseModel):
    searches: list[EnrichedEntry] = []
    directions: list[EnrichedEntry] = []
    views: list[EnrichedEntry] = []
    raw_counts: RawCounts = RawCounts()
    # every distinct search, most frequent first
    search_stats: list[FrequencyEntry] = []


class PersonalityTiles(BaseModel):
    """Category -> tags mapping, serialized with the display names as keys."""

    model_config = ConfigDict(populate_by_name=True)

    lifestyle_vibes: list[str] = Field(alias="Lifestyle Vibes")
    lifestyle_vibes_reason: str = Field(alias="Lifestyle Vibes Reason")
    food_and_drink: list[str] = Field(alias="Food & Drink Favorites")
    food_and_drink_reason: str = Field(alias="Food & Drink Favorites Reason")
    go_to_activities: list[str] = Field(alias="Go-to Activities")
    go_to_activities_reason: str = Field(alias="Go-to Activities Reason")
    favorite_places: list[str] = Field(alias="Favorite Neighborhoods or Place Types")
    favorite_places_reason: str = Field(alias="Favorite Neighborhoods or Place Types Reason")
    travel_and_exploration: list[str] = Field(alias="Travel & Exploration")
    travel_and_exploration_reason: str = Field(alias="Travel & Exploration Reason")
    other: list[str] = Field(alias="Other")
    other_reason: str = Field(alias="Other Reason")

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True)

    def tags(self, category: str) -> list[str]:
        return list(self.to_json_dict()[category])


class UserProfile(BaseModel):
    id: str
    full_name: str | None = None
    avatar_url: str | None = None
    gender: str | None = None
    personality_tiles: dict | None = None
    preference_chosen: bool = False
    has_personality_insights: bool = False
    onboarding_completed: bool = False
    created_at: str | None = None
    updated_at: str | None = None
