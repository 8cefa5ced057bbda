import json
from unittest.mock import MagicMock

import pytest

from city_scout.service import CityScout
from city_scout.storage.blobs import LocalBlobStore
from city_scout.storage.records import SQLiteRecordStore

SAMPLE_TILES = {
    "Lifestyle Vibes": ["Night Owl", "Urban Explorer"],
    "Lifestyle Vibes Reason": "Late searches all over the city.",
    "Food & Drink Favorites": ["Coffee Snob", "Ramen Lover", "Brunch Regular"],
    "Food & Drink Favorites Reason": "Lots of cafes and noodle bars.",
    "Go-to Activities": ["Museum Hopping"],
    "Go-to Activities Reason": "Frequent museum directions.",
    "Favorite Neighborhoods or Place Types": ["Le Marais", "Parks"],
    "Favorite Neighborhoods or Place Types Reason": "Repeated views of Le Marais.",
    "Travel & Exploration": ["Weekend Trips"],
    "Travel & Exploration Reason": "Train station searches on Fridays.",
    "Other": ["Bookstores"],
    "Other Reason": "Several bookshop searches.",
}


class FakeResolver:
    """Resolver double that records every lookup."""

    def __init__(self, results: dict | None = None) -> None:
        self.results = results or {}
        self.calls: list[str] = []

    async def resolve(self, text: str):
        self.calls.append(text)
        return self.results.get(text, ["point_of_interest"])


def completion(content: str) -> MagicMock:
    """Shape of a chat.completions.create response."""
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    return response


def tiles_json(**overrides) -> str:
    return json.dumps({**SAMPLE_TILES, **overrides})


@pytest.fixture
def service(tmp_path):
    return CityScout(
        SQLiteRecordStore(str(tmp_path / "city_scout.db")),
        LocalBlobStore(tmp_path / "files"),
        FakeResolver(),
    )
