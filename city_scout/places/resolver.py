"""Google Places lookups that map a free-text place name to its category tags."""
from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from city_scout.models import PlaceType

_log = logging.getLogger(__name__)

FIND_PLACE_URL = "https://maps.googleapis.com/maps/api/place/findplacefromtext/json"


class PlaceTypeCache:
    """Process-wide memo of place text -> resolved types.

    Keyed by place text only, so one instance is safely shared across users.
    """

    def __init__(self) -> None:
        self._entries: dict[str, list[str] | None] = {}

    def get(self, key: str) -> list[str] | None:
        return self._entries.get(key)

    def put(self, key: str, value: list[str] | None) -> None:
        self._entries[key] = value

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class PlaceTypeResolver:
    """Resolve place names to Google Places types.

    Lookup failures never raise: the error description is returned in place of
    the types so one bad title cannot abort a whole aggregation run.
    """

    def __init__(
        self,
        cache: PlaceTypeCache,
        *,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        self._cache = cache
        self._api_key = api_key or os.getenv("GOOGLE_MAPS_API_KEY")
        self._timeout = timeout or float(os.getenv("PLACES_TIMEOUT", "10"))
        self._client = client

    @property
    def cache(self) -> PlaceTypeCache:
        return self._cache

    async def resolve(self, text: str) -> PlaceType:
        if text in self._cache:
            return self._cache.get(text)
        try:
            data = await self._find_place(text)
            result = _first_candidate_types(data)
        except (httpx.HTTPError, ValueError, RuntimeError) as exc:
            _log.warning("place lookup failed for %r: %s", text, exc)
            return f"{type(exc).__name__}: {exc}"
        self._cache.put(text, result)
        return result

    async def _find_place(self, text: str) -> dict[str, Any]:
        if not self._api_key:
            raise RuntimeError("GOOGLE_MAPS_API_KEY is not set")
        params = {
            "input": text,
            "inputtype": "textquery",
            "fields": "types",
            "key": self._api_key,
        }
        if self._client is not None:
            response = await self._client.get(FIND_PLACE_URL, params=params, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(FIND_PLACE_URL, params=params)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"unexpected Places response: {data!r}")
        return data


def _first_candidate_types(data: dict[str, Any]) -> list[str] | None:
    status = data.get("status", "OK")
    if status not in ("OK", "ZERO_RESULTS"):
        detail = data.get("error_message", "")
        raise RuntimeError(f"Places API returned {status}" + (f": {detail}" if detail else ""))
    candidates = data.get("candidates") or []
    if not isinstance(candidates, list):
        raise ValueError(f"unexpected Places candidates: {candidates!r}")
    if not candidates:
        return None
    first = candidates[0]
    if not isinstance(first, dict):
        raise ValueError(f"unexpected Places candidate: {first!r}")
    types = first.get("types")
    if types is None:
        return None
    if not isinstance(types, list) or not all(isinstance(t, str) for t in types):
        raise ValueError(f"unexpected Places types: {types!r}")
    return types or None
