"""Validation of uploaded Google Maps activity exports."""
import json
from typing import Any

from pydantic import TypeAdapter, ValidationError

from city_scout.errors import ActivityExportError
from city_scout.models import ActivityRecord

_RECORDS = TypeAdapter(list[ActivityRecord])


def parse_activity_export(raw: str | bytes | list[Any]) -> list[ActivityRecord]:
    """Parse a "My Activity" export (JSON text or an already decoded list).

    Raises ActivityExportError unless every entry is an object with string
    `title` and `time` fields. Nothing is partially accepted.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ActivityExportError(f"Activity export is not valid JSON: {exc}") from exc

    if not isinstance(raw, list):
        raise ActivityExportError("Invalid or missing activity data (should be an array)")

    try:
        return _RECORDS.validate_python(raw)
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False)
        first = errors[0]
        where = ".".join(str(p) for p in first["loc"])
        raise ActivityExportError(
            f"Invalid activity record at {where}: {first['msg']}", errors=errors
        ) from exc
