from datetime import date
from typing import Any

from city_scout.models import TILE_CATEGORIES, reason_key


def format_profile(report: str | None, tiles: dict[str, Any] | None, name: str | None = None) -> str:
    """Format a personality report and tiles into a Markdown document."""
    title = f"# CityScout Profile: {name}" if name else "# CityScout Profile"
    sections = [f"{title}\n\n*Generated {date.today()}*\n"]

    if tiles:
        sections.append("## Interests & Preferences\n")
        for category in TILE_CATEGORIES:
            tags = tiles.get(category) or []
            if not tags:
                continue
            sections.append(f"### {category}\n")
            sections.append(", ".join(f"`{t}`" for t in tags))
            reason = tiles.get(reason_key(category))
            if reason:
                sections.append(f"\n*{reason}*")
            sections.append("")

    if report:
        sections.append("## Personality Report\n")
        sections.append(report.strip() + "\n")

    return "\n".join(sections)


def format_top_entries(kind: str, entries: list[dict[str, Any]]) -> str:
    """Markdown table of one top-20 list."""
    lines = [f"### Top {kind}\n", "| # | Place | Count | Place type |", "|---|---|---|---|"]
    for i, entry in enumerate(entries, start=1):
        place_type = entry.get("place_type")
        if isinstance(place_type, list):
            place_type = ", ".join(place_type)
        lines.append(f"| {i} | {entry['title_cleaned']} | {entry['count']} | {place_type or 'unknown'} |")
    lines.append("")
    return "\n".join(lines)
