"""
Extracted items: the sanitized form of raw vision-model records.

Vision output is loosely shaped. Field names drift between prompts and
media (a movie's director arrives as "author", a game's platform as
"systemName"), so every alias is folded here once and the rest of the
pipeline only sees ExtractedItem.
"""

import re
from dataclasses import dataclass, field
from typing import Any

from shelfresolver.models.collectable import coerce_confidence, unique_strings

TITLE_KEYS = ("name", "title")
CREATOR_KEYS = (
    "author",
    "primaryCreator",
    "creator",
    "writer",
    "director",
    "artist",
    "developer",
    "designer",
    "maker",
)
FORMAT_KEYS = ("format", "edition", "media", "binding", "formatType")
PUBLISHER_KEYS = ("publisher", "label", "studio", "distributor", "producer", "manufacturer")
DEVELOPER_KEYS = ("developer", "studio", "maker", "developmentStudio", "developerName")
PLATFORM_KEYS = ("systemName", "system", "console", "hardware", "platform", "machine")
REGION_KEYS = ("region", "territory", "releaseRegion")
YEAR_KEYS = ("year", "releaseYear", "published", "releaseDate")
RATING_KEYS = ("rating", "stars", "starRating", "reviewRating")

_FRACTION = re.compile(r"([0-9]+(?:\.[0-9]+)?)\s*/\s*([0-9]+(?:\.[0-9]+)?)")
_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")
_YEAR = re.compile(r"\b(\d{4})\b")


def _first_text(raw: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = raw.get(key)
        if value is None or isinstance(value, dict | list):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def _split_tags(value: Any, separators: str = r"[,]+") -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return unique_strings(re.split(separators, value))
    if isinstance(value, list | tuple):
        return unique_strings(value)
    return []


def _clamp_unit(value: Any) -> float | None:
    return coerce_confidence(value)


def parse_coordinates(value: Any) -> dict[str, float] | None:
    """
    Parse "x,y", [x, y] or {"x": .., "y": ..} into unit-clamped coordinates.

    Returns None unless both axes parse.
    """
    if value is None or value == "":
        return None

    x: float | None = None
    y: float | None = None
    if isinstance(value, str):
        parts = [part for part in re.split(r"[,\s]+", value) if part]
        if len(parts) >= 2:
            x, y = _clamp_unit(parts[0]), _clamp_unit(parts[1])
    elif isinstance(value, list | tuple):
        if len(value) >= 2:
            x, y = _clamp_unit(value[0]), _clamp_unit(value[1])
    elif isinstance(value, dict):
        x, y = _clamp_unit(value.get("x")), _clamp_unit(value.get("y"))

    if x is None or y is None:
        return None
    return {"x": x, "y": y}


def parse_rating(value: Any) -> float | None:
    """Parse a rating ("4/5", "3.5 stars", 4) onto a 0-5 scale."""
    if value is None or value == "" or isinstance(value, bool):
        return None

    if isinstance(value, str):
        fraction = _FRACTION.search(value)
        if fraction:
            numerator, denominator = float(fraction.group(1)), float(fraction.group(2))
            if denominator > 0:
                return max(0.0, min(5.0, numerator / denominator * 5))
        numeric = _NUMBER.search(value)
        if not numeric:
            return None
        value = numeric.group(0)

    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:
        return None
    return max(0.0, min(5.0, number))


def _extract_position(raw: dict[str, Any]) -> tuple[str | None, dict[str, float] | None]:
    position = raw.get("position")
    label: str | None = None
    if isinstance(position, str):
        label = position.strip() or None
    elif isinstance(position, dict):
        label = _first_text(position, ("label", "name", "title", "value"))
    if not label:
        label = _first_text(raw, ("location", "slot", "relativeLocation", "positionLabel"))

    candidates: list[Any] = []
    if isinstance(position, dict):
        candidates.extend([position.get("coordinates"), position.get("coords"), position])
    candidates.extend([raw.get("coordinates"), raw.get("positionCoordinates"), raw.get("coords")])

    for candidate in candidates:
        coordinates = parse_coordinates(candidate)
        if coordinates:
            return label, coordinates
    return label, parse_coordinates(label)


@dataclass
class ExtractedItem:
    """One candidate item read off a shelf photo."""

    index: int
    title: str
    kind: str | None = None
    creator: str | None = None
    publisher: str | None = None
    developer: str | None = None
    year: str | None = None
    format: str | None = None
    platform: str | None = None
    region: str | None = None
    description: str | None = None
    notes: str | None = None
    tags: list[str] = field(default_factory=list)
    genres: list[str] = field(default_factory=list)
    identifiers: dict[str, Any] = field(default_factory=dict)
    position_label: str | None = None
    coordinates: dict[str, float] | None = None
    rating: float | None = None
    confidence: float | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_raw(
        cls, raw: dict[str, Any], index: int, shelf_type: str | None = None
    ) -> "ExtractedItem | None":
        """
        Sanitize one raw vision record.

        Returns None when the record has no usable title.
        """
        title = _first_text(raw, TITLE_KEYS)
        if not title:
            return None

        kind = _first_text(raw, ("type", "category")) or shelf_type
        publisher = _first_text(raw, PUBLISHER_KEYS)
        developer = _first_text(raw, DEVELOPER_KEYS)
        if kind and "game" in kind.lower():
            developer = developer or publisher
            publisher = publisher or developer

        creator = _first_text(raw, CREATOR_KEYS)
        year_text = _first_text(raw, YEAR_KEYS)
        year_match = _YEAR.search(year_text) if year_text else None
        identifiers = raw.get("identifiers")
        label, coordinates = _extract_position(raw)
        rating = None
        for key in RATING_KEYS:
            rating = parse_rating(raw.get(key))
            if rating is not None:
                break

        return cls(
            index=index,
            title=title,
            kind=kind,
            creator=creator,
            publisher=publisher,
            developer=developer,
            year=year_match.group(1) if year_match else year_text,
            format=_first_text(raw, FORMAT_KEYS),
            platform=_first_text(raw, PLATFORM_KEYS),
            region=_first_text(raw, REGION_KEYS),
            description=_first_text(raw, ("description",)),
            notes=_first_text(raw, ("notes",)),
            tags=_split_tags(raw.get("tags")),
            genres=_split_tags(raw.get("genre", raw.get("genres")), r"[,/|]+"),
            identifiers=identifiers if isinstance(identifiers, dict) else {},
            position_label=label,
            coordinates=coordinates,
            rating=rating,
            confidence=coerce_confidence(raw.get("confidence", raw.get("confidenceScore"))),
            raw=dict(raw),
        )

    def user_collection_metadata(self) -> dict[str, Any]:
        """Per-user join metadata carried by this item (position, format, notes, rating)."""
        metadata: dict[str, Any] = {}
        position: dict[str, Any] = {}
        if self.position_label:
            position["label"] = self.position_label
        if self.coordinates:
            position["coordinates"] = dict(self.coordinates)
        if position:
            metadata["position"] = position
        if self.format:
            metadata["format"] = self.format
        if self.notes:
            metadata["notes"] = self.notes
        if self.rating is not None:
            metadata["rating"] = max(0.0, min(5.0, self.rating))
        return metadata

    def summary(self) -> dict[str, Any]:
        """Compact description for log records."""
        return {
            "index": self.index,
            "title": self.title,
            "creator": self.creator,
            "year": self.year,
            "platform": self.platform,
        }


def sanitize_extracted_items(
    raw_items: list[dict[str, Any]], shelf_type: str | None = None
) -> list[ExtractedItem]:
    """Sanitize raw vision records, dropping entries without a title."""
    items: list[ExtractedItem] = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        item = ExtractedItem.from_raw(raw, index=len(items), shelf_type=shelf_type)
        if item is not None:
            items.append(item)
    return items
