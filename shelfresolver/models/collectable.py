"""
Canonical collectable shape.

Provider adapters and the AI enricher build CollectablePayload instances;
the upsert engine persists their dictionary form. Dictionary keys use the
camelCase names of the canonical JSON shape so stored records, API output
and AI responses all agree.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# Keys tried, in order, to identify a source record within its provider
SOURCE_PRIMARY_ID_KEYS = ("work", "book", "release", "id", "movie", "tv", "edition")


@dataclass(slots=True)
class ImageRef:
    """An image variant set from one provider."""

    kind: str
    provider: str
    url_small: str | None = None
    url_medium: str | None = None
    url_large: str | None = None

    @property
    def best_url(self) -> str | None:
        return self.url_large or self.url_medium or self.url_small

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "urlSmall": self.url_small,
            "urlMedium": self.url_medium,
            "urlLarge": self.url_large,
            "provider": self.provider,
        }


@dataclass(slots=True)
class SourceRecord:
    """Provenance of a resolution: which provider, which ids, when."""

    provider: str
    ids: dict[str, str] = field(default_factory=dict)
    urls: dict[str, str] = field(default_factory=dict)
    fetched_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def primary_id(self) -> str | None:
        for key in SOURCE_PRIMARY_ID_KEYS:
            value = self.ids.get(key)
            if value:
                return value
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "ids": dict(self.ids),
            "urls": dict(self.urls),
            "fetchedAt": self.fetched_at.isoformat(),
            "raw": dict(self.raw),
        }


@dataclass
class CollectablePayload:
    """
    A resolved item in canonical form, ready for upsert.

    `fingerprint` is the strong fingerprint and is only written when the
    record is first inserted. `lightweight_fingerprint` is kept if the
    stored record already has one.
    """

    kind: str
    title: str
    subtitle: str | None = None
    description: str | None = None
    primary_creator: str | None = None
    creators: list[str] = field(default_factory=list)
    publisher: str | None = None
    year: str | None = None
    platform: str | None = None
    region: str | None = None
    tags: list[str] = field(default_factory=list)
    genre: list[str] = field(default_factory=list)
    identifiers: dict[str, Any] = field(default_factory=dict)
    images: list[ImageRef] = field(default_factory=list)
    physical: dict[str, Any] = field(default_factory=dict)
    editions: list[dict[str, Any]] = field(default_factory=list)
    sources: list[SourceRecord] = field(default_factory=list)
    extras: dict[str, Any] = field(default_factory=dict)
    fingerprint: str | None = None
    lightweight_fingerprint: str | None = None

    @property
    def confidence(self) -> float | None:
        """Confidence recorded by the first source, clamped to [0, 1]."""
        if not self.sources:
            return None
        return coerce_confidence(self.sources[0].raw.get("confidence"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "type": self.kind,
            "title": self.title,
            "subtitle": self.subtitle,
            "description": self.description,
            "primaryCreator": self.primary_creator,
            "creators": list(self.creators),
            "publisher": self.publisher,
            "year": self.year,
            "platform": self.platform,
            "region": self.region,
            "tags": list(self.tags),
            "genre": list(self.genre),
            "identifiers": self.identifiers,
            "images": [image.to_dict() for image in self.images],
            "physical": self.physical,
            "editions": list(self.editions),
            "sources": [source.to_dict() for source in self.sources],
            "extras": self.extras,
            "fingerprint": self.fingerprint,
            "lightweightFingerprint": self.lightweight_fingerprint,
        }


def coerce_confidence(value: Any) -> float | None:
    """Parse a confidence value into [0, 1], or None if not numeric."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:  # NaN
        return None
    return max(0.0, min(1.0, number))


def unique_strings(values: Any) -> list[str]:
    """Trimmed, non-empty strings in first-seen order, case-insensitively unique."""
    if values is None:
        return []
    if isinstance(values, str):
        values = [values]
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if not text or text.lower() in seen:
            continue
        seen.add(text.lower())
        out.append(text)
    return out
