"""Metadata completeness scoring for book payloads."""

from typing import Any

from shelfresolver.models.collectable import CollectablePayload

DEFAULT_BOOK_MIN_SCORE = 55.0

# Identifier namespaces that carry a provider's own ids rather than a code
BOOK_PROVIDER_NAMESPACES = ("openlibrary", "hardcover")


def normalize_min_score(value: Any, default: float = DEFAULT_BOOK_MIN_SCORE) -> float:
    """
    Threshold on the 0-100 scale.

    Values of 1 or less are read as fractions (0.55 -> 55); the result is
    clamped to [0, 100]. Unparseable values fall back to the default.
    """
    if value is None or value == "" or isinstance(value, bool):
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    if parsed <= 1:
        parsed *= 100
    return max(0.0, min(100.0, parsed))


def _has_values(value: Any) -> bool:
    if isinstance(value, dict):
        return any(_has_values(entry) for entry in value.values())
    if isinstance(value, list | tuple):
        return any(_has_values(entry) for entry in value)
    return value is not None and bool(str(value).strip())


def score_book_collectable(payload: CollectablePayload | None) -> int:
    """
    How complete a book record is, capped at 100.

    title 15, creator 20, publisher 10, year 10, description 20 (120+
    characters) or 10 (40+), cover 15, ISBN or ASIN 10 else provider ids 5,
    tags or genre 5.
    """
    if payload is None:
        return 0
    score = 0
    if (payload.title or "").strip():
        score += 15
    if (payload.primary_creator or "").strip() or _has_values(payload.creators):
        score += 20
    if (payload.publisher or "").strip():
        score += 10
    if (payload.year or "").strip():
        score += 10

    description = (payload.description or "").strip()
    if len(description) >= 120:
        score += 20
    elif len(description) >= 40:
        score += 10

    if any(image.best_url for image in payload.images):
        score += 15

    identifiers = payload.identifiers or {}
    if any(_has_values(identifiers.get(key)) for key in ("isbn13", "isbn10", "asin")):
        score += 10
    elif any(_has_values(identifiers.get(key)) for key in BOOK_PROVIDER_NAMESPACES):
        score += 5

    if _has_values(payload.tags) or _has_values(payload.genre):
        score += 5
    return min(score, 100)
