"""
Fingerprint engine: deterministic identity hashes for collectables.

Three strengths are produced from the same semantic inputs:

- Strong: title, creator and year, plus media type, platform and format
  when present. Used as the insert-time identity of a canonical record.
- Lightweight: the strong fingerprint without year or format. Tolerates
  edition and release-date drift between providers.
- Fuzzy (vision OCR): aggressively normalized title and creator. Learned
  per record so that recurring OCR misreads resolve without external calls.

INVARIANTS:
1. Every function here is total: missing input yields "" or None, never raises.
2. Multi-valued inputs are order-insensitive (flattened, deduplicated, sorted).
3. A unique key, when given, replaces all other components.
"""

import hashlib
import re
import unicodedata
from collections.abc import Iterable
from typing import Any

MEDIA_TYPE_ALIASES: dict[str, str] = {
    "book": "book",
    "books": "book",
    "movie": "movie",
    "movies": "movie",
    "film": "movie",
    "films": "movie",
    "tv": "tv",
    "television": "tv",
    "game": "game",
    "games": "game",
    "videogame": "game",
    "videogames": "game",
}

_WHITESPACE = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_component(value: Any) -> str:
    """Trim, lowercase and fold internal whitespace."""
    if value is None:
        return ""
    return _WHITESPACE.sub(" ", str(value).strip().lower())


def normalize_list(value: Any) -> str:
    """
    Normalize a possibly nested multi-value input into a stable string.

    Nested lists are flattened, blanks dropped, duplicates removed and the
    remainder sorted and joined with commas.
    """
    if value is None:
        return ""
    if isinstance(value, str) or not isinstance(value, Iterable):
        return normalize_component(value)

    seen: set[str] = set()
    stack: list[Any] = list(value)
    while stack:
        item = stack.pop()
        if isinstance(item, Iterable) and not isinstance(item, str):
            stack.extend(item)
            continue
        normalized = normalize_component(item)
        if normalized:
            seen.add(normalized)
    return ",".join(sorted(seen))


def normalize_media_type(value: Any) -> str:
    """Map shelf/media type spellings onto book, movie or game."""
    normalized = normalize_component(value)
    if not normalized:
        return ""
    compact = _NON_ALNUM.sub("", normalized)
    return MEDIA_TYPE_ALIASES.get(normalized) or MEDIA_TYPE_ALIASES.get(compact) or normalized


def normalize_fuzzy(value: Any) -> str:
    """
    Aggressive normalization for OCR-tolerant comparison.

    Strips diacritics, lowercases and collapses every run of
    non-alphanumerics to a single space.
    """
    if value is None:
        return ""
    decomposed = unicodedata.normalize("NFKD", str(value))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM.sub(" ", stripped.lower()).strip()


def _sha1(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()


def make_collectable_fingerprint(
    *,
    title: Any = None,
    creator: Any = None,
    year: Any = None,
    media_type: Any = None,
    platform: Any = None,
    formats: Any = None,
    unique_key: Any = None,
) -> str:
    """Strong fingerprint: title|creator|year[|mediaType][|platform][|format]."""
    key = normalize_component(unique_key)
    if key:
        return _sha1(key)

    parts = [normalize_component(title), normalize_component(creator), normalize_component(year)]
    tail = (normalize_media_type(media_type), normalize_list(platform), normalize_list(formats))
    for extra in tail:
        if extra:
            parts.append(extra)
    return _sha1("|".join(parts))


def make_lightweight_fingerprint(
    *,
    title: Any = None,
    creator: Any = None,
    media_type: Any = None,
    platform: Any = None,
    unique_key: Any = None,
) -> str:
    """Lightweight fingerprint: title|creator[|mediaType][|platform]."""
    key = normalize_component(unique_key)
    if key:
        return _sha1(key)

    parts = [normalize_component(title), normalize_component(creator)]
    for extra in (normalize_media_type(media_type), normalize_list(platform)):
        if extra:
            parts.append(extra)
    return _sha1("|".join(parts))


def make_fuzzy_fingerprint(title: Any, creator: Any, media_type: Any = None) -> str | None:
    """
    Fuzzy OCR fingerprint: fuzzy(title)|fuzzy(creator)[|mediaType].

    Returns None when title or creator is empty after normalization.
    """
    fuzzy_title = normalize_fuzzy(title)
    fuzzy_creator = normalize_fuzzy(creator)
    if not fuzzy_title or not fuzzy_creator:
        return None

    parts = [fuzzy_title, fuzzy_creator]
    kind = normalize_fuzzy(normalize_media_type(media_type))
    if kind:
        parts.append(kind)
    return _sha1("|".join(parts))
