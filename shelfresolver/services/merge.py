"""
Merge rules for folding an incoming collectable into a stored one.

All functions are pure: they take the stored JSON values and the incoming
ones and return new values, leaving both inputs untouched. The upsert
engine assigns the results back onto the ORM row.

Rules:
- identifiers: deep merge; arrays unioned in first-seen order, nested
  objects merged recursively, scalars overwritten by incoming values
- images: concatenated and deduplicated by best URL (large > medium > small)
- sources: deduplicated by (provider, primary id); the most recently
  fetched record wins, ties going to the incoming record
- descriptive scalars: filled only when the stored value is empty
- descriptive lists: unioned
"""

import copy
import json
from datetime import datetime
from typing import Any

from shelfresolver.models.collectable import SOURCE_PRIMARY_ID_KEYS

# Identity namespaces, in dedup priority order. Dotted names address
# nested identifier objects ("openlibrary.work" -> identifiers["openlibrary"]["work"]).
PROVIDER_ID_NAMESPACES = (
    "openlibrary.work",
    "hardcover.book",
    "tmdb.movie",
    "tmdb.tv",
    "igdb.gameId",
)
CODE_NAMESPACES = ("isbn13", "isbn10", "upc")
IDENTITY_NAMESPACES = PROVIDER_ID_NAMESPACES + CODE_NAMESPACES

FILL_IF_MISSING_FIELDS = (
    "subtitle",
    "description",
    "primaryCreator",
    "publisher",
    "year",
    "platform",
    "region",
)
UNION_FIELDS = ("creators", "tags", "genre", "editions")


def _hash_key(value: Any) -> Any:
    if isinstance(value, dict | list):
        return json.dumps(value, sort_keys=True, default=str)
    return value


def union_list(existing: Any, incoming: Any) -> list[Any]:
    """Order-preserving union; scalars are treated as one-element lists."""
    out: list[Any] = []
    seen: set[Any] = set()
    for source in (existing, incoming):
        if source is None:
            continue
        values = source if isinstance(source, list | tuple) else [source]
        for value in values:
            if value is None:
                continue
            key = _hash_key(value)
            if key in seen:
                continue
            seen.add(key)
            out.append(copy.deepcopy(value))
    return out


def merge_identifiers(
    existing: dict[str, Any] | None, incoming: dict[str, Any] | None
) -> dict[str, Any]:
    """Deep-merge identifier maps, unioning arrays."""
    out = copy.deepcopy(existing or {})
    for key, value in (incoming or {}).items():
        current = out.get(key)
        if isinstance(value, list) or isinstance(current, list):
            out[key] = union_list(current, value)
        elif isinstance(value, dict):
            out[key] = merge_identifiers(current if isinstance(current, dict) else {}, value)
        elif value is not None:
            out[key] = value
    return out


def merge_nested_preferring_existing(
    existing: dict[str, Any] | None, incoming: dict[str, Any] | None
) -> dict[str, Any]:
    """Deep merge where stored values win; used for physical/extras blobs."""
    out = copy.deepcopy(existing or {})
    for key, value in (incoming or {}).items():
        current = out.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            out[key] = merge_nested_preferring_existing(current, value)
        elif current in (None, "", [], {}):
            out[key] = copy.deepcopy(value)
    return out


def image_key(image: dict[str, Any]) -> str | None:
    """Best available URL of an image record."""
    return image.get("urlLarge") or image.get("urlMedium") or image.get("urlSmall")


def merge_images(
    existing: list[dict[str, Any]] | None, incoming: list[dict[str, Any]] | None
) -> list[dict[str, Any]]:
    """Concatenate images, keeping the first occurrence of each best URL."""
    seen: set[str] = set()
    out: list[dict[str, Any]] = []
    for image in [*(existing or []), *(incoming or [])]:
        if not isinstance(image, dict):
            continue
        key = image_key(image)
        if not key or key in seen:
            continue
        seen.add(key)
        out.append(copy.deepcopy(image))
    return out


def source_key(source: dict[str, Any]) -> str:
    """Dedup key of a source record: provider plus its primary id."""
    ids = source.get("ids") or {}
    primary = next((str(ids[key]) for key in SOURCE_PRIMARY_ID_KEYS if ids.get(key)), "")
    return f"{source.get('provider') or 'unknown'}:{primary}"


def _fetched_at(source: dict[str, Any]) -> datetime | None:
    value = source.get("fetchedAt")
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def _is_newer_or_equal(candidate: dict[str, Any], current: dict[str, Any]) -> bool:
    candidate_at = _fetched_at(candidate)
    current_at = _fetched_at(current)
    if candidate_at is None:
        return current_at is None
    if current_at is None:
        return True
    try:
        return candidate_at >= current_at
    except TypeError:
        # naive vs aware timestamps: fall back to comparing the ISO strings
        return str(candidate.get("fetchedAt")) >= str(current.get("fetchedAt"))


def merge_sources(
    existing: list[dict[str, Any]] | None, incoming: list[dict[str, Any]] | None
) -> list[dict[str, Any]]:
    """Deduplicate sources by (provider, primary id), keeping the most recent."""
    by_key: dict[str, dict[str, Any]] = {}
    for source in [*(existing or []), *(incoming or [])]:
        if not isinstance(source, dict):
            continue
        key = source_key(source)
        current = by_key.get(key)
        if current is None or _is_newer_or_equal(source, current):
            by_key[key] = copy.deepcopy(source)
    return list(by_key.values())


def _lookup_path(identifiers: dict[str, Any], namespace: str) -> Any:
    node: Any = identifiers
    for part in namespace.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def identifier_values(identifiers: dict[str, Any] | None, namespace: str) -> list[str]:
    """Normalized string values stored under a (possibly dotted) namespace."""
    raw = _lookup_path(identifiers or {}, namespace)
    if raw is None:
        return []
    values = raw if isinstance(raw, list | tuple) else [raw]
    out: list[str] = []
    for value in values:
        if value is None or isinstance(value, dict | list):
            continue
        text = str(value).strip()
        if text and text not in out:
            out.append(text)
    return out


def identity_keys(identifiers: dict[str, Any] | None) -> list[tuple[str, str]]:
    """All (namespace, value) identity keys in dedup priority order."""
    return [
        (namespace, value)
        for namespace in IDENTITY_NAMESPACES
        for value in identifier_values(identifiers, namespace)
    ]


def merge_collectable_fields(existing: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """
    Compute the merged canonical fields for a stored record.

    Both arguments use the canonical camelCase shape. The result contains
    only keys the upsert engine writes back; `fingerprint` is never among
    them since it is fixed at insert.
    """
    merged: dict[str, Any] = {}

    for key in FILL_IF_MISSING_FIELDS:
        current = existing.get(key)
        merged[key] = current if current not in (None, "") else incoming.get(key)

    for key in UNION_FIELDS:
        merged[key] = union_list(existing.get(key) or [], incoming.get(key) or [])

    merged["identifiers"] = merge_identifiers(
        existing.get("identifiers"), incoming.get("identifiers")
    )
    merged["images"] = merge_images(existing.get("images"), incoming.get("images"))
    merged["sources"] = merge_sources(existing.get("sources"), incoming.get("sources"))
    for key in ("physical", "extras"):
        merged[key] = merge_nested_preferring_existing(existing.get(key), incoming.get(key))
    merged["lightweightFingerprint"] = existing.get("lightweightFingerprint") or incoming.get(
        "lightweightFingerprint"
    )
    return merged
