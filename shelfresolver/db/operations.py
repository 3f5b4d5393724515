"""
Database operations for the canonical store.

Provides async functions for locating, upserting and linking collectables,
recording learned fuzzy fingerprints, and creating manual entries. All
functions take an AsyncSession and flush; committing is the caller's job.
"""

import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shelfresolver.models.collectable import CollectablePayload
from shelfresolver.models.db import (
    CollectableDB,
    CollectableIdentifierDB,
    FuzzyFingerprintDB,
    ManualEntryDB,
    UserCollectionDB,
)
from shelfresolver.models.extracted_item import ExtractedItem
from shelfresolver.services.merge import (
    CODE_NAMESPACES,
    PROVIDER_ID_NAMESPACES,
    identifier_values,
    identity_keys,
    merge_collectable_fields,
)

logger = logging.getLogger(__name__)

# Attempts before an upsert that keeps losing insert races gives up
MAX_UPSERT_ATTEMPTS = 3

# Canonical camelCase keys that map onto differently named columns
_COLUMN_NAMES = {
    "primaryCreator": "primary_creator",
    "lightweightFingerprint": "lightweight_fingerprint",
}

USER_COLLECTION_METADATA_FIELDS = ("position", "format", "notes", "rating")


# --- Collectable Lookup ---


async def get_collectable(session: AsyncSession, collectable_id: int) -> CollectableDB | None:
    """Get a collectable by primary key."""
    result = await session.execute(select(CollectableDB).where(CollectableDB.id == collectable_id))
    return result.scalar_one_or_none()


async def find_by_identity_key(
    session: AsyncSession, namespace: str, values: list[str]
) -> CollectableDB | None:
    """Find the collectable owning any of the given identity values, locking it."""
    if not values:
        return None
    result = await session.execute(
        select(CollectableDB)
        .join(CollectableIdentifierDB, CollectableIdentifierDB.collectable_id == CollectableDB.id)
        .where(CollectableIdentifierDB.namespace == namespace)
        .where(CollectableIdentifierDB.value.in_(values))
        .order_by(CollectableDB.id)
        .limit(1)
        .with_for_update(of=CollectableDB)
    )
    return result.scalars().first()


async def find_existing_collectable(
    session: AsyncSession, incoming: dict[str, Any]
) -> CollectableDB | None:
    """
    Locate the stored record an incoming collectable should merge into.

    Tiers are tried in dedup priority order and the first hit wins:
    provider strong id, then ISBN/UPC, then strong fingerprint, then
    lightweight fingerprint. Matched rows are locked for update.
    """
    identifiers = incoming.get("identifiers") or {}
    for namespace in (*PROVIDER_ID_NAMESPACES, *CODE_NAMESPACES):
        match = await find_by_identity_key(
            session, namespace, identifier_values(identifiers, namespace)
        )
        if match is not None:
            logger.debug("Existing collectable %s matched by %s", match.id, namespace)
            return match

    for column, key in (
        (CollectableDB.fingerprint, "fingerprint"),
        (CollectableDB.lightweight_fingerprint, "lightweightFingerprint"),
    ):
        value = incoming.get(key)
        if not value:
            continue
        result = await session.execute(
            select(CollectableDB)
            .where(column == value)
            .order_by(CollectableDB.id)
            .limit(1)
            .with_for_update()
        )
        match = result.scalars().first()
        if match is not None:
            logger.debug("Existing collectable %s matched by %s", match.id, key)
            return match
    return None


async def find_by_fuzzy_fingerprint(
    session: AsyncSession, value: str, creator: str
) -> CollectableDB | None:
    """Find a collectable carrying a learned fuzzy fingerprint and the same creator."""
    result = await session.execute(
        select(CollectableDB)
        .join(FuzzyFingerprintDB, FuzzyFingerprintDB.collectable_id == CollectableDB.id)
        .where(FuzzyFingerprintDB.value == value)
        .where(func.lower(CollectableDB.primary_creator) == creator.strip().lower())
        .order_by(CollectableDB.id)
        .limit(1)
    )
    return result.scalars().first()


async def find_by_lightweight_fingerprint(
    session: AsyncSession, value: str
) -> CollectableDB | None:
    """Find a collectable by exact lightweight fingerprint."""
    result = await session.execute(
        select(CollectableDB)
        .where(CollectableDB.lightweight_fingerprint == value)
        .order_by(CollectableDB.id)
        .limit(1)
    )
    return result.scalars().first()


async def find_by_title(
    session: AsyncSession, title: str, creator: str | None = None
) -> CollectableDB | None:
    """Case-insensitive exact title match, filtered by creator when one is given."""
    query = select(CollectableDB).where(func.lower(CollectableDB.title) == title.strip().lower())
    if creator and creator.strip():
        query = query.where(func.lower(CollectableDB.primary_creator) == creator.strip().lower())
    result = await session.execute(query.order_by(CollectableDB.id).limit(1))
    return result.scalars().first()


async def backfill_lightweight_fingerprint(
    session: AsyncSession, collectable: CollectableDB, value: str | None
) -> bool:
    """
    Set the lightweight fingerprint on a record that lacks one.

    Returns True if the record was updated.
    """
    if collectable.lightweight_fingerprint or not value:
        return False
    collectable.lightweight_fingerprint = value
    await session.flush()
    return True


# --- Upsert ---


def _new_collectable(incoming: dict[str, Any]) -> CollectableDB:
    return CollectableDB(
        kind=incoming["kind"],
        title=incoming["title"],
        subtitle=incoming.get("subtitle"),
        description=incoming.get("description"),
        primary_creator=incoming.get("primaryCreator"),
        publisher=incoming.get("publisher"),
        year=incoming.get("year"),
        platform=incoming.get("platform"),
        region=incoming.get("region"),
        creators=list(incoming.get("creators") or []),
        tags=list(incoming.get("tags") or []),
        genre=list(incoming.get("genre") or []),
        identifiers=dict(incoming.get("identifiers") or {}),
        images=list(incoming.get("images") or []),
        physical=dict(incoming.get("physical") or {}),
        editions=list(incoming.get("editions") or []),
        sources=list(incoming.get("sources") or []),
        extras=dict(incoming.get("extras") or {}),
        fingerprint=incoming.get("fingerprint"),
        lightweight_fingerprint=incoming.get("lightweightFingerprint"),
        fuzzy_fingerprints=[],
    )


def _apply_merge(collectable: CollectableDB, incoming: dict[str, Any]) -> None:
    merged = merge_collectable_fields(collectable.to_dict(), incoming)
    for key, value in merged.items():
        # JSON columns are replaced, never mutated in place, so changes are tracked
        setattr(collectable, _COLUMN_NAMES.get(key, key), value)


async def _index_identity_keys(session: AsyncSession, collectable: CollectableDB) -> None:
    """Mirror a merged record's identity keys into the identifier index."""
    for namespace, value in identity_keys(collectable.identifiers):
        result = await session.execute(
            select(CollectableIdentifierDB.collectable_id)
            .where(CollectableIdentifierDB.namespace == namespace)
            .where(CollectableIdentifierDB.value == value)
        )
        owner = result.scalar_one_or_none()
        if owner == collectable.id:
            continue
        if owner is not None:
            logger.warning(
                "identity_key_conflict",
                extra={
                    "namespace": namespace,
                    "value": value,
                    "owner_id": owner,
                    "collectable_id": collectable.id,
                },
            )
            continue
        try:
            async with session.begin_nested():
                session.add(
                    CollectableIdentifierDB(
                        collectable_id=collectable.id, namespace=namespace, value=value
                    )
                )
                await session.flush()
        except IntegrityError:
            logger.warning(
                "identity_key_conflict",
                extra={"namespace": namespace, "value": value, "collectable_id": collectable.id},
            )


async def upsert_collectable(
    session: AsyncSession,
    payload: CollectablePayload | dict[str, Any],
    max_attempts: int = MAX_UPSERT_ATTEMPTS,
) -> tuple[CollectableDB, bool]:
    """
    Insert a collectable or merge it into the matching stored record.

    The find-merge-or-insert sequence is atomic per attempt: matched rows
    are locked, and inserts run in a savepoint. If the insert loses a race
    (unique fingerprint or identity key already taken), the savepoint is
    rolled back and the attempt repeats, now merging into the winner.

    Returns:
        Tuple of (collectable, created) where created is True if new.

    Raises:
        ValueError: If the payload has no kind or title.
        RuntimeError: If every attempt lost an insert race.
    """
    incoming = payload.to_dict() if isinstance(payload, CollectablePayload) else dict(payload)
    if not incoming.get("kind") or not incoming.get("title"):
        msg = "Collectable payload requires kind and title"
        raise ValueError(msg)

    for attempt in range(1, max_attempts + 1):
        existing = await find_existing_collectable(session, incoming)
        if existing is not None:
            _apply_merge(existing, incoming)
            await session.flush()
            await _index_identity_keys(session, existing)
            logger.info(
                "collectable_merged",
                extra={"collectable_id": existing.id, "title": existing.title},
            )
            return existing, False

        try:
            async with session.begin_nested():
                collectable = _new_collectable(incoming)
                session.add(collectable)
                await session.flush()
                for namespace, value in identity_keys(collectable.identifiers):
                    session.add(
                        CollectableIdentifierDB(
                            collectable_id=collectable.id, namespace=namespace, value=value
                        )
                    )
                await session.flush()
        except IntegrityError:
            logger.info(
                "collectable_insert_conflict",
                extra={"title": incoming["title"], "attempt": attempt},
            )
            continue

        logger.info(
            "collectable_inserted",
            extra={"collectable_id": collectable.id, "title": collectable.title},
        )
        return collectable, True

    msg = f"Could not upsert collectable {incoming['title']!r} after {max_attempts} attempts"
    raise RuntimeError(msg)


# --- Fuzzy Fingerprints ---


async def record_fuzzy_fingerprint(
    session: AsyncSession,
    collectable: CollectableDB,
    value: str,
    *,
    source: str,
    raw_title: str | None = None,
    raw_creator: str | None = None,
    media_type: str | None = None,
    confidence: float | None = None,
) -> bool:
    """
    Append a fuzzy fingerprint to a collectable unless it is already stored.

    Returns True if a new fingerprint was written.
    """
    if any(fp.value == value for fp in collectable.fuzzy_fingerprints):
        return False

    result = await session.execute(
        select(FuzzyFingerprintDB.id)
        .where(FuzzyFingerprintDB.collectable_id == collectable.id)
        .where(FuzzyFingerprintDB.value == value)
    )
    if result.scalar_one_or_none() is not None:
        return False

    try:
        async with session.begin_nested():
            session.add(
                FuzzyFingerprintDB(
                    collectable_id=collectable.id,
                    value=value,
                    source=source,
                    raw_title=raw_title,
                    raw_creator=raw_creator,
                    media_type=media_type,
                    confidence=confidence,
                )
            )
            await session.flush()
    except IntegrityError:
        return False

    await session.refresh(collectable, ["fuzzy_fingerprints"])
    return True


# --- Shelf Links ---


async def get_user_collection(
    session: AsyncSession, user_id: str, shelf_id: str, collectable_id: int
) -> UserCollectionDB | None:
    """Get the link between a collectable and a user's shelf, if any."""
    result = await session.execute(
        select(UserCollectionDB)
        .where(UserCollectionDB.user_id == user_id)
        .where(UserCollectionDB.shelf_id == shelf_id)
        .where(UserCollectionDB.collectable_id == collectable_id)
    )
    return result.scalar_one_or_none()


def apply_user_collection_metadata(link: UserCollectionDB, metadata: dict[str, Any]) -> bool:
    """
    Write changed per-user metadata onto a link.

    Missing values never clear stored ones. Returns True if anything changed.
    """
    changed = False
    for key in USER_COLLECTION_METADATA_FIELDS:
        value = metadata.get(key)
        if value is None:
            continue
        if key == "rating":
            value = max(0.0, min(5.0, float(value)))
        if getattr(link, key) != value:
            setattr(link, key, value)
            changed = True
    return changed


async def link_collectable_to_shelf(
    session: AsyncSession,
    user_id: str,
    shelf_id: str,
    collectable_id: int,
    metadata: dict[str, Any] | None = None,
) -> tuple[UserCollectionDB, bool]:
    """
    Place a collectable on a user's shelf; idempotent.

    An existing link only has its metadata updated.

    Returns:
        Tuple of (link, created) where created is True if new.
    """
    metadata = metadata or {}
    existing = await get_user_collection(session, user_id, shelf_id, collectable_id)
    if existing is None:
        link = UserCollectionDB(user_id=user_id, shelf_id=shelf_id, collectable_id=collectable_id)
        apply_user_collection_metadata(link, metadata)
        try:
            async with session.begin_nested():
                session.add(link)
                await session.flush()
            return link, True
        except IntegrityError:
            existing = await get_user_collection(session, user_id, shelf_id, collectable_id)
            if existing is None:
                raise

    if apply_user_collection_metadata(existing, metadata):
        await session.flush()
    return existing, False


# --- Manual Entries ---


async def create_manual_entry(
    session: AsyncSession,
    user_id: str,
    shelf_id: str,
    item: ExtractedItem,
    shelf_type: str | None = None,
) -> tuple[ManualEntryDB, UserCollectionDB]:
    """
    Record an unresolved item as a manual entry on the user's shelf.

    Manual entries are always flagged for review.
    """
    manual = ManualEntryDB(
        user_id=user_id,
        shelf_id=shelf_id,
        name=item.title,
        type=item.kind or shelf_type or "manual",
        description=item.description or "",
        author=item.creator or "",
        publisher=item.publisher or "",
        format=item.format or "",
        year=item.year or "",
        tags=list(item.tags),
        needs_review=True,
        raw=dict(item.raw),
    )
    session.add(manual)
    await session.flush()

    link = UserCollectionDB(user_id=user_id, shelf_id=shelf_id, manual_id=manual.id)
    apply_user_collection_metadata(link, item.user_collection_metadata())
    session.add(link)
    await session.flush()
    return manual, link
