"""
Match extracted items against the canonical store before any external call.

Resolution paths, in priority order:
1. fuzzy: a learned fuzzy OCR fingerprint plus an exact (case-insensitive)
   primary creator match
2. lightweight: exact lightweight fingerprint
3. fallback: exact (case-insensitive) title, narrowed by creator when known

A matched item is linked to the user's shelf. Anything else, including
items whose matching failed, is returned as remaining for the provider pass.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from shelfresolver.config import settings
from shelfresolver.db.operations import (
    backfill_lightweight_fingerprint,
    find_by_fuzzy_fingerprint,
    find_by_lightweight_fingerprint,
    find_by_title,
    link_collectable_to_shelf,
)
from shelfresolver.models.db import CollectableDB
from shelfresolver.models.extracted_item import ExtractedItem
from shelfresolver.models.outcome import ItemOutcome, OutcomeStatus
from shelfresolver.services.fingerprint import make_fuzzy_fingerprint, make_lightweight_fingerprint
from shelfresolver.services.worker_pool import run_bounded

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


def item_lightweight_fingerprint(item: ExtractedItem) -> str:
    """Lightweight fingerprint of an extracted item (title and creator only)."""
    return make_lightweight_fingerprint(title=item.title, creator=item.creator)


def item_fuzzy_fingerprint(item: ExtractedItem) -> str | None:
    return make_fuzzy_fingerprint(item.title, item.creator)


def record_lightweight_fingerprint(collectable: CollectableDB, item: ExtractedItem) -> str:
    """
    Lightweight fingerprint from the record's own title and creator.

    The item's values are used only where the record has none.
    """
    return make_lightweight_fingerprint(
        title=collectable.title or item.title,
        creator=collectable.primary_creator or item.creator,
    )


@dataclass
class MatchResult:
    """Items linked from the store, and the items left for the providers."""

    matched: list[ItemOutcome] = field(default_factory=list)
    remaining: list[ExtractedItem] = field(default_factory=list)


class FingerprintMatcher:
    """Links extracted items to existing collectables by fingerprint."""

    def __init__(self, session_factory: SessionFactory, concurrency: int | None = None) -> None:
        self.session_factory = session_factory
        self.concurrency = concurrency or settings.match_concurrency

    async def match(
        self, items: list[ExtractedItem], user_id: str, shelf_id: str
    ) -> MatchResult:
        """Match every item; matched and remaining keep input order."""

        async def worker(_: int, item: ExtractedItem) -> ItemOutcome | None:
            if not item.title or not item.title.strip():
                return None
            try:
                async with self.session_factory() as session, session.begin():
                    return await self.match_one(session, item, user_id, shelf_id)
            except Exception:
                logger.exception("fingerprint_match_failed", extra=item.summary())
                return None

        outcomes = await run_bounded(items, worker, self.concurrency)

        result = MatchResult()
        for item, outcome in zip(items, outcomes, strict=True):
            if outcome is None:
                result.remaining.append(item)
            else:
                result.matched.append(outcome)
        return result

    async def match_one(
        self, session: AsyncSession, item: ExtractedItem, user_id: str, shelf_id: str
    ) -> ItemOutcome | None:
        """Resolve and link one item within the caller's transaction."""
        lightweight = item_lightweight_fingerprint(item)
        found = await self.find(session, item, lightweight)
        if found is None:
            logger.info("fingerprint_match", extra={"via": None, **item.summary()})
            return None

        collectable, via = found
        backfilled = await backfill_lightweight_fingerprint(
            session, collectable, record_lightweight_fingerprint(collectable, item)
        )
        link, created = await link_collectable_to_shelf(
            session,
            user_id,
            shelf_id,
            collectable.id,
            item.user_collection_metadata(),
        )
        logger.info(
            "fingerprint_match",
            extra={
                "via": via,
                "collectable_id": collectable.id,
                "link_created": created,
                "backfilled": backfilled,
                **item.summary(),
            },
        )
        return ItemOutcome(
            index=item.index,
            title=item.title,
            status=OutcomeStatus.LINKED if created else OutcomeStatus.EXISTING,
            source=via,
            link_id=link.id,
            collectable_id=collectable.id,
        )

    async def find(
        self, session: AsyncSession, item: ExtractedItem, lightweight: str
    ) -> tuple[CollectableDB, str] | None:
        """The matching collectable and the path that found it."""
        fuzzy = item_fuzzy_fingerprint(item)
        if fuzzy and item.creator:
            collectable = await find_by_fuzzy_fingerprint(session, fuzzy, item.creator)
            if collectable is not None:
                return collectable, "fuzzy"

        collectable = await find_by_lightweight_fingerprint(session, lightweight)
        if collectable is not None:
            return collectable, "lightweight"

        collectable = await find_by_title(session, item.title, item.creator)
        if collectable is not None:
            return collectable, "fallback"
        return None
