"""
Learn OCR misspellings from confident AI corrections.

When the AI second pass maps a misread title ("Dvne") onto a stored
collectable ("Dune") with high confidence, the fuzzy fingerprint of the raw
reading is stored on that collectable. The next photo with the same
misreading is then resolved by the fingerprint matcher without any
provider or AI call.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shelfresolver.config import FUZZY_FINGERPRINT_SOURCE, OCR_CONFIDENCE_THRESHOLD
from shelfresolver.db.operations import record_fuzzy_fingerprint
from shelfresolver.models.db import CollectableDB
from shelfresolver.models.extracted_item import ExtractedItem
from shelfresolver.services.fingerprint import make_fuzzy_fingerprint, normalize_fuzzy

logger = logging.getLogger(__name__)


class FuzzyFingerprintLearner:
    """Records fuzzy fingerprints for high-confidence AI resolutions."""

    def __init__(
        self,
        threshold: float = OCR_CONFIDENCE_THRESHOLD,
        source: str = FUZZY_FINGERPRINT_SOURCE,
    ) -> None:
        self.threshold = threshold
        self.source = source

    def should_learn(
        self, collectable: CollectableDB, item: ExtractedItem, confidence: float | None
    ) -> bool:
        """Confidence meets the threshold and the raw creator is the record's creator."""
        if confidence is None or confidence < self.threshold:
            return False
        record_creator = collectable.primary_creator or next(iter(collectable.creators or []), "")
        raw_creator = normalize_fuzzy(item.creator)
        return bool(raw_creator) and raw_creator == normalize_fuzzy(record_creator)

    async def learn(
        self,
        session: AsyncSession,
        collectable: CollectableDB,
        item: ExtractedItem,
        confidence: float | None,
    ) -> bool:
        """
        Store the raw reading's fuzzy fingerprint on the collectable.

        Returns True if a new fingerprint was written. Storage failures are
        logged and do not propagate.
        """
        if not self.should_learn(collectable, item, confidence):
            return False

        value = make_fuzzy_fingerprint(item.title, item.creator)
        if value is None:
            return False

        try:
            recorded = await record_fuzzy_fingerprint(
                session,
                collectable,
                value,
                source=self.source,
                raw_title=item.title,
                raw_creator=item.creator,
                media_type=collectable.kind or item.kind,
                confidence=confidence,
            )
        except SQLAlchemyError:
            logger.exception(
                "fuzzy_fingerprint_failed",
                extra={"collectable_id": collectable.id, **item.summary()},
            )
            return False

        logger.info(
            "fuzzy_fingerprint_recorded" if recorded else "fuzzy_fingerprint_exists",
            extra={
                "collectable_id": collectable.id,
                "fingerprint": value,
                "confidence": confidence,
            },
        )
        return recorded
