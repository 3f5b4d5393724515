"""
Shelf pipeline: resolve the items read from one shelf photo.

Stages, per run:
1. sanitize raw vision records into ExtractedItems
2. fingerprint match against the canonical store (matched items are linked)
3. provider first pass for the remaining items
4. AI second pass for what is still unresolved, when the adapter allows it
5. apply: upsert resolved items and link them, learn fuzzy fingerprints
   from confident AI corrections, store everything else as manual entries

Every item ends in exactly one outcome. A failure while applying one item
turns that item into a manual entry and never aborts the run.
"""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from shelfresolver.config import AI_REVIEW_CONFIDENCE_THRESHOLD
from shelfresolver.db.operations import (
    create_manual_entry,
    link_collectable_to_shelf,
    upsert_collectable,
)
from shelfresolver.models.enrichment import AiResolved, LookupResult, ProviderResolved
from shelfresolver.models.extracted_item import ExtractedItem, sanitize_extracted_items
from shelfresolver.models.outcome import ItemOutcome, OutcomeStatus, PipelineReport
from shelfresolver.providers.base import CatalogService
from shelfresolver.providers.registry import CatalogRegistry
from shelfresolver.services.ai_enricher import AI_PROVIDER, AiEnricher
from shelfresolver.services.fingerprint_matcher import (
    FingerprintMatcher,
    SessionFactory,
    item_lightweight_fingerprint,
)
from shelfresolver.services.fuzzy_learner import FuzzyFingerprintLearner

logger = logging.getLogger(__name__)

MANUAL_SOURCE = "vision"


def needs_review(result: LookupResult) -> bool:
    """AI-derived results are reviewed when their confidence is missing or low."""
    if not result.via_ai:
        return False
    return result.ai_confidence is None or result.ai_confidence < AI_REVIEW_CONFIDENCE_THRESHOLD


def result_source(result: LookupResult) -> str:
    if isinstance(result.enrichment, AiResolved):
        return AI_PROVIDER
    if isinstance(result.enrichment, ProviderResolved):
        return result.enrichment.provider
    return MANUAL_SOURCE


class ShelfPipeline:
    """Runs the resolution stages for one shelf photo at a time."""

    def __init__(
        self,
        registry: CatalogRegistry,
        session_factory: SessionFactory,
        *,
        matcher: FingerprintMatcher | None = None,
        enricher: AiEnricher | None = None,
        learner: FuzzyFingerprintLearner | None = None,
    ) -> None:
        self.registry = registry
        self.session_factory = session_factory
        self.matcher = matcher or FingerprintMatcher(session_factory)
        self.enricher = enricher or AiEnricher()
        self.learner = learner or FuzzyFingerprintLearner()

    async def run(
        self,
        user_id: str,
        shelf_id: str,
        shelf_type: str,
        raw_items: list[dict[str, Any]],
    ) -> PipelineReport:
        """Resolve raw vision records onto a user's shelf."""
        items = sanitize_extracted_items(raw_items, shelf_type)
        report = PipelineReport(
            user_id=user_id,
            shelf_id=shelf_id,
            shelf_type=shelf_type,
            dropped=len(raw_items) - len(items),
        )
        logger.info(
            "shelf_pipeline_started",
            extra={"shelf_id": shelf_id, "shelf_type": shelf_type, "item_count": len(items)},
        )
        if not items:
            return report

        outcomes: dict[int, ItemOutcome] = {}

        matched = await self.matcher.match(items, user_id, shelf_id)
        for outcome in matched.matched:
            outcomes[outcome.index] = outcome

        service = self.registry.for_shelf_type(shelf_type)
        results = await self.resolve(service, shelf_type, matched.remaining)

        for result in results:
            outcomes[result.input.index] = await self.apply(
                service, result, user_id, shelf_id, shelf_type
            )

        report.outcomes = [outcomes[item.index] for item in items]
        logger.info(
            "shelf_pipeline_finished",
            extra={"shelf_id": shelf_id, **report.summary},
        )
        return report

    async def resolve(
        self,
        service: CatalogService | None,
        shelf_type: str,
        items: list[ExtractedItem],
    ) -> list[LookupResult]:
        """Provider first pass, then the gated AI second pass. One result per item."""
        if not items:
            return []
        if service is None:
            logger.warning("No catalog service for shelf type %r", shelf_type)
            return [LookupResult.unresolved(item) for item in items]

        results = await service.lookup_first_pass(items)
        unresolved = [result for result in results if not result.resolved]

        run_second_pass = service.should_run_second_pass(shelf_type, len(unresolved))
        logger.info(
            "second_pass_gate",
            extra={
                "provider": service.provider_name,
                "shelf_type": shelf_type,
                "unresolved_count": len(unresolved),
                "enabled": service.enable_second_pass,
                "run": run_second_pass,
            },
        )
        if not run_second_pass:
            return results

        enriched = await self.enricher.enrich(service, unresolved)
        by_index = {result.input.index: result for result in enriched}
        return [
            result if result.resolved else by_index.get(result.input.index, result)
            for result in results
        ]

    async def apply(
        self,
        service: CatalogService | None,
        result: LookupResult,
        user_id: str,
        shelf_id: str,
        shelf_type: str,
    ) -> ItemOutcome:
        """Persist one result in its own transaction."""
        item = result.input
        try:
            async with self.session_factory() as session, session.begin():
                payload = (
                    service.build_collectable_payload(
                        result, item, item_lightweight_fingerprint(item)
                    )
                    if service is not None
                    else None
                )
                if payload is None:
                    return await self.add_manual(session, item, user_id, shelf_id, shelf_type)

                collectable, created = await upsert_collectable(session, payload)
                confidence = result.ai_confidence
                if result.via_ai:
                    await self.learner.learn(session, collectable, item, confidence)

                link, link_created = await link_collectable_to_shelf(
                    session,
                    user_id,
                    shelf_id,
                    collectable.id,
                    item.user_collection_metadata(),
                )
                outcome = ItemOutcome(
                    index=item.index,
                    title=item.title,
                    status=OutcomeStatus.LINKED if link_created else OutcomeStatus.EXISTING,
                    source=result_source(result),
                    link_id=link.id,
                    collectable_id=collectable.id,
                    needs_review=needs_review(result),
                    confidence=confidence,
                )
                logger.info(
                    "item_applied",
                    extra={
                        "status": outcome.status.value,
                        "source": outcome.source,
                        "collectable_id": collectable.id,
                        "collectable_created": created,
                        "needs_review": outcome.needs_review,
                        **item.summary(),
                    },
                )
                return outcome
        except Exception as e:
            logger.exception("item_apply_failed", extra=item.summary())
            error = str(e)

        try:
            async with self.session_factory() as session, session.begin():
                outcome = await self.add_manual(session, item, user_id, shelf_id, shelf_type)
        except Exception as e:
            logger.exception("manual_entry_failed", extra=item.summary())
            # Nothing was stored; report the item so the batch can go on
            return ItemOutcome(
                index=item.index,
                title=item.title,
                status=OutcomeStatus.MANUAL_ADDED,
                source=MANUAL_SOURCE,
                needs_review=True,
                error=f"{error}; manual entry failed: {e}",
            )
        outcome.error = error
        return outcome

    async def add_manual(
        self,
        session: AsyncSession,
        item: ExtractedItem,
        user_id: str,
        shelf_id: str,
        shelf_type: str,
    ) -> ItemOutcome:
        manual, link = await create_manual_entry(session, user_id, shelf_id, item, shelf_type)
        logger.info("manual_entry_added", extra={"manual_id": manual.id, **item.summary()})
        return ItemOutcome(
            index=item.index,
            title=item.title,
            status=OutcomeStatus.MANUAL_ADDED,
            source=MANUAL_SOURCE,
            link_id=link.id,
            manual_id=manual.id,
            needs_review=True,
        )
