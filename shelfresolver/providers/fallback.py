"""
Ordered provider fallback for one media domain.

A FallbackCatalogService looks an item up against its providers in
priority order and keeps the first hit. Unconfigured providers are
skipped, and a provider that fails outright is logged and passed over.

With a completeness scorer attached, a hit scoring below the threshold
is held as a candidate and the next provider is tried. The first hit at
or above the threshold wins; if none reaches it, the most complete
candidate is returned.
"""

import logging
from collections.abc import Callable

from shelfresolver.models.collectable import CollectablePayload
from shelfresolver.models.enrichment import LookupResult, ProviderResolved
from shelfresolver.models.extracted_item import ExtractedItem
from shelfresolver.providers.base import CatalogService

logger = logging.getLogger(__name__)

CompletenessScorer = Callable[[CollectablePayload | None], float]


class FallbackCatalogService(CatalogService):
    """A domain's providers chained in priority order."""

    def __init__(
        self,
        services: list[CatalogService],
        *,
        completeness: CompletenessScorer | None = None,
        min_score: float = 0,
    ) -> None:
        if not services:
            msg = "A fallback chain needs at least one provider"
            raise ValueError(msg)
        primary = services[0]
        # Shares the primary's client; the children own theirs
        super().__init__(
            timeout=0,
            concurrency=primary.concurrency,
            retries=primary.retries,
            enable_second_pass=primary.enable_second_pass,
            client=primary._client,
        )
        self.services = services
        self.domain = primary.domain
        self.provider_name = "+".join(service.provider_name for service in services)
        self.completeness = completeness
        self.min_score = min_score
        self._by_provider = {service.provider_name: service for service in services}

    async def aclose(self) -> None:
        for service in self.services:
            await service.aclose()

    def missing_configuration(self) -> str | None:
        missing = [service.missing_configuration() for service in self.services]
        if any(name is None for name in missing):
            return None
        return ", ".join(name for name in missing if name)

    async def safe_lookup(
        self, item: ExtractedItem, retries: int | None = None
    ) -> ProviderResolved | None:
        best: ProviderResolved | None = None
        best_score = -1.0
        for service in self.services:
            if not service.is_configured():
                continue
            try:
                match = await service.safe_lookup(item, retries)
            except Exception:
                logger.exception(
                    "catalog_fallback_provider_failed",
                    extra={"provider": service.provider_name, **item.summary()},
                )
                continue
            if match is None:
                continue
            if self.completeness is None:
                return match

            score = self.completeness(service.map_entity(match, item))
            if score >= self.min_score:
                return match
            logger.info(
                "catalog_fallback_incomplete",
                extra={
                    "provider": service.provider_name,
                    "completeness": score,
                    "min_score": self.min_score,
                    **item.summary(),
                },
            )
            if score > best_score:
                best, best_score = match, score
        return best

    def map_entity(self, match: ProviderResolved, item: ExtractedItem) -> CollectablePayload | None:
        service = self._by_provider.get(match.provider)
        return service.map_entity(match, item) if service is not None else None

    def build_collectable_payload(
        self,
        result: LookupResult,
        item: ExtractedItem,
        lightweight_fingerprint: str | None = None,
    ) -> CollectablePayload | None:
        """Delegate to the provider that produced the match."""
        enrichment = result.enrichment
        service = self.services[0]
        if isinstance(enrichment, ProviderResolved):
            service = self._by_provider.get(enrichment.provider)
            if service is None:
                return None
        return service.build_collectable_payload(result, item, lightweight_fingerprint)
