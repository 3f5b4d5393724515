"""
AI second pass over items the catalog providers could not resolve.

Unresolved items for one shelf are deduplicated, capped, and sent to
Claude in a single request with a forced tool call. Each returned
correction becomes a canonical collectable (AiResolved). When enabled,
the corrected title and creator are looked up against the provider again;
a provider hit replaces the AI payload while the AI confidence is kept
on the result.

The enricher never raises for AI or provider failures: affected items are
returned unresolved and the orchestrator turns them into manual entries.
"""

import dataclasses
import json
import logging
import re
from typing import Any

import anthropic
from anthropic.types import MessageParam, TextBlock, ToolParam, ToolUseBlock
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from shelfresolver.config import settings
from shelfresolver.models.collectable import (
    CollectablePayload,
    ImageRef,
    SourceRecord,
    coerce_confidence,
    unique_strings,
)
from shelfresolver.models.domain import DomainStrategy, get_strategy
from shelfresolver.models.enrichment import AiResolved, LookupResult
from shelfresolver.models.extracted_item import ExtractedItem
from shelfresolver.models.failure import AiEnrichmentError
from shelfresolver.providers.base import CatalogService, extract_year, normalize_string
from shelfresolver.services.fingerprint import normalize_fuzzy
from shelfresolver.services.merge import merge_identifiers
from shelfresolver.services.worker_pool import run_bounded

logger = logging.getLogger(__name__)

AI_PROVIDER = "anthropic"
TOOL_NAME = "record_corrections"

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


# =============================================================================
# RESPONSE SCHEMA
# =============================================================================


class AiCorrection(BaseModel):
    """One corrected item as returned by the model."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    input_id: str | None = Field(default=None, alias="inputId")
    title: str | None = None
    subtitle: str | None = None
    primary_creator: str | None = Field(default=None, alias="primaryCreator")
    publisher: str | None = None
    description: str | None = None
    year: str | int | None = None
    format: str | None = None
    platform: str | None = None
    region: str | None = None
    genres: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    identifiers: dict[str, list[str] | str] = Field(default_factory=dict)
    cover_image: str | None = Field(default=None, alias="coverImage")
    source_url: str | None = Field(default=None, alias="sourceUrl")
    confidence: float | None = None


class AiCorrectionBatch(BaseModel):
    """Tool input: corrections for a batch of items."""

    items: list[AiCorrection] = Field(default_factory=list)


CORRECTION_TOOL: ToolParam = {
    "name": TOOL_NAME,
    "description": (
        "Record the corrected metadata for every item in the request. "
        "Echo each item's inputId. Use confidence 0 when the item cannot be identified."
    ),
    "input_schema": AiCorrectionBatch.model_json_schema(by_alias=True),
}

INSTRUCTIONS = (
    "The items below were read from a photo of a shelf by an OCR model and may contain "
    "misspellings, truncations or swapped fields. For each item return the canonical "
    "metadata of the real release it most likely refers to, and a confidence between 0 "
    "and 1. Never invent identifiers you are unsure of. Call the {tool} tool once with "
    "all items. The creator field holds the item's {creator_label}."
)


def dedupe_key(item: ExtractedItem) -> tuple[str, str, str]:
    """Items with the same normalized title, creator and platform share one request slot."""
    return (
        normalize_fuzzy(item.title),
        normalize_fuzzy(item.creator),
        normalize_fuzzy(item.platform),
    )


def normalize_ai_identifiers(
    strategy: DomainStrategy, raw: dict[str, list[str] | str]
) -> dict[str, Any]:
    """Move AI identifier keys onto the canonical identifier paths for the domain."""
    out: dict[str, Any] = {}
    paths = dict(strategy.identifier_paths)
    for key, values in raw.items():
        path = paths.get(key.strip().lower().replace("-", "").replace("_", ""))
        cleaned = unique_strings(values)
        if not path or not cleaned:
            continue
        nested: Any = cleaned
        for part in reversed(path.split(".")):
            nested = {part: nested}
        out = merge_identifiers(out, nested)
    return out


def build_ai_collectable(
    strategy: DomainStrategy, correction: AiCorrection, item: ExtractedItem
) -> CollectablePayload | None:
    """Canonical payload for a correction, or None when it is unusable."""
    title = normalize_string(correction.title)
    confidence = coerce_confidence(correction.confidence)
    if not title or not confidence:
        return None

    primary_creator = normalize_string(correction.primary_creator) or item.creator
    cover = normalize_string(correction.cover_image)
    images = (
        [
            ImageRef(
                kind="cover",
                provider=AI_PROVIDER,
                url_small=cover,
                url_medium=cover,
                url_large=cover,
            )
        ]
        if cover
        else []
    )
    physical_format = normalize_string(correction.format) or item.format
    source_url = normalize_string(correction.source_url)

    return CollectablePayload(
        kind=strategy.domain.value,
        title=title,
        subtitle=normalize_string(correction.subtitle) or None,
        description=normalize_string(correction.description) or item.description,
        primary_creator=primary_creator,
        creators=unique_strings([primary_creator]),
        publisher=normalize_string(correction.publisher) or item.publisher,
        year=extract_year(correction.year) or item.year,
        platform=normalize_string(correction.platform) or item.platform,
        region=normalize_string(correction.region) or item.region,
        tags=unique_strings([*correction.tags, *item.tags]),
        genre=unique_strings([*correction.genres, *item.genres]),
        identifiers=merge_identifiers(
            item.identifiers, normalize_ai_identifiers(strategy, correction.identifiers)
        ),
        images=images,
        physical={"format": physical_format} if physical_format else {},
        sources=[
            SourceRecord(
                provider=AI_PROVIDER,
                urls={"source": source_url} if source_url else {},
                raw={"confidence": confidence, "inputId": correction.input_id},
            )
        ],
    )


def corrected_item(item: ExtractedItem, collectable: CollectablePayload) -> ExtractedItem:
    """The extracted item with the AI's corrections applied, for a provider re-lookup."""
    return dataclasses.replace(
        item,
        title=collectable.title,
        creator=collectable.primary_creator or item.creator,
        year=collectable.year or item.year,
        publisher=collectable.publisher or item.publisher,
        platform=collectable.platform or item.platform,
        region=collectable.region or item.region,
        identifiers=merge_identifiers(item.identifiers, collectable.identifiers),
    )


def parse_corrections(content: list[Any]) -> list[AiCorrection]:
    """
    Read corrections from response content blocks.

    The forced tool call is preferred. If the model answered in text
    instead, the first JSON object in the text is used. Individual items
    that fail validation are dropped.
    """
    payload: Any = None
    for block in content:
        if isinstance(block, ToolUseBlock) and block.name == TOOL_NAME:
            payload = block.input
            break

    if payload is None:
        text = "".join(block.text for block in content if isinstance(block, TextBlock))
        match = _JSON_OBJECT.search(text)
        if not match:
            msg = "AI response contained neither a tool call nor JSON"
            raise AiEnrichmentError(msg, detail=text[:200])
        try:
            payload = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            msg = "AI response JSON could not be parsed"
            raise AiEnrichmentError(msg, detail=str(e)) from e

    raw_items = payload.get("items") if isinstance(payload, dict) else payload
    if not isinstance(raw_items, list):
        msg = "AI response did not contain an items list"
        raise AiEnrichmentError(msg)

    corrections: list[AiCorrection] = []
    for raw in raw_items:
        try:
            corrections.append(AiCorrection.model_validate(raw))
        except ValidationError as e:
            logger.warning("Dropping malformed AI correction: %s", e.errors()[:1])
    return corrections


# =============================================================================
# ENRICHER
# =============================================================================


class AiEnricher:
    """Runs the AI second pass for one catalog service's unresolved items."""

    def __init__(
        self,
        client: anthropic.AsyncAnthropic | None = None,
        *,
        model: str | None = None,
        max_tokens: int | None = None,
        batch_max: int | None = None,
        relookup: bool | None = None,
    ) -> None:
        if client is None and settings.anthropic_api_key:
            client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
        self.client = client
        self.model = model or settings.ai_model
        self.max_tokens = max_tokens or settings.ai_max_tokens
        self.batch_max = batch_max or settings.ai_batch_max
        self.relookup = settings.ai_relookup_enabled if relookup is None else relookup

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    async def enrich(
        self, service: CatalogService, unresolved: list[LookupResult]
    ) -> list[LookupResult]:
        """
        Second-pass results for `unresolved`, one per input and in input order.

        Items the AI could not identify (no title, zero or missing
        confidence) and items beyond the batch cap stay unresolved.
        """
        if not unresolved:
            return []
        if not self.is_configured:
            logger.warning("AI second pass skipped: anthropic_api_key is not set")
            return [LookupResult.unresolved(result.input) for result in unresolved]

        strategy = get_strategy(service.domain)

        # Representative item per dedupe key, in first-seen order
        batch: dict[tuple[str, str, str], ExtractedItem] = {}
        for result in unresolved:
            item = result.input
            if not normalize_string(item.title):
                continue
            key = dedupe_key(item)
            if key in batch:
                continue
            if len(batch) >= self.batch_max:
                logger.warning(
                    "AI batch capped at %d items",
                    self.batch_max,
                    extra={"provider": service.provider_name, **item.summary()},
                )
                continue
            batch[key] = item

        if not batch:
            return [LookupResult.unresolved(result.input) for result in unresolved]

        representatives = list(batch.values())
        try:
            corrections = await self._request_corrections(strategy, representatives)
        except (anthropic.APIError, AiEnrichmentError) as e:
            logger.warning(
                "AI second pass failed: %s",
                e,
                extra={"provider": service.provider_name, "item_count": len(representatives)},
            )
            return [LookupResult.unresolved(result.input) for result in unresolved]

        by_input_id = {c.input_id: c for c in corrections if c.input_id}
        by_key: dict[tuple[str, str, str], LookupResult] = {}
        for position, item in enumerate(representatives):
            correction = by_input_id.get(self._input_id(item))
            if (
                correction is None
                and position < len(corrections)
                and corrections[position].input_id is None
            ):
                # Model omitted the inputId; response order is the only link left
                correction = corrections[position]
            collectable = (
                build_ai_collectable(strategy, correction, item) if correction else None
            )
            if collectable is None:
                by_key[dedupe_key(item)] = LookupResult.unresolved(item)
                continue
            confidence = collectable.confidence
            result = LookupResult.from_enrichment(item, AiResolved(collectable, confidence))
            result.ai_confidence = confidence
            by_key[dedupe_key(item)] = result

        if self.relookup:
            await self._relookup(service, by_key)

        enriched: list[LookupResult] = []
        for result in unresolved:
            shared = by_key.get(dedupe_key(result.input))
            if shared is None or not shared.resolved:
                enriched.append(LookupResult.unresolved(result.input))
                continue
            enriched.append(dataclasses.replace(shared, input=result.input))

        resolved_count = sum(1 for result in enriched if result.resolved)
        logger.info(
            "AI second pass complete",
            extra={
                "provider": service.provider_name,
                "item_count": len(unresolved),
                "batch_size": len(representatives),
                "resolved_count": resolved_count,
            },
        )
        return enriched

    @staticmethod
    def _input_id(item: ExtractedItem) -> str:
        return f"item-{item.index + 1}"

    async def _request_corrections(
        self, strategy: DomainStrategy, items: list[ExtractedItem]
    ) -> list[AiCorrection]:
        request_items = [
            {
                "inputId": self._input_id(item),
                "title": item.title,
                "creator": item.creator,
                "publisher": item.publisher,
                "year": item.year,
                "format": item.format,
                "platform": item.platform,
                "region": item.region,
                "notes": item.notes,
                "identifiers": item.identifiers,
            }
            for item in items
        ]
        messages: list[MessageParam] = [
            {
                "role": "user",
                "content": "\n\n".join(
                    [
                        INSTRUCTIONS.format(tool=TOOL_NAME, creator_label=strategy.creator_label),
                        json.dumps({"items": request_items}, ensure_ascii=False),
                    ]
                ),
            }
        ]

        if self.client is None:
            msg = "AI client is not configured"
            raise AiEnrichmentError(msg)
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=strategy.archivist_prompt,
            tools=[CORRECTION_TOOL],
            tool_choice={"type": "tool", "name": TOOL_NAME},
            messages=messages,
        )

        usage = getattr(response, "usage", None)
        if usage:
            logger.info(
                "token_usage",
                extra={
                    "input_tokens": usage.input_tokens,
                    "output_tokens": usage.output_tokens,
                    "domain": strategy.domain.value,
                },
            )

        return parse_corrections(list(response.content))

    async def _relookup(
        self, service: CatalogService, results: dict[tuple[str, str, str], LookupResult]
    ) -> None:
        """Replace AI payloads with provider matches found for the corrected items."""
        candidates = [
            (key, result, result.enrichment)
            for key, result in results.items()
            if isinstance(result.enrichment, AiResolved)
        ]
        if not candidates:
            return

        async def worker(
            _: int, candidate: tuple[tuple[str, str, str], LookupResult, AiResolved]
        ) -> None:
            key, result, ai = candidate
            item = corrected_item(result.input, ai.collectable)
            try:
                match = await service.safe_lookup(item)
            except Exception:
                logger.exception(
                    "AI re-lookup failed",
                    extra={"provider": service.provider_name, **item.summary()},
                )
                return
            if match is None:
                return
            replaced = LookupResult.from_enrichment(result.input, match)
            replaced.ai_confidence = result.ai_confidence
            results[key] = replaced
            logger.info(
                "AI correction re-resolved by provider",
                extra={"provider": service.provider_name, "score": match.score, **item.summary()},
            )

        await run_bounded(candidates, worker, service.concurrency)
