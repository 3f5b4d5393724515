"""
Catalog service contract shared by all provider adapters.

A CatalogService wraps one external metadata provider for one media
domain. Subclasses implement the provider-specific `safe_lookup` search
and `map_entity` mapping; this base class supplies the parts every
provider shares:

- capability checks (`supports_shelf_type`, `should_run_second_pass`)
- the bounded, failure-isolating first pass (`lookup_first_pass`)
- the retry policy (`with_retries`): exponential backoff on 429, linear
  backoff on timeout, immediate None on 404, None on 401 unless the
  subclass can refresh credentials
- canonical payload finalization (`build_collectable_payload`)

The HTTP client is owned by the adapter instance unless injected. Close it
with `aclose()` or use the adapter as an async context manager.
"""

import asyncio
import copy
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx

from shelfresolver.models.collectable import CollectablePayload
from shelfresolver.models.domain import MediaDomain, resolve_domain
from shelfresolver.models.enrichment import AiResolved, LookupResult, ProviderResolved
from shelfresolver.models.extracted_item import ExtractedItem
from shelfresolver.models.failure import (
    ProviderError,
    ProviderNotFoundError,
    ProviderRateLimitedError,
    ProviderTimeoutError,
    ProviderUnauthorizedError,
)
from shelfresolver.providers.http import request_json
from shelfresolver.services.fingerprint import make_collectable_fingerprint
from shelfresolver.services.worker_pool import run_bounded

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]

# Backoff base (seconds) for HTTP 429, doubled per attempt
RATE_LIMIT_BACKOFF = 0.5

_YEAR = re.compile(r"\b(\d{4})\b")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_string(value: Any) -> str:
    """Trimmed string form of a value; "" for None."""
    if value is None:
        return ""
    return str(value).strip()


def normalize_compare(value: Any) -> str:
    """Lowercased alphanumeric form used when scoring candidates."""
    return _NON_ALNUM.sub(" ", normalize_string(value).lower()).strip()


def extract_year(value: Any) -> str | None:
    """First four-digit year found in a value."""
    match = _YEAR.search(normalize_string(value))
    return match.group(1) if match else None


class CatalogService:
    """Base class for provider adapters."""

    provider_name: str = ""
    domain: MediaDomain = MediaDomain.BOOK

    # Linear backoff base (seconds) for timeouts, multiplied by attempt + 1
    timeout_backoff: float = 1.0

    def __init__(
        self,
        *,
        timeout: float,
        concurrency: int,
        retries: int,
        enable_second_pass: bool = False,
        client: httpx.AsyncClient | None = None,
        sleep: SleepFunc | None = None,
    ) -> None:
        self.concurrency = concurrency
        self.retries = retries
        self.enable_second_pass = enable_second_pass
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._sleep = sleep or asyncio.sleep
        self._warned_unconfigured = False

    # --- Lifecycle ---

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "CatalogService":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # --- Capabilities ---

    def supports_shelf_type(self, shelf_type: str | None) -> bool:
        return resolve_domain(shelf_type) == self.domain

    def should_run_second_pass(self, shelf_type: str | None, unresolved_count: int) -> bool:
        return (
            self.enable_second_pass
            and unresolved_count > 0
            and self.supports_shelf_type(shelf_type)
        )

    def missing_configuration(self) -> str | None:
        """Name of a missing required setting, or None when callable."""
        return None

    def is_configured(self) -> bool:
        missing = self.missing_configuration()
        if missing is None:
            return True
        if not self._warned_unconfigured:
            logger.warning(
                "%s is not configured (missing %s); lookups are skipped",
                self.provider_name,
                missing,
            )
            self._warned_unconfigured = True
        return False

    # --- Lookups ---

    async def lookup_first_pass(
        self,
        items: list[ExtractedItem],
        concurrency: int | None = None,
        retries: int | None = None,
    ) -> list[LookupResult]:
        """
        Look up every item with bounded concurrency.

        Never raises: an item whose lookup fails is returned unresolved.
        Results are in input order.
        """
        if not items:
            return []
        if not self.is_configured():
            return [LookupResult.unresolved(item) for item in items]

        async def worker(_: int, item: ExtractedItem) -> LookupResult:
            try:
                match = await self.safe_lookup(item, retries)
            except Exception:
                logger.exception(
                    "catalog_lookup_failed",
                    extra={"provider": self.provider_name, **item.summary()},
                )
                return LookupResult.unresolved(item)

            result = (
                LookupResult.from_enrichment(item, match)
                if match is not None
                else LookupResult.unresolved(item)
            )
            logger.info(
                "catalog_lookup_finished",
                extra={
                    "provider": self.provider_name,
                    "status": result.status.value,
                    "score": match.score if match is not None else None,
                    **item.summary(),
                },
            )
            return result

        return await run_bounded(items, worker, concurrency or self.concurrency)

    async def safe_lookup(
        self, item: ExtractedItem, retries: int | None = None
    ) -> ProviderResolved | None:
        """Resolve one item against the provider; None when nothing matches."""
        raise NotImplementedError

    async def with_retries(
        self,
        operation: Callable[[], Awaitable[T]],
        retries: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> T | None:
        """
        Run a provider call under the retry policy.

        Returns the operation's result, or None when the resource does not
        exist, credentials are rejected, retries run out, or the provider
        fails in a way that is not worth retrying.

        A 401 gets exactly one credential refresh and retry per call,
        independent of the transient retry budget.
        """
        retries = self.retries if retries is None else retries
        context = context or {}
        attempt = 0
        refreshed = False
        while True:
            try:
                return await operation()
            except ProviderNotFoundError:
                return None
            except ProviderUnauthorizedError:
                if not refreshed:
                    refreshed = True
                    if await self.refresh_credentials():
                        continue
                logger.warning("%s rejected credentials", self.provider_name, extra=context)
                return None
            except ProviderRateLimitedError:
                if attempt >= retries:
                    logger.warning("%s rate limit retries exhausted", self.provider_name)
                    return None
                backoff = RATE_LIMIT_BACKOFF * 2**attempt
                logger.warning(
                    "%s rate limited; retrying in %.1fs",
                    self.provider_name,
                    backoff,
                    extra={**context, "attempt": attempt},
                )
            except ProviderTimeoutError:
                if attempt >= retries:
                    logger.warning("%s timeout retries exhausted", self.provider_name)
                    return None
                backoff = self.timeout_backoff * (attempt + 1)
                logger.warning(
                    "%s request timed out; retrying in %.1fs",
                    self.provider_name,
                    backoff,
                    extra={**context, "attempt": attempt},
                )
            except ProviderError as e:
                logger.warning("%s lookup failed: %s", self.provider_name, e, extra=context)
                return None
            await self._sleep(backoff)
            attempt += 1

    async def refresh_credentials(self) -> bool:
        """Refresh credentials after a 401; True if a retry is worthwhile."""
        return False

    async def get_json(self, url: str, **kwargs: Any) -> Any:
        return await request_json(self._client, self.provider_name, "GET", url, **kwargs)

    # --- Canonical mapping ---

    def map_entity(self, match: ProviderResolved, item: ExtractedItem) -> CollectablePayload | None:
        """Map a provider entity into the canonical shape."""
        raise NotImplementedError

    def build_collectable_payload(
        self,
        result: LookupResult,
        item: ExtractedItem,
        lightweight_fingerprint: str | None = None,
    ) -> CollectablePayload | None:
        """
        Produce the canonical payload for a resolved lookup.

        Returns None for unresolved results or enrichments this adapter
        cannot map. A strong fingerprint is attached when the mapping did
        not set one.
        """
        if not result.resolved:
            return None

        enrichment = result.enrichment
        if isinstance(enrichment, AiResolved):
            payload = copy.deepcopy(enrichment.collectable)
        elif isinstance(enrichment, ProviderResolved):
            if enrichment.provider != self.provider_name:
                return None
            payload = self.map_entity(enrichment, item)
        else:
            return None

        if payload is None or not payload.title:
            return None

        payload.kind = payload.kind or self.domain.value
        payload.lightweight_fingerprint = payload.lightweight_fingerprint or lightweight_fingerprint
        if not payload.fingerprint:
            payload.fingerprint = make_collectable_fingerprint(
                title=payload.title,
                creator=payload.primary_creator,
                year=payload.year,
                media_type=payload.kind,
                platform=payload.platform,
            )
        return payload
