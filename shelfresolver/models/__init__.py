from shelfresolver.models.collectable import (
    CollectablePayload,
    ImageRef,
    SourceRecord,
    coerce_confidence,
    unique_strings,
)
from shelfresolver.models.db import (
    Base,
    CollectableDB,
    CollectableIdentifierDB,
    FuzzyFingerprintDB,
    ManualEntryDB,
    UserCollectionDB,
)
from shelfresolver.models.domain import (
    DOMAIN_STRATEGIES,
    DomainStrategy,
    MediaDomain,
    get_strategy,
    resolve_domain,
)
from shelfresolver.models.enrichment import (
    AiResolved,
    Enrichment,
    LookupResult,
    LookupStatus,
    ProviderResolved,
)
from shelfresolver.models.extracted_item import ExtractedItem, sanitize_extracted_items
from shelfresolver.models.failure import (
    AiEnrichmentError,
    FailureKind,
    KnownError,
    ProviderConfigurationError,
    ProviderError,
    ProviderNotFoundError,
    ProviderRateLimitedError,
    ProviderTimeoutError,
    ProviderUnauthorizedError,
    TransientProviderError,
)
from shelfresolver.models.outcome import ItemOutcome, OutcomeStatus, PipelineReport

__all__ = [
    # Canonical shape
    "CollectablePayload",
    "ImageRef",
    "SourceRecord",
    "coerce_confidence",
    "unique_strings",
    # ORM
    "Base",
    "CollectableDB",
    "CollectableIdentifierDB",
    "FuzzyFingerprintDB",
    "ManualEntryDB",
    "UserCollectionDB",
    # Domains
    "DOMAIN_STRATEGIES",
    "DomainStrategy",
    "MediaDomain",
    "get_strategy",
    "resolve_domain",
    # Lookups
    "AiResolved",
    "Enrichment",
    "LookupResult",
    "LookupStatus",
    "ProviderResolved",
    "ExtractedItem",
    "sanitize_extracted_items",
    # Failures
    "AiEnrichmentError",
    "FailureKind",
    "KnownError",
    "ProviderConfigurationError",
    "ProviderError",
    "ProviderNotFoundError",
    "ProviderRateLimitedError",
    "ProviderTimeoutError",
    "ProviderUnauthorizedError",
    "TransientProviderError",
    # Outcomes
    "ItemOutcome",
    "OutcomeStatus",
    "PipelineReport",
]
