"""
Lookup results and their enrichment envelopes.

A lookup either resolves or does not. A resolved lookup carries exactly one
enrichment, which is one of two shapes:

- ProviderResolved: a raw provider entity plus its match score. The adapter
  that produced it maps it into canonical form later.
- AiResolved: a collectable already in canonical form, produced by the AI
  second pass.

Consumers dispatch with isinstance on the envelope type.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from shelfresolver.models.collectable import CollectablePayload
from shelfresolver.models.extracted_item import ExtractedItem


class LookupStatus(str, Enum):
    """Outcome of a provider or AI lookup."""

    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True, slots=True)
class ProviderResolved:
    """A provider match that still needs mapping to the canonical shape."""

    provider: str
    score: float
    entity: dict[str, Any]
    query: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AiResolved:
    """A canonical collectable produced by the AI second pass."""

    collectable: CollectablePayload
    confidence: float | None = None


Enrichment = ProviderResolved | AiResolved


@dataclass(slots=True)
class LookupResult:
    """The result of looking up one extracted item."""

    input: ExtractedItem
    status: LookupStatus = LookupStatus.UNRESOLVED
    enrichment: Enrichment | None = None
    # Set when the AI second pass produced or corrected this result
    ai_confidence: float | None = None

    @property
    def via_ai(self) -> bool:
        return self.ai_confidence is not None or isinstance(self.enrichment, AiResolved)

    @property
    def resolved(self) -> bool:
        return self.status == LookupStatus.RESOLVED and self.enrichment is not None

    @classmethod
    def unresolved(cls, item: ExtractedItem) -> "LookupResult":
        return cls(input=item)

    @classmethod
    def from_enrichment(cls, item: ExtractedItem, enrichment: Enrichment) -> "LookupResult":
        return cls(input=item, status=LookupStatus.RESOLVED, enrichment=enrichment)
