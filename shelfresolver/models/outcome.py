"""Per-item outcomes and the run report returned by the shelf pipeline."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class OutcomeStatus(str, Enum):
    """Terminal state of one extracted item."""

    LINKED = "linked"  # new shelf link to a catalog record
    EXISTING = "existing"  # already on the shelf; metadata refreshed
    MANUAL_ADDED = "manual_added"  # unresolved; stored as a manual entry


@dataclass
class ItemOutcome:
    """What happened to one extracted item."""

    index: int
    title: str
    status: OutcomeStatus
    source: str
    link_id: int | None = None
    collectable_id: int | None = None
    manual_id: int | None = None
    needs_review: bool = False
    confidence: float | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "title": self.title,
            "status": self.status.value,
            "source": self.source,
            "itemId": self.link_id,
            "collectableId": self.collectable_id,
            "manualId": self.manual_id,
            "needsReview": self.needs_review,
            "confidence": self.confidence,
            "error": self.error,
        }


@dataclass
class PipelineReport:
    """Outcomes for one pipeline run, ordered by input index."""

    user_id: str
    shelf_id: str
    shelf_type: str
    outcomes: list[ItemOutcome] = field(default_factory=list)
    dropped: int = 0

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def summary(self) -> dict[str, int]:
        return {
            "total": len(self.outcomes),
            "linked": self.count(OutcomeStatus.LINKED),
            "existing": self.count(OutcomeStatus.EXISTING),
            "manualAdded": self.count(OutcomeStatus.MANUAL_ADDED),
            "needsReview": sum(1 for outcome in self.outcomes if outcome.needs_review),
            "dropped": self.dropped,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "shelfId": self.shelf_id,
            "shelfType": self.shelf_type,
            "summary": self.summary,
            "results": [outcome.to_dict() for outcome in self.outcomes],
        }
