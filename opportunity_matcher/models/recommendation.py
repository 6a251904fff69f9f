"""
Models for recommendation results, the tunable ranking config and sync runs.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class RecommendationConfig:
    """Process-wide ranking parameters. Immutable: writers publish a new instance."""

    similarity_threshold: float = 0.6
    helpful_ratio: float = 0.7
    sample_size: int = 0
    last_updated: Optional[datetime] = None

    def to_document(self) -> dict:
        return asdict(self)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "RecommendationConfig":
        return cls(
            similarity_threshold=float(document.get("similarity_threshold", 0.6)),
            helpful_ratio=float(document.get("helpful_ratio", 0.7)),
            sample_size=int(document.get("sample_size", 0)),
            last_updated=document.get("last_updated"),
        )


@dataclass
class RecommendationItem:
    """A ranked catalog entry returned to the caller."""

    item_id: str
    similarity: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"item_id": self.item_id, "similarity": self.similarity, **self.metadata}


@dataclass
class RankedList:
    """Ranked results. ``degraded`` marks fallback or low-confidence responses."""

    items: List[RecommendationItem] = field(default_factory=list)
    degraded: bool = False
    reason: Optional[str] = None

    def __len__(self) -> int:
        return len(self.items)

    @property
    def item_ids(self) -> List[str]:
        return [item.item_id for item in self.items]

    def to_dict(self) -> dict:
        return {
            "items": [item.to_dict() for item in self.items],
            "total": len(self.items),
            "degraded": self.degraded,
            "reason": self.reason,
        }


@dataclass
class SyncError:
    id: str
    reason: str


@dataclass
class SyncResult:
    """Outcome of one catalog ↔ index reconciliation run."""

    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    batches: int = 0
    errors: List[SyncError] = field(default_factory=list)
    duration_ms: float = 0.0
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def add_error(self, item_id: str, reason: str) -> None:
        self.errors.append(SyncError(id=item_id, reason=reason))

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "batches": self.batches,
            "errors": [asdict(e) for e in self.errors],
            "duration_ms": round(self.duration_ms, 2),
            "started_at": self.started_at.isoformat(),
        }


@dataclass
class LearningRunResult:
    """Summary of one feedback/learning loop run."""

    events_selected: int = 0
    events_processed: int = 0
    ratings_seen: int = 0
    engagements_seen: int = 0
    users_refreshed: int = 0
    config: Optional[RecommendationConfig] = None
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "events_selected": self.events_selected,
            "events_processed": self.events_processed,
            "ratings_seen": self.ratings_seen,
            "engagements_seen": self.engagements_seen,
            "users_refreshed": self.users_refreshed,
            "config": self.config.to_document() if self.config else None,
            "errors": self.errors,
        }
