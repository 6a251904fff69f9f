"""
Models for vector index records and similarity results.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class EmbeddingRecord:
    """One vector per catalog item, keyed by ``item_id``."""

    item_id: str
    vector: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None

    @property
    def content_hash(self) -> Optional[str]:
        return self.metadata.get("content_hash")


@dataclass
class UserPreferenceVector:
    """Preference vector for a user. Overwritten on every recompute."""

    user_id: str
    vector: List[float]
    source_text: str
    updated_at: Optional[datetime] = None


@dataclass
class SimilarityMatch:
    """A single nearest-neighbour hit returned by the vector store."""

    item_id: str
    similarity: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Convert SimilarityMatch to dictionary format."""
        return {
            "item_id": self.item_id,
            "similarity": self.similarity,
            "metadata": self.metadata,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
