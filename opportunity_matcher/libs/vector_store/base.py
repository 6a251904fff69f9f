"""
Vector store interface.

The index holds one EmbeddingRecord per catalog item plus one preference
vector per user. Implementations must keep ``upsert`` and ``delete``
idempotent, and ``query`` must honour the ranking contract: at most ``k``
results, similarity at or above ``min_similarity``, sorted by similarity
descending with ties broken by the most recent ``updated_at``.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from opportunity_matcher.models.embedding import (
    EmbeddingRecord,
    SimilarityMatch,
    UserPreferenceVector,
)


class VectorStore(ABC):
    """Abstract base class for vector indexes."""

    @abstractmethod
    async def ensure_schema(self) -> None:
        """Create whatever storage the index needs. Safe to call repeatedly."""
        pass

    @abstractmethod
    async def upsert(
        self,
        item_id: str,
        vector: List[float],
        metadata: Dict[str, Any],
        updated_at: Optional[datetime] = None,
    ) -> bool:
        """
        Insert or replace the record for ``item_id``.

        A write whose ``updated_at`` is older than the stored one is ignored.

        Returns:
            True if the record was written, False if a newer one was kept
        """
        pass

    @abstractmethod
    async def delete(self, item_id: str) -> bool:
        """
        Remove the record for ``item_id``.

        Returns:
            True if a record was removed, False if none existed
        """
        pass

    @abstractmethod
    async def get(self, item_id: str) -> Optional[EmbeddingRecord]:
        pass

    @abstractmethod
    async def query(
        self,
        vector: List[float],
        k: int,
        min_similarity: float,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[SimilarityMatch]:
        """
        Nearest-neighbour search by cosine similarity.

        Args:
            vector: Query vector
            k: Maximum number of results
            min_similarity: Results below this cosine similarity are dropped
            exclude_ids: Item ids never to return

        Returns:
            Matches sorted by similarity descending, then ``updated_at`` descending
        """
        pass

    @abstractmethod
    async def list_ids(self) -> Set[str]:
        """Every item id currently in the index."""
        pass

    @abstractmethod
    async def content_hashes(self) -> Dict[str, Optional[str]]:
        """Map of item id to the content hash stored with its record."""
        pass

    @abstractmethod
    async def get_user_preference(self, user_id: str) -> Optional[UserPreferenceVector]:
        pass

    @abstractmethod
    async def save_user_preference(self, preference: UserPreferenceVector) -> None:
        """Overwrite the user's preference vector."""
        pass

    @abstractmethod
    async def stats(self) -> Dict[str, Any]:
        """Record counts and freshness figures for monitoring."""
        pass

    async def close(self) -> None:
        return None
