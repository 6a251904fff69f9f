"""
In-process vector index backed by numpy.

Used for local development and tests. Every public method takes the
store lock, so a reader never observes a half-written record.
"""

import asyncio
from datetime import datetime, UTC
from typing import Any, Dict, Iterable, List, Optional, Set

import numpy as np

from opportunity_matcher.libs.vector_store.base import VectorStore
from opportunity_matcher.log.logging import logger
from opportunity_matcher.models.embedding import (
    EmbeddingRecord,
    SimilarityMatch,
    UserPreferenceVector,
)


def cosine_similarity(matrix: np.ndarray, vector: np.ndarray) -> np.ndarray:
    """Cosine similarity of every row in ``matrix`` against ``vector``. Zero vectors score 0."""
    row_norms = np.linalg.norm(matrix, axis=1)
    query_norm = np.linalg.norm(vector)
    denominator = row_norms * query_norm
    scores = np.zeros(matrix.shape[0], dtype=np.float64)
    nonzero = denominator > 0
    scores[nonzero] = (matrix[nonzero] @ vector) / denominator[nonzero]
    return scores


class InMemoryVectorStore(VectorStore):
    """Dictionary-backed VectorStore."""

    def __init__(self):
        self._records: Dict[str, EmbeddingRecord] = {}
        self._preferences: Dict[str, UserPreferenceVector] = {}
        self._lock = asyncio.Lock()

    async def ensure_schema(self) -> None:
        return None

    async def upsert(
        self,
        item_id: str,
        vector: List[float],
        metadata: Dict[str, Any],
        updated_at: Optional[datetime] = None,
    ) -> bool:
        updated_at = updated_at or datetime.now(UTC)
        async with self._lock:
            existing = self._records.get(item_id)
            if existing is not None and existing.updated_at and existing.updated_at > updated_at:
                logger.debug("Ignoring stale upsert", item_id=item_id)
                return False
            self._records[item_id] = EmbeddingRecord(
                item_id=item_id,
                vector=list(vector),
                metadata=dict(metadata),
                updated_at=updated_at,
            )
            return True

    async def delete(self, item_id: str) -> bool:
        async with self._lock:
            return self._records.pop(item_id, None) is not None

    async def get(self, item_id: str) -> Optional[EmbeddingRecord]:
        async with self._lock:
            return self._records.get(item_id)

    async def query(
        self,
        vector: List[float],
        k: int,
        min_similarity: float,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[SimilarityMatch]:
        if k <= 0:
            return []
        excluded = set(exclude_ids or ())

        async with self._lock:
            candidates = [r for r in self._records.values() if r.item_id not in excluded]
        if not candidates:
            return []

        matrix = np.asarray([r.vector for r in candidates], dtype=np.float64)
        scores = cosine_similarity(matrix, np.asarray(vector, dtype=np.float64))

        hits = [
            (float(score), record)
            for score, record in zip(scores, candidates)
            if score >= min_similarity
        ]
        min_time = datetime.min.replace(tzinfo=UTC)
        hits.sort(key=lambda hit: (hit[0], hit[1].updated_at or min_time), reverse=True)

        return [
            SimilarityMatch(
                item_id=record.item_id,
                similarity=score,
                metadata=dict(record.metadata),
                updated_at=record.updated_at,
            )
            for score, record in hits[:k]
        ]

    async def list_ids(self) -> Set[str]:
        async with self._lock:
            return set(self._records)

    async def content_hashes(self) -> Dict[str, Optional[str]]:
        async with self._lock:
            return {item_id: r.content_hash for item_id, r in self._records.items()}

    async def get_user_preference(self, user_id: str) -> Optional[UserPreferenceVector]:
        async with self._lock:
            return self._preferences.get(user_id)

    async def save_user_preference(self, preference: UserPreferenceVector) -> None:
        if preference.updated_at is None:
            preference.updated_at = datetime.now(UTC)
        async with self._lock:
            self._preferences[preference.user_id] = preference

    async def stats(self) -> Dict[str, Any]:
        async with self._lock:
            timestamps = [r.updated_at for r in self._records.values() if r.updated_at]
            return {
                "backend": "memory",
                "embedding_count": len(self._records),
                "user_vector_count": len(self._preferences),
                "last_updated": max(timestamps).isoformat() if timestamps else None,
            }
