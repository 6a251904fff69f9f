"""
PostgreSQL + pgvector implementation of the vector store.

Each row write is its own statement and transaction; a sync batch is not
transactional as a whole. Similarity is ``1 - cosine distance``.
"""

import time
from datetime import datetime, UTC
from typing import Any, Dict, Iterable, List, Optional, Set

import numpy as np
import psycopg
from psycopg.types.json import Jsonb
from psycopg_pool import PoolTimeout

from opportunity_matcher.core.config import settings
from opportunity_matcher.core.exceptions import StoreError, StoreUnavailable
from opportunity_matcher.libs.vector_store.base import VectorStore
from opportunity_matcher.log.logging import logger
from opportunity_matcher.metrics.core import MetricNames, async_timer, report_timing
from opportunity_matcher.models.embedding import (
    EmbeddingRecord,
    SimilarityMatch,
    UserPreferenceVector,
)
from opportunity_matcher.utils.db_utils import get_db_cursor, with_timeout

EMBEDDINGS_TABLE = "opportunity_embeddings"
USER_VECTORS_TABLE = "user_preference_embeddings"


def _to_vector(values: List[float]) -> np.ndarray:
    return np.asarray(values, dtype=np.float32)


def _to_list(value: Any) -> List[float]:
    if value is None:
        return []
    if hasattr(value, "tolist"):
        return [float(v) for v in value.tolist()]
    return [float(v) for v in value]


class PgVectorStore(VectorStore):
    """VectorStore over the ``opportunity_embeddings`` table."""

    def __init__(
        self,
        dimensions: int = settings.embedding_dimensions,
        pool_name: str = "vector",
        timeout: float = settings.store_timeout_seconds,
        ivf_lists: int = settings.vector_ivf_lists,
        conninfo: Optional[str] = None,
    ):
        self.dimensions = dimensions
        self.pool_name = pool_name
        self.timeout = timeout
        self.ivf_lists = ivf_lists
        self.conninfo = conninfo or settings.database_url

    def _cursor(self):
        return get_db_cursor(self.pool_name, self.conninfo)

    async def _execute(self, operation: str, coro):
        start_time = time.time()
        try:
            return await with_timeout(coro, self.timeout, operation)
        except (psycopg.OperationalError, psycopg.InterfaceError, PoolTimeout) as e:
            logger.error(
                "Vector store unavailable",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise StoreUnavailable(
                f"Vector store {operation} failed: {str(e)}", context={"operation": operation}
            ) from e
        except psycopg.Error as e:
            logger.error(
                "Vector store rejected operation",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise StoreError(
                f"Vector store {operation} failed: {str(e)}", context={"operation": operation}
            ) from e
        finally:
            report_timing(
                MetricNames.VECTORDB_OPERATION_DURATION,
                time.time() - start_time,
                {"operation": operation},
            )

    async def ensure_schema(self) -> None:
        """
        Create the pgvector extension, both tables and the ANN index.

        Runs on a dedicated autocommit connection because the pooled
        connections cannot register the ``vector`` type until the extension
        exists.
        """
        statements = [
            "CREATE EXTENSION IF NOT EXISTS vector",
            f"""
            CREATE TABLE IF NOT EXISTS {EMBEDDINGS_TABLE} (
                item_id TEXT PRIMARY KEY,
                embedding vector({self.dimensions}) NOT NULL,
                metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                content_hash TEXT,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """,
            f"""
            CREATE INDEX IF NOT EXISTS {EMBEDDINGS_TABLE}_embedding_idx
            ON {EMBEDDINGS_TABLE} USING ivfflat (embedding vector_cosine_ops)
            WITH (lists = {self.ivf_lists})
            """,
            f"""
            CREATE TABLE IF NOT EXISTS {USER_VECTORS_TABLE} (
                user_id TEXT PRIMARY KEY,
                embedding vector({self.dimensions}) NOT NULL,
                source_text TEXT NOT NULL DEFAULT '',
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """,
        ]
        try:
            async with await psycopg.AsyncConnection.connect(self.conninfo, autocommit=True) as conn:
                for statement in statements:
                    await conn.execute(statement)
        except psycopg.Error as e:
            logger.error("Could not create vector schema", error=str(e), error_type=type(e).__name__)
            raise StoreUnavailable(f"Could not create vector schema: {str(e)}") from e

        logger.info(
            "Vector schema ready",
            embeddings_table=EMBEDDINGS_TABLE,
            user_vectors_table=USER_VECTORS_TABLE,
            dimensions=self.dimensions,
        )

    async def upsert(
        self,
        item_id: str,
        vector: List[float],
        metadata: Dict[str, Any],
        updated_at: Optional[datetime] = None,
    ) -> bool:
        updated_at = updated_at or datetime.now(UTC)

        async def _run() -> bool:
            async with self._cursor() as cursor:
                await cursor.execute(
                    f"""
                    INSERT INTO {EMBEDDINGS_TABLE} (item_id, embedding, metadata, content_hash, updated_at)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (item_id) DO UPDATE SET
                        embedding = EXCLUDED.embedding,
                        metadata = EXCLUDED.metadata,
                        content_hash = EXCLUDED.content_hash,
                        updated_at = EXCLUDED.updated_at
                    WHERE {EMBEDDINGS_TABLE}.updated_at <= EXCLUDED.updated_at
                    """,
                    (
                        item_id,
                        _to_vector(vector),
                        Jsonb(metadata),
                        metadata.get("content_hash"),
                        updated_at,
                    ),
                )
                return cursor.rowcount > 0

        written = await self._execute("upsert", _run())
        if not written:
            logger.debug("Ignoring stale upsert", item_id=item_id)
        return written

    async def delete(self, item_id: str) -> bool:
        async def _run() -> bool:
            async with self._cursor() as cursor:
                await cursor.execute(f"DELETE FROM {EMBEDDINGS_TABLE} WHERE item_id = %s", (item_id,))
                return cursor.rowcount > 0

        return await self._execute("delete", _run())

    async def get(self, item_id: str) -> Optional[EmbeddingRecord]:
        async def _run() -> Optional[EmbeddingRecord]:
            async with self._cursor() as cursor:
                await cursor.execute(
                    f"SELECT item_id, embedding, metadata, updated_at FROM {EMBEDDINGS_TABLE} WHERE item_id = %s",
                    (item_id,),
                )
                row = await cursor.fetchone()
            if row is None:
                return None
            return EmbeddingRecord(
                item_id=row["item_id"],
                vector=_to_list(row["embedding"]),
                metadata=row["metadata"] or {},
                updated_at=row["updated_at"],
            )

        return await self._execute("get", _run())

    @async_timer(MetricNames.VECTORDB_OPERATION_DURATION, {"operation": "query_total"})
    async def query(
        self,
        vector: List[float],
        k: int,
        min_similarity: float,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[SimilarityMatch]:
        if k <= 0:
            return []
        excluded = list(exclude_ids or ())
        query_vector = _to_vector(vector)

        async def _run() -> List[SimilarityMatch]:
            async with self._cursor() as cursor:
                # ORDER BY the raw distance operator so the ivfflat index is used
                await cursor.execute(
                    f"""
                    SELECT item_id, metadata, updated_at,
                           1 - (embedding <=> %(q)s) AS similarity
                    FROM {EMBEDDINGS_TABLE}
                    WHERE NOT (item_id = ANY(%(excluded)s))
                      AND 1 - (embedding <=> %(q)s) >= %(min_similarity)s
                    ORDER BY embedding <=> %(q)s, updated_at DESC
                    LIMIT %(k)s
                    """,
                    {
                        "q": query_vector,
                        "excluded": excluded,
                        "min_similarity": min_similarity,
                        "k": k,
                    },
                )
                rows = await cursor.fetchall()
            return [
                SimilarityMatch(
                    item_id=row["item_id"],
                    similarity=float(row["similarity"]),
                    metadata=row["metadata"] or {},
                    updated_at=row["updated_at"],
                )
                for row in rows
            ]

        return await self._execute("query", _run())

    async def list_ids(self) -> Set[str]:
        async def _run() -> Set[str]:
            async with self._cursor() as cursor:
                await cursor.execute(f"SELECT item_id FROM {EMBEDDINGS_TABLE}")
                rows = await cursor.fetchall()
            return {row["item_id"] for row in rows}

        return await self._execute("list_ids", _run())

    async def content_hashes(self) -> Dict[str, Optional[str]]:
        async def _run() -> Dict[str, Optional[str]]:
            async with self._cursor() as cursor:
                await cursor.execute(f"SELECT item_id, content_hash FROM {EMBEDDINGS_TABLE}")
                rows = await cursor.fetchall()
            return {row["item_id"]: row["content_hash"] for row in rows}

        return await self._execute("content_hashes", _run())

    async def get_user_preference(self, user_id: str) -> Optional[UserPreferenceVector]:
        async def _run() -> Optional[UserPreferenceVector]:
            async with self._cursor() as cursor:
                await cursor.execute(
                    f"SELECT user_id, embedding, source_text, updated_at FROM {USER_VECTORS_TABLE} WHERE user_id = %s",
                    (user_id,),
                )
                row = await cursor.fetchone()
            if row is None:
                return None
            return UserPreferenceVector(
                user_id=row["user_id"],
                vector=_to_list(row["embedding"]),
                source_text=row["source_text"],
                updated_at=row["updated_at"],
            )

        return await self._execute("get_user_preference", _run())

    async def save_user_preference(self, preference: UserPreferenceVector) -> None:
        updated_at = preference.updated_at or datetime.now(UTC)

        async def _run() -> None:
            async with self._cursor() as cursor:
                await cursor.execute(
                    f"""
                    INSERT INTO {USER_VECTORS_TABLE} (user_id, embedding, source_text, updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE SET
                        embedding = EXCLUDED.embedding,
                        source_text = EXCLUDED.source_text,
                        updated_at = EXCLUDED.updated_at
                    """,
                    (preference.user_id, _to_vector(preference.vector), preference.source_text, updated_at),
                )

        await self._execute("save_user_preference", _run())

    async def stats(self) -> Dict[str, Any]:
        async def _run() -> Dict[str, Any]:
            async with self._cursor() as cursor:
                await cursor.execute(
                    f"SELECT count(*) AS embedding_count, max(updated_at) AS last_updated FROM {EMBEDDINGS_TABLE}"
                )
                embeddings = await cursor.fetchone()
                await cursor.execute(f"SELECT count(*) AS user_vector_count FROM {USER_VECTORS_TABLE}")
                users = await cursor.fetchone()
            last_updated = embeddings["last_updated"]
            return {
                "backend": "pgvector",
                "embedding_count": embeddings["embedding_count"],
                "user_vector_count": users["user_vector_count"],
                "last_updated": last_updated.isoformat() if last_updated else None,
            }

        return await self._execute("stats", _run())
