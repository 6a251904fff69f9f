"""
Catalog → vector index reconciliation.

A sync run creates records for new catalog items, re-embeds items whose
content hash changed, and deletes records whose item left the catalog.
Per-item failures are collected in the SyncResult; only failing to read the
catalog or list the index aborts a run.
"""

import asyncio
import time
from datetime import datetime, UTC
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple

from opportunity_matcher.core.config import settings
from opportunity_matcher.core.exceptions import OpportunityMatcherError
from opportunity_matcher.libs.embeddings.chain import EmbeddingProviderChain, chunked
from opportunity_matcher.libs.vector_store.base import VectorStore
from opportunity_matcher.log.logging import logger
from opportunity_matcher.metrics.core import MetricNames, increment_counter
from opportunity_matcher.models.catalog import CatalogItem
from opportunity_matcher.models.recommendation import SyncResult
from opportunity_matcher.services.catalog_reader import CatalogReader

CREATED = "created"
UPDATED = "updated"

# (item, embedding text, outcome counter)
WorkItem = Tuple[CatalogItem, str, str]


class EmbeddingSyncService:
    """Keeps one EmbeddingRecord per live catalog item."""

    def __init__(
        self,
        catalog: CatalogReader,
        embedder: EmbeddingProviderChain,
        store: VectorStore,
        batch_size: int = settings.sync_batch_size,
        batch_delay_seconds: float = settings.sync_batch_delay_seconds,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the sync service.

        Args:
            catalog: Source of truth for item ids and text
            embedder: Provider chain used for every embed call
            store: Vector index to reconcile
            batch_size: Items per embed call
            batch_delay_seconds: Pause between consecutive batches
            sleep: Awaitable sleep, injectable for tests
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.catalog = catalog
        self.embedder = embedder
        self.store = store
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self.last_result: Optional[SyncResult] = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def sync(self) -> SyncResult:
        """
        Reconcile the whole catalog with the index.

        Returns:
            SyncResult with per-outcome counts and per-item errors

        Raises:
            StoreUnavailable: The catalog or the index listing could not be read
        """
        async with self._lock:
            result = SyncResult()
            start_time = time.time()

            catalog_items = await self.catalog.get_items_by_id()
            index_ids = await self.store.list_ids()

            catalog_ids = set(catalog_items)
            to_create = sorted(catalog_ids - index_ids)
            to_delete = sorted(index_ids - catalog_ids)
            to_update = await self._changed_items(catalog_items, catalog_ids & index_ids)

            logger.info(
                "Starting embedding sync",
                catalog_count=len(catalog_ids),
                index_count=len(index_ids),
                to_create=len(to_create),
                to_update=len(to_update),
                to_delete=len(to_delete),
            )

            work, emptied = self._build_work(
                [(catalog_items[i], CREATED) for i in to_create]
                + [(catalog_items[i], UPDATED) for i in to_update],
                result,
            )
            await self._embed_in_batches(work, result)
            await self._delete_ids(sorted(to_delete + emptied), result)

            return self._finish(result, start_time)

    async def sync_items(self, item_ids: Iterable[str]) -> SyncResult:
        """
        Embed specific catalog items now, outside a full run.

        Ids missing from the catalog have their records removed. Items already
        indexed with an unchanged hash are left alone.
        """
        async with self._lock:
            result = SyncResult()
            start_time = time.time()
            item_ids = sorted(set(item_ids))
            existing = await self.store.content_hashes()

            work_items: List[Tuple[CatalogItem, str]] = []
            missing: List[str] = []
            for item_id in item_ids:
                item = await self.catalog.get_by_id(item_id)
                if item is None:
                    if item_id in existing:
                        missing.append(item_id)
                    continue
                if item_id not in existing:
                    work_items.append((item, CREATED))
                elif existing[item_id] != item.content_hash():
                    work_items.append((item, UPDATED))

            logger.info(
                "Syncing selected catalog items",
                requested=len(item_ids),
                to_embed=len(work_items),
                to_delete=len(missing),
            )
            work, emptied = self._build_work(work_items, result)
            await self._embed_in_batches(work, result)
            await self._delete_ids(sorted(missing + emptied), result)
            return self._finish(result, start_time)

    async def refresh_all(self) -> SyncResult:
        """Re-embed every catalog item regardless of stored hashes, then drop orphans."""
        async with self._lock:
            result = SyncResult()
            start_time = time.time()

            catalog_items = await self.catalog.get_items_by_id()
            index_ids = await self.store.list_ids()

            logger.info("Starting full embedding refresh", catalog_count=len(catalog_items))
            work, emptied = self._build_work(
                [
                    (item, UPDATED if item_id in index_ids else CREATED)
                    for item_id, item in sorted(catalog_items.items())
                ],
                result,
            )
            await self._embed_in_batches(work, result)
            await self._delete_ids(sorted(list(index_ids - set(catalog_items)) + emptied), result)
            return self._finish(result, start_time)

    async def _changed_items(self, catalog_items, shared_ids) -> List[str]:
        if not shared_ids:
            return []
        stored_hashes = await self.store.content_hashes()
        return sorted(
            item_id
            for item_id in shared_ids
            if stored_hashes.get(item_id) != catalog_items[item_id].content_hash()
        )

    def _build_work(
        self, items: List[Tuple[CatalogItem, str]], result: SyncResult
    ) -> Tuple[List[WorkItem], List[str]]:
        """
        Pair items with their embedding text.

        Returns:
            The work list, and the ids of indexed items whose text is now empty;
            those records describe content that no longer exists
        """
        work = []
        emptied = []
        for item, outcome in items:
            text = item.embedding_text()
            if not text:
                if outcome == UPDATED:
                    logger.warning("Catalog item lost its embeddable text, dropping record", item_id=item.id)
                    emptied.append(item.id)
                else:
                    logger.warning("Skipping catalog item with no embeddable text", item_id=item.id)
                    result.skipped += 1
                continue
            work.append((item, text, outcome))
        return work, emptied

    async def _embed_in_batches(self, work: List[WorkItem], result: SyncResult) -> None:
        for position, batch in enumerate(chunked(work, self.batch_size)):
            if position > 0 and self.batch_delay_seconds > 0:
                await self._sleep(self.batch_delay_seconds)
            result.batches += 1
            await self._process_batch(list(batch), result)

    async def _process_batch(self, batch: List[WorkItem], result: SyncResult) -> None:
        texts = [text for _, text, _ in batch]
        try:
            vectors = await self.embedder.embed(texts)
        except OpportunityMatcherError as e:
            logger.warning(
                "Batch embedding failed, retrying items individually",
                batch_size=len(batch),
                error=str(e),
                error_type=type(e).__name__,
            )
            for work_item in batch:
                await self._process_single(work_item, result)
            return

        for (item, _, outcome), vector in zip(batch, vectors):
            await self._store(item, vector, outcome, result)

    async def _process_single(self, work_item: WorkItem, result: SyncResult) -> None:
        item, text, outcome = work_item
        try:
            vectors = await self.embedder.embed([text])
        except OpportunityMatcherError as e:
            logger.error(
                "Failed to embed catalog item",
                item_id=item.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            result.add_error(item.id, f"{type(e).__name__}: {str(e)}")
            return
        await self._store(item, vectors[0], outcome, result)

    async def _store(self, item: CatalogItem, vector: List[float], outcome: str, result: SyncResult) -> None:
        try:
            written = await self.store.upsert(
                item.id,
                vector,
                item.snapshot_metadata(),
                updated_at=datetime.now(UTC),
            )
        except OpportunityMatcherError as e:
            logger.error(
                "Failed to store embedding",
                item_id=item.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            result.add_error(item.id, f"{type(e).__name__}: {str(e)}")
            return

        if not written:
            # A newer record for the item is already stored
            result.skipped += 1
            return
        if outcome == CREATED:
            result.created += 1
        else:
            result.updated += 1

    async def _delete_ids(self, item_ids: List[str], result: SyncResult) -> None:
        for item_id in item_ids:
            try:
                await self.store.delete(item_id)
            except OpportunityMatcherError as e:
                logger.error(
                    "Failed to delete orphaned embedding",
                    item_id=item_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                result.add_error(item_id, f"{type(e).__name__}: {str(e)}")
                continue
            result.deleted += 1

    def _finish(self, result: SyncResult, start_time: float) -> SyncResult:
        result.duration_ms = (time.time() - start_time) * 1000
        self.last_result = result

        increment_counter(MetricNames.SYNC_CREATED, {"outcome": CREATED}, result.created)
        increment_counter(MetricNames.SYNC_CREATED, {"outcome": UPDATED}, result.updated)
        increment_counter(MetricNames.SYNC_DELETED, value=result.deleted)
        increment_counter(MetricNames.SYNC_ERRORS, value=len(result.errors))

        logger.info(
            "Embedding sync completed",
            created=result.created,
            updated=result.updated,
            deleted=result.deleted,
            skipped=result.skipped,
            batches=result.batches,
            errors=len(result.errors),
            duration_ms=round(result.duration_ms, 2),
        )
        return result
