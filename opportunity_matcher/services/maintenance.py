"""
Periodic housekeeping jobs run by the scheduler.
"""

from typing import Any, Dict, Optional

from opportunity_matcher.core.exceptions import OpportunityMatcherError
from opportunity_matcher.libs.rate_limiter import SlidingWindowRateLimiter
from opportunity_matcher.libs.vector_store.base import VectorStore
from opportunity_matcher.log.logging import logger
from opportunity_matcher.metrics.core import MetricNames, report_gauge
from opportunity_matcher.services.catalog_reader import CatalogReader
from opportunity_matcher.services.embedding_sync import EmbeddingSyncService
from opportunity_matcher.services.feedback_loop import FeedbackLoopService


class MaintenanceService:
    """Stats collection, combined maintenance and daily cleanup."""

    def __init__(
        self,
        sync: EmbeddingSyncService,
        store: VectorStore,
        catalog: CatalogReader,
        feedback_loop: FeedbackLoopService,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
    ):
        self.sync = sync
        self.store = store
        self.catalog = catalog
        self.feedback_loop = feedback_loop
        self.rate_limiter = rate_limiter

    async def collect_stats(self) -> Dict[str, Any]:
        """Index counts, freshness and the outcome of the last sync run."""
        stats = await self.store.stats()
        last_sync = self.sync.last_result
        stats["last_sync"] = last_sync.to_dict() if last_sync else None

        report_gauge(MetricNames.EMBEDDING_RECORDS, stats.get("embedding_count", 0))
        report_gauge(MetricNames.USER_VECTORS, stats.get("user_vector_count", 0))
        logger.info(
            "Embedding stats collected",
            embedding_count=stats.get("embedding_count"),
            user_vector_count=stats.get("user_vector_count"),
        )
        return stats

    async def run_maintenance(self) -> Dict[str, Any]:
        """Sync the index, then collect stats."""
        result = await self.sync.sync()
        stats = await self.collect_stats()
        return {"sync": result.to_dict(), "stats": stats}

    async def daily_cleanup(self) -> Dict[str, Any]:
        """
        Remove orphaned embeddings, idle rate-limit keys and old processed feedback.

        Each step runs even if an earlier one failed; failures are listed under
        ``errors``.
        """
        results: Dict[str, Any] = {
            "orphaned_embeddings_removed": 0,
            "rate_limit_keys_pruned": 0,
            "feedback_events_purged": 0,
            "errors": [],
        }

        try:
            catalog_ids = await self.catalog.get_ids()
            orphans = sorted(await self.store.list_ids() - catalog_ids)
            for item_id in orphans:
                if await self.store.delete(item_id):
                    results["orphaned_embeddings_removed"] += 1
        except OpportunityMatcherError as e:
            logger.error("Error removing orphaned embeddings", error=str(e), error_type=type(e).__name__)
            results["errors"].append({"task": "orphaned_embeddings", "error": str(e)})

        if self.rate_limiter is not None:
            results["rate_limit_keys_pruned"] = await self.rate_limiter.prune()

        try:
            results["feedback_events_purged"] = await self.feedback_loop.purge_processed()
        except OpportunityMatcherError as e:
            logger.error("Error purging processed feedback", error=str(e), error_type=type(e).__name__)
            results["errors"].append({"task": "feedback_purge", "error": str(e)})

        logger.info(
            "Daily cleanup completed",
            orphaned_embeddings_removed=results["orphaned_embeddings_removed"],
            rate_limit_keys_pruned=results["rate_limit_keys_pruned"],
            feedback_events_purged=results["feedback_events_purged"],
            errors=len(results["errors"]),
        )
        return results
