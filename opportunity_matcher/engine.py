"""
Facade over the embedding sync and recommendation subsystem.

This is the surface the HTTP layer talks to. It wires the collaborator
stores, the provider chain and the vector index into the services and owns
the scheduler that keeps them fresh.
"""

from typing import Any, Dict, List, Optional

from opportunity_matcher.core.config import settings
from opportunity_matcher.core.interfaces import CatalogStore, ConfigStore, FeedbackStore, ProfileStore
from opportunity_matcher.libs.embeddings.chain import EmbeddingProviderChain, build_default_chain
from opportunity_matcher.libs.rate_limiter import SlidingWindowRateLimiter
from opportunity_matcher.libs.vector_store import VectorStore, build_vector_store
from opportunity_matcher.log.logging import logger
from opportunity_matcher.models.embedding import UserPreferenceVector
from opportunity_matcher.models.feedback import LearningInsights
from opportunity_matcher.models.recommendation import RankedList, SyncResult
from opportunity_matcher.services.catalog_reader import CatalogReader
from opportunity_matcher.services.embedding_sync import EmbeddingSyncService
from opportunity_matcher.services.feedback_loop import FeedbackLoopService
from opportunity_matcher.services.maintenance import MaintenanceService
from opportunity_matcher.services.recommendation_service import (
    RecommendationConfigHolder,
    RecommendationService,
)
from opportunity_matcher.stores import (
    MongoCatalogStore,
    MongoConfigStore,
    MongoDBClientWrapper,
    MongoFeedbackStore,
    MongoProfileStore,
    create_mongodb_client,
)
from opportunity_matcher.tasks.scheduler import ScheduledTask, TaskRunResult, TaskScheduler
from opportunity_matcher.utils.db_utils import close_all_connection_pools

# Scheduler task names
TASK_EMBEDDING_SYNC = "embedding_sync"
TASK_MAINTENANCE = "maintenance"
TASK_STATS = "stats_collection"
TASK_CLEANUP = "daily_cleanup"
TASK_LEARNING = "learning_loop"
TASK_INSIGHTS = "learning_insights"


def build_default_tasks(
    sync: EmbeddingSyncService,
    maintenance: MaintenanceService,
    feedback_loop: FeedbackLoopService,
) -> List[ScheduledTask]:
    """The standard task set with intervals from settings."""
    return [
        ScheduledTask(TASK_EMBEDDING_SYNC, sync.sync, settings.sync_interval_seconds),
        ScheduledTask(TASK_MAINTENANCE, maintenance.run_maintenance, settings.maintenance_interval_seconds),
        ScheduledTask(TASK_STATS, maintenance.collect_stats, settings.stats_interval_seconds),
        ScheduledTask(TASK_CLEANUP, maintenance.daily_cleanup, settings.cleanup_interval_seconds),
        ScheduledTask(TASK_LEARNING, feedback_loop.run, settings.learning_interval_seconds),
        ScheduledTask(TASK_INSIGHTS, feedback_loop.generate_insights, settings.insights_interval_seconds),
    ]


class OpportunityEngine:
    """Wires the services together and exposes the subsystem's operations."""

    def __init__(
        self,
        catalog_store: CatalogStore,
        profile_store: ProfileStore,
        feedback_store: FeedbackStore,
        config_store: ConfigStore,
        embedder: EmbeddingProviderChain,
        vector_store: VectorStore,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        scheduler: Optional[TaskScheduler] = None,
        mongo_client: Optional[MongoDBClientWrapper] = None,
    ):
        self.embedder = embedder
        self.vector_store = vector_store
        self.feedback_store = feedback_store
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.mongo_client = mongo_client

        self.catalog = CatalogReader(catalog_store)
        self.config = RecommendationConfigHolder()
        self.sync_service = EmbeddingSyncService(self.catalog, embedder, vector_store)
        self.recommendation_service = RecommendationService(
            self.catalog, embedder, vector_store, profile_store, self.config
        )
        self.feedback_loop = FeedbackLoopService(
            feedback_store,
            config_store,
            self.config,
            self.recommendation_service,
            self.catalog,
            vector_store,
        )
        self.maintenance = MaintenanceService(
            self.sync_service, vector_store, self.catalog, self.feedback_loop, self.rate_limiter
        )
        self.scheduler = scheduler or TaskScheduler(
            build_default_tasks(self.sync_service, self.maintenance, self.feedback_loop)
        )

    @classmethod
    async def from_settings(cls) -> "OpportunityEngine":
        """
        Build the production wiring: MongoDB collaborators, the OpenAI
        provider chain and the configured vector backend.

        Connects to MongoDB before the stores are built.
        """
        mongo_client = create_mongodb_client()
        await mongo_client.initialize()
        database = mongo_client.db

        feedback_store = MongoFeedbackStore(database)
        await feedback_store.ensure_indexes()

        return cls(
            catalog_store=MongoCatalogStore(database),
            profile_store=MongoProfileStore(database),
            feedback_store=feedback_store,
            config_store=MongoConfigStore(database),
            embedder=build_default_chain(),
            vector_store=build_vector_store(),
            mongo_client=mongo_client,
        )

    async def startup(self, start_scheduler: bool = settings.scheduler_enabled) -> None:
        logger.info("Starting opportunity engine", vector_backend=type(self.vector_store).__name__)
        await self.vector_store.ensure_schema()
        await self.feedback_loop.load_config()
        if start_scheduler:
            await self.scheduler.start()

    async def shutdown(self) -> None:
        logger.info("Shutting down opportunity engine")
        if self.scheduler.running:
            await self.scheduler.stop()
        await self.embedder.close()
        await self.vector_store.close()
        await close_all_connection_pools()
        if self.mongo_client is not None:
            await self.mongo_client.close()

    async def sync(self) -> SyncResult:
        return await self.sync_service.sync()

    async def sync_items(self, item_ids: List[str]) -> SyncResult:
        return await self.sync_service.sync_items(item_ids)

    async def refresh_all(self) -> SyncResult:
        return await self.sync_service.refresh_all()

    async def recommend(self, user_id: str, k: int = settings.default_recommendation_count) -> RankedList:
        return await self.recommendation_service.recommend(user_id, k)

    async def find_similar(self, item_id: str, k: int = settings.default_recommendation_count) -> RankedList:
        return await self.recommendation_service.find_similar(item_id, k)

    async def search(
        self,
        text: str,
        k: int = settings.default_recommendation_count,
        threshold: Optional[float] = None,
        user_id: Optional[str] = None,
    ) -> RankedList:
        """Free-text search. A known ``user_id`` has the query's keywords tallied."""
        results = await self.recommendation_service.search(text, k, threshold)
        if user_id is not None:
            await self.feedback_loop.record_search(user_id, text, len(results))
        return results

    async def update_user_preferences(self, user_id: str) -> UserPreferenceVector:
        return await self.recommendation_service.update_user_preferences(user_id)

    async def record_feedback(self, user_id: str, item_id: str, signal) -> Optional[str]:
        """
        Fire-and-forget feedback append.

        Returns:
            The event id, or None if the user is rate limited or storage failed

        Raises:
            ValueError: Unknown signal
        """
        if not await self.rate_limiter.allow(f"feedback:{user_id}"):
            logger.warning("Feedback dropped, user rate limited", user_id=user_id)
            return None
        return await self.feedback_loop.record_feedback(user_id, item_id, signal)

    async def generate_insights(self) -> LearningInsights:
        return await self.feedback_loop.generate_insights()

    async def check_rate_limit(self, key: str) -> None:
        """
        Spend one request from ``key``'s budget.

        Raises:
            RateLimitExceeded: The budget for the current window is used up
        """
        await self.rate_limiter.acquire(key)

    def scheduler_status(self) -> Dict[str, Any]:
        return self.scheduler.status()

    async def scheduler_start(self) -> Dict[str, Any]:
        return await self.scheduler.start()

    async def scheduler_stop(self) -> Dict[str, Any]:
        return await self.scheduler.stop()

    async def run_task_now(self, name: str) -> TaskRunResult:
        return await self.scheduler.run_now(name)

