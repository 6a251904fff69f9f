"""
Pytest configuration and fixtures.

Collaborators are replaced by small in-memory stores, and embeddings come
from a keyword-count provider, so similarity between texts is predictable.
"""

import asyncio
import itertools
from datetime import datetime, timedelta, UTC
from typing import Dict, List, Optional, Sequence

import pytest

from opportunity_matcher.core.exceptions import StoreUnavailable
from opportunity_matcher.core.interfaces import CatalogStore, ConfigStore, FeedbackStore, ProfileStore
from opportunity_matcher.libs.embeddings.chain import EmbeddingProviderChain
from opportunity_matcher.libs.embeddings.providers import EmbeddingProvider
from opportunity_matcher.libs.vector_store.memory import InMemoryVectorStore
from opportunity_matcher.models.catalog import CatalogItem
from opportunity_matcher.models.feedback import RATING_SIGNALS, FeedbackEvent, InterestTally, LearningInsights
from opportunity_matcher.models.recommendation import RecommendationConfig
from opportunity_matcher.services.catalog_reader import CatalogReader
from opportunity_matcher.services.embedding_sync import EmbeddingSyncService
from opportunity_matcher.services.feedback_loop import FeedbackLoopService
from opportunity_matcher.services.recommendation_service import (
    RecommendationConfigHolder,
    RecommendationService,
)
from opportunity_matcher.utils.db_utils import close_all_connection_pools

KEYWORDS = ("math", "science", "art", "music", "engineering", "business", "scholarship", "grant")
DIMENSIONS = len(KEYWORDS) + 1

BASE_TIME = datetime(2024, 1, 1, tzinfo=UTC)


def keyword_vector(text: str) -> List[float]:
    """Keyword counts plus a small constant component so no vector is zero."""
    words = text.lower().split()
    return [float(sum(1 for w in words if w.startswith(k))) for k in KEYWORDS] + [0.1]


class KeywordProvider(EmbeddingProvider):
    """Deterministic provider that records every call it receives."""

    def __init__(self, name: str = "primary", max_batch_size: int = 100, dimensions: int = DIMENSIONS):
        self.name = name
        self.max_batch_size = max_batch_size
        self.dimensions = dimensions
        self.calls: List[List[str]] = []
        self.failures: List[Exception] = []

    def fail_with(self, *errors: Exception) -> None:
        """Queue errors to raise on the next calls, one per call."""
        self.failures.extend(errors)

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        return [keyword_vector(t)[: self.dimensions] for t in texts]


class InMemoryCatalogStore(CatalogStore):
    def __init__(self, items: Sequence[CatalogItem] = ()):
        self.items: Dict[str, CatalogItem] = {item.id: item for item in items}
        self.unavailable = False

    def add(self, item: CatalogItem) -> None:
        self.items[item.id] = item

    def remove(self, item_id: str) -> None:
        del self.items[item_id]

    def _check(self):
        if self.unavailable:
            raise StoreUnavailable("catalog down")

    async def get_all(self) -> List[CatalogItem]:
        self._check()
        return list(self.items.values())

    async def get_by_id(self, item_id: str) -> Optional[CatalogItem]:
        self._check()
        return self.items.get(item_id)

    async def get_recent(self, limit: int) -> List[CatalogItem]:
        self._check()
        ordered = sorted(self.items.values(), key=lambda i: i.created_at or BASE_TIME, reverse=True)
        return ordered[:limit]


class InMemoryProfileStore(ProfileStore):
    def __init__(self, profiles: Optional[Dict[str, dict]] = None):
        self.profiles = dict(profiles or {})

    async def get_profile(self, user_id: str) -> Optional[dict]:
        return self.profiles.get(user_id)


class InMemoryFeedbackStore(FeedbackStore):
    def __init__(self):
        self.events: Dict[str, FeedbackEvent] = {}
        self.tallies: Dict[str, InterestTally] = {}
        self._ids = itertools.count(1)
        self.fail_append = False
        self.fail_tally_save_for: set = set()
        self.mark_calls: List[List[str]] = []
        self.insights: Dict[str, LearningInsights] = {}
        self.searches: Dict[str, Dict[str, int]] = {}
        self.fail_search = False

    async def append(self, event: FeedbackEvent) -> str:
        if self.fail_append:
            raise StoreUnavailable("feedback store down")
        event.id = f"evt-{next(self._ids)}"
        self.events[event.id] = event
        return event.id

    async def fetch_unprocessed(self, limit: int) -> List[FeedbackEvent]:
        pending = [e for e in self.events.values() if not e.processed]
        pending.sort(key=lambda e: e.timestamp)
        return pending[:limit]

    async def mark_processed(self, event_ids: Sequence[str], processed_at: datetime) -> int:
        self.mark_calls.append(list(event_ids))
        flipped = 0
        for event_id in event_ids:
            event = self.events.get(event_id)
            if event is not None and not event.processed:
                event.processed = True
                event.processed_at = processed_at
                flipped += 1
        return flipped

    async def rating_counts_since(self, since: datetime) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for event in self.events.values():
            if event.signal in RATING_SIGNALS and event.timestamp >= since:
                counts[event.signal.value] = counts.get(event.signal.value, 0) + 1
        return counts

    async def signal_counts_since(self, since: datetime) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for event in self.events.values():
            if event.timestamp >= since:
                counts[event.signal.value] = counts.get(event.signal.value, 0) + 1
        return counts

    async def get_interest_tally(self, user_id: str) -> InterestTally:
        stored = self.tallies.get(user_id)
        if stored is None:
            return InterestTally(user_id=user_id)
        return InterestTally(
            user_id=user_id,
            categories=dict(stored.categories),
            pending_events=stored.pending_events,
            updated_at=stored.updated_at,
        )

    async def save_interest_tally(self, tally: InterestTally) -> None:
        if tally.user_id in self.fail_tally_save_for:
            raise StoreUnavailable("tally store down")
        self.tallies[tally.user_id] = InterestTally(
            user_id=tally.user_id,
            categories=dict(tally.categories),
            pending_events=tally.pending_events,
            updated_at=tally.updated_at,
        )

    async def purge_processed_before(self, before: datetime) -> int:
        stale = [
            event_id
            for event_id, e in self.events.items()
            if e.processed and e.processed_at and e.processed_at < before
        ]
        for event_id in stale:
            del self.events[event_id]
        return len(stale)

    async def save_insights(self, insights: LearningInsights) -> None:
        self.insights[insights.date] = insights

    async def record_search(self, user_id, keywords, result_count, searched_at) -> None:
        if self.fail_search:
            raise StoreUnavailable("search store down")
        counts = self.searches.setdefault(user_id, {})
        for keyword in keywords:
            counts[keyword] = counts.get(keyword, 0) + 1

    async def top_search_keywords(self, user_id: str, limit: int) -> List[str]:
        counts = self.searches.get(user_id, {})
        return sorted(counts, key=lambda k: (-counts[k], k))[:limit]


class InMemoryConfigStore(ConfigStore):
    def __init__(self):
        self.config: Optional[RecommendationConfig] = None
        self.saves = 0

    async def load(self) -> Optional[RecommendationConfig]:
        return self.config

    async def save(self, config: RecommendationConfig) -> None:
        self.saves += 1
        self.config = config


def make_item(item_id: str, title: str, category: Optional[str] = None, age_days: int = 0, **fields) -> CatalogItem:
    return CatalogItem(
        id=item_id,
        title=title,
        category=category,
        created_at=BASE_TIME - timedelta(days=age_days),
        **fields,
    )


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


@pytest.fixture(autouse=True)
async def cleanup_connection_pools():
    """Close any connection pool a test may have opened."""
    yield
    await close_all_connection_pools()


@pytest.fixture
def provider():
    return KeywordProvider()


@pytest.fixture
def embedder(provider):
    return EmbeddingProviderChain(
        [provider],
        dimensions=DIMENSIONS,
        timeout=5.0,
        retry_attempts=2,
        backoff_seconds=0,
        backoff_max_seconds=0,
    )


@pytest.fixture
def vector_store():
    return InMemoryVectorStore()


@pytest.fixture
def catalog_store():
    return InMemoryCatalogStore(
        [
            make_item("math-1", "Math Olympiad Scholarship", category="math", age_days=3),
            make_item("art-1", "Art Grant", category="art", age_days=1),
            make_item("sci-1", "Science Research Scholarship", category="science", age_days=2),
        ]
    )


@pytest.fixture
def catalog(catalog_store):
    return CatalogReader(catalog_store, timeout=5.0)


@pytest.fixture
def profile_store():
    return InMemoryProfileStore(
        {
            "user-math": {"preferences": {"careerInterests": ["math", "science"], "educationLevel": "undergraduate"}},
            "user-empty": {"preferences": {}},
        }
    )


@pytest.fixture
def feedback_store():
    return InMemoryFeedbackStore()


@pytest.fixture
def config_store():
    return InMemoryConfigStore()


@pytest.fixture
def config_holder():
    return RecommendationConfigHolder(RecommendationConfig(similarity_threshold=0.6, helpful_ratio=0.7))


@pytest.fixture
def sync_service(catalog, embedder, vector_store):
    return EmbeddingSyncService(catalog, embedder, vector_store, batch_size=50, batch_delay_seconds=0)


@pytest.fixture
def recommendation_service(catalog, embedder, vector_store, profile_store, config_holder):
    return RecommendationService(
        catalog,
        embedder,
        vector_store,
        profile_store,
        config_holder,
        similar_items_threshold=0.7,
        search_threshold=0.6,
        fallback_similarity=0.5,
        store_timeout=5.0,
    )


@pytest.fixture
def feedback_loop(feedback_store, config_store, config_holder, recommendation_service, catalog, vector_store):
    return FeedbackLoopService(
        feedback_store,
        config_store,
        config_holder,
        recommendation_service,
        catalog,
        vector_store,
        batch_size=100,
        window_days=7,
        default_helpful_ratio=0.7,
        threshold_floor=0.6,
        threshold_scale=0.9,
        refresh_min_events=3,
        top_categories=5,
        store_timeout=5.0,
        clock=lambda: BASE_TIME,
    )
