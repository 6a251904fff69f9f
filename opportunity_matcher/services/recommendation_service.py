"""
Recommendation service.

Ranks indexed opportunities against a user's preference vector, an item's
own vector, or free text. Personalised recommendations degrade to the most
recent catalog items instead of failing when no ranking can be produced.
"""

import time
from datetime import datetime, UTC
from typing import List, Mapping, Optional, Sequence, Tuple

from opportunity_matcher.core.config import settings
from opportunity_matcher.core.exceptions import (
    EmbeddingUnavailable,
    EmbeddingValidationError,
    NotFound,
    StoreUnavailable,
)
from opportunity_matcher.core.interfaces import ProfileStore
from opportunity_matcher.libs.embeddings.chain import EmbeddingProviderChain
from opportunity_matcher.libs.vector_store.base import VectorStore
from opportunity_matcher.log.logging import logger
from opportunity_matcher.metrics.core import MetricNames, increment_counter, report_timing
from opportunity_matcher.models.embedding import SimilarityMatch, UserPreferenceVector
from opportunity_matcher.models.profile import build_preference_text, extract_preferences
from opportunity_matcher.models.recommendation import (
    RankedList,
    RecommendationConfig,
    RecommendationItem,
)
from opportunity_matcher.services.catalog_reader import CatalogReader
from opportunity_matcher.utils.db_utils import with_timeout

# Fallback reasons reported on degraded results
REASON_NO_PROFILE = "no_profile"
REASON_EMPTY_PROFILE = "empty_profile"
REASON_NO_MATCHES = "no_matches"
REASON_EMBEDDING_UNAVAILABLE = "embedding_unavailable"
REASON_STORE_UNAVAILABLE = "store_unavailable"


class RecommendationConfigHolder:
    """
    Publishes the process-wide RecommendationConfig.

    Readers take ``current`` once per request; writers replace the whole
    frozen value, so a reader never sees a mix of old and new fields.
    """

    def __init__(self, config: Optional[RecommendationConfig] = None):
        self._config = config or RecommendationConfig(
            similarity_threshold=settings.default_similarity_threshold,
            helpful_ratio=settings.default_helpful_ratio,
        )

    @property
    def current(self) -> RecommendationConfig:
        return self._config

    def publish(self, config: RecommendationConfig) -> None:
        self._config = config
        logger.info(
            "Published recommendation config",
            similarity_threshold=config.similarity_threshold,
            helpful_ratio=config.helpful_ratio,
            sample_size=config.sample_size,
        )


def _to_items(matches: List[SimilarityMatch]) -> List[RecommendationItem]:
    return [
        RecommendationItem(item_id=m.item_id, similarity=m.similarity, metadata=dict(m.metadata))
        for m in matches
    ]


class RecommendationService:
    """Personalised, item-to-item and free-text ranking over the vector index."""

    def __init__(
        self,
        catalog: CatalogReader,
        embedder: EmbeddingProviderChain,
        store: VectorStore,
        profiles: ProfileStore,
        config: RecommendationConfigHolder,
        similar_items_threshold: float = settings.similar_items_threshold,
        search_threshold: float = settings.search_threshold,
        fallback_similarity: float = settings.fallback_similarity,
        store_timeout: float = settings.store_timeout_seconds,
    ):
        self.catalog = catalog
        self.embedder = embedder
        self.store = store
        self.profiles = profiles
        self.config = config
        self.similar_items_threshold = similar_items_threshold
        self.search_threshold = search_threshold
        self.fallback_similarity = fallback_similarity
        self.store_timeout = store_timeout

    async def recommend(self, user_id: str, k: int = settings.default_recommendation_count) -> RankedList:
        """
        Recommend up to ``k`` opportunities for a user.

        The stored preference vector is used when present; otherwise one is
        derived from the profile, embedded once and persisted. When nothing
        can be ranked the ``k`` most recent catalog items are returned with
        ``degraded=True``.

        Raises:
            EmbeddingUnavailable | StoreUnavailable: Only when the recent-items
                fallback cannot be served either
        """
        start_time = time.time()
        config = self.config.current

        try:
            preference, reason = await self._get_or_create_preference(user_id)
            if preference is None:
                return await self._fallback(user_id, k, reason)

            matches = await self.store.query(preference.vector, k, config.similarity_threshold)
        except (EmbeddingUnavailable, StoreUnavailable) as e:
            reason = (
                REASON_EMBEDDING_UNAVAILABLE
                if isinstance(e, EmbeddingUnavailable)
                else REASON_STORE_UNAVAILABLE
            )
            logger.warning(
                "Personalised ranking unavailable, serving fallback",
                user_id=user_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return await self._fallback(user_id, k, reason, cause=e)

        if not matches:
            return await self._fallback(user_id, k, REASON_NO_MATCHES)

        report_timing(MetricNames.RECOMMENDATION_DURATION, time.time() - start_time)
        increment_counter(MetricNames.RECOMMENDATION_COUNT, {"kind": "personalised"})
        logger.info(
            "Recommendations served",
            user_id=user_id,
            count=len(matches),
            threshold=config.similarity_threshold,
        )
        return RankedList(items=_to_items(matches))

    async def find_similar(self, item_id: str, k: int = settings.default_recommendation_count) -> RankedList:
        """
        Items most similar to ``item_id``, never including the item itself.

        Raises:
            NotFound: The item is neither indexed nor in the catalog
        """
        record = await self.store.get(item_id)
        if record is not None:
            vector = record.vector
        else:
            item = await self.catalog.require(item_id)
            vector = (await self.embedder.embed([item.embedding_text()]))[0]

        matches = await self.store.query(
            vector, k + 1, self.similar_items_threshold, exclude_ids=[item_id]
        )
        matches = [m for m in matches if m.item_id != item_id][:k]
        increment_counter(MetricNames.RECOMMENDATION_COUNT, {"kind": "similar"})
        return RankedList(items=_to_items(matches))

    async def search(
        self,
        text: str,
        k: int = settings.default_recommendation_count,
        threshold: Optional[float] = None,
    ) -> RankedList:
        """
        Rank opportunities against free text.

        Raises:
            EmbeddingValidationError: ``text`` is empty
        """
        if not text or not text.strip():
            raise EmbeddingValidationError("Search text must not be empty")
        threshold = self.search_threshold if threshold is None else threshold

        vector = (await self.embedder.embed([text.strip()]))[0]
        matches = await self.store.query(vector, k, threshold)
        increment_counter(MetricNames.RECOMMENDATION_COUNT, {"kind": "search"})
        logger.info("Search served", count=len(matches), threshold=threshold)
        return RankedList(items=_to_items(matches))

    async def update_user_preferences(
        self,
        user_id: str,
        interests: Optional[Mapping[str, float]] = None,
        search_terms: Optional[Sequence[str]] = None,
    ) -> UserPreferenceVector:
        """
        Re-derive and persist a user's preference vector from the profile.

        Args:
            user_id: The user
            interests: Weighted categories to append to the profile text
            search_terms: Frequent search keywords to append after them

        Raises:
            NotFound: Unknown user and no interests or search terms to build from
            EmbeddingValidationError: Nothing usable to embed
        """
        profile = await with_timeout(self.profiles.get_profile(user_id), self.store_timeout, "profile.get")
        if profile is None and not interests and not search_terms:
            raise NotFound(f"User {user_id} not found", context={"user_id": user_id})

        text = build_preference_text(extract_preferences(profile), interests, search_terms)
        if not text:
            raise EmbeddingValidationError(
                f"Profile of user {user_id} has no usable preferences",
                context={"user_id": user_id},
            )
        return await self._embed_and_save(user_id, text)

    async def _get_or_create_preference(
        self, user_id: str
    ) -> Tuple[Optional[UserPreferenceVector], Optional[str]]:
        preference = await self.store.get_user_preference(user_id)
        if preference is not None:
            return preference, None

        profile = await with_timeout(self.profiles.get_profile(user_id), self.store_timeout, "profile.get")
        if profile is None:
            logger.info("No profile for user, cannot personalise", user_id=user_id)
            return None, REASON_NO_PROFILE

        text = build_preference_text(extract_preferences(profile))
        if not text:
            logger.info("User profile has no usable preferences", user_id=user_id)
            return None, REASON_EMPTY_PROFILE

        return await self._embed_and_save(user_id, text), None

    async def _embed_and_save(self, user_id: str, text: str) -> UserPreferenceVector:
        vector = (await self.embedder.embed([text]))[0]
        preference = UserPreferenceVector(
            user_id=user_id,
            vector=vector,
            source_text=text,
            updated_at=datetime.now(UTC),
        )
        await self.store.save_user_preference(preference)
        logger.info("Stored user preference vector", user_id=user_id, text_length=len(text))
        return preference

    async def _fallback(
        self,
        user_id: str,
        k: int,
        reason: Optional[str],
        cause: Optional[Exception] = None,
    ) -> RankedList:
        try:
            recent = await self.catalog.get_recent(k)
        except StoreUnavailable as e:
            logger.error(
                "Recent-items fallback unavailable",
                user_id=user_id,
                reason=reason,
                error=str(e),
            )
            if cause is not None:
                raise cause from e
            raise

        increment_counter(MetricNames.RECOMMENDATION_FALLBACK_COUNT, {"reason": reason or "unknown"})
        logger.info("Serving recent-items fallback", user_id=user_id, reason=reason, count=len(recent))
        items = [
            RecommendationItem(
                item_id=item.id,
                similarity=self.fallback_similarity,
                metadata={
                    key: value
                    for key, value in item.snapshot_metadata().items()
                    if key != "content_hash"
                },
            )
            for item in recent
        ]
        return RankedList(items=items, degraded=True, reason=reason)
