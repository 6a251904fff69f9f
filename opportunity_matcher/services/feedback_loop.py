"""
Feedback ingestion and the scheduled learning loop.

Ratings drive the global similarity threshold; engagement signals build a
per-user category tally that periodically folds back into the user's
preference vector. Search keywords are tallied per user and folded into the
same refresh, and a daily report counts the feedback received per signal.
The loop reports problems in its result and never raises.
"""

from datetime import datetime, timedelta, UTC
from typing import Callable, Dict, List, Optional

from opportunity_matcher.core.config import settings
from opportunity_matcher.core.exceptions import OpportunityMatcherError
from opportunity_matcher.core.interfaces import ConfigStore, FeedbackStore
from opportunity_matcher.libs.vector_store.base import VectorStore
from opportunity_matcher.log.logging import logger
from opportunity_matcher.models.feedback import (
    ENGAGEMENT_WEIGHTS,
    FeedbackEvent,
    FeedbackSignal,
    InterestTally,
    LearningInsights,
    extract_search_keywords,
)
from opportunity_matcher.models.recommendation import LearningRunResult, RecommendationConfig
from opportunity_matcher.services.catalog_reader import CatalogReader
from opportunity_matcher.services.recommendation_service import (
    RecommendationConfigHolder,
    RecommendationService,
)
from opportunity_matcher.utils.db_utils import with_timeout


def compute_similarity_threshold(
    helpful_ratio: float,
    floor: float = settings.similarity_threshold_floor,
    scale: float = settings.similarity_threshold_scale,
) -> float:
    """Linear mapping from helpful ratio to threshold, never below ``floor``."""
    return max(floor, helpful_ratio * scale)


def parse_signal(signal) -> FeedbackSignal:
    """
    Coerce a raw signal value.

    Raises:
        ValueError: ``signal`` is not a known feedback signal
    """
    if isinstance(signal, FeedbackSignal):
        return signal
    try:
        return FeedbackSignal(str(signal).strip().lower())
    except ValueError:
        allowed = ", ".join(s.value for s in FeedbackSignal)
        raise ValueError(f"Invalid feedback signal {signal!r}, expected one of: {allowed}") from None


class FeedbackLoopService:
    """Records feedback and turns it into ranking parameters and user vectors."""

    def __init__(
        self,
        feedback: FeedbackStore,
        config_store: ConfigStore,
        config: RecommendationConfigHolder,
        recommendations: RecommendationService,
        catalog: CatalogReader,
        vector_store: VectorStore,
        batch_size: int = settings.feedback_batch_size,
        window_days: int = settings.feedback_window_days,
        default_helpful_ratio: float = settings.default_helpful_ratio,
        threshold_floor: float = settings.similarity_threshold_floor,
        threshold_scale: float = settings.similarity_threshold_scale,
        refresh_min_events: int = settings.preference_refresh_min_events,
        top_categories: int = settings.top_interest_categories,
        top_search_keywords: int = settings.top_search_keywords,
        insights_window_hours: int = settings.insights_window_hours,
        insights_top_signals: int = settings.insights_top_signals,
        store_timeout: float = settings.store_timeout_seconds,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.feedback = feedback
        self.config_store = config_store
        self.config = config
        self.recommendations = recommendations
        self.catalog = catalog
        self.vector_store = vector_store
        self.batch_size = batch_size
        self.window_days = window_days
        self.default_helpful_ratio = default_helpful_ratio
        self.threshold_floor = threshold_floor
        self.threshold_scale = threshold_scale
        self.refresh_min_events = refresh_min_events
        self.top_categories = top_categories
        self.top_search_keywords = top_search_keywords
        self.insights_window_hours = insights_window_hours
        self.insights_top_signals = insights_top_signals
        self.store_timeout = store_timeout
        self._clock = clock

    async def record_feedback(self, user_id: str, item_id: str, signal) -> Optional[str]:
        """
        Append a feedback event.

        Returns:
            The stored event id, or None if storage failed (logged, not raised)

        Raises:
            ValueError: Unknown signal
        """
        parsed = parse_signal(signal)
        event = FeedbackEvent(user_id=user_id, item_id=item_id, signal=parsed, timestamp=self._clock())
        try:
            event_id = await with_timeout(self.feedback.append(event), self.store_timeout, "feedback.append")
        except OpportunityMatcherError as e:
            logger.error(
                "Failed to record feedback",
                user_id=user_id,
                item_id=item_id,
                signal=parsed.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        logger.debug("Feedback recorded", user_id=user_id, item_id=item_id, signal=parsed.value)
        return event_id

    async def record_search(self, user_id: str, text: str, result_count: int) -> List[str]:
        """
        Tally the keywords of a user's search.

        Returns:
            The keywords recorded; empty when the query had none or storage failed
        """
        keywords = extract_search_keywords(text)
        if not keywords:
            return []
        try:
            await with_timeout(
                self.feedback.record_search(user_id, keywords, result_count, self._clock()),
                self.store_timeout,
                "feedback.record_search",
            )
        except OpportunityMatcherError as e:
            logger.error("Failed to record search keywords", user_id=user_id, error=str(e))
            return []
        logger.debug("Search keywords recorded", user_id=user_id, keywords=keywords)
        return keywords

    async def generate_insights(self) -> LearningInsights:
        """
        Count the feedback received per signal over the insights window and
        store the report under today's date.

        Raises:
            StoreUnavailable: The feedback log could not be read or written
        """
        now = self._clock()
        since = now - timedelta(hours=self.insights_window_hours)
        counts = await with_timeout(
            self.feedback.signal_counts_since(since), self.store_timeout, "feedback.signal_counts"
        )
        insights = LearningInsights.from_counts(counts, since, now, top=self.insights_top_signals)
        await with_timeout(self.feedback.save_insights(insights), self.store_timeout, "feedback.save_insights")
        logger.info(
            "Generated learning insights",
            date=insights.date,
            total_events=insights.total_events,
            top_signals=insights.top_signals,
        )
        return insights

    async def load_config(self) -> RecommendationConfig:
        """Publish the persisted config, if any. Keeps the current one on failure."""
        try:
            stored = await with_timeout(self.config_store.load(), self.store_timeout, "config.load")
        except OpportunityMatcherError as e:
            logger.warning("Could not load recommendation config", error=str(e))
            return self.config.current
        if stored is not None:
            self.config.publish(stored)
        return self.config.current

    async def run(self) -> LearningRunResult:
        """Process one batch of unprocessed feedback. Never raises."""
        result = LearningRunResult()
        now = self._clock()
        try:
            await self._run(result, now)
        except Exception as e:
            logger.exception(
                "Learning loop failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            result.errors.append({"stage": "run", "reason": f"{type(e).__name__}: {str(e)}"})

        logger.info(
            "Learning loop completed",
            selected=result.events_selected,
            processed=result.events_processed,
            ratings=result.ratings_seen,
            engagements=result.engagements_seen,
            users_refreshed=result.users_refreshed,
            errors=len(result.errors),
        )
        return result

    async def _run(self, result: LearningRunResult, now: datetime) -> None:
        try:
            events = await with_timeout(
                self.feedback.fetch_unprocessed(self.batch_size), self.store_timeout, "feedback.fetch"
            )
        except OpportunityMatcherError as e:
            logger.error("Could not read unprocessed feedback", error=str(e))
            result.errors.append({"stage": "fetch", "reason": str(e)})
            events = []
        result.events_selected = len(events)

        handled: List[str] = []
        pending_by_user: Dict[str, List[str]] = {}
        tallies: Dict[str, InterestTally] = {}

        for event in events:
            if event.signal.is_rating:
                result.ratings_seen += 1
                handled.append(event.id)
                continue

            try:
                applied = await self._apply_engagement(event, tallies)
            except OpportunityMatcherError as e:
                logger.warning(
                    "Could not apply engagement event",
                    event_id=event.id,
                    user_id=event.user_id,
                    error=str(e),
                )
                result.errors.append({"event_id": event.id, "reason": str(e)})
                continue

            result.engagements_seen += 1
            if applied:
                pending_by_user.setdefault(event.user_id, []).append(event.id)
            else:
                handled.append(event.id)

        for user_id, tally in tallies.items():
            if tally.pending_events >= self.refresh_min_events:
                if await self._refresh_user(tally, result):
                    result.users_refreshed += 1
            tally.updated_at = now
            try:
                await with_timeout(
                    self.feedback.save_interest_tally(tally), self.store_timeout, "feedback.save_tally"
                )
            except OpportunityMatcherError as e:
                logger.error("Could not save interest tally", user_id=user_id, error=str(e))
                result.errors.append({"user_id": user_id, "reason": str(e)})
                continue
            handled.extend(pending_by_user.get(user_id, []))

        await self._update_config(result, now)

        if handled:
            try:
                result.events_processed = await with_timeout(
                    self.feedback.mark_processed(handled, now), self.store_timeout, "feedback.mark_processed"
                )
            except OpportunityMatcherError as e:
                logger.error("Could not acknowledge feedback events", count=len(handled), error=str(e))
                result.errors.append({"stage": "acknowledge", "reason": str(e)})

    async def _apply_engagement(self, event: FeedbackEvent, tallies: Dict[str, InterestTally]) -> bool:
        """
        Add an engagement event to its user's tally.

        Returns:
            True if a tally changed, False if the item has no category to credit
        """
        category = await self._item_category(event.item_id)
        if not category:
            return False

        tally = tallies.get(event.user_id)
        if tally is None:
            tally = await with_timeout(
                self.feedback.get_interest_tally(event.user_id), self.store_timeout, "feedback.get_tally"
            )
            tallies[event.user_id] = tally
        tally.add(category, ENGAGEMENT_WEIGHTS[event.signal])
        return True

    async def _item_category(self, item_id: str) -> Optional[str]:
        record = await self.vector_store.get(item_id)
        if record is not None and record.metadata.get("category"):
            return record.metadata["category"]
        item = await self.catalog.get_by_id(item_id)
        return item.category if item else None

    async def _refresh_user(self, tally: InterestTally, result: LearningRunResult) -> bool:
        interests = tally.top_categories(self.top_categories)
        try:
            search_terms = await with_timeout(
                self.feedback.top_search_keywords(tally.user_id, self.top_search_keywords),
                self.store_timeout,
                "feedback.search_keywords",
            )
        except OpportunityMatcherError as e:
            logger.warning("Could not read search keywords", user_id=tally.user_id, error=str(e))
            search_terms = []

        try:
            await self.recommendations.update_user_preferences(
                tally.user_id, interests=interests, search_terms=search_terms
            )
        except OpportunityMatcherError as e:
            logger.warning(
                "Could not refresh user preference vector",
                user_id=tally.user_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            result.errors.append({"user_id": tally.user_id, "reason": str(e)})
            return False

        tally.pending_events = 0
        logger.info(
            "Refreshed user preference vector from engagement",
            user_id=tally.user_id,
            interests=list(interests),
            search_terms=search_terms,
        )
        return True

    async def _update_config(self, result: LearningRunResult, now: datetime) -> None:
        since = now - timedelta(days=self.window_days)
        try:
            counts = await with_timeout(
                self.feedback.rating_counts_since(since), self.store_timeout, "feedback.rating_counts"
            )
        except OpportunityMatcherError as e:
            logger.error("Could not compute helpful ratio", error=str(e))
            result.errors.append({"stage": "config", "reason": str(e)})
            return

        rated = sum(counts.values())
        helpful = counts.get(FeedbackSignal.HELPFUL.value, 0)
        helpful_ratio = helpful / rated if rated else self.default_helpful_ratio

        config = RecommendationConfig(
            similarity_threshold=compute_similarity_threshold(
                helpful_ratio, self.threshold_floor, self.threshold_scale
            ),
            helpful_ratio=helpful_ratio,
            sample_size=rated,
            last_updated=now,
        )
        self.config.publish(config)
        result.config = config

        try:
            await with_timeout(self.config_store.save(config), self.store_timeout, "config.save")
        except OpportunityMatcherError as e:
            logger.error("Could not persist recommendation config", error=str(e))
            result.errors.append({"stage": "config_save", "reason": str(e)})

    async def purge_processed(self, retention_days: int = settings.feedback_retention_days) -> int:
        """Delete processed events older than the retention period."""
        before = self._clock() - timedelta(days=retention_days)
        removed = await with_timeout(
            self.feedback.purge_processed_before(before), self.store_timeout, "feedback.purge"
        )
        logger.info("Purged processed feedback", removed=removed, before=before.isoformat())
        return removed
