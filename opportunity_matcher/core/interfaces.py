"""
Core interfaces for the collaborators the recommendation subsystem consumes.

The catalog and profile stores are owned by the rest of the application and
are read-only from here. The feedback and config stores are owned by the
learning loop.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from opportunity_matcher.models.catalog import CatalogItem
from opportunity_matcher.models.feedback import FeedbackEvent, InterestTally, LearningInsights
from opportunity_matcher.models.recommendation import RecommendationConfig


class CatalogStore(ABC):
    """Source of truth for recommendable items."""

    @abstractmethod
    async def get_all(self) -> List[CatalogItem]:
        """Return every live catalog item."""
        pass

    @abstractmethod
    async def get_by_id(self, item_id: str) -> Optional[CatalogItem]:
        """Return one item, or None if it does not exist."""
        pass

    @abstractmethod
    async def get_recent(self, limit: int) -> List[CatalogItem]:
        """Return the ``limit`` most recently added items, newest first."""
        pass


class ProfileStore(ABC):
    """User profiles, keyed by user id."""

    @abstractmethod
    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        """
        Return the user's profile document.

        Returns:
            A dict holding at least a ``preferences`` mapping, or None if the
            user is unknown.
        """
        pass


class FeedbackStore(ABC):
    """Append-only feedback log plus the per-user interest tallies."""

    @abstractmethod
    async def append(self, event: FeedbackEvent) -> str:
        """Persist a new event and return its id."""
        pass

    @abstractmethod
    async def fetch_unprocessed(self, limit: int) -> List[FeedbackEvent]:
        """Return up to ``limit`` events with ``processed`` still False, oldest first."""
        pass

    @abstractmethod
    async def mark_processed(self, event_ids: Sequence[str], processed_at: datetime) -> int:
        """
        Flag the given events as processed in one bulk write.

        Returns:
            Number of events actually flipped
        """
        pass

    @abstractmethod
    async def rating_counts_since(self, since: datetime) -> Dict[str, int]:
        """Count rating events per signal value with a timestamp at or after ``since``."""
        pass

    @abstractmethod
    async def signal_counts_since(self, since: datetime) -> Dict[str, int]:
        """Count events of every signal with a timestamp at or after ``since``."""
        pass

    @abstractmethod
    async def get_interest_tally(self, user_id: str) -> InterestTally:
        """Return the user's tally, empty if none was stored yet."""
        pass

    @abstractmethod
    async def save_interest_tally(self, tally: InterestTally) -> None:
        """Overwrite the user's tally."""
        pass

    @abstractmethod
    async def purge_processed_before(self, before: datetime) -> int:
        """Delete processed events older than ``before``. Returns the count removed."""
        pass

    @abstractmethod
    async def save_insights(self, insights: LearningInsights) -> None:
        """Store the activity report for its day, replacing an earlier one."""
        pass

    @abstractmethod
    async def record_search(
        self, user_id: str, keywords: Sequence[str], result_count: int, searched_at: datetime
    ) -> None:
        """Bump the user's per-keyword search counters."""
        pass

    @abstractmethod
    async def top_search_keywords(self, user_id: str, limit: int) -> List[str]:
        """The user's most searched keywords, most frequent first."""
        pass


class ConfigStore(ABC):
    """Durable home of the published RecommendationConfig."""

    @abstractmethod
    async def load(self) -> Optional[RecommendationConfig]:
        pass

    @abstractmethod
    async def save(self, config: RecommendationConfig) -> None:
        pass
