"""
Feedback models consumed by the learning loop.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple


class FeedbackSignal(str, Enum):
    """Enumeration of user feedback signals."""
    HELPFUL = "helpful"
    SOMEWHAT_HELPFUL = "somewhat_helpful"
    NOT_HELPFUL = "not_helpful"
    CLICKED = "clicked"
    SAVED = "saved"
    IGNORED = "ignored"

    @property
    def is_rating(self) -> bool:
        return self in RATING_SIGNALS

    @property
    def is_engagement(self) -> bool:
        return self in ENGAGEMENT_WEIGHTS


RATING_SIGNALS = frozenset(
    {FeedbackSignal.HELPFUL, FeedbackSignal.SOMEWHAT_HELPFUL, FeedbackSignal.NOT_HELPFUL}
)

# Weight added to a category tally per engagement signal
ENGAGEMENT_WEIGHTS: Dict[FeedbackSignal, float] = {
    FeedbackSignal.CLICKED: 1.0,
    FeedbackSignal.SAVED: 2.0,
    FeedbackSignal.IGNORED: -1.0,
}


@dataclass
class FeedbackEvent:
    """Append-only feedback record. ``processed`` flips to True exactly once."""

    user_id: str
    item_id: str
    signal: FeedbackSignal
    timestamp: datetime
    id: Optional[str] = None
    processed: bool = False
    processed_at: Optional[datetime] = None

    def to_document(self) -> dict:
        return {
            "user_id": self.user_id,
            "item_id": self.item_id,
            "signal": self.signal.value,
            "timestamp": self.timestamp,
            "processed": self.processed,
            "processed_at": self.processed_at,
        }

    @classmethod
    def from_document(cls, document: dict) -> "FeedbackEvent":
        return cls(
            id=str(document.get("_id") or document.get("id")),
            user_id=document["user_id"],
            item_id=document["item_id"],
            signal=FeedbackSignal(document["signal"]),
            timestamp=document["timestamp"],
            processed=bool(document.get("processed", False)),
            processed_at=document.get("processed_at"),
        )


@dataclass
class InterestTally:
    """Weighted per-category engagement for one user."""

    user_id: str
    categories: Dict[str, float] = field(default_factory=dict)
    pending_events: int = 0
    updated_at: Optional[datetime] = None

    def add(self, category: str, weight: float) -> None:
        self.categories[category] = self.categories.get(category, 0.0) + weight
        self.pending_events += 1

    def top_categories(self, limit: int) -> Dict[str, float]:
        """Positively weighted categories, heaviest first."""
        ranked = sorted(
            ((c, w) for c, w in self.categories.items() if w > 0),
            key=lambda pair: (-pair[1], pair[0]),
        )
        return dict(ranked[:limit])


# Words shorter than this carry no topic ("an", "in", "of")
MIN_KEYWORD_LENGTH = 3


def extract_search_keywords(text: str) -> List[str]:
    """Lower-cased alphanumeric words of a search query, deduplicated in order."""
    keywords: List[str] = []
    for word in re.findall(r"[a-z0-9]+", (text or "").lower()):
        if len(word) >= MIN_KEYWORD_LENGTH and word not in keywords:
            keywords.append(word)
    return keywords


@dataclass
class LearningInsights:
    """Daily activity report: how much feedback of each kind came in."""

    date: str
    window_start: datetime
    generated_at: datetime
    signal_counts: Dict[str, int] = field(default_factory=dict)
    top_signals: List[Tuple[str, int]] = field(default_factory=list)

    @property
    def total_events(self) -> int:
        return sum(self.signal_counts.values())

    @classmethod
    def from_counts(
        cls,
        counts: Dict[str, int],
        window_start: datetime,
        generated_at: datetime,
        top: int = 5,
    ) -> "LearningInsights":
        ranked = sorted(counts.items(), key=lambda pair: (-pair[1], pair[0]))
        return cls(
            date=generated_at.date().isoformat(),
            window_start=window_start,
            generated_at=generated_at,
            signal_counts=dict(counts),
            top_signals=ranked[:top],
        )

    def to_document(self) -> dict:
        return {
            "date": self.date,
            "window_start": self.window_start,
            "generated_at": self.generated_at,
            "total_events": self.total_events,
            "signal_counts": self.signal_counts,
            "top_signals": [[signal, count] for signal, count in self.top_signals],
        }

    def to_dict(self) -> dict:
        document = self.to_document()
        document["window_start"] = self.window_start.isoformat()
        document["generated_at"] = self.generated_at.isoformat()
        return document
