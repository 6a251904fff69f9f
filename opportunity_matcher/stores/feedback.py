"""
Feedback, interest tally and recommendation config stores backed by MongoDB.
"""

from datetime import datetime
from typing import Dict, List, Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from opportunity_matcher.core.config import settings
from opportunity_matcher.core.exceptions import StoreUnavailable
from opportunity_matcher.core.interfaces import ConfigStore, FeedbackStore
from opportunity_matcher.log.logging import logger
from opportunity_matcher.models.feedback import (
    RATING_SIGNALS,
    FeedbackEvent,
    InterestTally,
    LearningInsights,
)
from opportunity_matcher.models.recommendation import RecommendationConfig
from opportunity_matcher.stores.mongodb import id_candidates

RECOMMENDATION_CONFIG_ID = "recommendation_config"


def _object_ids(event_ids: Sequence[str]) -> List:
    ids = []
    for event_id in event_ids:
        ids.extend(id_candidates(event_id))
    return ids


class MongoFeedbackStore(FeedbackStore):
    """Append-only feedback log plus per-user interest tallies and search patterns."""

    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        feedback_collection: str = settings.feedback_collection,
        interest_collection: str = settings.interest_collection,
        insights_collection: str = settings.insights_collection,
        search_collection: str = settings.search_patterns_collection,
    ):
        self.events = database.get_collection(feedback_collection)
        self.tallies = database.get_collection(interest_collection)
        self.insights = database.get_collection(insights_collection)
        self.searches = database.get_collection(search_collection)

    async def ensure_indexes(self) -> None:
        await self.events.create_index([("processed", ASCENDING), ("timestamp", ASCENDING)])
        await self.events.create_index([("signal", ASCENDING), ("timestamp", ASCENDING)])

    async def append(self, event: FeedbackEvent) -> str:
        try:
            result = await self.events.insert_one(event.to_document())
        except PyMongoError as e:
            raise StoreUnavailable("Could not store feedback event", context={"user_id": event.user_id}) from e
        return str(result.inserted_id)

    async def fetch_unprocessed(self, limit: int) -> List[FeedbackEvent]:
        try:
            cursor = self.events.find({"processed": False}).sort("timestamp", ASCENDING).limit(limit)
            documents = await cursor.to_list(length=limit)
        except PyMongoError as e:
            raise StoreUnavailable("Could not read unprocessed feedback") from e

        events = []
        for document in documents:
            try:
                events.append(FeedbackEvent.from_document(document))
            except (KeyError, ValueError) as e:
                logger.warning("Skipping malformed feedback event", event_id=str(document.get("_id")), error=str(e))
        return events

    async def mark_processed(self, event_ids: Sequence[str], processed_at: datetime) -> int:
        if not event_ids:
            return 0
        try:
            result = await self.events.update_many(
                {"_id": {"$in": _object_ids(event_ids)}, "processed": False},
                {"$set": {"processed": True, "processed_at": processed_at}},
            )
        except PyMongoError as e:
            raise StoreUnavailable("Could not acknowledge feedback events") from e
        return result.modified_count

    async def _count_signals(self, match: dict) -> Dict[str, int]:
        pipeline = [
            {"$match": match},
            {"$group": {"_id": "$signal", "count": {"$sum": 1}}},
        ]
        try:
            rows = await self.events.aggregate(pipeline).to_list(length=None)
        except PyMongoError as e:
            raise StoreUnavailable("Could not aggregate feedback signals") from e
        return {row["_id"]: row["count"] for row in rows}

    async def rating_counts_since(self, since: datetime) -> Dict[str, int]:
        return await self._count_signals(
            {"timestamp": {"$gte": since}, "signal": {"$in": [s.value for s in RATING_SIGNALS]}}
        )

    async def signal_counts_since(self, since: datetime) -> Dict[str, int]:
        return await self._count_signals({"timestamp": {"$gte": since}})

    async def get_interest_tally(self, user_id: str) -> InterestTally:
        try:
            document = await self.tallies.find_one({"_id": user_id})
        except PyMongoError as e:
            raise StoreUnavailable("Could not read interest tally", context={"user_id": user_id}) from e
        if not document:
            return InterestTally(user_id=user_id)
        return InterestTally(
            user_id=user_id,
            categories=dict(document.get("categories", {})),
            pending_events=int(document.get("pending_events", 0)),
            updated_at=document.get("updated_at"),
        )

    async def save_interest_tally(self, tally: InterestTally) -> None:
        try:
            await self.tallies.replace_one(
                {"_id": tally.user_id},
                {
                    "categories": tally.categories,
                    "pending_events": tally.pending_events,
                    "updated_at": tally.updated_at,
                },
                upsert=True,
            )
        except PyMongoError as e:
            raise StoreUnavailable("Could not save interest tally", context={"user_id": tally.user_id}) from e

    async def purge_processed_before(self, before: datetime) -> int:
        try:
            result = await self.events.delete_many({"processed": True, "processed_at": {"$lt": before}})
        except PyMongoError as e:
            raise StoreUnavailable("Could not purge processed feedback") from e
        return result.deleted_count

    async def save_insights(self, insights: LearningInsights) -> None:
        try:
            await self.insights.replace_one({"_id": insights.date}, insights.to_document(), upsert=True)
        except PyMongoError as e:
            raise StoreUnavailable("Could not save learning insights", context={"date": insights.date}) from e

    async def record_search(
        self, user_id: str, keywords: Sequence[str], result_count: int, searched_at: datetime
    ) -> None:
        if not keywords:
            return
        increments = {f"queries.{keyword}.count": 1 for keyword in keywords}
        updates = {"updated_at": searched_at}
        for keyword in keywords:
            updates[f"queries.{keyword}.last_searched"] = searched_at
            updates[f"queries.{keyword}.last_result_count"] = result_count
        try:
            await self.searches.update_one(
                {"_id": user_id}, {"$inc": increments, "$set": updates}, upsert=True
            )
        except PyMongoError as e:
            raise StoreUnavailable("Could not record search keywords", context={"user_id": user_id}) from e

    async def top_search_keywords(self, user_id: str, limit: int) -> List[str]:
        try:
            document = await self.searches.find_one({"_id": user_id}, {"queries": 1})
        except PyMongoError as e:
            raise StoreUnavailable("Could not read search keywords", context={"user_id": user_id}) from e
        queries = (document or {}).get("queries") or {}
        ranked = sorted(queries.items(), key=lambda pair: (-int(pair[1].get("count", 0)), pair[0]))
        return [keyword for keyword, _ in ranked[:limit]]


class MongoConfigStore(ConfigStore):
    """Keeps the published RecommendationConfig in the system config collection."""

    def __init__(self, database: AsyncIOMotorDatabase, collection_name: str = settings.system_config_collection):
        self.collection = database.get_collection(collection_name)

    async def load(self) -> Optional[RecommendationConfig]:
        try:
            document = await self.collection.find_one({"_id": RECOMMENDATION_CONFIG_ID})
        except PyMongoError as e:
            raise StoreUnavailable("Could not load recommendation config") from e
        return RecommendationConfig.from_document(document) if document else None

    async def save(self, config: RecommendationConfig) -> None:
        try:
            await self.collection.replace_one(
                {"_id": RECOMMENDATION_CONFIG_ID}, config.to_document(), upsert=True
            )
        except PyMongoError as e:
            raise StoreUnavailable("Could not save recommendation config") from e
