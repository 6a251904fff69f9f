"""
Tests for the MongoDB-backed stores, with motor collections replaced by mocks.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError, ServerSelectionTimeoutError

from conftest import BASE_TIME
from opportunity_matcher.core.exceptions import StoreUnavailable
from opportunity_matcher.libs.vector_store.memory import InMemoryVectorStore
from opportunity_matcher.models.feedback import FeedbackEvent, FeedbackSignal, InterestTally, LearningInsights
from opportunity_matcher.models.recommendation import RecommendationConfig
from opportunity_matcher.services.catalog_reader import CatalogReader
from opportunity_matcher.services.embedding_sync import EmbeddingSyncService
from opportunity_matcher.stores.catalog import MongoCatalogStore, MongoProfileStore
from opportunity_matcher.stores.feedback import RECOMMENDATION_CONFIG_ID, MongoConfigStore, MongoFeedbackStore
from opportunity_matcher.stores.mongodb import id_candidates

OLYMPIAD_ID = ObjectId("6ad2768ad0c236daae28c218")


def _matches(document, query):
    """Enough of the query language for the id lookups the stores issue."""
    if not query or "$or" not in query:
        return True
    for clause in query["$or"]:
        if "id" in clause and document.get("id") == clause["id"]:
            return True
        if "_id" in clause and document.get("_id") in clause["_id"]["$in"]:
            return True
    return False


def fake_collection(documents=()):
    """A motor collection mock: ``find`` and ``aggregate`` return cursors, the rest are awaitable."""
    collection = MagicMock()
    collection.documents = list(documents)

    def find(query=None, *args, **kwargs):
        cursor = MagicMock()
        cursor.sort.return_value = cursor
        cursor.limit.return_value = cursor
        cursor.to_list = AsyncMock(return_value=[d for d in collection.documents if _matches(d, query)])
        return cursor

    collection.find = MagicMock(side_effect=find)
    collection.aggregate = MagicMock()
    collection.aggregate.return_value.to_list = AsyncMock(return_value=[])
    for name in ("find_one", "insert_one", "update_one", "update_many", "replace_one", "delete_many", "create_index"):
        setattr(collection, name, AsyncMock())
    collection.find_one.return_value = None
    return collection


def fake_database(**collections):
    database = MagicMock()
    database.get_collection.side_effect = lambda name: collections.setdefault(name, fake_collection())
    return database


def test_id_candidates_include_object_id_for_hex_ids():
    assert id_candidates(str(OLYMPIAD_ID)) == [OLYMPIAD_ID, str(OLYMPIAD_ID)]
    assert id_candidates("user-42") == ["user-42"]


@pytest.mark.asyncio
async def test_catalog_get_by_id_finds_object_id_keyed_documents():
    collection = fake_collection([{"_id": OLYMPIAD_ID, "title": "Math Olympiad Scholarship"}])
    store = MongoCatalogStore(fake_database(scholarships=collection), collection_name="scholarships")

    [listed] = await store.get_all()
    found = await store.get_by_id(listed.id)

    assert listed.id == str(OLYMPIAD_ID)
    assert found is not None
    assert found.id == listed.id
    assert found.title == "Math Olympiad Scholarship"


@pytest.mark.asyncio
async def test_catalog_get_by_id_matches_own_id_field():
    collection = fake_collection([{"_id": ObjectId(), "id": "sch-42", "title": "Art Grant"}])
    store = MongoCatalogStore(fake_database(scholarships=collection), collection_name="scholarships")

    item = await store.get_by_id("sch-42")

    assert item.id == "sch-42"
    assert item.title == "Art Grant"
    query = collection.find.call_args.args[0]
    assert {"id": "sch-42"} in query["$or"]


@pytest.mark.asyncio
async def test_catalog_get_by_id_ignores_document_reporting_another_id():
    # Stored under _id "sch-1" but addressed everywhere by its own id field
    collection = fake_collection([{"_id": "sch-1", "id": "other", "title": "Art Grant"}])
    store = MongoCatalogStore(fake_database(scholarships=collection), collection_name="scholarships")

    assert await store.get_by_id("sch-1") is None
    assert await store.get_by_id("missing") is None


@pytest.mark.asyncio
async def test_targeted_sync_keeps_live_object_id_item(embedder):
    collection = fake_collection([{"_id": OLYMPIAD_ID, "title": "Math Olympiad Scholarship"}])
    catalog = CatalogReader(
        MongoCatalogStore(fake_database(scholarships=collection), collection_name="scholarships"), timeout=5.0
    )
    vector_store = InMemoryVectorStore()
    sync = EmbeddingSyncService(catalog, embedder, vector_store, batch_delay_seconds=0)

    await sync.sync()
    result = await sync.sync_items([str(OLYMPIAD_ID)])

    assert result.deleted == 0
    assert await vector_store.list_ids() == {str(OLYMPIAD_ID)}


@pytest.mark.asyncio
async def test_catalog_read_error_becomes_store_unavailable():
    collection = fake_collection()
    collection.find.side_effect = ServerSelectionTimeoutError("no primary")
    store = MongoCatalogStore(fake_database(scholarships=collection), collection_name="scholarships")

    with pytest.raises(StoreUnavailable):
        await store.get_all()
    with pytest.raises(StoreUnavailable):
        await store.get_by_id("sch-1")


@pytest.mark.asyncio
async def test_catalog_skips_malformed_documents():
    collection = fake_collection([{"title": "No id"}, {"_id": "sch-1", "title": "Art Grant"}])
    store = MongoCatalogStore(fake_database(scholarships=collection), collection_name="scholarships")

    items = await store.get_all()

    assert [item.id for item in items] == ["sch-1"]


@pytest.mark.asyncio
async def test_profile_lookup_accepts_object_id_users():
    users = fake_collection()
    users.find_one.return_value = {"_id": OLYMPIAD_ID, "preferences": {"careerInterests": ["math"]}}
    store = MongoProfileStore(fake_database(users=users), collection_name="users")

    profile = await store.get_profile(str(OLYMPIAD_ID))

    assert profile["preferences"] == {"careerInterests": ["math"]}
    query = users.find_one.call_args.args[0]
    assert query == {"_id": {"$in": [OLYMPIAD_ID, str(OLYMPIAD_ID)]}}


@pytest.fixture
def feedback_collections():
    return {
        "feedback": fake_collection(),
        "tallies": fake_collection(),
        "insights": fake_collection(),
        "searches": fake_collection(),
    }


@pytest.fixture
def mongo_feedback(feedback_collections):
    return MongoFeedbackStore(
        fake_database(**feedback_collections),
        feedback_collection="feedback",
        interest_collection="tallies",
        insights_collection="insights",
        search_collection="searches",
    )


@pytest.mark.asyncio
async def test_append_returns_inserted_id(mongo_feedback, feedback_collections):
    feedback_collections["feedback"].insert_one.return_value = MagicMock(inserted_id=OLYMPIAD_ID)
    event = FeedbackEvent(user_id="u1", item_id="math-1", signal=FeedbackSignal.SAVED, timestamp=BASE_TIME)

    event_id = await mongo_feedback.append(event)

    assert event_id == str(OLYMPIAD_ID)
    stored = feedback_collections["feedback"].insert_one.call_args.args[0]
    assert stored["signal"] == "saved"
    assert stored["processed"] is False


@pytest.mark.asyncio
async def test_append_failure_becomes_store_unavailable(mongo_feedback, feedback_collections):
    feedback_collections["feedback"].insert_one.side_effect = PyMongoError("write failed")
    event = FeedbackEvent(user_id="u1", item_id="math-1", signal=FeedbackSignal.SAVED, timestamp=BASE_TIME)

    with pytest.raises(StoreUnavailable):
        await mongo_feedback.append(event)


@pytest.mark.asyncio
async def test_fetched_events_round_trip_to_mark_processed(mongo_feedback, feedback_collections):
    events = feedback_collections["feedback"]
    events.documents = [
        {"_id": OLYMPIAD_ID, "user_id": "u1", "item_id": "math-1", "signal": "clicked", "timestamp": BASE_TIME},
        {"_id": ObjectId(), "user_id": "u1", "signal": "clicked", "timestamp": BASE_TIME},
    ]
    events.update_many.return_value = MagicMock(modified_count=1)

    fetched = await mongo_feedback.fetch_unprocessed(10)
    flipped = await mongo_feedback.mark_processed([e.id for e in fetched], BASE_TIME)

    assert [e.id for e in fetched] == [str(OLYMPIAD_ID)]
    assert flipped == 1
    query, update = events.update_many.call_args.args
    assert query == {"_id": {"$in": [OLYMPIAD_ID, str(OLYMPIAD_ID)]}, "processed": False}
    assert update == {"$set": {"processed": True, "processed_at": BASE_TIME}}


@pytest.mark.asyncio
async def test_mark_processed_with_no_ids_skips_the_write(mongo_feedback, feedback_collections):
    assert await mongo_feedback.mark_processed([], BASE_TIME) == 0
    feedback_collections["feedback"].update_many.assert_not_called()


@pytest.mark.asyncio
async def test_rating_counts_only_aggregate_rating_signals(mongo_feedback, feedback_collections):
    events = feedback_collections["feedback"]
    events.aggregate.return_value.to_list.return_value = [
        {"_id": "helpful", "count": 3},
        {"_id": "not_helpful", "count": 1},
    ]

    counts = await mongo_feedback.rating_counts_since(BASE_TIME)

    assert counts == {"helpful": 3, "not_helpful": 1}
    match = events.aggregate.call_args.args[0][0]["$match"]
    assert match["timestamp"] == {"$gte": BASE_TIME}
    assert set(match["signal"]["$in"]) == {"helpful", "somewhat_helpful", "not_helpful"}


@pytest.mark.asyncio
async def test_signal_counts_cover_every_signal(mongo_feedback, feedback_collections):
    events = feedback_collections["feedback"]
    events.aggregate.return_value.to_list.return_value = [{"_id": "clicked", "count": 4}]

    assert await mongo_feedback.signal_counts_since(BASE_TIME) == {"clicked": 4}
    assert events.aggregate.call_args.args[0][0]["$match"] == {"timestamp": {"$gte": BASE_TIME}}


@pytest.mark.asyncio
async def test_aggregation_failure_becomes_store_unavailable(mongo_feedback, feedback_collections):
    feedback_collections["feedback"].aggregate.return_value.to_list.side_effect = PyMongoError("timeout")

    with pytest.raises(StoreUnavailable):
        await mongo_feedback.rating_counts_since(BASE_TIME)


@pytest.mark.asyncio
async def test_interest_tally_defaults_and_saves(mongo_feedback, feedback_collections):
    tallies = feedback_collections["tallies"]

    empty = await mongo_feedback.get_interest_tally("u1")
    await mongo_feedback.save_interest_tally(
        InterestTally(user_id="u1", categories={"math": 3.0}, pending_events=3, updated_at=BASE_TIME)
    )

    assert empty.categories == {} and empty.pending_events == 0
    query, document = tallies.replace_one.call_args.args
    assert query == {"_id": "u1"}
    assert document == {"categories": {"math": 3.0}, "pending_events": 3, "updated_at": BASE_TIME}
    assert tallies.replace_one.call_args.kwargs == {"upsert": True}


@pytest.mark.asyncio
async def test_search_keywords_are_counted_and_ranked(mongo_feedback, feedback_collections):
    searches = feedback_collections["searches"]

    await mongo_feedback.record_search("u1", ["robotics", "grant"], 4, BASE_TIME)
    query, update = searches.update_one.call_args.args
    assert query == {"_id": "u1"}
    assert update["$inc"] == {"queries.robotics.count": 1, "queries.grant.count": 1}
    assert update["$set"]["queries.grant.last_result_count"] == 4

    searches.find_one.return_value = {
        "_id": "u1",
        "queries": {"grant": {"count": 2}, "robotics": {"count": 5}, "art": {"count": 2}},
    }
    assert await mongo_feedback.top_search_keywords("u1", 2) == ["robotics", "art"]


@pytest.mark.asyncio
async def test_insights_are_stored_per_day(mongo_feedback, feedback_collections):
    insights = LearningInsights.from_counts({"clicked": 2}, BASE_TIME, BASE_TIME)

    await mongo_feedback.save_insights(insights)

    query, document = feedback_collections["insights"].replace_one.call_args.args
    assert query == {"_id": "2024-01-01"}
    assert document["total_events"] == 2


@pytest.mark.asyncio
async def test_config_store_round_trip():
    collection = fake_collection()
    store = MongoConfigStore(fake_database(system_config=collection), collection_name="system_config")
    config = RecommendationConfig(similarity_threshold=0.675, helpful_ratio=0.75, sample_size=4, last_updated=BASE_TIME)

    assert await store.load() is None
    await store.save(config)
    query, document = collection.replace_one.call_args.args
    collection.find_one.return_value = {"_id": RECOMMENDATION_CONFIG_ID, **document}

    assert query == {"_id": RECOMMENDATION_CONFIG_ID}
    assert await store.load() == config


@pytest.mark.asyncio
async def test_config_store_failure_becomes_store_unavailable():
    collection = fake_collection()
    collection.find_one.side_effect = PyMongoError("down")
    store = MongoConfigStore(fake_database(system_config=collection), collection_name="system_config")

    with pytest.raises(StoreUnavailable):
        await store.load()
