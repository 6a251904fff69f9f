"""
Catalog and profile stores backed by MongoDB collections.

Both collections belong to the rest of the application; these stores only
read from them.
"""

from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from opportunity_matcher.core.config import settings
from opportunity_matcher.core.exceptions import StoreUnavailable
from opportunity_matcher.core.interfaces import CatalogStore, ProfileStore
from opportunity_matcher.log.logging import logger
from opportunity_matcher.models.catalog import CatalogItem
from opportunity_matcher.stores.mongodb import id_candidates


def _parse_items(documents: List[Dict[str, Any]]) -> List[CatalogItem]:
    items = []
    for document in documents:
        try:
            items.append(CatalogItem.from_document(document))
        except ValueError as e:
            logger.warning("Skipping malformed catalog document", error=str(e))
    return items


class MongoCatalogStore(CatalogStore):
    """Reads opportunities from the catalog collection."""

    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        collection_name: str = settings.catalog_collection,
        created_field: str = "createdAt",
    ):
        self.collection = database.get_collection(collection_name)
        self.created_field = created_field

    async def get_all(self) -> List[CatalogItem]:
        try:
            documents = await self.collection.find({}).to_list(length=None)
        except PyMongoError as e:
            logger.error("Error reading catalog", error=str(e), error_type=type(e).__name__)
            raise StoreUnavailable("Could not read catalog") from e
        return _parse_items(documents)

    async def get_by_id(self, item_id: str) -> Optional[CatalogItem]:
        """
        Look an item up by the id ``get_all`` reports for it.

        That id is the document's own ``id`` field when present, otherwise
        ``str(_id)``, so both fields are matched and the parsed id is checked.
        """
        query = {"$or": [{"id": item_id}, {"_id": {"$in": id_candidates(item_id)}}]}
        try:
            documents = await self.collection.find(query).to_list(length=None)
        except PyMongoError as e:
            logger.error("Error reading catalog item", item_id=item_id, error=str(e))
            raise StoreUnavailable("Could not read catalog item", context={"item_id": item_id}) from e
        for item in _parse_items(documents):
            if item.id == item_id:
                return item
        return None

    async def get_recent(self, limit: int) -> List[CatalogItem]:
        try:
            cursor = self.collection.find({}).sort(self.created_field, DESCENDING).limit(limit)
            documents = await cursor.to_list(length=limit)
        except PyMongoError as e:
            logger.error("Error reading recent catalog items", limit=limit, error=str(e))
            raise StoreUnavailable("Could not read recent catalog items") from e
        return _parse_items(documents)


class MongoProfileStore(ProfileStore):
    """Reads user profiles from the users collection."""

    def __init__(self, database: AsyncIOMotorDatabase, collection_name: str = settings.profile_collection):
        self.collection = database.get_collection(collection_name)

    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.collection.find_one(
                {"_id": {"$in": id_candidates(user_id)}}, {"preferences": 1, "name": 1}
            )
        except PyMongoError as e:
            logger.error("Error reading user profile", user_id=user_id, error=str(e))
            raise StoreUnavailable("Could not read user profile", context={"user_id": user_id}) from e
