"""
MongoDB connection management for the document-store collaborators.
"""

from dataclasses import dataclass
from typing import Any, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from opportunity_matcher.core.config import settings
from opportunity_matcher.core.exceptions import StoreUnavailable
from opportunity_matcher.log.logging import logger


@dataclass
class MongoConfig:
    """Configuration for MongoDB connection."""
    uri: str
    database: str
    timeout_ms: int = 5000


class MongoDBClientWrapper:
    """Wrapper for the motor client with explicit startup and shutdown."""

    def __init__(self, config: MongoConfig) -> None:
        self.config = config
        self._client: Optional[AsyncIOMotorClient] = None
        self._db: Optional[AsyncIOMotorDatabase] = None

    async def initialize(self) -> None:
        """
        Open the connection and verify it with a ping.

        Raises:
            StoreUnavailable: If the server cannot be reached
        """
        host = self.config.uri.split("@")[-1]
        logger.info("Connecting to MongoDB", host=host, database=self.config.database)
        try:
            self._client = AsyncIOMotorClient(
                self.config.uri,
                serverSelectionTimeoutMS=self.config.timeout_ms,
            )
            self._db = self._client[self.config.database]
            await self._client.admin.command("ping")
        except PyMongoError as e:
            logger.error(
                "Failed to connect to MongoDB",
                host=host,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise StoreUnavailable(
                "Failed to connect to MongoDB", context={"host": host}
            ) from e

        logger.success("Successfully connected to MongoDB", host=host, database=self.config.database)

    @property
    def db(self) -> AsyncIOMotorDatabase:
        """Get MongoDB database instance."""
        if self._db is None:
            raise StoreUnavailable("MongoDB database not initialized", context={"action": "get_database"})
        return self._db

    async def close(self) -> None:
        """Close MongoDB connection."""
        if self._client is not None:
            self._client.close()
            self._client = None
            self._db = None
            logger.info("MongoDB connection closed")


def create_mongodb_client() -> MongoDBClientWrapper:
    """Create a MongoDB client wrapper from settings."""
    return MongoDBClientWrapper(
        MongoConfig(
            uri=settings.mongodb,
            database=settings.mongodb_database,
            timeout_ms=settings.mongodb_timeout_ms,
        )
    )


def id_candidates(value: Any) -> List[Any]:
    """
    Values an ``_id`` stored for the string id ``value`` may take.

    Documents are addressed by ``str(_id)`` everywhere outside this package,
    so a 24-hex id may be stored either as an ObjectId or as the plain string.
    """
    candidates: List[Any] = [value]
    try:
        candidates.insert(0, ObjectId(value))
    except (InvalidId, TypeError):
        pass
    return candidates
