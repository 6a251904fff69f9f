from opportunity_matcher.stores.catalog import MongoCatalogStore, MongoProfileStore
from opportunity_matcher.stores.feedback import MongoConfigStore, MongoFeedbackStore
from opportunity_matcher.stores.mongodb import MongoConfig, MongoDBClientWrapper, create_mongodb_client

__all__ = [
    "MongoCatalogStore",
    "MongoProfileStore",
    "MongoFeedbackStore",
    "MongoConfigStore",
    "MongoConfig",
    "MongoDBClientWrapper",
    "create_mongodb_client",
]
