"""
Read-only accessor over the opportunity catalog.

Every call is bounded by the store timeout, and a timeout or an unreachable
backend surfaces as ``StoreUnavailable``.
"""

from typing import Dict, List, Optional, Set

from opportunity_matcher.core.config import settings
from opportunity_matcher.core.exceptions import NotFound
from opportunity_matcher.core.interfaces import CatalogStore
from opportunity_matcher.log.logging import logger
from opportunity_matcher.models.catalog import CatalogItem
from opportunity_matcher.utils.db_utils import with_timeout


class CatalogReader:
    """Catalog access used by sync, recommendation and maintenance."""

    def __init__(self, store: CatalogStore, timeout: float = settings.store_timeout_seconds):
        self.store = store
        self.timeout = timeout

    async def get_all(self) -> List[CatalogItem]:
        items = await with_timeout(self.store.get_all(), self.timeout, "catalog.get_all")
        logger.debug("Catalog read", count=len(items))
        return items

    async def get_items_by_id(self) -> Dict[str, CatalogItem]:
        """Every live item keyed by id."""
        return {item.id: item for item in await self.get_all()}

    async def get_ids(self) -> Set[str]:
        return set(await self.get_items_by_id())

    async def get_by_id(self, item_id: str) -> Optional[CatalogItem]:
        return await with_timeout(self.store.get_by_id(item_id), self.timeout, "catalog.get_by_id")

    async def require(self, item_id: str) -> CatalogItem:
        """
        Fetch an item that must exist.

        Raises:
            NotFound: No catalog item has this id
        """
        item = await self.get_by_id(item_id)
        if item is None:
            raise NotFound(f"Catalog item {item_id} not found", context={"item_id": item_id})
        return item

    async def get_recent(self, limit: int) -> List[CatalogItem]:
        return await with_timeout(self.store.get_recent(limit), self.timeout, "catalog.get_recent")
