"""
Rolling Feed Evictor — keeps a feed bounded by dropping its oldest item.

Behavioral Contract:
- At most one item is evicted per admission
- The admitting write never waits on eviction
- Under concurrent writers a feed may sit above its cap until later
  admissions bring it back down
"""

import asyncio
from typing import Any, Dict, Optional, Sequence, Set

from geofeed_kernel.feed.cleanup import delete_item_fully
from geofeed_kernel.logging import get_logger
from geofeed_kernel.store.base import SERVER_TIMESTAMP, DocumentStore
from geofeed_kernel.store.exceptions import StoreError

logger = get_logger("evictor")


class EvictionError(Exception):
    """The oldest item could not be removed."""
    pass


class RollingFeedEvictor:
    """Enforces a size cap on feed collections."""

    def __init__(self, store: DocumentStore, sub_collections: Sequence[str] = ("comments",)):
        self.store = store
        self.sub_collections = tuple(sub_collections)
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def enforce_cap(self, feed_path: str, current_count: int, cap: int) -> Optional[str]:
        """
        Evict the oldest item of ``feed_path`` if ``current_count >= cap``.

        Returns the evicted id, or None when nothing was evicted.

        Raises:
            EvictionError: The oldest item or its sub-collections could not be deleted.
        """
        if cap < 1:
            raise ValueError("cap must be at least 1")
        if current_count < cap:
            return None

        try:
            oldest = await self.store.list_documents(feed_path, order_by="created_at", limit=1)
            if not oldest:
                return None
            item_id = oldest[0].id
            await delete_item_fully(self.store, feed_path, item_id, self.sub_collections)
        except StoreError as e:
            raise EvictionError(f"could not evict from {feed_path}: {e}") from e

        logger.info("Evicted %s from %s (count %d, cap %d)", item_id, feed_path, current_count, cap)
        return item_id

    async def admit(self, feed_path: str, data: Dict[str, Any], cap: int) -> str:
        """
        Write a new item and schedule eviction of the oldest one.

        Returns the new item id. A failed write raises and evicts nothing.
        """
        current_count = await self.store.count(feed_path)
        body = dict(data)
        body.setdefault("created_at", SERVER_TIMESTAMP)
        item_id = await self.store.add(feed_path, body)

        task = asyncio.get_running_loop().create_task(
            self._evict_in_background(feed_path, current_count, cap)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return item_id

    async def _evict_in_background(self, feed_path: str, current_count: int, cap: int) -> None:
        try:
            await self.enforce_cap(feed_path, current_count, cap)
        except EvictionError as e:
            logger.error("Background eviction failed: %s", e)

    async def drain(self) -> None:
        """Wait for every scheduled eviction to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
