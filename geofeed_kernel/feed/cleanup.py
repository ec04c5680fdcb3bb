"""
Deep deletion and scheduled TTL sweeping.

Deleting a document never removes its sub-collections, so anything with
nested data (posts with comments, zones with posts and presence) is torn
down bottom-up here.

Behavioral Contract:
- delete_item_fully() removes sub-collections before the item itself
- delete_zone_fully() is best-effort for children, critical for the zone
  document, and cleans linked conversations only after the zone is gone
- The sweeper physically deletes documents the merger already hides
"""

import asyncio
from datetime import datetime
from typing import List, Optional, Sequence

from croniter import croniter
from pydantic import ValidationError

from geofeed_kernel.logging import get_logger
from geofeed_kernel.models.geo import IndexedDocument
from geofeed_kernel.proximity.merger import is_expired
from geofeed_kernel.store.base import DocumentStore
from geofeed_kernel.store.exceptions import StoreError
from geofeed_kernel.utils.time import Clock, as_utc, now_utc

logger = get_logger("cleanup")

ZONES = "chats"
CONVERSATIONS = "conversations"


def posts_path(zone_id: str) -> str:
    return f"{ZONES}/{zone_id}/posts"


async def delete_item_fully(
    store: DocumentStore,
    feed_path: str,
    item_id: str,
    sub_collections: Sequence[str] = ("comments",),
) -> None:
    """Delete one feed item and every document in its sub-collections."""
    for sub in sub_collections:
        children = await store.list_documents(f"{feed_path}/{item_id}/{sub}")
        await asyncio.gather(*(store.delete(child.collection, child.id) for child in children))
    await store.delete(feed_path, item_id)


async def _delete_all(store: DocumentStore, collection: str, what: str, **filters) -> int:
    """Best-effort delete of every listed document. Returns the number deleted."""
    try:
        docs = await store.list_documents(collection, **filters)
    except StoreError as e:
        logger.error("Error listing %s: %s", what, e)
        return 0

    results = await asyncio.gather(
        *(store.delete(doc.collection, doc.id) for doc in docs),
        return_exceptions=True,
    )
    for doc, result in zip(docs, results):
        if isinstance(result, Exception):
            logger.error("Failed to delete %s %s: %s", what, doc.id, result)
    return sum(1 for r in results if not isinstance(r, Exception))


async def delete_zone_fully(store: DocumentStore, zone_id: str) -> None:
    """
    Wipe a chat zone with its posts, comments, presence and linked conversations.

    Raises:
        StoreError: If the zone document itself could not be deleted.
    """
    logger.info("Starting deep clean for zone %s", zone_id)

    try:
        posts = await store.list_documents(posts_path(zone_id))
    except StoreError as e:
        logger.error("Error listing posts of %s: %s", zone_id, e)
        posts = []
    results = await asyncio.gather(
        *(delete_item_fully(store, posts_path(zone_id), post.id) for post in posts),
        return_exceptions=True,
    )
    for post, result in zip(posts, results):
        if isinstance(result, Exception):
            logger.error("Failed to delete post %s: %s", post.id, result)

    await _delete_all(store, f"{ZONES}/{zone_id}/presence", "presence")

    try:
        await store.delete(ZONES, zone_id)
    except StoreError as e:
        logger.critical("Error deleting zone document %s: %s", zone_id, e)
        raise

    await _delete_all(store, CONVERSATIONS, "conversation", where=("chat_id", zone_id))
    logger.info("Deep clean finished for zone %s", zone_id)


class ExpiredDocumentSweeper:
    """
    Physically deletes TTL-expired documents of one collection on a cron schedule.
    """

    def __init__(
        self,
        store: DocumentStore,
        collection: str,
        schedule: str = "*/15 * * * *",
        ttl_field: Optional[str] = None,
        lifetime_seconds: Optional[float] = None,
        clock: Optional[Clock] = None,
    ):
        if not croniter.is_valid(schedule):
            raise ValueError(f"invalid cron schedule: {schedule!r}")
        self.store = store
        self.collection = collection
        self.schedule = schedule
        self.ttl_field = ttl_field
        self.lifetime_seconds = lifetime_seconds
        self._clock = clock or now_utc
        self.last_run_at: Optional[datetime] = None

    def next_run_at(self, after: Optional[datetime] = None) -> datetime:
        """Next scheduled run strictly after ``after`` (default: last run or now)."""
        base = as_utc(after or self.last_run_at or self._clock())
        return croniter(self.schedule, base).get_next(datetime)

    def due(self, now: Optional[datetime] = None) -> bool:
        now = as_utc(now or self._clock())
        if self.last_run_at is None:
            return True
        return now >= self.next_run_at(self.last_run_at)

    async def sweep(self, now: Optional[datetime] = None) -> List[str]:
        """Delete every expired document now. Returns the deleted ids."""
        now = as_utc(now or self._clock())
        docs = await self.store.list_documents(self.collection)

        expired = []
        for snap in docs:
            try:
                doc = IndexedDocument.model_validate(snap.to_dict())
            except ValidationError:
                continue
            if is_expired(doc, now, self.ttl_field, self.lifetime_seconds):
                expired.append(doc.id)

        for doc_id in expired:
            await self.store.delete(self.collection, doc_id)

        self.last_run_at = now
        if expired:
            logger.info("Swept %d expired document(s) from %s", len(expired), self.collection)
        return expired

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Sweep on schedule until ``stop_event`` is set."""
        if stop_event is None:
            stop_event = asyncio.Event()

        while not stop_event.is_set():
            if self.due():
                try:
                    await self.sweep()
                except StoreError as e:
                    logger.error("Sweep of %s failed: %s", self.collection, e)
            delay = (self.next_run_at() - as_utc(self._clock())).total_seconds()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(delay, 0.0))
            except asyncio.TimeoutError:
                continue
