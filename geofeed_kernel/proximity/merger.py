"""
Live Query Merger — one view over N covering-range subscriptions.

A circular proximity query is split into geohash covering ranges, each
with its own live subscription. The merger keeps the latest snapshot per
range index and, whenever any of them changes, recomputes the visible
result set with a pure reducer.

Behavioral Contract:
- Output is de-duplicated by id and sorted newest-first by created_at
- Every visible document is within the exact query radius
- Documents past their TTL are hidden; nothing is deleted from here
- A failing range is logged and the remaining ranges keep serving
- start(), stop() and refresh() never raise to the caller
"""

from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from pydantic import ValidationError

from geofeed_kernel.geo.ranges import GeohashRange, distance_meters, query_bounds
from geofeed_kernel.logging import get_logger
from geofeed_kernel.models.geo import IndexedDocument
from geofeed_kernel.models.proximity import ProximityQuery
from geofeed_kernel.store.base import DocumentSnapshot, DocumentStore, Subscription
from geofeed_kernel.utils.time import Clock, as_utc, now_utc

logger = get_logger("merger")

ResultCallback = Callable[[List[IndexedDocument]], None]


# --- Pure reducer ---

def _deadline(doc: IndexedDocument, ttl_field: str) -> Optional[datetime]:
    if ttl_field in IndexedDocument.model_fields:
        value: Any = getattr(doc, ttl_field)
    else:
        value = (doc.model_extra or {}).get(ttl_field)

    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return as_utc(value) if isinstance(value, datetime) else None


def is_expired(
    doc: IndexedDocument,
    now: datetime,
    ttl_field: Optional[str] = None,
    lifetime_seconds: Optional[float] = None,
) -> bool:
    """True once a document's explicit or implicit deadline has passed."""
    if ttl_field:
        deadline = _deadline(doc, ttl_field)
        if deadline is not None and now > deadline:
            return True

    if lifetime_seconds is not None:
        # A pending server timestamp counts as "just created"
        created = as_utc(doc.created_at) or now
        if now - created > timedelta(seconds=lifetime_seconds):
            return True

    return False


def merge_snapshots(
    snapshots: Mapping[int, Iterable[Mapping[str, Any]]],
    query: ProximityQuery,
    now: Optional[datetime] = None,
) -> List[IndexedDocument]:
    """
    Reduce ``{range_index -> raw documents}`` into the visible result set.

    Raw documents are plain mappings carrying an ``id`` key; records that do
    not describe an indexed document (no position, bad geohash...) are skipped.
    """
    if now is None:
        now = now_utc()

    unique: Dict[str, IndexedDocument] = {}
    for index in sorted(snapshots):
        for raw in snapshots[index]:
            doc_id = raw.get("id")
            if doc_id is None or doc_id in unique:
                continue
            try:
                doc = IndexedDocument.model_validate(raw)
            except ValidationError:
                logger.debug("Skipping malformed %s document %s", query.collection, doc_id)
                continue

            if distance_meters(doc.position, query.center) > query.radius_m:
                continue
            if is_expired(doc, now, query.ttl_field, query.lifetime_seconds):
                continue
            unique[doc_id] = doc

    return sorted(
        unique.values(),
        key=lambda d: (as_utc(d.created_at) or now, d.id),
        reverse=True,
    )


# --- Live binding ---

class LiveQueryMerger:
    """Subscribes one live range query per covering range and merges them."""

    def __init__(
        self,
        store: DocumentStore,
        query: ProximityQuery,
        on_change: Optional[ResultCallback] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.query = query
        self._on_change = on_change
        self._clock = clock or now_utc

        self._bounds: List[GeohashRange] = []
        self._subscriptions: List[Subscription] = []
        self._snapshots: Dict[int, List[dict]] = {}
        self._delivered: Set[int] = set()
        self._failed: Set[int] = set()
        self._results: List[IndexedDocument] = []
        self._active = False

    @property
    def bounds(self) -> List[GeohashRange]:
        return list(self._bounds)

    @property
    def results(self) -> List[IndexedDocument]:
        return list(self._results)

    @property
    def active(self) -> bool:
        return self._active

    @property
    def loading(self) -> bool:
        """True until every healthy range has delivered its first snapshot."""
        if not self._active:
            return False
        return any(
            i not in self._delivered and i not in self._failed
            for i in range(len(self._bounds))
        )

    @property
    def failed_ranges(self) -> List[int]:
        return sorted(self._failed)

    def start(self) -> None:
        """Open one live subscription per covering range."""
        if self._active:
            return
        self._active = True
        self._bounds = query_bounds(self.query.center, self.query.radius_m)
        logger.debug(
            "Opening %d range subscriptions on %s (radius %.0fm)",
            len(self._bounds), self.query.collection, self.query.radius_m,
        )

        for index, (start, end) in enumerate(self._bounds):
            try:
                sub = self.store.subscribe_range(
                    self.query.collection,
                    self.query.geohash_field,
                    start,
                    end,
                    on_snapshot=partial(self._on_range_snapshot, index),
                    on_error=partial(self._on_range_error, index),
                )
            except Exception as e:
                logger.warning(
                    "Range %d [%s, %s] on %s failed to subscribe: %s",
                    index, start, end, self.query.collection, e,
                )
                self._failed.add(index)
                continue
            self._subscriptions.append(sub)

    def stop(self) -> None:
        """Synchronously cancel every range subscription and clear the view."""
        self._active = False
        subs, self._subscriptions = self._subscriptions, []
        for sub in subs:
            sub.unsubscribe()
        self._snapshots.clear()
        self._delivered.clear()
        self._failed.clear()
        self._results = []

    def refresh(self) -> List[IndexedDocument]:
        """Re-apply TTL and distance filters against the current clock."""
        if self._active:
            self._publish()
        return self.results

    def _on_range_snapshot(self, index: int, docs: List[DocumentSnapshot]) -> None:
        if not self._active:
            return
        self._snapshots[index] = [d.to_dict() for d in docs]
        self._delivered.add(index)
        self._publish()

    def _on_range_error(self, index: int, error: Exception) -> None:
        # Keep the last snapshot of the failed range; the others keep serving.
        logger.error("Error on %s range %d: %s", self.query.collection, index, error)
        self._failed.add(index)

    def _publish(self) -> None:
        self._results = merge_snapshots(self._snapshots, self.query, self._clock())
        if self._on_change is not None:
            self._on_change(self.results)
