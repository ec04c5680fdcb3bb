"""
In-memory real-time document store.

Binds the DocumentStore port to plain dictionaries, with live range and
ordered subscriptions re-evaluated after every write. Used by the test
suite and by the default API application. A networked backend would
replace this class without changing any consumer.

Delivery is synchronous by default. With ``auto_flush=False`` notifications
are queued until ``flush()`` is called, which models a store whose live
updates arrive after the write future has resolved.
"""

import copy
from itertools import count as _counter
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from geofeed_kernel.logging import get_logger
from geofeed_kernel.store.base import (
    ArrayRemove,
    ArrayUnion,
    DeleteField,
    DocumentSnapshot,
    DocumentStore,
    ErrorCallback,
    FieldOp,
    Increment,
    ServerTimestamp,
    SnapshotCallback,
    Subscription,
)
from geofeed_kernel.store.exceptions import DocumentNotFound, SubscriptionError
from geofeed_kernel.utils.time import Clock, now_utc

logger = get_logger("store")


class _LiveQuery:
    """A registered live query and the callbacks it feeds."""

    def __init__(
        self,
        subscription: Subscription,
        evaluate: Callable[[], List[DocumentSnapshot]],
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback],
    ):
        self.subscription = subscription
        self.evaluate = evaluate
        self.on_snapshot = on_snapshot
        self.on_error = on_error


class InMemoryDocumentStore(DocumentStore):
    """
    Dictionary-backed store with live subscriptions.
    Production would bind a hosted real-time database instead.
    """

    def __init__(self, clock: Optional[Clock] = None, auto_flush: bool = True):
        self._collections: Dict[str, Dict[str, dict]] = {}
        self._order: Dict[str, int] = {}
        self._seq = _counter()
        self._live: List[_LiveQuery] = []
        self._pending: List[_LiveQuery] = []
        self._clock = clock or now_utc
        self.auto_flush = auto_flush

    # -------------------------------------------------
    # Reads
    # -------------------------------------------------

    async def get(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        data = self._collections.get(collection, {}).get(doc_id)
        if data is None:
            return None
        return self._snapshot(collection, doc_id, data)

    async def list_documents(
        self,
        collection: str,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        where: Optional[Tuple[str, Any]] = None,
    ) -> List[DocumentSnapshot]:
        docs = self._select(collection, order_by=order_by, descending=descending, where=where)
        if limit is not None:
            docs = docs[:limit]
        return docs

    async def count(self, collection: str) -> int:
        return len(self._collections.get(collection, {}))

    # -------------------------------------------------
    # Writes
    # -------------------------------------------------

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = uuid4().hex[:20]
        self._write(collection, doc_id, self._resolve({}, data, merge=False))
        return doc_id

    async def set(
        self,
        collection: str,
        doc_id: str,
        data: Dict[str, Any],
        *,
        merge: bool = False,
    ) -> None:
        existing = self._collections.get(collection, {}).get(doc_id)
        base = copy.deepcopy(existing) if (merge and existing is not None) else {}
        self._write(collection, doc_id, self._resolve(base, data, merge=merge))

    async def update(self, collection: str, doc_id: str, updates: Dict[str, Any]) -> None:
        existing = self._collections.get(collection, {}).get(doc_id)
        if existing is None:
            raise DocumentNotFound(f"{collection}/{doc_id} does not exist")

        data = copy.deepcopy(existing)
        now = self._clock()
        for path, value in updates.items():
            parent, key = self._walk(data, path.split("."))
            self._assign(parent, key, value, now)
        self._write(collection, doc_id, data)

    async def delete(self, collection: str, doc_id: str) -> None:
        docs = self._collections.get(collection)
        if docs is None or doc_id not in docs:
            return
        del docs[doc_id]
        self._order.pop(f"{collection}/{doc_id}", None)
        self._notify(collection)

    # -------------------------------------------------
    # Live queries
    # -------------------------------------------------

    def subscribe_range(
        self,
        collection: str,
        field_name: str,
        start: str,
        end: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        def evaluate() -> List[DocumentSnapshot]:
            return [
                d for d in self._select(collection, order_by=field_name)
                if isinstance(d.data.get(field_name), str)
                and start <= d.data[field_name] <= end
            ]

        return self._register(
            Subscription(collection, on_cancel=self._cancel, key_range=(start, end)),
            evaluate,
            on_snapshot,
            on_error,
        )

    def subscribe_ordered(
        self,
        collection: str,
        order_by: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
        *,
        limit_to_last: Optional[int] = None,
    ) -> Subscription:
        def evaluate() -> List[DocumentSnapshot]:
            docs = self._select(collection, order_by=order_by)
            if limit_to_last is not None:
                docs = docs[-limit_to_last:] if limit_to_last > 0 else []
            return docs

        return self._register(
            Subscription(collection, on_cancel=self._cancel),
            evaluate,
            on_snapshot,
            on_error,
        )

    def flush(self) -> int:
        """Deliver queued notifications. Returns the number delivered."""
        pending, self._pending = self._pending, []
        delivered = 0
        for live in pending:
            if live.subscription.active:
                self._deliver(live)
                delivered += 1
        return delivered

    def revoke_subscriptions(
        self,
        collection: str,
        where: Optional[Callable[[Subscription], bool]] = None,
        error: Optional[Exception] = None,
    ) -> int:
        """
        Terminate matching live queries with an error, as a server would on
        a permission change. Returns the number revoked.
        """
        revoked = 0
        for live in list(self._live):
            sub = live.subscription
            if sub.collection != collection or (where is not None and not where(sub)):
                continue
            self._live.remove(live)
            sub._active = False
            revoked += 1
            if live.on_error is not None:
                live.on_error(error or SubscriptionError(f"listener on {collection} revoked"))
        return revoked

    @property
    def active_subscriptions(self) -> int:
        return len(self._live)

    # -------------------------------------------------
    # Internals
    # -------------------------------------------------

    def _register(
        self,
        subscription: Subscription,
        evaluate: Callable[[], List[DocumentSnapshot]],
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback],
    ) -> Subscription:
        live = _LiveQuery(subscription, evaluate, on_snapshot, on_error)
        self._live.append(live)
        self._deliver(live)
        return subscription

    def _cancel(self, subscription: Subscription) -> None:
        self._live = [l for l in self._live if l.subscription is not subscription]
        self._pending = [l for l in self._pending if l.subscription is not subscription]

    def _notify(self, collection: str) -> None:
        for live in list(self._live):
            if live.subscription.collection != collection:
                continue
            if self.auto_flush:
                self._deliver(live)
            elif live not in self._pending:
                self._pending.append(live)

    def _deliver(self, live: _LiveQuery) -> None:
        if not live.subscription.active:
            return
        try:
            live.on_snapshot(live.evaluate())
        except Exception:
            logger.exception(
                "Snapshot listener on %s raised; other listeners unaffected",
                live.subscription.collection,
            )

    def _write(self, collection: str, doc_id: str, data: dict) -> None:
        docs = self._collections.setdefault(collection, {})
        key = f"{collection}/{doc_id}"
        if key not in self._order:
            self._order[key] = next(self._seq)
        docs[doc_id] = data
        self._notify(collection)

    def _select(
        self,
        collection: str,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        where: Optional[Tuple[str, Any]] = None,
    ) -> List[DocumentSnapshot]:
        docs = self._collections.get(collection, {})
        snaps = [self._snapshot(collection, doc_id, data) for doc_id, data in docs.items()]

        if where is not None:
            field_name, value = where
            snaps = [s for s in snaps if s.data.get(field_name) == value]

        if order_by is None:
            snaps.sort(key=lambda s: self._order[s.path])
            return snaps

        snaps = [s for s in snaps if s.data.get(order_by) is not None]
        snaps.sort(
            key=lambda s: (s.data[order_by], self._order[s.path]),
            reverse=descending,
        )
        return snaps

    def _snapshot(self, collection: str, doc_id: str, data: dict) -> DocumentSnapshot:
        return DocumentSnapshot(id=doc_id, collection=collection, data=copy.deepcopy(data))

    def _resolve(self, base: dict, data: Dict[str, Any], *, merge: bool) -> dict:
        """Fold ``data`` into ``base`` resolving FieldOps; nested maps merge when asked."""
        now = self._clock()
        for key, value in data.items():
            if merge and isinstance(value, dict) and isinstance(base.get(key), dict):
                base[key] = self._resolve(base[key], value, merge=True)
            elif isinstance(value, dict):
                base[key] = self._resolve({}, value, merge=False)
            else:
                self._assign(base, key, value, now)
        return base

    @staticmethod
    def _walk(data: dict, parts: List[str]) -> Tuple[dict, str]:
        node = data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        return node, parts[-1]

    @staticmethod
    def _assign(parent: dict, key: str, value: Any, now) -> None:
        if not isinstance(value, FieldOp):
            parent[key] = copy.deepcopy(value)
        elif isinstance(value, ServerTimestamp):
            parent[key] = now
        elif isinstance(value, DeleteField):
            parent.pop(key, None)
        elif isinstance(value, Increment):
            current = parent.get(key)
            parent[key] = (current if isinstance(current, (int, float)) else 0) + value.amount
        elif isinstance(value, ArrayUnion):
            current = list(parent.get(key) or [])
            current.extend(v for v in value.values if v not in current)
            parent[key] = current
        elif isinstance(value, ArrayRemove):
            parent[key] = [v for v in (parent.get(key) or []) if v not in value.values]
