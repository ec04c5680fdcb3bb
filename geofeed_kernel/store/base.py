"""
Document store port — the real-time store the engine consumes.

The engine never talks to a concrete backend directly. Anything that can
offer range queries with live subscriptions, atomic field-level updates,
ordered live subscriptions over a sub-collection, and delete-by-id can
be bound behind this interface.

Collections are addressed by slash-separated paths; sub-collections hang
off a document path, e.g. ``chats/{zone_id}/posts/{post_id}/comments``.

Invariants:
- Every read and write is a coroutine
- Live callbacks are plain synchronous callables
- Subscription.unsubscribe() is synchronous; no callback fires after it returns
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple


# =========================
# Field operations
# =========================

class FieldOp:
    """Marker base for values resolved by the store at write time."""


@dataclass(frozen=True)
class Increment(FieldOp):
    amount: float = 1


@dataclass(frozen=True)
class ArrayUnion(FieldOp):
    values: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class ArrayRemove(FieldOp):
    values: Tuple[Any, ...] = ()


class ServerTimestamp(FieldOp):
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


class DeleteField(FieldOp):
    def __repr__(self) -> str:
        return "DELETE_FIELD"


SERVER_TIMESTAMP = ServerTimestamp()
DELETE_FIELD = DeleteField()


def increment(amount: float = 1) -> Increment:
    return Increment(amount)


def array_union(*values: Any) -> ArrayUnion:
    return ArrayUnion(tuple(values))


def array_remove(*values: Any) -> ArrayRemove:
    return ArrayRemove(tuple(values))


# =========================
# Snapshots and subscriptions
# =========================

@dataclass
class DocumentSnapshot:
    """An immutable view of one document at delivery time."""

    id: str
    collection: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.id}"

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, **self.data}


SnapshotCallback = Callable[[List[DocumentSnapshot]], None]
ErrorCallback = Callable[[Exception], None]


class Subscription:
    """Handle for one live query."""

    def __init__(
        self,
        collection: str,
        on_cancel: Optional[Callable[["Subscription"], None]] = None,
        key_range: Optional[Tuple[str, str]] = None,
    ):
        self.collection = collection
        self.key_range = key_range
        self._on_cancel = on_cancel
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        """Stop delivery. Idempotent."""
        if not self._active:
            return
        self._active = False
        if self._on_cancel is not None:
            self._on_cancel(self)


# =========================
# DocumentStore interface
# =========================

class DocumentStore(ABC):
    """
    The real-time document store consumed by the engine.

    Write methods accept FieldOp values anywhere a plain value is allowed;
    dotted keys in ``update`` address nested map fields (``last_viewed.uid``).
    """

    # -------------------------------------------------
    # Reads
    # -------------------------------------------------

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        """Return one document, or None if it does not exist."""

    @abstractmethod
    async def list_documents(
        self,
        collection: str,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        where: Optional[Tuple[str, Any]] = None,
    ) -> List[DocumentSnapshot]:
        """
        Return documents of a collection.

        ``where`` is an equality filter ``(field, value)``. When ``order_by``
        is given, documents lacking that field are excluded.
        """

    @abstractmethod
    async def count(self, collection: str) -> int:
        """Number of documents in a collection."""

    # -------------------------------------------------
    # Writes
    # -------------------------------------------------

    @abstractmethod
    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        """Create a document with a store-assigned id and return the id."""

    @abstractmethod
    async def set(
        self,
        collection: str,
        doc_id: str,
        data: Dict[str, Any],
        *,
        merge: bool = False,
    ) -> None:
        """Create or overwrite a document; with ``merge`` nested maps are merged."""

    @abstractmethod
    async def update(self, collection: str, doc_id: str, updates: Dict[str, Any]) -> None:
        """
        Atomically apply field-level updates to an existing document.

        Raises:
            DocumentNotFound: If the document does not exist.
        """

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        """Delete one document. Sub-collections are left untouched."""

    # -------------------------------------------------
    # Live queries
    # -------------------------------------------------

    @abstractmethod
    def subscribe_range(
        self,
        collection: str,
        field_name: str,
        start: str,
        end: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """
        Live query over ``start <= doc[field_name] <= end`` ordered by that field.

        The current result set is delivered first, then again after every
        change that touches the collection.
        """

    @abstractmethod
    def subscribe_ordered(
        self,
        collection: str,
        order_by: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
        *,
        limit_to_last: Optional[int] = None,
    ) -> Subscription:
        """Live query over a whole collection ordered ascending by ``order_by``."""
