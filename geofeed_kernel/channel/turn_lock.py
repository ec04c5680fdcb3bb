"""
Turn-Locked Pairwise Channel — strict alternation between two parties.

Turn ownership is never stored. It is derived from the tail of the live,
time-ordered message stream every time the stream changes: a party may
send only when the other party spoke last (or nobody has spoken yet).

States:
  MY_TURN → SENDING → (echo observed) → THEIR_TURN → (reply observed) → MY_TURN

Behavioral Contract:
- send() is accepted only in MY_TURN
- Until the first snapshot arrives, and after the stream is lost or
  closed, the turn is unknown and the channel reports THEIR_TURN
- After a successful append the channel stays SENDING until the live
  stream delivers the new message, even if the write already resolved
- A failed send returns to MY_TURN; the cleared draft is not restored
- Read receipts and conversation metadata are best-effort side effects
- Deleting a message re-derives the turn from whatever the tail is now
"""

import asyncio
from typing import Callable, List, Optional, Sequence, Set

from pydantic import ValidationError

from geofeed_kernel.logging import get_logger
from geofeed_kernel.models.conversation import (
    ChannelStatus,
    Conversation,
    Message,
    TurnState,
)
from geofeed_kernel.store.base import SERVER_TIMESTAMP, DocumentSnapshot, DocumentStore, Subscription
from geofeed_kernel.store.exceptions import StoreError
from geofeed_kernel.utils.time import as_utc

logger = get_logger("channel")

CONVERSATIONS = "conversations"


class ChannelError(Exception):
    """Base class for channel failures."""
    pass


class NotYourTurn(ChannelError):
    pass


class InvalidMessage(ChannelError):
    pass


class NotMessageAuthor(ChannelError):
    pass


class ChannelNotReady(ChannelError):
    """History has not loaded, or the message stream is gone."""
    pass


class SendError(ChannelError):
    """The message could not be appended to the store."""
    pass


# --- Pure helpers ---

def conversation_id_for(uid_a: str, uid_b: str) -> str:
    """Deterministic id: the two participant ids sorted and joined."""
    if uid_a == uid_b:
        raise ValueError("a conversation needs two distinct participants")
    first, second = sorted([uid_a, uid_b])
    return f"{first}_{second}"


def derive_turn_state(messages: Sequence[Message], local_uid: str) -> TurnState:
    """MY_TURN unless the most recent message was sent by ``local_uid``."""
    if not messages or messages[-1].sender_id != local_uid:
        return TurnState.MY_TURN
    return TurnState.THEIR_TURN


def is_unread(conversation: Conversation, uid: str) -> bool:
    """True if a message from the other party arrived after ``uid`` last looked."""
    if conversation.last_message_at is None or conversation.last_sender_id in (None, uid):
        return False
    viewed = conversation.last_viewed.get(uid)
    if viewed is None:
        return True
    return as_utc(conversation.last_message_at) > as_utc(viewed)


def messages_path(conversation_id: str) -> str:
    return f"{CONVERSATIONS}/{conversation_id}/messages"


async def ensure_conversation(store: DocumentStore, uid_a: str, uid_b: str) -> str:
    """Create the conversation document if needed; reopening never duplicates."""
    conversation_id = conversation_id_for(uid_a, uid_b)
    await store.set(
        CONVERSATIONS,
        conversation_id,
        {"participants": sorted([uid_a, uid_b]), "last_updated": SERVER_TIMESTAMP},
        merge=True,
    )
    return conversation_id


# --- Live channel ---

class TurnLockedChannel:
    """One party's view of a two-party conversation."""

    def __init__(
        self,
        store: DocumentStore,
        conversation_id: str,
        local_uid: str,
        local_name: Optional[str] = None,
        history_limit: int = 50,
        max_message_length: int = 200,
        on_change: Optional[Callable[["TurnLockedChannel"], None]] = None,
        read_receipts: bool = True,
    ):
        self.store = store
        self.read_receipts = read_receipts
        self.conversation_id = conversation_id
        self.local_uid = local_uid
        self.local_name = local_name
        self.history_limit = history_limit
        self.max_message_length = max_message_length
        self._on_change = on_change

        self.draft = ""
        self.last_error: Optional[str] = None
        self._messages: List[Message] = []
        self._status = ChannelStatus.LOADING
        self._subscription: Optional[Subscription] = None
        self._sending = False
        self._awaiting_echo: Optional[str] = None
        self._background: Set[asyncio.Task] = set()

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def status(self) -> ChannelStatus:
        return self._status

    @property
    def live(self) -> bool:
        """True once history has loaded and while the stream is open."""
        return self._status == ChannelStatus.READY and self._subscription is not None

    @property
    def state(self) -> TurnState:
        if self._sending or self._awaiting_echo is not None:
            return TurnState.SENDING
        if not self.live:
            return TurnState.THEIR_TURN
        return derive_turn_state(self._messages, self.local_uid)

    @property
    def can_send(self) -> bool:
        return self.state == TurnState.MY_TURN

    # --- Subscription ---

    def open(self) -> None:
        """Subscribe to the ordered message stream (last ``history_limit`` messages)."""
        if self._subscription is not None:
            return
        self._status = ChannelStatus.LOADING
        try:
            self._subscription = self.store.subscribe_ordered(
                messages_path(self.conversation_id),
                "created_at",
                on_snapshot=self._on_messages,
                on_error=self._on_stream_error,
                limit_to_last=self.history_limit,
            )
        except StoreError as e:
            self._on_stream_error(e)

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
        self._subscription = None

    def _on_messages(self, docs: List[DocumentSnapshot]) -> None:
        messages = []
        for doc in docs:
            try:
                messages.append(Message.model_validate(doc.to_dict()))
            except ValidationError:
                logger.debug("Skipping malformed message %s", doc.id)
        self._messages = messages
        self._status = ChannelStatus.READY

        if self._awaiting_echo is not None and any(m.id == self._awaiting_echo for m in messages):
            self._awaiting_echo = None

        if self.read_receipts and messages and messages[-1].sender_id != self.local_uid:
            self._fire_and_forget(self._mark_viewed())

        if self._on_change is not None:
            self._on_change(self)

    def _on_stream_error(self, error: Exception) -> None:
        logger.error("Message stream for %s failed: %s", self.conversation_id, error)
        self._status = ChannelStatus.UNAVAILABLE
        self.last_error = str(error)
        self._subscription = None
        if self._on_change is not None:
            self._on_change(self)

    # --- Side effects ---

    def _fire_and_forget(self, coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.debug("No running loop; skipped background update for %s", self.conversation_id)
            return
        task = loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _mark_viewed(self) -> None:
        try:
            await self.store.update(
                CONVERSATIONS,
                self.conversation_id,
                {f"last_viewed.{self.local_uid}": SERVER_TIMESTAMP},
            )
        except StoreError as e:
            logger.warning("Read receipt for %s failed: %s", self.conversation_id, e)

    async def settle(self) -> None:
        """Wait for outstanding background side effects."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # --- Commands ---

    async def send(self, text: Optional[str] = None) -> str:
        """
        Append a message from the local party. ``text`` defaults to the draft.

        Returns the new message id.

        Raises:
            ChannelNotReady: History is not loaded or the stream is closed.
            NotYourTurn: The other party has not replied yet, or a send is in flight.
            InvalidMessage: Empty or over-long text.
            SendError: The store rejected the append.
        """
        body = (self.draft if text is None else text).strip()
        if not body:
            raise InvalidMessage("message is empty")
        if len(body) > self.max_message_length:
            raise InvalidMessage(f"message exceeds {self.max_message_length} characters")
        if not self.live:
            raise ChannelNotReady(f"channel is {self._status.value}")
        if self.state != TurnState.MY_TURN:
            raise NotYourTurn(f"cannot send in state {self.state.value}")

        self.draft = ""
        self._sending = True
        self.last_error = None
        try:
            message_id = await self.store.add(
                messages_path(self.conversation_id),
                {
                    "text": body,
                    "sender_id": self.local_uid,
                    "sender_name": self.local_name,
                    "created_at": SERVER_TIMESTAMP,
                },
            )
        except StoreError as e:
            logger.error("Send on %s failed: %s", self.conversation_id, e)
            self.last_error = str(e)
            raise SendError(str(e)) from e
        finally:
            self._sending = False

        if not any(m.id == message_id for m in self._messages):
            self._awaiting_echo = message_id

        await self._update_meta()
        return message_id

    async def _update_meta(self) -> None:
        try:
            await self.store.update(
                CONVERSATIONS,
                self.conversation_id,
                {
                    "last_sender_id": self.local_uid,
                    "last_message_at": SERVER_TIMESTAMP,
                    f"last_viewed.{self.local_uid}": SERVER_TIMESTAMP,
                },
            )
        except StoreError as e:
            logger.warning("Conversation meta update for %s failed: %s", self.conversation_id, e)

    async def delete_message(self, message_id: str) -> None:
        """Delete one of the local party's own messages."""
        message = next((m for m in self._messages if m.id == message_id), None)
        if message is None:
            snap = await self.store.get(messages_path(self.conversation_id), message_id)
            if snap is None:
                return
            message = Message.model_validate(snap.to_dict())
        if message.sender_id != self.local_uid:
            raise NotMessageAuthor(f"message {message_id} belongs to {message.sender_id}")
        await self.store.delete(messages_path(self.conversation_id), message_id)
