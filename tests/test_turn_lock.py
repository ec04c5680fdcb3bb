"""Tests for the Turn-Locked Pairwise Channel."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from geofeed_kernel.channel.turn_lock import (
    ChannelNotReady,
    InvalidMessage,
    NotMessageAuthor,
    NotYourTurn,
    SendError,
    TurnLockedChannel,
    conversation_id_for,
    derive_turn_state,
    ensure_conversation,
    is_unread,
    messages_path,
)
from geofeed_kernel.models.conversation import ChannelStatus, Conversation, Message, TurnState
from geofeed_kernel.store.exceptions import WriteError
from geofeed_kernel.store.memory import InMemoryDocumentStore

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _msg(sender: str, i: int = 0) -> Message:
    return Message(id=f"m{i}", sender_id=sender, text="hi", created_at=NOW + timedelta(seconds=i))


def _setup(auto_flush: bool = True, store=None):
    store = store or InMemoryDocumentStore(clock=lambda: NOW, auto_flush=auto_flush)
    cid = asyncio.run(ensure_conversation(store, "bob", "alice"))
    alice = TurnLockedChannel(store, cid, "alice", local_name="Alice")
    bob = TurnLockedChannel(store, cid, "bob", local_name="Bob")
    alice.open()
    bob.open()
    return store, cid, alice, bob


class FailingAddStore(InMemoryDocumentStore):
    async def add(self, collection, data):
        raise WriteError("permission denied")


class FailingUpdateStore(InMemoryDocumentStore):
    async def update(self, collection, doc_id, updates):
        raise WriteError("conversation is read-only")


class TestPureHelpers:
    def test_conversation_id_is_sorted(self):
        assert conversation_id_for("zed", "amy") == "amy_zed"
        assert conversation_id_for("amy", "zed") == "amy_zed"

    def test_conversation_needs_two_parties(self):
        with pytest.raises(ValueError):
            conversation_id_for("amy", "amy")

    def test_empty_history_is_my_turn(self):
        assert derive_turn_state([], "alice") == TurnState.MY_TURN

    def test_turn_follows_tail(self):
        assert derive_turn_state([_msg("alice")], "alice") == TurnState.THEIR_TURN
        assert derive_turn_state([_msg("alice")], "bob") == TurnState.MY_TURN
        assert derive_turn_state([_msg("alice", 0), _msg("bob", 1)], "alice") == TurnState.MY_TURN

    def test_is_unread(self):
        conv = Conversation(
            id="alice_bob",
            participants=["alice", "bob"],
            last_sender_id="alice",
            last_message_at=NOW,
            last_viewed={"alice": NOW, "bob": NOW - timedelta(minutes=1)},
        )
        assert is_unread(conv, "bob")
        assert not is_unread(conv, "alice")

    def test_never_viewed_is_unread(self):
        conv = Conversation(
            id="alice_bob", participants=["alice", "bob"], last_sender_id="alice", last_message_at=NOW
        )
        assert is_unread(conv, "bob")

    def test_empty_conversation_is_read(self):
        conv = Conversation(id="alice_bob", participants=["alice", "bob"])
        assert not is_unread(conv, "bob")


class TestEnsureConversation:
    def test_reopen_does_not_duplicate(self):
        store = InMemoryDocumentStore(clock=lambda: NOW)

        async def scenario():
            first = await ensure_conversation(store, "bob", "alice")
            await store.update("conversations", first, {"last_sender_id": "bob"})
            second = await ensure_conversation(store, "alice", "bob")
            return first, second, await store.get("conversations", first), await store.count("conversations")

        first, second, snap, total = asyncio.run(scenario())
        assert first == second == "alice_bob"
        assert total == 1
        assert snap.data["participants"] == ["alice", "bob"]
        assert snap.data["last_sender_id"] == "bob"


class TestTurnLockedChannel:
    def test_both_start_on_my_turn(self):
        _, _, alice, bob = _setup()
        assert alice.status == ChannelStatus.READY
        assert alice.state == TurnState.MY_TURN
        assert bob.state == TurnState.MY_TURN

    def test_sending_until_echo(self):
        """The sender stays locked until its own message comes back on the stream."""
        store, _, alice, bob = _setup(auto_flush=False)

        asyncio.run(alice.send("hello"))
        assert alice.state == TurnState.SENDING
        assert bob.state == TurnState.MY_TURN
        with pytest.raises(NotYourTurn):
            asyncio.run(alice.send("again"))

        store.flush()
        assert alice.state == TurnState.THEIR_TURN
        assert bob.state == TurnState.MY_TURN
        assert [m.text for m in bob.messages] == ["hello"]

    def test_strict_alternation(self):
        store, _, alice, bob = _setup()
        asyncio.run(alice.send("one"))
        assert alice.state == TurnState.THEIR_TURN
        with pytest.raises(NotYourTurn):
            asyncio.run(alice.send("two"))

        asyncio.run(bob.send("reply"))
        assert bob.state == TurnState.THEIR_TURN
        assert alice.state == TurnState.MY_TURN
        asyncio.run(alice.send("two"))
        assert [m.text for m in alice.messages] == ["one", "reply", "two"]

    def test_send_uses_and_clears_draft(self):
        _, _, alice, _ = _setup()
        alice.draft = "  from the draft  "
        asyncio.run(alice.send())
        assert alice.draft == ""
        assert alice.messages[-1].text == "from the draft"
        assert alice.messages[-1].sender_name == "Alice"

    def test_invalid_messages(self):
        _, _, alice, _ = _setup()
        with pytest.raises(InvalidMessage):
            asyncio.run(alice.send("   "))
        with pytest.raises(InvalidMessage):
            asyncio.run(alice.send("x" * 201))
        assert alice.state == TurnState.MY_TURN

    def test_failed_send_restores_my_turn(self):
        _, _, alice, _ = _setup(store=FailingAddStore(clock=lambda: NOW))
        alice.draft = "lost"
        with pytest.raises(SendError):
            asyncio.run(alice.send())
        assert alice.state == TurnState.MY_TURN
        assert alice.draft == ""
        assert alice.last_error == "permission denied"

    def test_send_updates_conversation_meta(self):
        store, cid, alice, _ = _setup()
        asyncio.run(alice.send("hi"))
        conv = Conversation.model_validate(asyncio.run(store.get("conversations", cid)).to_dict())
        assert conv.last_sender_id == "alice"
        assert conv.last_message_at == NOW
        assert conv.last_viewed["alice"] == NOW
        assert not is_unread(conv, "alice")

    def test_read_receipt_on_incoming_message(self):
        store, cid, alice, bob = _setup()

        async def scenario():
            await alice.send("hi")
            await bob.settle()
            return await store.get("conversations", cid)

        conv = Conversation.model_validate(asyncio.run(scenario()).to_dict())
        assert conv.last_viewed["bob"] == NOW
        assert not is_unread(conv, "bob")

    def test_history_window(self):
        store = InMemoryDocumentStore(clock=lambda: NOW)

        async def seed():
            cid = await ensure_conversation(store, "alice", "bob")
            for i in range(60):
                sender = "alice" if i % 2 == 0 else "bob"
                await store.set(messages_path(cid), f"m{i:02d}", {
                    "sender_id": sender, "text": str(i), "created_at": NOW + timedelta(seconds=i),
                })
            return cid

        cid = asyncio.run(seed())
        channel = TurnLockedChannel(store, cid, "alice", read_receipts=False)
        channel.open()
        assert len(channel.messages) == 50
        assert channel.messages[0].text == "10"
        assert channel.messages[-1].text == "59"
        assert channel.state == TurnState.MY_TURN

    def test_delete_own_message_rederives_turn(self):
        _, _, alice, bob = _setup()
        message_id = asyncio.run(alice.send("oops"))
        with pytest.raises(NotMessageAuthor):
            asyncio.run(bob.delete_message(message_id))

        asyncio.run(alice.delete_message(message_id))
        assert alice.messages == []
        assert alice.state == TurnState.MY_TURN

    def test_stream_error_marks_unavailable(self):
        store, cid, alice, _ = _setup()
        store.revoke_subscriptions(messages_path(cid))
        assert alice.status == ChannelStatus.UNAVAILABLE
        assert alice.last_error

    def test_close_stops_updates(self):
        _, _, alice, bob = _setup()
        bob.close()
        asyncio.run(alice.send("anyone?"))
        assert bob.messages == []

    def test_closed_channel_refuses_to_send(self):
        store, cid, alice, _ = _setup()
        alice.close()
        assert not alice.can_send
        with pytest.raises(ChannelNotReady):
            asyncio.run(alice.send("hello?"))
        assert asyncio.run(store.count(messages_path(cid))) == 0


class TestChannelBeforeHistory:
    def _seed_alice_spoke(self):
        store = InMemoryDocumentStore(clock=lambda: NOW)

        async def seed():
            cid = await ensure_conversation(store, "alice", "bob")
            await store.set(messages_path(cid), "m0", {
                "sender_id": "alice", "text": "first", "created_at": NOW,
            })
            return cid

        return store, asyncio.run(seed())

    def test_unopened_channel_is_locked(self):
        store, cid = self._seed_alice_spoke()
        alice = TurnLockedChannel(store, cid, "alice", read_receipts=False)
        assert alice.status == ChannelStatus.LOADING
        assert alice.state == TurnState.THEIR_TURN
        assert not alice.can_send

        with pytest.raises(ChannelNotReady):
            asyncio.run(alice.send("second"))

        docs = asyncio.run(store.list_documents(messages_path(cid)))
        assert [d.data["sender_id"] for d in docs] == ["alice"]

    def test_turn_known_once_history_arrives(self):
        store, cid = self._seed_alice_spoke()
        bob = TurnLockedChannel(store, cid, "bob", read_receipts=False)
        assert not bob.can_send
        bob.open()
        assert bob.status == ChannelStatus.READY
        assert bob.state == TurnState.MY_TURN

    def test_lost_stream_refuses_to_send(self):
        store, cid = self._seed_alice_spoke()
        bob = TurnLockedChannel(store, cid, "bob", read_receipts=False)
        bob.open()
        store.revoke_subscriptions(messages_path(cid))
        assert bob.status == ChannelStatus.UNAVAILABLE
        assert bob.state == TurnState.THEIR_TURN
        with pytest.raises(ChannelNotReady):
            asyncio.run(bob.send("reply"))


class TestBestEffortSideEffects:
    def test_failing_meta_and_receipts_do_not_block_delivery(self, caplog):
        store, cid, alice, bob = _setup(store=FailingUpdateStore(clock=lambda: NOW))

        async def scenario():
            message_id = await alice.send("hi")
            await bob.settle()
            return message_id

        with caplog.at_level("WARNING", logger="geofeed.channel"):
            message_id = asyncio.run(scenario())

        assert message_id
        assert alice.state == TurnState.THEIR_TURN
        assert [m.text for m in bob.messages] == ["hi"]
        assert bob.state == TurnState.MY_TURN
        assert "meta update" in caplog.text
        assert "Read receipt" in caplog.text

        asyncio.run(bob.send("hello"))
        assert alice.state == TurnState.MY_TURN
