"""
Unit tests for the conversation store.

Covers the merge rules: redelivery dedup, ordering under reordered delivery,
optimistic reconciliation, own-echo races and unread accounting.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from maathai_sync.messaging.exceptions import MessageValidationError, NetworkError, NotFoundError
from maathai_sync.messaging.models import (
    Conversation,
    ConversationUpserted,
    Message,
    MessageDraft,
    MessageRead,
    MessageReceived,
    PresenceChanged,
)
from maathai_sync.sync.store import ConversationStore

VIEWER = "viewer"
PEER = "peer"
T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def at(seconds):
    return T0 + timedelta(seconds=seconds)


def msg(message_id, seconds, sender=PEER, content="hi", conversation_id="c1"):
    return Message(
        conversation_id=conversation_id,
        sender_id=sender,
        content=content,
        created_at=at(seconds),
        message_id=message_id,
    )


def received(message):
    return MessageReceived(conversation_id=message.conversation_id, message=message)


def make_store(*conversation_ids):
    store = ConversationStore(VIEWER)
    for cid in conversation_ids or ("c1",):
        store.apply_event(ConversationUpserted(Conversation(conversation_id=cid, participant_ids=(PEER, VIEWER))))
    return store


def ids(store, conversation_id="c1"):
    return [m.message_id or f"local:{m.local_id}" for m in store.get_messages(conversation_id)]


class TestDeduplicationAndOrdering:
    """Test idempotent redelivery and position-correct insertion."""

    def test_redelivered_message_is_kept_once(self):
        store = make_store()
        m = msg("m1", 1)

        assert store.apply_event(received(m)) is True
        assert store.apply_event(received(m)) is False

        assert ids(store) == ["m1"]

    def test_late_older_message_is_inserted_in_place(self):
        store = make_store()
        store.apply_event(received(msg("m2", 2)))
        store.apply_event(received(msg("m1", 1)))

        assert ids(store) == ["m1", "m2"]

    def test_ties_are_broken_by_identifier(self):
        store = make_store()
        store.apply_event(received(msg("b", 1)))
        store.apply_event(received(msg("a", 1)))

        assert ids(store) == ["a", "b"]

    def test_identical_texts_remain_two_messages(self):
        store = make_store()
        first = store.apply_local_send("c1", MessageDraft("same"))
        second = store.apply_local_send("c1", MessageDraft("same"))

        assert first != second
        assert len(store.get_messages("c1")) == 2

    def test_message_for_unknown_conversation_creates_it(self):
        store = ConversationStore(VIEWER)
        store.apply_event(received(msg("m1", 1, conversation_id="new")))

        conversation = store.get_conversation("new")
        assert conversation is not None
        assert conversation.participant_ids == (PEER, VIEWER)
        assert conversation.unread_count == 1

    def test_mismatched_conversation_is_ignored(self):
        store = make_store()
        event = MessageReceived(conversation_id="c1", message=msg("m1", 1, conversation_id="other"))

        assert store.apply_event(event) is False
        assert ids(store) == []


class TestOptimisticSends:
    """Test the local send lifecycle."""

    def test_local_send_is_pending_and_last(self):
        store = make_store()
        store.apply_event(received(msg("m1", 1)))

        local_id = store.apply_local_send("c1", MessageDraft("hello"))
        messages = store.get_messages("c1")

        assert messages[-1].local_id == local_id
        assert messages[-1].pending is True
        assert messages[-1].message_id is None
        assert messages[-1].sender_id == VIEWER

    def test_success_replaces_entry_in_place(self):
        store = make_store()
        store.apply_event(received(msg("m1", 1)))
        local_id = store.apply_local_send("c1", MessageDraft("hello"))
        second = store.apply_local_send("c1", MessageDraft("again"))
        pending = store.get_local_message(local_id)

        server = replace(msg("s1", 0, sender=VIEWER, content="hello"), created_at=pending.created_at)
        assert store.reconcile_send(local_id, server) is True

        messages = store.get_messages("c1")
        assert ids(store) == ["m1", "s1", f"local:{second}"]
        assert messages[1].pending is False

    def test_server_timestamp_ahead_of_neighbours_moves_entry(self):
        store = make_store()
        now = datetime.now(timezone.utc)

        def around_now(message_id, seconds, sender=PEER):
            return replace(msg(message_id, 0, sender=sender), created_at=now + timedelta(seconds=seconds))

        store.apply_event(received(around_now("a", -100)))
        local_id = store.apply_local_send("c1", MessageDraft("hello"))
        store.apply_event(received(around_now("p", 5)))

        store.reconcile_send(local_id, around_now("s", 10, sender=VIEWER))
        store.apply_event(received(around_now("q", 7)))

        messages = store.get_messages("c1")
        assert ids(store) == ["a", "p", "q", "s"]
        keys = [m.sort_key() for m in messages]
        assert keys == sorted(keys)
        assert messages[-1].local_id == local_id

    def test_push_echo_before_response_yields_one_message(self):
        store = make_store()
        local_id = store.apply_local_send("c1", MessageDraft("hello"))
        server = msg("s1", 5, sender=VIEWER, content="hello")

        store.apply_event(received(server))
        store.reconcile_send(local_id, server)

        assert ids(store) == ["s1"]
        assert store.get_local_message(local_id) is None

    def test_push_echo_after_response_is_deduplicated(self):
        store = make_store()
        local_id = store.apply_local_send("c1", MessageDraft("hello"))
        server = msg("s1", 5, sender=VIEWER, content="hello")

        store.reconcile_send(local_id, server)
        assert store.apply_event(received(server)) is False

        assert ids(store) == ["s1"]

    def test_failed_send_stays_visible(self):
        store = make_store()
        store.apply_event(received(msg("m1", 1)))
        before = store.get_conversation("c1")

        local_id = store.apply_local_send("c1", MessageDraft("hello"))
        store.reconcile_send(local_id, NetworkError("offline"))

        failed = store.get_local_message(local_id)
        assert failed.failed is True
        assert failed.pending is False
        assert failed.error == "offline"

        after = store.get_conversation("c1")
        assert after.unread_count == before.unread_count
        assert after.last_message == before.last_message
        assert after.last_activity_at == before.last_activity_at
        assert store.get_unread_total() == 1

    def test_retry_puts_entry_back_to_pending(self):
        store = make_store()
        local_id = store.apply_local_send("c1", MessageDraft("hello", ("u",)))
        store.reconcile_send(local_id, NetworkError("offline"))

        draft = store.retry_send(local_id)

        assert draft == MessageDraft("hello", ("u",))
        assert store.get_local_message(local_id).pending is True

    def test_retry_requires_failed_entry(self):
        store = make_store()
        local_id = store.apply_local_send("c1", MessageDraft("hello"))

        with pytest.raises(MessageValidationError):
            store.retry_send(local_id)
        with pytest.raises(NotFoundError):
            store.retry_send(999)

    def test_discard_failed(self):
        store = make_store()
        local_id = store.apply_local_send("c1", MessageDraft("hello"))
        assert store.discard_failed(local_id) is False

        store.reconcile_send(local_id, NetworkError("offline"))
        assert store.discard_failed(local_id) is True
        assert store.get_messages("c1") == []

    def test_empty_draft_is_rejected(self):
        store = make_store()
        with pytest.raises(MessageValidationError):
            store.apply_local_send("c1", MessageDraft("   "))

    def test_attachment_only_draft_is_allowed(self):
        store = make_store()
        local_id = store.apply_local_send("c1", MessageDraft("", ("https://cdn/x.jpg",)))
        assert store.get_local_message(local_id).media_urls == ("https://cdn/x.jpg",)

    def test_send_to_unknown_conversation(self):
        with pytest.raises(NotFoundError):
            make_store().apply_local_send("missing", MessageDraft("hello"))


class TestUnreadAccounting:
    """Test watermark-based unread counts."""

    def test_mark_read_then_new_peer_message(self):
        store = make_store()
        store.apply_event(received(msg("A", 1, sender=VIEWER, content="hi")))
        store.apply_event(received(msg("B", 3, content="hey")))
        assert store.get_unread_count("c1") == 1

        assert store.mark_conversation_read("c1") == "B"
        assert store.get_unread_count("c1") == 0
        assert store.get_watermark("c1") == at(3)

        store.apply_event(received(msg("D", 5, content="yo")))
        assert ids(store) == ["A", "B", "D"]
        assert store.get_unread_count("c1") == 1

    def test_mark_read_only_affects_one_conversation(self):
        store = make_store("c1", "c2")
        store.apply_event(received(msg("m1", 1)))
        store.apply_event(received(msg("m2", 2, conversation_id="c2")))

        store.mark_conversation_read("c1")

        assert store.get_unread_count("c1") == 0
        assert store.get_unread_count("c2") == 1
        assert store.get_unread_total() == 1

    def test_own_messages_are_never_unread(self):
        store = make_store()
        store.apply_event(received(msg("m1", 1, sender=VIEWER)))
        assert store.get_unread_total() == 0

    def test_viewer_read_from_other_session_advances_watermark(self):
        store = make_store()
        store.apply_event(received(msg("m1", 1)))
        store.apply_event(received(msg("m2", 2)))

        store.apply_event(MessageRead(conversation_id="c1", reader_id=VIEWER, upto_message_id="m1"))

        assert store.get_unread_count("c1") == 1

    def test_watermark_never_moves_backwards(self):
        store = make_store()
        store.apply_event(received(msg("m1", 1)))
        store.apply_event(received(msg("m2", 2)))
        store.mark_conversation_read("c1")

        assert store.apply_event(MessageRead(conversation_id="c1", reader_id=VIEWER, upto_message_id="m1")) is False
        assert store.get_watermark("c1") == at(2)

    def test_peer_read_does_not_change_unread(self):
        store = make_store()
        store.apply_event(received(msg("m1", 1)))

        store.apply_event(MessageRead(conversation_id="c1", reader_id=PEER, upto_message_id="m1"))

        assert store.get_unread_count("c1") == 1
        assert store.get_read_receipts("c1") == {PEER: "m1"}

    def test_read_for_unknown_message_is_ignored(self):
        store = make_store()
        assert store.apply_event(MessageRead(conversation_id="c1", reader_id=VIEWER, upto_message_id="nope")) is False

    def test_mark_read_without_messages(self):
        assert make_store().mark_conversation_read("c1") is None

    def test_server_watermark_from_reconciliation(self):
        store = make_store()
        store.apply_event(received(msg("m1", 1)))
        store.apply_event(received(msg("m2", 2)))

        store.apply_event(ConversationUpserted(Conversation(
            conversation_id="c1", participant_ids=(PEER, VIEWER), last_read_at=at(1),
        )))

        assert store.get_unread_count("c1") == 1


class TestConversationSurfacing:
    """Test list ordering and conversation metadata."""

    def test_latest_activity_first(self):
        store = make_store("c1", "c2")
        store.apply_event(received(msg("m1", 1, conversation_id="c1")))
        store.apply_event(received(msg("m2", 2, conversation_id="c2")))
        assert [c.conversation_id for c in store.get_conversations()] == ["c2", "c1"]

        store.apply_event(received(msg("m3", 3, conversation_id="c1")))
        assert [c.conversation_id for c in store.get_conversations()] == ["c1", "c2"]

    def test_older_history_does_not_reorder(self):
        store = make_store()
        store.apply_event(received(msg("m2", 10)))
        store.apply_event(received(msg("m1", 1)))

        conversation = store.get_conversation("c1")
        assert conversation.last_activity_at == at(10)
        assert conversation.last_message.created_at == at(10)

    def test_new_empty_conversation_is_listed(self):
        store = ConversationStore(VIEWER)
        store.apply_event(ConversationUpserted(Conversation(
            conversation_id="fresh", participant_ids=(PEER, VIEWER), last_activity_at=at(100),
        )))
        assert store.get_conversations()[0].conversation_id == "fresh"

    def test_direct_participants_are_fixed(self):
        store = make_store()
        store.apply_event(ConversationUpserted(Conversation(conversation_id="c1", participant_ids=("x", "y"))))
        assert store.get_conversation("c1").participant_ids == (PEER, VIEWER)

    def test_group_participants_follow_server(self):
        store = ConversationStore(VIEWER)
        store.apply_event(ConversationUpserted(Conversation("g", participant_ids=("a", VIEWER), is_group=True)))
        store.apply_event(ConversationUpserted(Conversation("g", participant_ids=("a", "b", VIEWER), is_group=True)))
        assert store.get_conversation("g").participant_ids == ("a", "b", VIEWER)

    def test_returned_conversations_are_copies(self):
        store = make_store()
        store.get_conversations()[0].unread_count = 99
        assert store.get_unread_count("c1") == 0

    def test_presence(self):
        store = make_store()
        event = PresenceChanged(user_id=PEER, online=True)
        assert store.apply_event(event) is True
        assert store.apply_event(event) is False
        assert store.get_presence(PEER).online is True


class TestRemovalAndNavigation:
    """Test stale entity removal and the active conversation."""

    def test_remove_conversation_with_notice(self):
        store = make_store()
        store.set_active_conversation("c1")

        assert store.remove_conversation("c1", notice="gone") is True

        assert store.has_conversation("c1") is False
        assert store.active_conversation_id is None
        assert store.notices == ["gone"]

    def test_remove_message_updates_summary(self):
        store = make_store()
        store.apply_event(received(msg("m1", 1, content="first")))
        store.apply_event(received(msg("m2", 2, content="second")))

        store.remove_message("c1", "m2")

        assert ids(store) == ["m1"]
        assert store.get_conversation("c1").last_message.content == "first"
        assert store.get_unread_count("c1") == 1

    def test_set_unknown_active_conversation(self):
        with pytest.raises(NotFoundError):
            make_store().set_active_conversation("missing")


class TestListenersAndLiveness:
    """Test change notification and that apply_event never raises."""

    def test_listener_runs_only_on_change(self):
        store = make_store()
        listener = Mock()
        remove = store.add_listener(listener)

        store.apply_event(received(msg("m1", 1)))
        store.apply_event(received(msg("m1", 1)))
        assert listener.call_count == 1

        remove()
        store.apply_event(received(msg("m2", 2)))
        assert listener.call_count == 1

    def test_failing_listener_does_not_break_store(self):
        store = make_store()
        store.add_listener(Mock(side_effect=RuntimeError("boom")))

        assert store.apply_event(received(msg("m1", 1))) is True
        assert ids(store) == ["m1"]

    def test_unsupported_event_is_ignored(self):
        assert make_store().apply_event({"type": "INSERT"}) is False

    def test_pending_message_pushed_without_id_is_ignored(self):
        store = make_store()
        pending = Message(conversation_id="c1", sender_id=PEER, content="x", created_at=at(1))
        assert store.apply_event(received(pending)) is False
