#!/usr/bin/env python3
"""
Unit tests for realtime payload normalization
"""

import unittest
from datetime import datetime, timezone

from maathai_sync.messaging.models import MessageRead, MessageReceived, PresenceChanged
from maathai_sync.sync.normalizer import normalize


def message_row(**overrides):
    row = {
        "id": "m1",
        "conversation_id": "c1",
        "sender_id": "peer",
        "content": "hello",
        "media_urls": None,
        "created_at": "2024-05-01T10:00:00.123456789Z",
        "read_at": None,
        "is_deleted": False,
    }
    row.update(overrides)
    return row


class TestMessagePayloads(unittest.TestCase):
    """Test normalization of ``messages`` changes."""

    def test_insert_becomes_message_received(self):
        event = normalize({"table": "messages", "type": "INSERT", "record": message_row()})

        self.assertIsInstance(event, MessageReceived)
        self.assertEqual(event.conversation_id, "c1")
        self.assertEqual(event.message.message_id, "m1")
        self.assertEqual(event.message.sender_id, "peer")
        self.assertEqual(event.message.created_at, datetime(2024, 5, 1, 10, 0, 0, 123456, tzinfo=timezone.utc))
        self.assertFalse(event.message.pending)

    def test_client_library_shape_is_accepted(self):
        event = normalize({"table": "messages", "eventType": "INSERT", "new": message_row(media_urls=["u"])})

        self.assertIsInstance(event, MessageReceived)
        self.assertEqual(event.message.media_urls, ("u",))

    def test_deleted_insert_is_dropped(self):
        self.assertIsNone(normalize({"table": "messages", "type": "INSERT", "record": message_row(is_deleted=True)}))

    def test_read_update_becomes_message_read(self):
        event = normalize({
            "table": "messages",
            "type": "UPDATE",
            "record": message_row(read_at="2024-05-01T10:05:00Z", read_by="viewer"),
            "old_record": message_row(),
        })

        self.assertEqual(event, MessageRead(conversation_id="c1", reader_id="viewer", upto_message_id="m1"))

    def test_update_without_new_read_is_ignored(self):
        row = message_row(content="edited")
        self.assertIsNone(normalize({"table": "messages", "type": "UPDATE", "record": row, "old_record": message_row()}))

    def test_missing_fields_are_dropped(self):
        row = message_row()
        del row["sender_id"]
        self.assertIsNone(normalize({"table": "messages", "type": "INSERT", "record": row}))

    def test_bad_timestamp_is_dropped(self):
        self.assertIsNone(normalize({
            "table": "messages", "type": "INSERT", "record": message_row(created_at="yesterday"),
        }))


class TestParticipantAndProfilePayloads(unittest.TestCase):
    """Test normalization of watermark and presence changes."""

    def test_participant_watermark_update(self):
        event = normalize({
            "table": "conversation_participants",
            "type": "UPDATE",
            "record": {"conversation_id": "c1", "user_id": "peer", "last_read_message_id": "m9"},
        })

        self.assertEqual(event, MessageRead(conversation_id="c1", reader_id="peer", upto_message_id="m9"))

    def test_participant_update_without_watermark(self):
        self.assertIsNone(normalize({
            "table": "conversation_participants",
            "type": "UPDATE",
            "record": {"conversation_id": "c1", "user_id": "peer", "last_read_message_id": None},
        }))

    def test_profile_presence(self):
        event = normalize({
            "table": "profiles",
            "type": "UPDATE",
            "record": {"id": "peer", "is_online": False, "last_seen": "2024-05-01T09:00:00+00:00"},
        })

        self.assertIsInstance(event, PresenceChanged)
        self.assertEqual(event.user_id, "peer")
        self.assertFalse(event.online)
        self.assertEqual(event.last_seen_at, datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc))

    def test_profile_update_without_presence_field(self):
        self.assertIsNone(normalize({"table": "profiles", "type": "UPDATE", "record": {"id": "peer", "bio": "x"}}))


class TestUnrecognisedPayloads(unittest.TestCase):
    """normalize never raises."""

    def test_unknown_table(self):
        with self.assertLogs("maathai_sync.sync.normalizer", level="WARNING"):
            self.assertIsNone(normalize({"table": "posts", "type": "INSERT", "record": {"id": 1}}))

    def test_non_dict_payloads(self):
        for raw in (None, "INSERT", 42, ["messages"]):
            self.assertIsNone(normalize(raw))

    def test_record_of_wrong_type(self):
        self.assertIsNone(normalize({"table": "messages", "type": "INSERT", "record": "oops"}))


if __name__ == "__main__":
    unittest.main()
