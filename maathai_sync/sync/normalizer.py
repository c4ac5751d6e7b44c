"""Translate raw realtime payloads into normalized sync events.

Supabase delivers postgres changes as ``{"type", "table", "record",
"old_record"}`` (realtime v2) or ``{"eventType", "table", "new", "old"}``
(client library shape). Both are accepted. Anything unrecognised is dropped
with a warning; ``normalize`` never raises.
"""

import logging
from typing import Any, Dict, Optional

from ..messaging.models import (
    Event,
    Message,
    MessageRead,
    MessageReceived,
    PresenceChanged,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

MESSAGES_TABLE = "messages"
PARTICIPANTS_TABLE = "conversation_participants"
PROFILES_TABLE = "profiles"


def _change_type(raw: Dict[str, Any]) -> str:
    return str(raw.get("type") or raw.get("eventType") or "").upper()


def _new_row(raw: Dict[str, Any]) -> Dict[str, Any]:
    row = raw.get("record")
    if row is None:
        row = raw.get("new")
    return row if isinstance(row, dict) else {}


def _old_row(raw: Dict[str, Any]) -> Dict[str, Any]:
    row = raw.get("old_record")
    if row is None:
        row = raw.get("old")
    return row if isinstance(row, dict) else {}


def _from_message_row(change: str, new: Dict[str, Any], old: Dict[str, Any]) -> Optional[Event]:
    if new.get("is_deleted"):
        return None

    if change == "INSERT":
        message = Message.from_record(new)
        return MessageReceived(conversation_id=message.conversation_id, message=message)

    if change == "UPDATE" and new.get("read_at") and not old.get("read_at"):
        reader = new.get("read_by")
        if not reader or not new.get("id") or not new.get("conversation_id"):
            return None
        return MessageRead(
            conversation_id=str(new["conversation_id"]),
            reader_id=str(reader),
            upto_message_id=str(new["id"]),
        )

    return None


def _from_participant_row(change: str, new: Dict[str, Any]) -> Optional[Event]:
    if change != "UPDATE":
        return None
    upto = new.get("last_read_message_id")
    if not upto or not new.get("conversation_id") or not new.get("user_id"):
        return None
    return MessageRead(
        conversation_id=str(new["conversation_id"]),
        reader_id=str(new["user_id"]),
        upto_message_id=str(upto),
    )


def _from_profile_row(change: str, new: Dict[str, Any]) -> Optional[Event]:
    if change not in ("INSERT", "UPDATE") or not new.get("id"):
        return None
    if "is_online" not in new:
        return None
    return PresenceChanged(
        user_id=str(new["id"]),
        online=bool(new.get("is_online")),
        last_seen_at=parse_timestamp(new.get("last_seen")),
    )


def normalize(raw: Any) -> Optional[Event]:
    """
    Convert one raw push payload into a normalized event.

    Args:
        raw: Payload dictionary as delivered by the realtime channel

    Returns:
        MessageReceived, MessageRead or PresenceChanged, or None when the
        payload is malformed or not relevant to conversation sync
    """
    if not isinstance(raw, dict):
        logger.warning("Dropping non-dict realtime payload: %r", type(raw).__name__)
        return None

    table = raw.get("table")
    change = _change_type(raw)

    try:
        if table == MESSAGES_TABLE:
            event = _from_message_row(change, _new_row(raw), _old_row(raw))
        elif table == PARTICIPANTS_TABLE:
            event = _from_participant_row(change, _new_row(raw))
        elif table == PROFILES_TABLE:
            event = _from_profile_row(change, _new_row(raw))
        else:
            logger.warning("Dropping payload for unknown table %r", table)
            return None
    except (ValueError, TypeError, KeyError) as e:
        logger.warning("Dropping malformed %s %s payload: %s", table, change or "?", e)
        return None

    if event is None:
        logger.debug("Ignoring %s %s payload with nothing to sync", table, change or "?")
    return event
