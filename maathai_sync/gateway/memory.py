"""
In-process gateway.

Keeps conversations, participants, messages, profiles and notifications in
dictionaries and publishes realtime payloads in the same shape Supabase
does, so the whole sync loop can run offline. Failures can be scripted per
operation with ``fail_next``.
"""

import asyncio
import itertools
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..messaging.exceptions import MessageValidationError, NetworkError, NotFoundError
from ..messaging.models import Conversation, Message, PresenceChanged, format_timestamp, utcnow
from .base import RemoteDataGateway

logger = logging.getLogger(__name__)


class InMemoryGateway(RemoteDataGateway):
    """Gateway backed by process memory."""

    def __init__(self, viewer_id: str, clock=utcnow):
        super().__init__(viewer_id)
        self._clock = clock
        self._ids = itertools.count(1)

        self.conversations: Dict[str, Dict[str, Any]] = {}
        self.participants: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.messages: Dict[str, Dict[str, Any]] = {}
        self.profiles: Dict[str, Dict[str, Any]] = {}
        self.notifications: Dict[str, Dict[str, Any]] = {}
        self._direct_pairs: Dict[frozenset, str] = {}

        self._failures: Dict[str, List[BaseException]] = {}
        self._frames: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()
        self.channel_open = False
        self.open_count = 0
        self.calls: List[str] = []

    # Test and demo helpers

    def fail_next(self, operation: str, error: BaseException, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        self._failures.setdefault(operation, []).extend([error] * times)

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def _next_timestamp(self, conversation_id: str) -> datetime:
        """Server timestamps are strictly increasing per conversation."""
        now = self._clock()
        latest = max(
            (m["created_at"] for m in self.messages.values() if m["conversation_id"] == conversation_id),
            default=None,
        )
        if latest is not None and now <= latest:
            now = latest + timedelta(microseconds=1)
        return now

    def add_profile(self, user_id: str, online: bool = False, last_seen: Optional[datetime] = None) -> None:
        self.profiles[user_id] = {"id": user_id, "is_online": online, "last_seen": last_seen}

    def add_conversation(
        self,
        member_ids: Sequence[str],
        is_group: bool = False,
        name: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> str:
        conversation_id = conversation_id or self._new_id("conv")
        now = self._clock()
        self.conversations[conversation_id] = {
            "id": conversation_id,
            "is_group": is_group,
            "name": name,
            "avatar_url": None,
            "created_by": member_ids[0] if member_ids else None,
            "created_at": now,
            "updated_at": now,
        }
        for uid in dict.fromkeys(member_ids):
            self.participants[(conversation_id, uid)] = {
                "conversation_id": conversation_id,
                "user_id": uid,
                "last_read_at": None,
                "last_read_message_id": None,
                "is_admin": uid == (member_ids[0] if member_ids else None),
            }
        if not is_group and len(set(member_ids)) == 2:
            self._direct_pairs[frozenset(member_ids)] = conversation_id
        return conversation_id

    def insert_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        media_urls: Sequence[str] = (),
        created_at: Optional[datetime] = None,
        message_id: Optional[str] = None,
        publish: bool = True,
    ) -> Dict[str, Any]:
        """Store a message row as if some client inserted it, and push it."""
        if conversation_id not in self.conversations:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        row = {
            "id": message_id or self._new_id("msg"),
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "media_urls": list(media_urls) or None,
            "created_at": created_at or self._next_timestamp(conversation_id),
            "read_at": None,
            "is_deleted": False,
        }
        self.messages[row["id"]] = row
        conversation = self.conversations[conversation_id]
        if row["created_at"] > conversation["updated_at"]:
            conversation["updated_at"] = row["created_at"]
        if publish:
            self.publish("messages", "INSERT", row)
        return row

    def publish(self, table: str, change: str, record: Dict[str, Any], old: Optional[Dict[str, Any]] = None) -> None:
        """Queue a realtime payload in Supabase's realtime v2 shape."""
        payload = {
            "schema": "public",
            "table": table,
            "type": change,
            "record": _serialize(record),
            "old_record": _serialize(old or {}),
            "commit_timestamp": format_timestamp(self._clock()),
        }
        self._frames.put_nowait(payload)

    def heartbeat(self) -> None:
        self._frames.put_nowait(None)

    # Conversations and messages

    async def list_conversations(self, viewer_id: str) -> List[Conversation]:
        self._check("list_conversations")
        result = []
        for (conversation_id, uid), membership in self.participants.items():
            if uid != viewer_id:
                continue
            members = sorted(u for (cid, u) in self.participants if cid == conversation_id)
            result.append(Conversation.from_record(
                _serialize(self.conversations[conversation_id]),
                participant_ids=members,
                last_read_at=format_timestamp(membership["last_read_at"]),
                last_read_message_id=membership["last_read_message_id"],
            ))
        return result

    async def list_messages(
        self,
        conversation_id: str,
        before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Message]:
        self._check("list_messages")
        if conversation_id not in self.conversations:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        rows = [
            m for m in self.messages.values()
            if m["conversation_id"] == conversation_id
            and not m["is_deleted"]
            and (before is None or m["created_at"] < before)
        ]
        rows.sort(key=lambda m: (m["created_at"], m["id"]), reverse=True)
        return [Message.from_record(_serialize(row)) for row in rows[: limit or 50]]

    async def send_message(self, conversation_id: str, content: str, media_urls: Sequence[str] = ()) -> Message:
        self._check("send_message")
        if not (content or "").strip() and not media_urls:
            raise MessageValidationError("Message must have content or media")
        if (conversation_id, self.viewer_id) not in self.participants:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        row = self.insert_message(conversation_id, self.viewer_id, content, media_urls)
        return Message.from_record(_serialize(row))

    async def mark_read(
        self,
        conversation_id: str,
        upto_message_id: str,
        read_at: Optional[datetime] = None,
    ) -> None:
        self._check("mark_read")
        membership = self.participants.get((conversation_id, self.viewer_id))
        if membership is None:
            raise NotFoundError(f"Viewer is not a participant of {conversation_id}")
        old = dict(membership)
        if read_at is None:
            upto = self.messages.get(upto_message_id)
            read_at = upto["created_at"] if upto is not None else self._clock()
        membership["last_read_at"] = read_at
        membership["last_read_message_id"] = upto_message_id
        self.publish("conversation_participants", "UPDATE", membership, old)

    async def start_direct_conversation(self, peer_id: str) -> str:
        self._check("start_direct_conversation")
        if not peer_id or peer_id == self.viewer_id:
            raise MessageValidationError("A direct conversation needs a different peer")
        pair = frozenset((self.viewer_id, peer_id))
        existing = self._direct_pairs.get(pair)
        if existing is not None:
            return existing
        return self.add_conversation([self.viewer_id, peer_id])

    async def create_group_conversation(self, name: str, member_ids: Sequence[str]) -> str:
        self._check("create_group_conversation")
        if not name or not name.strip():
            raise MessageValidationError("Group conversations need a name")
        members = [self.viewer_id] + [m for m in member_ids if m != self.viewer_id]
        return self.add_conversation(members, is_group=True, name=name.strip())

    async def delete_message(self, conversation_id: str, message_id: str) -> None:
        self._check("delete_message")
        row = self.messages.get(message_id)
        if row is None or row["conversation_id"] != conversation_id or row["sender_id"] != self.viewer_id:
            raise NotFoundError(f"Message {message_id} not found")
        row["is_deleted"] = True

    async def list_presence(self, user_ids: Sequence[str]) -> List[PresenceChanged]:
        self._check("list_presence")
        return [
            PresenceChanged(user_id=uid, online=bool(p["is_online"]), last_seen_at=p["last_seen"])
            for uid, p in self.profiles.items()
            if uid in user_ids
        ]

    # Notifications

    def add_notification(self, title: str, message: str, kind: str = "message", publish: bool = True) -> Dict[str, Any]:
        row = {
            "id": self._new_id("notif"),
            "user_id": self.viewer_id,
            "type": kind,
            "title": title,
            "message": message,
            "link": None,
            "from_user_id": None,
            "is_read": False,
            "created_at": self._clock(),
        }
        self.notifications[row["id"]] = row
        if publish:
            self.publish("notifications", "INSERT", row)
        return row

    async def list_notifications(self, limit: int = 20) -> List[Dict[str, Any]]:
        self._check("list_notifications")
        rows = sorted(self.notifications.values(), key=lambda n: n["created_at"], reverse=True)
        return [_serialize(n) for n in rows[:limit]]

    async def mark_notification_read(self, notification_id: str) -> None:
        self._check("mark_notification_read")
        if notification_id in self.notifications:
            self.notifications[notification_id]["is_read"] = True

    async def mark_all_notifications_read(self) -> None:
        self._check("mark_all_notifications_read")
        for row in self.notifications.values():
            row["is_read"] = True

    async def delete_notification(self, notification_id: str) -> None:
        self._check("delete_notification")
        self.notifications.pop(notification_id, None)

    # Realtime

    async def open_channel(self) -> None:
        self._check("open_channel")
        self.channel_open = True
        self.open_count += 1

    async def pump(self, timeout: float) -> int:
        if not self.channel_open:
            raise NetworkError("Realtime channel is not open")
        self._check("pump")
        try:
            payload = await asyncio.wait_for(self._frames.get(), timeout)
        except asyncio.TimeoutError:
            return 0
        if payload is None:
            return 1
        record = payload.get("record") or {}
        for topic in self.topics:
            if topic.event not in ("*", payload["type"]):
                continue
            if topic.matches(payload["table"], record):
                self._dispatch(topic, payload)
        return 1

    async def close_channel(self) -> None:
        self.channel_open = False


def _serialize(row: Dict[str, Any]) -> Dict[str, Any]:
    return {k: format_timestamp(v) if isinstance(v, datetime) else v for k, v in row.items()}
