"""Data classes for conversations, messages and sync events.

This module defines the entities the store keeps, the three normalized push
event shapes, the synthetic conversation upsert used by reconciliation, and
the result type returned by user-facing commands.
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Union

from .exceptions import MessagingError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO8601 timestamp as sent by the backend into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip().replace('Z', '+00:00')
        # Postgres may emit more than 6 fractional digits
        if '.' in text:
            head, _, tail = text.partition('.')
            digits = ''.join(ch for ch in tail if ch.isdigit())
            suffix = tail[len(digits):]
            text = f"{head}.{digits[:6].ljust(6, '0')}{suffix}"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"unsupported timestamp value: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Message:
    """A chat message, either confirmed by the server or optimistic.

    Confirmed messages carry ``message_id``. Optimistic ones carry ``local_id``
    instead and are ``pending`` until reconciled, or ``failed`` on error.
    """
    conversation_id: str
    sender_id: str
    content: str
    created_at: datetime
    message_id: Optional[str] = None
    media_urls: Tuple[str, ...] = ()
    read_at: Optional[datetime] = None
    local_id: Optional[int] = None
    pending: bool = False
    failed: bool = False
    error: Optional[str] = None

    @property
    def is_confirmed(self) -> bool:
        return self.message_id is not None

    def sort_key(self) -> Tuple[datetime, str]:
        """Total order within a conversation: createdAt, then identifier."""
        if self.message_id is not None:
            return (self.created_at, self.message_id)
        return (self.created_at, f"~local-{self.local_id:012d}")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['media_urls'] = list(self.media_urls)
        data['created_at'] = format_timestamp(self.created_at)
        data['read_at'] = format_timestamp(self.read_at)
        return data

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Message":
        """Build a confirmed message from a ``messages`` table row."""
        created_at = parse_timestamp(record.get('created_at'))
        if not record.get('id') or not record.get('conversation_id') or created_at is None:
            raise ValueError("message record requires id, conversation_id and created_at")
        if not record.get('sender_id'):
            raise ValueError("message record requires sender_id")
        return cls(
            message_id=str(record['id']),
            conversation_id=str(record['conversation_id']),
            sender_id=str(record['sender_id']),
            content=record.get('content') or "",
            media_urls=tuple(record.get('media_urls') or ()),
            created_at=created_at,
            read_at=parse_timestamp(record.get('read_at')),
        )


@dataclass(frozen=True)
class MessageDraft:
    """Content of a message the viewer is about to send."""
    content: str = ""
    media_urls: Tuple[str, ...] = ()

    def is_empty(self) -> bool:
        return not self.content.strip() and not self.media_urls


@dataclass(frozen=True)
class MessageSummary:
    """Denormalized preview of a conversation's latest message."""
    content: str
    created_at: datetime
    sender_id: str

    @classmethod
    def from_message(cls, message: Message) -> "MessageSummary":
        return cls(content=message.content, created_at=message.created_at, sender_id=message.sender_id)


@dataclass
class Conversation:
    """A direct or group conversation as seen by the viewer."""
    conversation_id: str
    participant_ids: Tuple[str, ...] = ()
    is_group: bool = False
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    last_message: Optional[MessageSummary] = None
    last_activity_at: Optional[datetime] = None
    last_read_at: Optional[datetime] = None
    last_read_message_id: Optional[str] = None
    unread_count: int = 0

    @classmethod
    def from_record(
        cls,
        record: Dict[str, Any],
        participant_ids=(),
        last_read_at: Any = None,
        last_read_message_id: Optional[str] = None,
    ) -> "Conversation":
        """Build from a ``conversations`` row plus the viewer's membership fields."""
        if not record.get('id'):
            raise ValueError("conversation record requires id")
        return cls(
            conversation_id=str(record['id']),
            participant_ids=tuple(str(p) for p in participant_ids),
            is_group=bool(record.get('is_group', False)),
            name=record.get('name'),
            avatar_url=record.get('avatar_url'),
            last_activity_at=parse_timestamp(record.get('updated_at') or record.get('created_at')),
            last_read_at=parse_timestamp(last_read_at),
            last_read_message_id=str(last_read_message_id) if last_read_message_id else None,
        )

    def copy(self) -> "Conversation":
        return replace(self)


# Normalized push events


@dataclass(frozen=True)
class MessageReceived:
    conversation_id: str
    message: Message


@dataclass(frozen=True)
class MessageRead:
    conversation_id: str
    reader_id: str
    upto_message_id: str


@dataclass(frozen=True)
class PresenceChanged:
    user_id: str
    online: bool
    last_seen_at: Optional[datetime] = None


@dataclass(frozen=True)
class ConversationUpserted:
    """Synthetic event carrying server conversation metadata during reconciliation."""
    conversation: Conversation = field(hash=False)


Event = Union[MessageReceived, MessageRead, PresenceChanged, ConversationUpserted]


@dataclass
class CommandResult:
    """Result of a user-initiated command."""
    success: bool
    value: Any = None
    error: Optional[MessagingError] = None
    local_id: Optional[int] = None
    queued: bool = False

    @classmethod
    def ok(cls, value: Any = None, **kwargs) -> "CommandResult":
        return cls(success=True, value=value, **kwargs)

    @classmethod
    def failure(cls, error: MessagingError, **kwargs) -> "CommandResult":
        return cls(success=False, error=error, **kwargs)
