"""Read-only view objects handed to the UI layer."""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple

from ..messaging.models import Conversation, Message, PresenceChanged
from ..notifications.feed import Notification

ATTACHMENT_PREVIEW = "[attachment]"


@dataclass(frozen=True)
class ConversationSummaryView:
    conversation_id: str
    title: str
    is_group: bool
    participant_ids: Tuple[str, ...]
    avatar_url: Optional[str]
    last_message_preview: Optional[str]
    last_message_sender_id: Optional[str]
    last_activity_at: Optional[datetime]
    unread_count: int
    peer_online: Optional[bool] = None
    is_active: bool = False


@dataclass(frozen=True)
class MessageView:
    key: str
    message_id: Optional[str]
    local_id: Optional[int]
    sender_id: str
    content: str
    media_urls: Tuple[str, ...]
    created_at: datetime
    is_own: bool
    pending: bool
    failed: bool
    error: Optional[str] = None

    @property
    def can_retry(self) -> bool:
        return self.failed and self.local_id is not None


@dataclass(frozen=True)
class ThreadView:
    conversation_id: str
    messages: Tuple[MessageView, ...]
    read_receipts: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class ViewState:
    conversations: Tuple[ConversationSummaryView, ...] = ()
    active_thread: Optional[ThreadView] = None
    unread_badge: int = 0
    notifications: Tuple[Notification, ...] = ()
    notification_badge: int = 0
    connection_state: str = "disconnected"
    reconnecting: bool = False
    session_expired: bool = False
    notices: Tuple[str, ...] = ()


def conversation_title(conversation: Conversation, viewer_id: str) -> str:
    if conversation.name:
        return conversation.name
    peers = [p for p in conversation.participant_ids if p != viewer_id]
    return ", ".join(peers) if peers else conversation.conversation_id


def summarize(
    conversation: Conversation,
    viewer_id: str,
    presence: Dict[str, PresenceChanged],
    active_id: Optional[str],
) -> ConversationSummaryView:
    last = conversation.last_message
    preview = None
    if last is not None:
        preview = last.content if last.content.strip() else ATTACHMENT_PREVIEW

    peer_online = None
    if not conversation.is_group:
        peers = [p for p in conversation.participant_ids if p != viewer_id]
        if peers and peers[0] in presence:
            peer_online = presence[peers[0]].online

    return ConversationSummaryView(
        conversation_id=conversation.conversation_id,
        title=conversation_title(conversation, viewer_id),
        is_group=conversation.is_group,
        participant_ids=conversation.participant_ids,
        avatar_url=conversation.avatar_url,
        last_message_preview=preview,
        last_message_sender_id=last.sender_id if last else None,
        last_activity_at=conversation.last_activity_at,
        unread_count=conversation.unread_count,
        peer_online=peer_online,
        is_active=conversation.conversation_id == active_id,
    )


def message_view(message: Message, viewer_id: str) -> MessageView:
    key = message.message_id if message.message_id is not None else f"local-{message.local_id}"
    return MessageView(
        key=key,
        message_id=message.message_id,
        local_id=message.local_id,
        sender_id=message.sender_id,
        content=message.content,
        media_urls=message.media_urls,
        created_at=message.created_at,
        is_own=message.sender_id == viewer_id,
        pending=message.pending,
        failed=message.failed,
        error=message.error,
    )
