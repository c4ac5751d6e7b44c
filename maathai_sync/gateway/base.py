"""
Remote Data Gateway contract.

Every backend the sync engine talks to implements ``RemoteDataGateway``:
conversation and message CRUD, the find-or-create direct conversation
procedure, notification and presence reads, and realtime subscriptions.
All calls are asynchronous and fail with ``NetworkError``,
``AuthenticationError``, ``MessageValidationError`` or ``NotFoundError``.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..messaging.models import Conversation, Message, PresenceChanged

logger = logging.getLogger(__name__)

RawHandler = Callable[[Dict[str, Any]], None]


@dataclass(frozen=True)
class Topic:
    """A postgres-changes subscription: table, optional row filter, event kind."""
    table: str
    filter: Optional[str] = None
    event: str = "*"
    schema: str = "public"

    @property
    def name(self) -> str:
        parts = [self.schema, self.table]
        if self.filter:
            parts.append(self.filter)
        return ":".join(parts)

    def matches(self, table: str, record: Dict[str, Any]) -> bool:
        """Check a row against ``table`` and a PostgREST-style ``col=eq.value`` filter."""
        if table != self.table:
            return False
        if not self.filter:
            return True
        column, _, expression = self.filter.partition("=")
        operator, _, value = expression.partition(".")
        actual = record.get(column)
        if operator == "eq":
            return actual is not None and str(actual) == value
        if operator == "in":
            options = value.strip("()").split(",")
            return actual is not None and str(actual) in options
        logger.warning("Unsupported topic filter operator %r", operator)
        return False


class SubscriptionRegistry:
    """Handler bookkeeping shared by gateway implementations."""

    def __init__(self):
        self._handlers: Dict[Topic, List[RawHandler]] = {}

    @property
    def topics(self) -> List[Topic]:
        return list(self._handlers)

    def subscribe(self, topic: Topic, handler: RawHandler) -> Callable[[], None]:
        """
        Register ``handler`` for raw payloads on ``topic``.

        Returns:
            A function that removes the handler again
        """
        handlers = self._handlers.setdefault(topic, [])
        handlers.append(handler)
        self._on_topic_added(topic)

        def unsubscribe() -> None:
            current = self._handlers.get(topic)
            if not current or handler not in current:
                return
            current.remove(handler)
            if not current:
                del self._handlers[topic]
                self._on_topic_removed(topic)

        return unsubscribe

    def _on_topic_added(self, topic: Topic) -> None:
        pass

    def _on_topic_removed(self, topic: Topic) -> None:
        pass

    def _dispatch(self, topic: Topic, payload: Dict[str, Any]) -> int:
        delivered = 0
        for handler in list(self._handlers.get(topic, ())):
            try:
                handler(payload)
                delivered += 1
            except Exception:
                logger.exception("Realtime handler for %s failed", topic.name)
        return delivered


class RemoteDataGateway(SubscriptionRegistry, ABC):
    """Asynchronous access to the backend for a single signed-in viewer."""

    def __init__(self, viewer_id: str):
        super().__init__()
        if not viewer_id:
            raise ValueError("viewer_id is required")
        self.viewer_id = str(viewer_id)

    # Conversations and messages

    @abstractmethod
    async def list_conversations(self, viewer_id: str) -> List[Conversation]:
        """Conversations the viewer participates in."""

    @abstractmethod
    async def list_messages(
        self,
        conversation_id: str,
        before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Message]:
        """One page of messages, newest first, older than ``before`` when given."""

    @abstractmethod
    async def send_message(self, conversation_id: str, content: str, media_urls: Sequence[str] = ()) -> Message:
        """Persist a message and return the server-confirmed entity."""

    @abstractmethod
    async def mark_read(
        self,
        conversation_id: str,
        upto_message_id: str,
        read_at: Optional[datetime] = None,
    ) -> None:
        """
        Record the viewer's read watermark.

        ``read_at`` is the ``created_at`` of the upto message, never the wall
        clock time of the call, so later messages stay unread.
        """

    @abstractmethod
    async def start_direct_conversation(self, peer_id: str) -> str:
        """Find or create the direct conversation with ``peer_id``. Idempotent."""

    @abstractmethod
    async def create_group_conversation(self, name: str, member_ids: Sequence[str]) -> str:
        """Create a group conversation with the viewer as admin."""

    @abstractmethod
    async def delete_message(self, conversation_id: str, message_id: str) -> None:
        """Soft-delete one of the viewer's messages."""

    @abstractmethod
    async def list_presence(self, user_ids: Sequence[str]) -> List[PresenceChanged]:
        """Current online state of the given users."""

    # Notifications

    @abstractmethod
    async def list_notifications(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Latest notification rows for the viewer, newest first."""

    @abstractmethod
    async def mark_notification_read(self, notification_id: str) -> None:
        pass

    @abstractmethod
    async def mark_all_notifications_read(self) -> None:
        pass

    @abstractmethod
    async def delete_notification(self, notification_id: str) -> None:
        pass

    # Realtime lifecycle

    @abstractmethod
    async def open_channel(self) -> None:
        """Connect the realtime channel and join every registered topic."""

    @abstractmethod
    async def pump(self, timeout: float) -> int:
        """
        Wait up to ``timeout`` seconds for realtime frames and dispatch them.

        Returns:
            int: Number of frames received, heartbeats included; 0 when idle

        Raises:
            NetworkError: If the channel dropped
            AuthenticationError: If the backend rejected the session
        """

    @abstractmethod
    async def close_channel(self) -> None:
        pass

    async def aclose(self) -> None:
        """Release network resources."""
        await self.close_channel()
