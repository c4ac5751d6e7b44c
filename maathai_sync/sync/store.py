"""In-memory authoritative cache of conversations, messages and unread state.

The store is the single mutable source of truth for the client. Push events,
reconciliation batches and optimistic local sends all flow through the
mutation methods here, which apply these merge rules:

- messages are deduplicated by server id; optimistic entries are matched by
  local sequence number only, never by content;
- messages are kept in ``(created_at, id)`` order regardless of arrival order;
- a confirmed send replaces its optimistic entry in place while its server
  timestamp still fits between the neighbours, and moves to its sorted
  position otherwise; if the push echo already delivered the same server id
  the optimistic entry is dropped;
- unread count is the number of confirmed peer messages newer than the
  viewer's read watermark.

``apply_event`` never raises: a bad event is logged and ignored.
"""

import bisect
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set, Union

from ..messaging.exceptions import MessageValidationError, NotFoundError
from ..messaging.models import (
    Conversation,
    ConversationUpserted,
    Message,
    MessageDraft,
    MessageRead,
    MessageReceived,
    MessageSummary,
    PresenceChanged,
    utcnow,
)

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

Listener = Callable[[], None]


class ConversationStore:
    """Conversation and message state for a single viewer."""

    def __init__(self, viewer_id: str):
        if not viewer_id:
            raise ValueError("viewer_id is required")
        self.viewer_id = str(viewer_id)
        self.active_conversation_id: Optional[str] = None
        self.notices: List[str] = []

        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._message_ids: Dict[str, Set[str]] = {}
        self._watermarks: Dict[str, datetime] = {}
        self._pending_reads: Dict[str, str] = {}
        self._read_receipts: Dict[str, Dict[str, str]] = {}
        self._presence: Dict[str, PresenceChanged] = {}
        self._local_index: Dict[int, str] = {}
        self._local_seq = 0
        self._listeners: List[Listener] = []

    # Change notification

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a callback run after every state change. Returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Store listener failed")

    # Push and reconciliation path

    def apply_event(self, event) -> bool:
        """
        Merge one normalized event into the store.

        Args:
            event: MessageReceived, MessageRead, PresenceChanged or ConversationUpserted

        Returns:
            bool: True if state changed
        """
        try:
            if isinstance(event, MessageReceived):
                changed = self._merge_message(event.conversation_id, event.message)
            elif isinstance(event, MessageRead):
                changed = self._apply_read(event)
            elif isinstance(event, PresenceChanged):
                changed = self._apply_presence(event)
            elif isinstance(event, ConversationUpserted):
                changed = self._upsert_conversation(event.conversation)
            else:
                logger.warning("Ignoring unsupported event %r", type(event).__name__)
                return False
        except Exception:
            logger.exception("Failed to apply %s", type(event).__name__)
            return False

        if changed:
            self._notify()
        return changed

    def _ensure_conversation(self, conversation_id: str, sender_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            # Stub until reconciliation delivers metadata
            participants = tuple(sorted({self.viewer_id, sender_id}))
            conversation = Conversation(conversation_id=conversation_id, participant_ids=participants)
            self._conversations[conversation_id] = conversation
            logger.debug("Created placeholder conversation %s", conversation_id)
        self._messages.setdefault(conversation_id, [])
        self._message_ids.setdefault(conversation_id, set())
        return conversation

    def _merge_message(self, conversation_id: str, message: Message) -> bool:
        if not message.is_confirmed:
            logger.warning("Ignoring pushed message without server id in %s", conversation_id)
            return False
        if message.conversation_id != conversation_id:
            logger.warning(
                "Ignoring message %s: belongs to %s, not %s",
                message.message_id, message.conversation_id, conversation_id,
            )
            return False

        conversation = self._ensure_conversation(conversation_id, message.sender_id)
        ids = self._message_ids[conversation_id]
        if message.message_id in ids:
            return False

        sequence = self._messages[conversation_id]
        clean = replace(message, pending=False, failed=False, error=None)
        self._insert_ordered(sequence, clean)
        ids.add(clean.message_id)
        if self._pending_reads.get(conversation_id) == clean.message_id:
            del self._pending_reads[conversation_id]
            self._advance_watermark(conversation_id, clean.created_at)

        self._touch(conversation, clean)
        self._refresh_unread(conversation_id)
        return True

    @staticmethod
    def _insert_ordered(sequence: List[Message], message: Message) -> None:
        keys = [m.sort_key() for m in sequence]
        index = bisect.bisect_right(keys, message.sort_key())
        sequence.insert(index, message)

    @staticmethod
    def _fits(sequence: List[Message], index: int) -> bool:
        key = sequence[index].sort_key()
        if index > 0 and sequence[index - 1].sort_key() > key:
            return False
        if index + 1 < len(sequence) and sequence[index + 1].sort_key() < key:
            return False
        return True

    @staticmethod
    def _touch(conversation: Conversation, message: Message) -> None:
        last = conversation.last_message
        if last is None or message.created_at >= last.created_at:
            conversation.last_message = MessageSummary.from_message(message)
        if conversation.last_activity_at is None or message.created_at > conversation.last_activity_at:
            conversation.last_activity_at = message.created_at

    def _refresh_unread(self, conversation_id: str) -> None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return
        watermark = self._watermarks.get(conversation_id)
        conversation.unread_count = sum(
            1
            for m in self._messages.get(conversation_id, ())
            if m.is_confirmed
            and m.sender_id != self.viewer_id
            and (watermark is None or m.created_at > watermark)
        )

    def _advance_watermark(self, conversation_id: str, upto: Optional[datetime]) -> bool:
        if upto is None:
            return False
        current = self._watermarks.get(conversation_id)
        if current is not None and current >= upto:
            return False
        self._watermarks[conversation_id] = upto
        conversation = self._conversations.get(conversation_id)
        if conversation is not None:
            conversation.last_read_at = upto
        self._refresh_unread(conversation_id)
        return True

    def _apply_read(self, event: MessageRead) -> bool:
        if event.conversation_id not in self._conversations:
            logger.debug("Read receipt for unknown conversation %s", event.conversation_id)
            return False

        if event.reader_id != self.viewer_id:
            receipts = self._read_receipts.setdefault(event.conversation_id, {})
            if receipts.get(event.reader_id) == event.upto_message_id:
                return False
            receipts[event.reader_id] = event.upto_message_id
            return True

        target = self._find_confirmed(event.conversation_id, event.upto_message_id)
        if target is None:
            logger.debug(
                "Read watermark references unknown message %s in %s",
                event.upto_message_id, event.conversation_id,
            )
            return False
        return self._advance_watermark(event.conversation_id, target.created_at)

    def _apply_presence(self, event: PresenceChanged) -> bool:
        if self._presence.get(event.user_id) == event:
            return False
        self._presence[event.user_id] = event
        return True

    def _upsert_conversation(self, incoming: Conversation) -> bool:
        conversation_id = incoming.conversation_id
        existing = self._conversations.get(conversation_id)

        if existing is None:
            conversation = incoming.copy()
            conversation.unread_count = 0
            conversation.last_read_at = None
            self._conversations[conversation_id] = conversation
            self._messages.setdefault(conversation_id, [])
            self._message_ids.setdefault(conversation_id, set())
        else:
            conversation = existing
            # Direct conversation membership is fixed once known
            if conversation.is_group or incoming.is_group or not conversation.participant_ids:
                if incoming.participant_ids:
                    conversation.participant_ids = incoming.participant_ids
            conversation.is_group = conversation.is_group or incoming.is_group
            conversation.name = incoming.name if incoming.name is not None else conversation.name
            conversation.avatar_url = incoming.avatar_url or conversation.avatar_url
            if incoming.last_activity_at is not None and (
                conversation.last_activity_at is None
                or incoming.last_activity_at > conversation.last_activity_at
            ):
                conversation.last_activity_at = incoming.last_activity_at
            if conversation.last_message is None and incoming.last_message is not None:
                conversation.last_message = incoming.last_message

        self._advance_watermark(conversation_id, self._server_watermark(incoming))
        self._refresh_unread(conversation_id)
        return True

    def _server_watermark(self, incoming: Conversation) -> Optional[datetime]:
        # The upto message's own timestamp wins over the time the read was recorded
        conversation_id = incoming.conversation_id
        read_id = incoming.last_read_message_id
        if not read_id:
            return incoming.last_read_at
        target = self._find_confirmed(conversation_id, read_id)
        if target is None:
            self._pending_reads[conversation_id] = read_id
            return None
        self._pending_reads.pop(conversation_id, None)
        return target.created_at

    # Optimistic send path

    def apply_local_send(self, conversation_id: str, draft: MessageDraft) -> int:
        """
        Append an optimistic message for a send the viewer just issued.

        Returns:
            int: Local sequence number identifying the optimistic entry

        Raises:
            NotFoundError: If the conversation is unknown
            MessageValidationError: If the draft has neither text nor media
        """
        if conversation_id not in self._conversations:
            raise NotFoundError(f"Unknown conversation {conversation_id}")
        if draft.is_empty():
            raise MessageValidationError("Message must have content or media")

        sequence = self._messages[conversation_id]
        created_at = utcnow()
        if sequence and sequence[-1].created_at > created_at:
            created_at = sequence[-1].created_at

        self._local_seq += 1
        local_id = self._local_seq
        sequence.append(Message(
            conversation_id=conversation_id,
            sender_id=self.viewer_id,
            content=draft.content,
            media_urls=tuple(draft.media_urls),
            created_at=created_at,
            local_id=local_id,
            pending=True,
        ))
        self._local_index[local_id] = conversation_id
        self._notify()
        return local_id

    def _find_local(self, local_id: int):
        conversation_id = self._local_index.get(local_id)
        if conversation_id is None:
            return None, None
        for index, message in enumerate(self._messages.get(conversation_id, ())):
            if message.local_id == local_id and not message.is_confirmed:
                return conversation_id, index
        return conversation_id, None

    def reconcile_send(self, local_id: int, result: Union[Message, BaseException]) -> bool:
        """
        Resolve an optimistic entry with the gateway outcome.

        A confirmed message replaces the entry in place; if the push echo
        already delivered the same server id the entry is dropped instead.
        An error marks the entry failed so it can be retried or discarded.

        Returns:
            bool: True if state changed
        """
        conversation_id, index = self._find_local(local_id)
        if conversation_id is None or index is None:
            logger.debug("No optimistic entry for local id %s", local_id)
            return False

        sequence = self._messages[conversation_id]
        entry = sequence[index]

        if isinstance(result, Message):
            ids = self._message_ids[conversation_id]
            if result.message_id in ids:
                del sequence[index]
                logger.debug("Push echo won the race for %s; dropped local %s", result.message_id, local_id)
            else:
                confirmed = replace(
                    result,
                    conversation_id=conversation_id,
                    local_id=local_id,
                    pending=False,
                    failed=False,
                    error=None,
                )
                sequence[index] = confirmed
                if not self._fits(sequence, index):
                    del sequence[index]
                    self._insert_ordered(sequence, confirmed)
                ids.add(confirmed.message_id)
                self._touch(self._conversations[conversation_id], confirmed)
            self._local_index.pop(local_id, None)
            self._refresh_unread(conversation_id)
        else:
            sequence[index] = replace(
                entry,
                pending=False,
                failed=True,
                error=str(result) or type(result).__name__,
            )

        self._notify()
        return True

    def retry_send(self, local_id: int) -> MessageDraft:
        """Put a failed entry back into pending state and return its draft."""
        conversation_id, index = self._find_local(local_id)
        if conversation_id is None or index is None:
            raise NotFoundError(f"No message with local id {local_id}")
        entry = self._messages[conversation_id][index]
        if not entry.failed:
            raise MessageValidationError(f"Message {local_id} has not failed")
        self._messages[conversation_id][index] = replace(entry, pending=True, failed=False, error=None)
        self._notify()
        return MessageDraft(content=entry.content, media_urls=entry.media_urls)

    def discard_failed(self, local_id: int) -> bool:
        conversation_id, index = self._find_local(local_id)
        if conversation_id is None or index is None:
            return False
        if not self._messages[conversation_id][index].failed:
            return False
        del self._messages[conversation_id][index]
        self._local_index.pop(local_id, None)
        self._notify()
        return True

    def get_local_message(self, local_id: int) -> Optional[Message]:
        conversation_id, index = self._find_local(local_id)
        if conversation_id is None or index is None:
            return None
        return self._messages[conversation_id][index]

    # Read state

    def mark_conversation_read(self, conversation_id: str) -> Optional[str]:
        """
        Advance the viewer's watermark to the newest confirmed message.

        Returns:
            The message id the watermark now points at, or None if the
            conversation has no confirmed messages yet

        Raises:
            NotFoundError: If the conversation is unknown
        """
        if conversation_id not in self._conversations:
            raise NotFoundError(f"Unknown conversation {conversation_id}")
        latest = None
        for message in reversed(self._messages.get(conversation_id, ())):
            if message.is_confirmed:
                latest = message
                break
        if latest is None:
            return None
        if self._advance_watermark(conversation_id, latest.created_at):
            self._notify()
        return latest.message_id

    # Removal

    def remove_conversation(self, conversation_id: str, notice: Optional[str] = None) -> bool:
        """Drop a conversation that no longer exists on the server."""
        if conversation_id not in self._conversations:
            return False
        del self._conversations[conversation_id]
        self._messages.pop(conversation_id, None)
        self._message_ids.pop(conversation_id, None)
        self._watermarks.pop(conversation_id, None)
        self._pending_reads.pop(conversation_id, None)
        self._read_receipts.pop(conversation_id, None)
        for local_id in [k for k, v in self._local_index.items() if v == conversation_id]:
            del self._local_index[local_id]
        if self.active_conversation_id == conversation_id:
            self.active_conversation_id = None
        if notice:
            self.notices.append(notice)
        logger.info("Removed conversation %s", conversation_id)
        self._notify()
        return True

    def remove_message(self, conversation_id: str, message_id: str) -> bool:
        ids = self._message_ids.get(conversation_id)
        if not ids or message_id not in ids:
            return False
        sequence = self._messages[conversation_id]
        sequence[:] = [m for m in sequence if m.message_id != message_id]
        ids.discard(message_id)

        conversation = self._conversations[conversation_id]
        remaining = [m for m in sequence if m.is_confirmed]
        conversation.last_message = MessageSummary.from_message(remaining[-1]) if remaining else None
        self._refresh_unread(conversation_id)
        self._notify()
        return True

    # Navigation

    def set_active_conversation(self, conversation_id: Optional[str]) -> None:
        if conversation_id is not None and conversation_id not in self._conversations:
            raise NotFoundError(f"Unknown conversation {conversation_id}")
        if self.active_conversation_id != conversation_id:
            self.active_conversation_id = conversation_id
            self._notify()

    # Read projections

    def conversation_ids(self) -> List[str]:
        return list(self._conversations)

    def has_conversation(self, conversation_id: str) -> bool:
        return conversation_id in self._conversations

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conversation = self._conversations.get(conversation_id)
        return conversation.copy() if conversation else None

    def get_conversations(self) -> List[Conversation]:
        """All conversations, most recent activity first."""
        ordered = sorted(
            self._conversations.values(),
            key=lambda c: (c.last_activity_at or _EPOCH, c.conversation_id),
            reverse=True,
        )
        return [c.copy() for c in ordered]

    def get_messages(self, conversation_id: str) -> List[Message]:
        """Messages of a conversation in chronological order."""
        return list(self._messages.get(conversation_id, ()))

    def get_oldest_confirmed(self, conversation_id: str) -> Optional[Message]:
        for message in self._messages.get(conversation_id, ()):
            if message.is_confirmed:
                return message
        return None

    def get_unread_count(self, conversation_id: str) -> int:
        conversation = self._conversations.get(conversation_id)
        return conversation.unread_count if conversation else 0

    def get_unread_total(self) -> int:
        return sum(c.unread_count for c in self._conversations.values())

    def get_watermark(self, conversation_id: str) -> Optional[datetime]:
        return self._watermarks.get(conversation_id)

    def get_presence(self, user_id: str) -> Optional[PresenceChanged]:
        return self._presence.get(user_id)

    def get_read_receipts(self, conversation_id: str) -> Dict[str, str]:
        return dict(self._read_receipts.get(conversation_id, {}))

    def _find_confirmed(self, conversation_id: str, message_id: str) -> Optional[Message]:
        for message in self._messages.get(conversation_id, ()):
            if message.message_id == message_id:
                return message
        return None
