"""
Presentation Adapter.

Exposes read-only projections of the store to the UI and passes user
commands through to the store and gateway. Views are recomputed
synchronously on every store change. Commands never raise for expected
failures; they return a CommandResult carrying the typed error.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Sequence

from ..gateway.base import RemoteDataGateway
from ..gateway.media import Attachment, MediaUploader
from ..messaging.config import SyncConfig, config as default_config
from ..messaging.exceptions import (
    AuthenticationError,
    MessageTooLargeError,
    MessagingError,
    NotFoundError,
    ServiceUnavailableError,
)
from ..messaging.models import (
    CommandResult,
    Conversation,
    ConversationUpserted,
    MessageDraft,
    MessageReceived,
    utcnow,
)
from ..notifications.feed import NotificationFeed
from ..sync.controller import ConnectionState, SyncController
from ..sync.store import ConversationStore
from .views import ThreadView, ViewState, message_view, summarize

logger = logging.getLogger(__name__)

ViewListener = Callable[[ViewState], None]


class PresentationAdapter:
    """UI-facing facade over the conversation store."""

    def __init__(
        self,
        store: ConversationStore,
        gateway: RemoteDataGateway,
        controller: Optional[SyncController] = None,
        notifications: Optional[NotificationFeed] = None,
        uploader: Optional[MediaUploader] = None,
        config_override: Optional[SyncConfig] = None,
        on_session_expired: Optional[Callable[[AuthenticationError], None]] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.controller = controller
        self.notifications = notifications
        self.uploader = uploader
        self.config = config_override or default_config
        self.on_session_expired = on_session_expired

        self.session_expired = False
        self.views = ViewState()
        self._view_listeners: List[ViewListener] = []
        self._outbox: List[int] = []
        self._inflight_sends: set = set()
        self._history_tasks: Dict[str, asyncio.Task] = {}

        store.add_listener(self._recompute)
        if notifications is not None:
            notifications.add_listener(self._recompute)
        if controller is not None:
            controller.add_state_listener(lambda _state: self._recompute())
            controller.add_connected_callback(self.flush_outbox)
        self._recompute()

    # Views

    def add_view_listener(self, listener: ViewListener) -> Callable[[], None]:
        self._view_listeners.append(listener)

        def remove() -> None:
            if listener in self._view_listeners:
                self._view_listeners.remove(listener)

        return remove

    def _recompute(self) -> None:
        store = self.store
        viewer_id = store.viewer_id
        active_id = store.active_conversation_id
        presence = {}
        conversations = store.get_conversations()
        for conversation in conversations:
            for uid in conversation.participant_ids:
                state = store.get_presence(uid)
                if state is not None:
                    presence[uid] = state

        thread = None
        if active_id is not None and store.has_conversation(active_id):
            thread = ThreadView(
                conversation_id=active_id,
                messages=tuple(message_view(m, viewer_id) for m in store.get_messages(active_id)),
                read_receipts=tuple(sorted(store.get_read_receipts(active_id).items())),
            )

        connection = self.controller.state if self.controller is not None else ConnectionState.DISCONNECTED
        self.views = ViewState(
            conversations=tuple(summarize(c, viewer_id, presence, active_id) for c in conversations),
            active_thread=thread,
            unread_badge=store.get_unread_total(),
            notifications=tuple(self.notifications.items()) if self.notifications is not None else (),
            notification_badge=self.notifications.unread_count if self.notifications is not None else 0,
            connection_state=connection.value,
            reconnecting=self.controller is not None and self.controller.is_running
            and connection is not ConnectionState.CONNECTED,
            session_expired=self.session_expired,
            notices=tuple(store.notices),
        )
        for listener in list(self._view_listeners):
            try:
                listener(self.views)
            except Exception:
                logger.exception("View listener failed")

    # Error routing

    def _handle_error(self, error: MessagingError, conversation_id: Optional[str] = None) -> None:
        if isinstance(error, AuthenticationError):
            logger.error("Session expired: %s", error)
            self.session_expired = True
            self._recompute()
            if self.on_session_expired is not None:
                self.on_session_expired(error)
        elif isinstance(error, NotFoundError) and conversation_id is not None:
            self.store.remove_conversation(
                conversation_id, notice=f"Conversation {conversation_id} is no longer available"
            )

    # Sending

    async def _upload_all(self, attachments: Sequence[Attachment]) -> List[str]:
        if not attachments:
            return []
        if self.uploader is None:
            raise ServiceUnavailableError("No media uploader configured")
        return [await self.uploader.upload_media(attachment) for attachment in attachments]

    def _should_queue(self) -> bool:
        return self.controller is not None and self.controller.is_running and not self.controller.is_connected

    async def send(
        self,
        conversation_id: str,
        text: str,
        media_urls: Sequence[str] = (),
        attachments: Sequence[Attachment] = (),
    ) -> CommandResult:
        """
        Send a message with optimistic display.

        Attachments are uploaded first; if any upload fails the whole send
        fails and nothing is shown. While the realtime channel is
        reconnecting the optimistic message stays pending and is flushed
        after the next reconciliation.
        """
        text = text or ""
        if len(text) > self.config.max_message_length:
            return CommandResult.failure(MessageTooLargeError(
                f"Message length {len(text)} exceeds limit of {self.config.max_message_length}"
            ))

        try:
            uploaded = await self._upload_all(attachments)
        except MessagingError as e:
            logger.warning("Attachment upload failed: %s", e)
            return CommandResult.failure(e)

        draft = MessageDraft(content=text, media_urls=tuple(media_urls) + tuple(uploaded))
        try:
            local_id = self.store.apply_local_send(conversation_id, draft)
        except MessagingError as e:
            return CommandResult.failure(e)

        if self._should_queue():
            self._outbox.append(local_id)
            logger.info("Queued message %s until reconnect", local_id)
            return CommandResult.ok(local_id=local_id, queued=True)
        return await self._deliver(local_id, conversation_id, draft)

    async def _deliver(self, local_id: int, conversation_id: str, draft: MessageDraft) -> CommandResult:
        # Sends outlive navigation and caller cancellation
        task = asyncio.ensure_future(self._perform_send(local_id, conversation_id, draft))
        self._inflight_sends.add(task)
        task.add_done_callback(self._inflight_sends.discard)
        return await asyncio.shield(task)

    async def _perform_send(self, local_id: int, conversation_id: str, draft: MessageDraft) -> CommandResult:
        try:
            message = await self.gateway.send_message(conversation_id, draft.content, draft.media_urls)
        except MessagingError as e:
            logger.warning("Send of local message %s failed: %s", local_id, e)
            self.store.reconcile_send(local_id, e)
            self._handle_error(e, conversation_id)
            return CommandResult.failure(e, local_id=local_id)
        except Exception as e:
            logger.exception("Unexpected error sending local message %s", local_id)
            self.store.reconcile_send(local_id, e)
            raise
        self.store.reconcile_send(local_id, message)
        return CommandResult.ok(message, local_id=local_id)

    async def flush_outbox(self) -> List[CommandResult]:
        """Deliver sends queued while disconnected."""
        queued, self._outbox = self._outbox, []
        results = []
        for local_id in queued:
            message = self.store.get_local_message(local_id)
            if message is None or not message.pending:
                continue
            draft = MessageDraft(content=message.content, media_urls=message.media_urls)
            results.append(await self._deliver(local_id, message.conversation_id, draft))
        if results:
            logger.info("Flushed %d queued messages", len(results))
        return results

    async def retry_send(self, local_id: int) -> CommandResult:
        message = self.store.get_local_message(local_id)
        try:
            draft = self.store.retry_send(local_id)
        except MessagingError as e:
            return CommandResult.failure(e, local_id=local_id)
        if self._should_queue():
            self._outbox.append(local_id)
            return CommandResult.ok(local_id=local_id, queued=True)
        return await self._deliver(local_id, message.conversation_id, draft)

    def discard_failed(self, local_id: int) -> bool:
        return self.store.discard_failed(local_id)

    async def delete_message(self, conversation_id: str, message_id: str) -> CommandResult:
        try:
            await self.gateway.delete_message(conversation_id, message_id)
        except MessagingError as e:
            self._handle_error(e)
            return CommandResult.failure(e)
        self.store.remove_message(conversation_id, message_id)
        return CommandResult.ok(message_id)

    # Read state

    async def mark_read(self, conversation_id: str) -> CommandResult:
        try:
            upto = self.store.mark_conversation_read(conversation_id)
        except MessagingError as e:
            return CommandResult.failure(e)
        if upto is None:
            return CommandResult.ok(None)
        try:
            await self.gateway.mark_read(conversation_id, upto, self.store.get_watermark(conversation_id))
        except MessagingError as e:
            logger.warning("Could not record read watermark for %s: %s", conversation_id, e)
            self._handle_error(e, conversation_id)
            return CommandResult.failure(e)
        return CommandResult.ok(upto)

    # Conversations

    async def start_direct_chat(self, peer_id: str) -> CommandResult:
        """Find or create the direct conversation with ``peer_id`` and surface it."""
        try:
            conversation_id = await self.gateway.start_direct_conversation(peer_id)
        except MessagingError as e:
            self._handle_error(e)
            return CommandResult.failure(e)
        if not self.store.has_conversation(conversation_id):
            self.store.apply_event(ConversationUpserted(Conversation(
                conversation_id=conversation_id,
                participant_ids=tuple(sorted({self.store.viewer_id, str(peer_id)})),
                last_activity_at=utcnow(),
            )))
        return CommandResult.ok(conversation_id)

    async def create_group_chat(self, name: str, member_ids: Sequence[str]) -> CommandResult:
        try:
            conversation_id = await self.gateway.create_group_conversation(name, member_ids)
        except MessagingError as e:
            self._handle_error(e)
            return CommandResult.failure(e)
        members = {self.store.viewer_id, *(str(m) for m in member_ids)}
        self.store.apply_event(ConversationUpserted(Conversation(
            conversation_id=conversation_id,
            participant_ids=tuple(sorted(members)),
            is_group=True,
            name=name.strip(),
            last_activity_at=utcnow(),
        )))
        return CommandResult.ok(conversation_id)

    def _cancel_history(self, keep: Optional[str] = None) -> None:
        for conversation_id, task in list(self._history_tasks.items()):
            if conversation_id != keep and not task.done():
                logger.debug("Cancelling history load for %s", conversation_id)
                task.cancel()

    def set_active_conversation(self, conversation_id: Optional[str]) -> CommandResult:
        try:
            self.store.set_active_conversation(conversation_id)
        except MessagingError as e:
            return CommandResult.failure(e)
        self._cancel_history(keep=conversation_id)
        return CommandResult.ok(conversation_id)

    async def open_conversation(self, conversation_id: str) -> CommandResult:
        """Make a conversation active, load its first page if needed and mark it read."""
        result = self.set_active_conversation(conversation_id)
        if not result.success:
            return result
        if not self.store.get_messages(conversation_id):
            loaded = await self.load_older_messages(conversation_id)
            if loaded.error is not None:
                return loaded
        return await self.mark_read(conversation_id)

    async def load_older_messages(self, conversation_id: str) -> CommandResult:
        """
        Fetch the page of history before the oldest loaded message.

        The page is only applied if ``conversation_id`` is still active when
        it arrives; navigating away cancels the request.
        """
        oldest = self.store.get_oldest_confirmed(conversation_id)
        before = oldest.created_at if oldest is not None else None
        task = asyncio.ensure_future(
            self.gateway.list_messages(conversation_id, before=before, limit=self.config.page_size)
        )
        self._history_tasks[conversation_id] = task
        try:
            await asyncio.wait({task})
        finally:
            if self._history_tasks.get(conversation_id) is task:
                del self._history_tasks[conversation_id]

        if task.cancelled():
            return CommandResult(success=False, value=0)
        error = task.exception()
        if error is not None:
            if not isinstance(error, MessagingError):
                raise error
            self._handle_error(error, conversation_id)
            return CommandResult.failure(error)

        if self.store.active_conversation_id != conversation_id:
            logger.debug("Discarding history page for inactive conversation %s", conversation_id)
            return CommandResult(success=False, value=0)

        applied = 0
        for message in task.result():
            if self.store.apply_event(MessageReceived(conversation_id, message)):
                applied += 1
        return CommandResult.ok(applied)

    # Notifications

    async def mark_notification_read(self, notification_id: str) -> CommandResult:
        try:
            await self.gateway.mark_notification_read(notification_id)
        except MessagingError as e:
            self._handle_error(e)
            return CommandResult.failure(e)
        if self.notifications is not None:
            self.notifications.mark_read(notification_id)
        return CommandResult.ok(notification_id)

    async def mark_all_notifications_read(self) -> CommandResult:
        try:
            await self.gateway.mark_all_notifications_read()
        except MessagingError as e:
            self._handle_error(e)
            return CommandResult.failure(e)
        count = self.notifications.mark_all_read() if self.notifications is not None else 0
        return CommandResult.ok(count)

    async def delete_notification(self, notification_id: str) -> CommandResult:
        try:
            await self.gateway.delete_notification(notification_id)
        except MessagingError as e:
            self._handle_error(e)
            return CommandResult.failure(e)
        if self.notifications is not None:
            self.notifications.remove(notification_id)
        return CommandResult.ok(notification_id)

    async def wait_for_sends(self) -> None:
        """Wait until every in-flight send has completed or failed."""
        if self._inflight_sends:
            await asyncio.gather(*list(self._inflight_sends), return_exceptions=True)
