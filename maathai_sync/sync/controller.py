"""
Sync Controller - owns the realtime subscription lifecycle.

The controller subscribes the store to the backend's change feeds, keeps
the realtime channel alive (reconnecting with backoff), and runs a full
reconciliation pass after every (re)connect so nothing missed while
disconnected is lost. Reconciliation feeds the same ``apply_event`` path
as live pushes.
"""

import asyncio
import contextlib
import logging
import random
import time
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..gateway.base import RemoteDataGateway, Topic
from ..messaging.config import SyncConfig, config as default_config
from ..messaging.exceptions import RETRYABLE_ERRORS, AuthenticationError, MessagingError, NetworkError, NotFoundError
from ..messaging.models import ConversationUpserted, MessageReceived, utcnow
from ..notifications.feed import NotificationFeed
from .backoff import ReconnectBackoff
from .normalizer import normalize
from .store import ConversationStore

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


StateListener = Callable[[ConnectionState], None]
ConnectedCallback = Callable[[], Awaitable[None]]


class SyncController:
    """Keeps a ConversationStore in sync with a RemoteDataGateway."""

    def __init__(
        self,
        gateway: RemoteDataGateway,
        store: ConversationStore,
        config_override: Optional[SyncConfig] = None,
        notifications: Optional[NotificationFeed] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ):
        """
        Initialize the controller.

        Args:
            gateway: Backend access for the signed-in viewer
            store: Store to keep in sync
            config_override: Optional configuration override
            notifications: Optional notification feed to keep in sync as well
            sleep: Awaitable sleep used between reconnect attempts
            clock: Monotonic clock in seconds
            rng: Random source for backoff jitter
        """
        self.gateway = gateway
        self.store = store
        self.config = config_override or default_config
        self.notifications = notifications
        self._sleep = sleep
        self._clock = clock
        self.backoff = ReconnectBackoff(
            base_delay=self.config.reconnect_base_delay,
            max_delay=self.config.reconnect_max_delay,
            factor=self.config.reconnect_backoff_factor,
            rng=rng,
        )

        self.state = ConnectionState.DISCONNECTED
        self.is_running = False
        self.last_error: Optional[str] = None
        self.connect_count = 0
        self.last_reconciled_at: Optional[datetime] = None

        self._task: Optional[asyncio.Task] = None
        self._unsubscribers: List[Callable[[], None]] = []
        self._state_listeners: List[StateListener] = []
        self._connected_callbacks: List[ConnectedCallback] = []

    # Observers

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def add_connected_callback(self, callback: ConnectedCallback) -> None:
        """Run ``callback`` after every successful reconciliation pass."""
        self._connected_callbacks.append(callback)

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        logger.info("Realtime %s -> %s", self.state.value, state.value)
        self.state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("State listener failed")

    # Subscriptions

    def topics(self) -> List[Topic]:
        topics = [
            Topic("messages"),
            Topic("conversation_participants", event="UPDATE"),
            Topic("profiles", event="UPDATE"),
        ]
        if self.notifications is not None:
            topics.append(Topic("notifications", filter=f"user_id=eq.{self.store.viewer_id}", event="INSERT"))
        return topics

    def _subscribe(self) -> None:
        if self._unsubscribers:
            return
        for topic in self.topics():
            handler = self._handle_notification if topic.table == "notifications" else self._handle_change
            self._unsubscribers.append(self.gateway.subscribe(topic, handler))

    def _unsubscribe(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _handle_change(self, raw: Dict[str, Any]) -> None:
        event = normalize(raw)
        if event is not None:
            self.store.apply_event(event)

    def _handle_notification(self, raw: Dict[str, Any]) -> None:
        if self.notifications is not None:
            self.notifications.handle_raw(raw)

    # Reconciliation

    async def reconcile(self) -> Dict[str, int]:
        """
        Reload conversations, their latest page of messages, presence and
        notifications, and merge them through the store's event path.

        Returns:
            Dict with counts of conversations, messages and removed conversations
        """
        store = self.store
        conversations = await self.gateway.list_conversations(store.viewer_id)
        server_ids = set()
        for conversation in conversations:
            server_ids.add(conversation.conversation_id)
            store.apply_event(ConversationUpserted(conversation))

        message_count = 0
        for conversation in conversations:
            try:
                page = await self.gateway.list_messages(conversation.conversation_id, limit=self.config.page_size)
            except NotFoundError:
                store.remove_conversation(
                    conversation.conversation_id,
                    notice=f"Conversation {conversation.conversation_id} is no longer available",
                )
                server_ids.discard(conversation.conversation_id)
                continue
            for message in reversed(page):
                if store.apply_event(MessageReceived(conversation.conversation_id, message)):
                    message_count += 1

        removed = 0
        for conversation_id in store.conversation_ids():
            if conversation_id not in server_ids:
                store.remove_conversation(
                    conversation_id,
                    notice=f"Conversation {conversation_id} is no longer available",
                )
                removed += 1

        peers = sorted({
            uid
            for conversation in conversations
            for uid in conversation.participant_ids
            if uid != store.viewer_id
        })
        for presence in await self.gateway.list_presence(peers):
            store.apply_event(presence)

        if self.notifications is not None:
            self.notifications.replace_all(
                await self.gateway.list_notifications(self.config.notification_page_size)
            )

        self.last_reconciled_at = utcnow()
        logger.info(
            "Reconciled %d conversations, %d new messages, %d removed",
            len(conversations), message_count, removed,
        )
        return {"conversations": len(conversations), "messages": message_count, "removed": removed}

    # Connection loop

    async def _connect(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        await self.gateway.open_channel()
        self._set_state(ConnectionState.CONNECTED)
        self.connect_count += 1
        await self.reconcile()
        for callback in list(self._connected_callbacks):
            await callback()

    async def _listen(self) -> None:
        idle_timeout = self.config.idle_timeout_seconds
        connected_at = self._clock()
        last_activity = connected_at

        while self.is_running:
            remaining = idle_timeout - (self._clock() - last_activity)
            frames = await self.gateway.pump(max(remaining, 0.01))
            now = self._clock()
            if frames:
                last_activity = now
            elif now - last_activity >= idle_timeout:
                raise NetworkError(f"No realtime traffic for {idle_timeout:.0f}s")

            if self.backoff.attempts and now - connected_at >= self.config.reconnect_stable_seconds:
                logger.debug("Connection stable; resetting reconnect backoff")
                self.backoff.reset()

    async def _disconnect(self) -> None:
        try:
            await self.gateway.close_channel()
        except NetworkError as e:
            logger.debug("Error closing realtime channel: %s", e)
        self._set_state(ConnectionState.DISCONNECTED)

    async def run(self) -> None:
        """
        Run the sync loop until ``stop`` is called.

        Raises:
            AuthenticationError: If the session is rejected; never retried
        """
        if self.is_running:
            logger.warning("Sync controller is already running")
            return

        self.is_running = True
        self._subscribe()
        logger.info("Starting sync for viewer %s", self.store.viewer_id)
        try:
            while self.is_running:
                try:
                    await self._connect()
                    await self._listen()
                except AuthenticationError as e:
                    self.last_error = str(e)
                    logger.error("Session rejected, stopping sync: %s", e)
                    raise
                except RETRYABLE_ERRORS as e:
                    self.last_error = str(e)
                    logger.warning("Realtime connection lost: %s", e)
                except MessagingError as e:
                    self.last_error = str(e)
                    logger.error("Reconciliation failed, will retry: %s", e)

                await self._disconnect()
                if not self.is_running:
                    break
                delay = self.backoff.next_delay()
                logger.info("Reconnecting in %.1fs (attempt %d)", delay, self.backoff.attempts)
                await self._sleep(delay)
        finally:
            self.is_running = False
            await self._disconnect()
            self._unsubscribe()
            logger.info("Sync stopped")

    def start(self) -> asyncio.Task:
        """Run the sync loop in a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self.is_running = False
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._task = None

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "state": self.state.value,
            "connect_count": self.connect_count,
            "reconnect_attempts": self.backoff.attempts,
            "last_error": self.last_error,
            "last_reconciled_at": self.last_reconciled_at.isoformat() if self.last_reconciled_at else None,
            "topics": [t.name for t in self.topics()],
        }
