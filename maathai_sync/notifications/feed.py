"""Notification feed: the viewer's latest notifications and their unread count."""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..messaging.models import parse_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    notification_id: str
    kind: str
    title: str
    message: str
    created_at: datetime
    is_read: bool = False
    link: Optional[str] = None
    from_user_id: Optional[str] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Notification":
        created_at = parse_timestamp(record.get("created_at"))
        if not record.get("id") or created_at is None:
            raise ValueError("notification record requires id and created_at")
        return cls(
            notification_id=str(record["id"]),
            kind=record.get("type") or "general",
            title=record.get("title") or "",
            message=record.get("message") or "",
            created_at=created_at,
            is_read=bool(record.get("is_read", False)),
            link=record.get("link"),
            from_user_id=record.get("from_user_id"),
        )


class NotificationFeed:
    """Newest-first list of notifications, capped at ``limit`` entries."""

    def __init__(self, limit: int = 20):
        self.limit = limit
        self._items: Dict[str, Notification] = {}
        self._listeners: List[Callable[[], None]] = []

    def add_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Notification listener failed")

    def _trim(self) -> None:
        for stale in self.items()[self.limit:]:
            del self._items[stale.notification_id]

    def replace_all(self, records: List[Dict[str, Any]]) -> None:
        """Replace the feed with a freshly loaded page."""
        items = {}
        for record in records:
            try:
                notification = Notification.from_record(record)
            except ValueError as e:
                logger.warning("Skipping malformed notification: %s", e)
                continue
            items[notification.notification_id] = notification
        self._items = items
        self._trim()
        self._notify()

    def handle_raw(self, raw: Dict[str, Any]) -> bool:
        """Merge a realtime ``notifications`` INSERT. Redeliveries are no-ops."""
        change = str(raw.get("type") or raw.get("eventType") or "").upper()
        record = raw.get("record") or raw.get("new")
        if change != "INSERT" or not isinstance(record, dict):
            return False
        try:
            notification = Notification.from_record(record)
        except ValueError as e:
            logger.warning("Dropping malformed notification payload: %s", e)
            return False
        if notification.notification_id in self._items:
            return False
        self._items[notification.notification_id] = notification
        self._trim()
        self._notify()
        return True

    def mark_read(self, notification_id: str) -> bool:
        item = self._items.get(notification_id)
        if item is None or item.is_read:
            return False
        self._items[notification_id] = replace(item, is_read=True)
        self._notify()
        return True

    def mark_all_read(self) -> int:
        unread = [n for n in self._items.values() if not n.is_read]
        for item in unread:
            self._items[item.notification_id] = replace(item, is_read=True)
        if unread:
            self._notify()
        return len(unread)

    def remove(self, notification_id: str) -> bool:
        if self._items.pop(notification_id, None) is None:
            return False
        self._notify()
        return True

    def items(self) -> List[Notification]:
        return sorted(self._items.values(), key=lambda n: (n.created_at, n.notification_id), reverse=True)

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self._items.values() if not n.is_read)
