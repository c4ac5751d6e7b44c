"""
Supabase implementation of the Remote Data Gateway.

Table access goes through PostgREST with httpx, find-or-create of direct
conversations through the ``get_or_create_conversation`` RPC, and push
events through the realtime websocket.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..messaging.config import SyncConfig, config as default_config
from ..messaging.exceptions import (
    AuthenticationError,
    MessageTooLargeError,
    MessageValidationError,
    MessagingError,
    NetworkError,
    NotFoundError,
    ServiceUnavailableError,
)
from ..messaging.models import Conversation, Message, PresenceChanged, format_timestamp, parse_timestamp, utcnow
from .base import RemoteDataGateway, Topic
from .realtime import RealtimeSocket, channel_topic

logger = logging.getLogger(__name__)

RETURN_REPRESENTATION = {"Prefer": "return=representation"}


def _in_list(values: Sequence[str]) -> str:
    return "in.(" + ",".join(str(v) for v in values) + ")"


class SupabaseGateway(RemoteDataGateway):
    """Gateway backed by a Supabase project."""

    def __init__(
        self,
        viewer_id: str,
        access_token: str,
        config_override: Optional[SyncConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        socket: Optional[RealtimeSocket] = None,
    ):
        """
        Initialize the gateway.

        Args:
            viewer_id: Id of the signed-in user
            access_token: Session JWT used for row level security
            config_override: Optional configuration override
            client: Optional preconfigured httpx client (tests inject a MockTransport)
            socket: Optional realtime socket
        """
        super().__init__(viewer_id)
        self.config = config_override or default_config
        if not self.config.is_backend_configured():
            raise ServiceUnavailableError("SUPABASE_URL and SUPABASE_ANON_KEY must be configured")
        self.access_token = access_token

        self._client = client or httpx.AsyncClient(
            base_url=self.config.rest_url,
            timeout=self.config.request_timeout_seconds,
        )
        self._socket = socket or RealtimeSocket(
            url=self.config.realtime_url,
            api_key=self.config.supabase_anon_key,
            access_token=access_token,
            heartbeat_interval=self.config.heartbeat_interval_seconds,
            connect_timeout=self.config.request_timeout_seconds,
        )
        self._channel_topics: Dict[str, Topic] = {}
        self._joined: Dict[str, Topic] = {}

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self.config.supabase_anon_key,
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Issue one REST call and translate failures into the messaging error taxonomy."""
        request_headers = self._headers()
        if headers:
            request_headers.update(headers)

        try:
            response = await self._client.request(
                method, path, params=params, json=json, headers=request_headers
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request timed out: {method} {path}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Network error on {method} {path}: {e}") from e

        if response.status_code >= 400:
            self._raise_for_status(method, path, response)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise MessagingError(f"Invalid JSON from {method} {path}") from e

    @staticmethod
    def _raise_for_status(method: str, path: str, response: httpx.Response) -> None:
        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = {}
        detail = body.get("message") if isinstance(body, dict) else None
        code = body.get("code") if isinstance(body, dict) else None
        reason = f"{method} {path} failed with {status}: {detail or response.text[:200]}"

        if status in (401, 403):
            raise AuthenticationError(reason)
        if status == 404 or code == "PGRST116":
            raise NotFoundError(reason)
        if status in (400, 409, 422):
            raise MessageValidationError(reason)
        if status == 429 or status >= 500:
            raise NetworkError(reason)
        raise MessagingError(reason)

    # Conversations and messages

    async def list_conversations(self, viewer_id: str) -> List[Conversation]:
        memberships = await self._request(
            "GET",
            "/conversation_participants",
            params={
                "select": "conversation_id,last_read_at,last_read_message_id,conversations(*)",
                "user_id": f"eq.{viewer_id}",
            },
        ) or []

        rows = [m for m in memberships if m.get("conversations")]
        if not rows:
            return []

        conversation_ids = [str(m["conversation_id"]) for m in rows]
        participants = await self._request(
            "GET",
            "/conversation_participants",
            params={
                "select": "conversation_id,user_id",
                "conversation_id": _in_list(conversation_ids),
            },
        ) or []

        members: Dict[str, List[str]] = {}
        for row in participants:
            members.setdefault(str(row["conversation_id"]), []).append(str(row["user_id"]))

        conversations = []
        for membership in rows:
            conversation_id = str(membership["conversation_id"])
            try:
                conversations.append(Conversation.from_record(
                    membership["conversations"],
                    participant_ids=sorted(members.get(conversation_id, [])),
                    last_read_at=membership.get("last_read_at"),
                    last_read_message_id=membership.get("last_read_message_id"),
                ))
            except ValueError as e:
                logger.warning("Skipping malformed conversation %s: %s", conversation_id, e)
        return conversations

    async def list_messages(
        self,
        conversation_id: str,
        before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Message]:
        params = {
            "select": "*",
            "conversation_id": f"eq.{conversation_id}",
            "is_deleted": "eq.false",
            "order": "created_at.desc,id.desc",
            "limit": str(limit or self.config.page_size),
        }
        if before is not None:
            params["created_at"] = f"lt.{before.isoformat()}"

        rows = await self._request("GET", "/messages", params=params) or []
        messages = []
        for row in rows:
            try:
                messages.append(Message.from_record(row))
            except ValueError as e:
                logger.warning("Skipping malformed message row in %s: %s", conversation_id, e)
        return messages

    def validate_message_content(self, content: str, media_urls: Sequence[str]) -> None:
        if not isinstance(content, str):
            raise MessageValidationError("Message content must be a string")
        if not content.strip() and not media_urls:
            raise MessageValidationError("Message must have content or media")
        if len(content) > self.config.max_message_length:
            raise MessageTooLargeError(
                f"Message length {len(content)} exceeds limit of {self.config.max_message_length}"
            )

    async def send_message(self, conversation_id: str, content: str, media_urls: Sequence[str] = ()) -> Message:
        self.validate_message_content(content, media_urls)
        rows = await self._request(
            "POST",
            "/messages",
            params={"select": "*"},
            json={
                "conversation_id": conversation_id,
                "sender_id": self.viewer_id,
                "content": content,
                "media_urls": list(media_urls) or None,
                "media_type": "image" if media_urls else None,
            },
            headers=RETURN_REPRESENTATION,
        )
        if not isinstance(rows, list) or not rows or not isinstance(rows[0], dict):
            raise NetworkError("Send returned no confirmed message")
        try:
            message = Message.from_record(rows[0])
        except ValueError as e:
            raise NetworkError(f"Send returned a malformed message: {e}") from e

        if self.config.log_message_content:
            logger.info("Sent message %s to %s: %s", message.message_id, conversation_id, content[:50])
        else:
            logger.info("Sent message %s to %s", message.message_id, conversation_id)
        return message

    async def mark_read(
        self,
        conversation_id: str,
        upto_message_id: str,
        read_at: Optional[datetime] = None,
    ) -> None:
        rows = await self._request(
            "PATCH",
            "/conversation_participants",
            params={
                "conversation_id": f"eq.{conversation_id}",
                "user_id": f"eq.{self.viewer_id}",
            },
            json={
                "last_read_at": format_timestamp(read_at or utcnow()),
                "last_read_message_id": upto_message_id,
                "unread_count": 0,
            },
            headers=RETURN_REPRESENTATION,
        )
        if not rows:
            raise NotFoundError(f"Viewer is not a participant of {conversation_id}")

    async def start_direct_conversation(self, peer_id: str) -> str:
        if not peer_id or str(peer_id) == self.viewer_id:
            raise MessageValidationError("A direct conversation needs a different peer")
        result = await self._request(
            "POST",
            "/rpc/get_or_create_conversation",
            json={"user1_id": self.viewer_id, "user2_id": str(peer_id)},
        )
        if isinstance(result, list):
            result = result[0] if result else None
        if isinstance(result, dict):
            result = result.get("id") or result.get("get_or_create_conversation")
        if not result:
            raise NotFoundError(f"Could not resolve a conversation with {peer_id}")
        return str(result)

    async def create_group_conversation(self, name: str, member_ids: Sequence[str]) -> str:
        if not name or not name.strip():
            raise MessageValidationError("Group conversations need a name")
        rows = await self._request(
            "POST",
            "/conversations",
            json={"is_group": True, "name": name.strip(), "created_by": self.viewer_id},
            headers=RETURN_REPRESENTATION,
        )
        if not rows:
            raise NetworkError("Group creation returned no conversation")
        conversation_id = str(rows[0]["id"])

        member_set = [self.viewer_id] + [str(m) for m in member_ids if str(m) != self.viewer_id]
        await self._request(
            "POST",
            "/conversation_participants",
            json=[
                {"conversation_id": conversation_id, "user_id": uid, "is_admin": uid == self.viewer_id}
                for uid in dict.fromkeys(member_set)
            ],
        )
        logger.info("Created group conversation %s with %d members", conversation_id, len(member_set))
        return conversation_id

    async def delete_message(self, conversation_id: str, message_id: str) -> None:
        rows = await self._request(
            "PATCH",
            "/messages",
            params={
                "id": f"eq.{message_id}",
                "conversation_id": f"eq.{conversation_id}",
                "sender_id": f"eq.{self.viewer_id}",
            },
            json={"is_deleted": True},
            headers=RETURN_REPRESENTATION,
        )
        if not rows:
            raise NotFoundError(f"Message {message_id} not found")

    async def list_presence(self, user_ids: Sequence[str]) -> List[PresenceChanged]:
        if not user_ids:
            return []
        rows = await self._request(
            "GET",
            "/profiles",
            params={"select": "id,is_online,last_seen", "id": _in_list(user_ids)},
        ) or []
        return [
            PresenceChanged(
                user_id=str(row["id"]),
                online=bool(row.get("is_online")),
                last_seen_at=parse_timestamp(row.get("last_seen")),
            )
            for row in rows
            if row.get("id")
        ]

    # Notifications

    async def list_notifications(self, limit: int = 20) -> List[Dict[str, Any]]:
        return await self._request(
            "GET",
            "/notifications",
            params={
                "select": "*",
                "user_id": f"eq.{self.viewer_id}",
                "order": "created_at.desc",
                "limit": str(limit),
            },
        ) or []

    async def mark_notification_read(self, notification_id: str) -> None:
        await self._request(
            "PATCH",
            "/notifications",
            params={"id": f"eq.{notification_id}"},
            json={"is_read": True},
        )

    async def mark_all_notifications_read(self) -> None:
        await self._request(
            "PATCH",
            "/notifications",
            params={"user_id": f"eq.{self.viewer_id}", "is_read": "eq.false"},
            json={"is_read": True},
        )

    async def delete_notification(self, notification_id: str) -> None:
        await self._request("DELETE", "/notifications", params={"id": f"eq.{notification_id}"})

    # Realtime

    def _on_topic_added(self, topic: Topic) -> None:
        self._channel_topics[channel_topic(topic)] = topic

    def _on_topic_removed(self, topic: Topic) -> None:
        self._channel_topics.pop(channel_topic(topic), None)

    async def _sync_joins(self) -> None:
        for name, topic in self._channel_topics.items():
            if name not in self._joined:
                await self._socket.join(topic)
                self._joined[name] = topic
        for name in [n for n in self._joined if n not in self._channel_topics]:
            await self._socket.leave(self._joined.pop(name))

    async def open_channel(self) -> None:
        self._joined = {}
        await self._socket.connect()
        await self._sync_joins()

    async def pump(self, timeout: float) -> int:
        await self._sync_joins()
        frame = await self._socket.receive(timeout)
        if frame is None:
            return 0
        self._handle_frame(frame)
        return 1

    def _handle_frame(self, frame: Dict[str, Any]) -> None:
        event = frame.get("event")
        payload = frame.get("payload") or {}

        if event == "postgres_changes":
            topic = self._channel_topics.get(frame.get("topic", ""))
            data = payload.get("data")
            if topic is None or not isinstance(data, dict):
                logger.debug("Ignoring change frame for %s", frame.get("topic"))
                return
            self._dispatch(topic, data)
        elif event == "phx_reply":
            if payload.get("status") == "error":
                reason = str((payload.get("response") or {}).get("reason", "unknown"))
                if "token" in reason.lower() or "auth" in reason.lower() or "jwt" in reason.lower():
                    raise AuthenticationError(f"Realtime rejected session: {reason}")
                logger.warning("Realtime error reply on %s: %s", frame.get("topic"), reason)
        elif event in ("phx_error", "phx_close"):
            self._joined.pop(frame.get("topic"), None)
            raise NetworkError(f"Realtime channel {frame.get('topic')} closed ({event})")
        elif event == "system" and payload.get("status") == "error":
            logger.warning("Realtime system error: %s", payload.get("message"))

    async def close_channel(self) -> None:
        self._joined = {}
        await self._socket.close()

    async def aclose(self) -> None:
        await self.close_channel()
        await self._client.aclose()

