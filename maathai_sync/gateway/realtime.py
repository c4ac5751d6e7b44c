"""
Supabase realtime socket.

Speaks the Phoenix channel protocol used by Supabase realtime over an
aiohttp websocket: one ``phx_join`` per topic carrying the
postgres-changes config and the access token, and a ``heartbeat`` on the
``phoenix`` topic every ``heartbeat_interval`` seconds.
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

import aiohttp

from ..messaging.exceptions import AuthenticationError, NetworkError
from .base import Topic

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "1.0.0"


def channel_topic(topic: Topic) -> str:
    return f"realtime:{topic.name}"


class RealtimeSocket:
    """A single realtime websocket connection."""

    def __init__(
        self,
        url: str,
        api_key: str,
        access_token: Optional[str] = None,
        heartbeat_interval: float = 25.0,
        connect_timeout: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.url = url
        self.api_key = api_key
        self.access_token = access_token
        self.heartbeat_interval = heartbeat_interval
        self.connect_timeout = connect_timeout
        self._clock = clock

        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._ref = 0
        self._next_heartbeat = 0.0

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    async def connect(self) -> None:
        """Open the websocket. Raises NetworkError or AuthenticationError."""
        await self.close()
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(
                    self.url,
                    params={"apikey": self.api_key, "vsn": PROTOCOL_VERSION},
                ),
                timeout=self.connect_timeout,
            )
        except aiohttp.WSServerHandshakeError as e:
            await self.close()
            if e.status in (401, 403):
                raise AuthenticationError(f"Realtime handshake rejected: {e.status}") from e
            raise NetworkError(f"Realtime handshake failed: {e.status}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            await self.close()
            raise NetworkError(f"Realtime connection failed: {e}") from e

        self._next_heartbeat = self._clock() + self.heartbeat_interval
        logger.info("Realtime socket connected")

    async def _send(self, frame: Dict[str, Any]) -> None:
        if not self.is_open:
            raise NetworkError("Realtime socket is not connected")
        try:
            await self._ws.send_json(frame)
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as e:
            raise NetworkError(f"Realtime send failed: {e}") from e

    async def join(self, topic: Topic) -> None:
        change = {"event": topic.event, "schema": topic.schema, "table": topic.table}
        if topic.filter:
            change["filter"] = topic.filter
        payload: Dict[str, Any] = {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": [change],
            }
        }
        if self.access_token:
            payload["access_token"] = self.access_token
        await self._send({
            "topic": channel_topic(topic),
            "event": "phx_join",
            "payload": payload,
            "ref": self._next_ref(),
        })
        logger.debug("Joined %s", channel_topic(topic))

    async def leave(self, topic: Topic) -> None:
        await self._send({
            "topic": channel_topic(topic),
            "event": "phx_leave",
            "payload": {},
            "ref": self._next_ref(),
        })

    async def send_heartbeat(self) -> None:
        await self._send({"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": self._next_ref()})
        self._next_heartbeat = self._clock() + self.heartbeat_interval

    async def receive(self, timeout: float) -> Optional[Dict[str, Any]]:
        """
        Wait for the next frame, sending heartbeats when they fall due.

        Returns:
            The decoded frame, or None if nothing arrived within ``timeout``

        Raises:
            NetworkError: If the socket closed or errored
        """
        if not self.is_open:
            raise NetworkError("Realtime socket is not connected")

        deadline = self._clock() + timeout
        while True:
            now = self._clock()
            if now >= self._next_heartbeat:
                await self.send_heartbeat()
            remaining = deadline - now
            if remaining <= 0:
                return None
            wait = min(remaining, max(self._next_heartbeat - now, 0.01))
            try:
                message = await self._ws.receive(timeout=wait)
            except asyncio.TimeoutError:
                continue

            if message.type == aiohttp.WSMsgType.TEXT:
                try:
                    frame = json.loads(message.data)
                except json.JSONDecodeError:
                    logger.warning("Dropping undecodable realtime frame")
                    continue
                if isinstance(frame, dict):
                    return frame
                logger.warning("Dropping non-object realtime frame")
                continue
            if message.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.ERROR,
            ):
                raise NetworkError(f"Realtime socket closed ({message.type.name})")

    async def close(self) -> None:
        if self._ws is not None:
            try:
                await self._ws.close()
            except (aiohttp.ClientError, RuntimeError):
                logger.debug("Ignoring error while closing realtime socket")
            self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None
