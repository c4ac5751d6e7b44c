"""
Unit tests for the in-memory gateway.
"""

import pytest

from maathai_sync.gateway.base import Topic
from maathai_sync.gateway.memory import InMemoryGateway
from maathai_sync.messaging.exceptions import MessageValidationError, NetworkError, NotFoundError

VIEWER = "viewer"


class TestFindOrCreate:
    """startDirectConversation must never create duplicates."""

    @pytest.mark.asyncio
    async def test_same_peer_returns_same_conversation(self):
        gateway = InMemoryGateway(VIEWER)

        first = await gateway.start_direct_conversation("peer")
        second = await gateway.start_direct_conversation("peer")

        assert first == second
        assert len(gateway.conversations) == 1

    @pytest.mark.asyncio
    async def test_pair_is_unordered(self):
        gateway = InMemoryGateway(VIEWER)
        existing = gateway.add_conversation(["peer", VIEWER])

        assert await gateway.start_direct_conversation("peer") == existing

    @pytest.mark.asyncio
    async def test_group_with_same_members_is_not_reused(self):
        gateway = InMemoryGateway(VIEWER)
        group = gateway.add_conversation([VIEWER, "peer"], is_group=True, name="Pair")

        assert await gateway.start_direct_conversation("peer") != group

    @pytest.mark.asyncio
    async def test_self_conversation_is_rejected(self):
        with pytest.raises(MessageValidationError):
            await InMemoryGateway(VIEWER).start_direct_conversation(VIEWER)


class TestMessages:
    """Test message storage and pagination."""

    @pytest.mark.asyncio
    async def test_pages_are_reverse_chronological(self):
        gateway = InMemoryGateway(VIEWER)
        cid = gateway.add_conversation([VIEWER, "peer"])
        for i in range(5):
            gateway.insert_message(cid, "peer", f"m{i}", publish=False)

        page = await gateway.list_messages(cid, limit=2)
        older = await gateway.list_messages(cid, before=page[-1].created_at, limit=2)

        assert [m.content for m in page] == ["m4", "m3"]
        assert [m.content for m in older] == ["m2", "m1"]

    @pytest.mark.asyncio
    async def test_send_publishes_echo(self):
        gateway = InMemoryGateway(VIEWER)
        cid = gateway.add_conversation([VIEWER, "peer"])
        received = []
        gateway.subscribe(Topic("messages"), received.append)
        await gateway.open_channel()

        message = await gateway.send_message(cid, "hello")
        await gateway.pump(0.1)

        assert received[0]["record"]["id"] == message.message_id
        assert received[0]["type"] == "INSERT"

    @pytest.mark.asyncio
    async def test_send_to_foreign_conversation(self):
        gateway = InMemoryGateway(VIEWER)
        cid = gateway.add_conversation(["a", "b"])

        with pytest.raises(NotFoundError):
            await gateway.send_message(cid, "hello")

    @pytest.mark.asyncio
    async def test_deleted_messages_are_hidden(self):
        gateway = InMemoryGateway(VIEWER)
        cid = gateway.add_conversation([VIEWER, "peer"])
        message = await gateway.send_message(cid, "oops")

        await gateway.delete_message(cid, message.message_id)

        assert await gateway.list_messages(cid) == []

    @pytest.mark.asyncio
    async def test_scripted_failure(self):
        gateway = InMemoryGateway(VIEWER)
        cid = gateway.add_conversation([VIEWER, "peer"])
        gateway.fail_next("send_message", NetworkError("offline"))

        with pytest.raises(NetworkError):
            await gateway.send_message(cid, "hello")
        assert (await gateway.send_message(cid, "hello")).content == "hello"


class TestRealtime:
    """Test topic filtering in the in-memory channel."""

    @pytest.mark.asyncio
    async def test_pump_requires_open_channel(self):
        with pytest.raises(NetworkError):
            await InMemoryGateway(VIEWER).pump(0.01)

    @pytest.mark.asyncio
    async def test_filters_and_event_kinds(self):
        gateway = InMemoryGateway(VIEWER)
        mine, updates = [], []
        gateway.subscribe(Topic("notifications", filter=f"user_id=eq.{VIEWER}", event="INSERT"), mine.append)
        gateway.subscribe(Topic("profiles", event="UPDATE"), updates.append)
        await gateway.open_channel()

        gateway.publish("notifications", "INSERT", {"id": "n1", "user_id": "someone-else"})
        gateway.publish("notifications", "INSERT", {"id": "n2", "user_id": VIEWER})
        gateway.publish("profiles", "INSERT", {"id": "p1", "is_online": True})
        gateway.heartbeat()
        for _ in range(4):
            assert await gateway.pump(0.1) == 1

        assert [p["record"]["id"] for p in mine] == ["n2"]
        assert updates == []
        assert await gateway.pump(0.01) == 0
