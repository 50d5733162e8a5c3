"""Connection manager: per-user routing and booking channels."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from racestay.ws.manager import ConnectionManager, is_valid_channel, parse_booking_channel


def _socket() -> AsyncMock:
    ws = AsyncMock()
    ws.accept = AsyncMock()
    ws.send_text = AsyncMock()
    return ws


class TestChannels:
    def test_parse_booking_channel(self) -> None:
        assert parse_booking_channel("messages:42") == 42
        assert parse_booking_channel("messages:abc") is None
        assert parse_booking_channel("bookings") is None

    def test_valid_channels(self) -> None:
        for channel in ("bookings", "points", "notifications", "conversations", "messages:1"):
            assert is_valid_channel(channel)
        assert not is_valid_channel("messages")
        assert not is_valid_channel("blocks")


class TestConnectionManager:
    @pytest.mark.asyncio
    async def test_user_rows_only_reach_that_user(self) -> None:
        mgr = ConnectionManager()
        mine, theirs = _socket(), _socket()
        await mgr.connect(mine, "c1", user_id=1)
        await mgr.connect(theirs, "c2", user_id=2)
        await mgr.subscribe("c1", "bookings")
        await mgr.subscribe("c2", "bookings")

        sent = await mgr.send_to_user(1, "bookings", {"table": "bookings", "op": "update", "row": {"id": 5}})

        assert sent == 1
        payload = json.loads(mine.send_text.await_args.args[0])
        assert payload == {"channel": "bookings", "data": {"table": "bookings", "op": "update", "row": {"id": 5}}}
        theirs.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unsubscribed_table_is_not_delivered(self) -> None:
        mgr = ConnectionManager()
        ws = _socket()
        await mgr.connect(ws, "c1", user_id=1)
        await mgr.subscribe("c1", "points")
        assert await mgr.send_to_user(1, "bookings", {}) == 0

    @pytest.mark.asyncio
    async def test_booking_broadcast(self) -> None:
        mgr = ConnectionManager()
        guest, host = _socket(), _socket()
        await mgr.connect(guest, "g", user_id=1)
        await mgr.connect(host, "h", user_id=2)
        await mgr.subscribe("g", "messages:9")
        await mgr.subscribe("h", "messages:9")

        assert await mgr.broadcast_to_channel("messages:9", {"row": {"id": 1}}) == 2
        assert await mgr.broadcast_to_channel("messages:10", {}) == 0

    @pytest.mark.asyncio
    async def test_failed_send_disconnects(self) -> None:
        mgr = ConnectionManager()
        ws = _socket()
        ws.send_text.side_effect = RuntimeError("socket closed")
        await mgr.connect(ws, "c1", user_id=1)
        await mgr.subscribe("c1", "messages:3")

        assert await mgr.broadcast_to_channel("messages:3", {}) == 0
        assert mgr.connection_count == 0
        assert mgr.get_stats()["channels"] == {}

    @pytest.mark.asyncio
    async def test_disconnect_cleans_indexes(self) -> None:
        mgr = ConnectionManager()
        await mgr.connect(_socket(), "c1", user_id=1)
        await mgr.connect(_socket(), "c2", user_id=1)
        await mgr.subscribe("c1", "messages:3")
        assert mgr.user_connection_count(1) == 2

        await mgr.disconnect("c1")
        await mgr.disconnect("c1")

        assert mgr.user_connection_count(1) == 1
        assert mgr.get_stats() == {"total_connections": 1, "unique_users": 1, "channels": {}}

    @pytest.mark.asyncio
    async def test_subscribe_rejects_unknown(self) -> None:
        mgr = ConnectionManager()
        await mgr.connect(_socket(), "c1", user_id=1)
        assert await mgr.subscribe("c1", "blocks") is False
        assert await mgr.subscribe("missing", "bookings") is False
