"""Client session lifecycle and snapshots."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from racestay.errors import NetworkError
from racestay.sync.broker import ConnectionState
from racestay.sync.session import ClientSession


class IdleFeed:
    async def connect(self) -> None:
        pass

    async def subscribe(self, channel: str) -> None:
        pass

    async def unsubscribe(self, channel: str) -> None:
        pass

    async def events(self):  # noqa: ANN201
        await asyncio.Event().wait()
        yield {}

    async def close(self) -> None:
        pass


def _api() -> MagicMock:
    api = MagicMock()
    api.expire_overdue = AsyncMock(return_value={"expired": 1, "skipped": 0})
    api.get_bookings = AsyncMock(return_value=[{"id": 1, "status": "pending", "updated_at": "2026-05-01T10:00:00Z"}])
    api.get_all_transactions = AsyncMock(return_value=[
        {"id": 1, "amount": 500, "created_at": "2026-05-01T09:00:00Z"},
        {"id": 2, "amount": -40, "created_at": "2026-05-01T10:00:00Z"},
    ])
    api.get_all_notifications = AsyncMock(return_value=[
        {"id": 1, "read": False, "created_at": "2026-05-01T10:00:00Z", "updated_at": "2026-05-01T10:00:00Z"},
    ])
    api.get_conversations = AsyncMock(return_value=[])
    api.get_messages = AsyncMock(return_value=[])
    api.aclose = AsyncMock()
    return api


async def _until_connected(session: ClientSession) -> None:
    for _ in range(50):
        if session.state is ConnectionState.CONNECTED:
            return
        await asyncio.sleep(0)
    raise AssertionError("session never connected")


class TestClientSession:
    @pytest.mark.asyncio
    async def test_start_expires_then_syncs(self) -> None:
        api = _api()
        session = ClientSession("http://racestay.test", "tok", api=api, feed_factory=IdleFeed)

        await session.start(user_id=7)
        await _until_connected(session)

        api.expire_overdue.assert_awaited_once()
        assert [b["id"] for b in session.bookings] == [1]
        assert session.balance == 460
        assert [t["id"] for t in session.transactions] == [2, 1]
        assert session.unread_count == 1
        assert session.messages is not None

        await session.aclose()
        assert session.state is ConnectionState.DISCONNECTED
        assert session.bookings == []
        assert session.messages is None
        api.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_expiry_check_does_not_block_start(self) -> None:
        api = _api()
        api.expire_overdue = AsyncMock(side_effect=NetworkError("offline"))
        session = ClientSession("http://racestay.test", "tok", api=api, feed_factory=IdleFeed)

        await session.start(user_id=7)
        await _until_connected(session)
        await session.stop()

    @pytest.mark.asyncio
    async def test_double_start(self) -> None:
        session = ClientSession("http://racestay.test", "tok", api=_api(), feed_factory=IdleFeed)
        await session.start(user_id=7)
        with pytest.raises(RuntimeError):
            await session.start(user_id=7)
        await session.stop()

    @pytest.mark.asyncio
    async def test_sessions_are_independent(self) -> None:
        first = ClientSession("http://racestay.test", "tok", api=_api(), feed_factory=IdleFeed)
        second = ClientSession("http://racestay.test", "tok", api=_api(), feed_factory=IdleFeed)
        await first.start(user_id=7)
        await second.start(user_id=7)
        await _until_connected(first)
        await _until_connected(second)

        await first.stop()

        assert first.bookings == []
        assert [b["id"] for b in second.bookings] == [1]
        await second.stop()

    @pytest.mark.asyncio
    async def test_subscribe_receives_updates(self) -> None:
        session = ClientSession("http://racestay.test", "tok", api=_api(), feed_factory=IdleFeed)
        calls: list[int] = []
        session.subscribe("bookings", lambda: calls.append(1))
        await session.refresh()
        assert calls == [1]

    def test_default_feed_url(self) -> None:
        session = ClientSession("https://api.racestay.test/", "tok", api=_api())
        feed = session.broker.feed_factory()
        assert feed.ws_url == "wss://api.racestay.test/ws"
