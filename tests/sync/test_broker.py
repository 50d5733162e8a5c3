"""Realtime sync broker: lifecycle, backoff, degraded polling, routing."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from racestay.errors import NetworkError
from racestay.sync.broker import ConnectionState, RealtimeSyncBroker


class FakeFeed:
    def __init__(self, frames=(), fail: bool = False) -> None:  # noqa: ANN001
        self.frames = list(frames)
        self.fail = fail
        self.subscribed: list[str] = []
        self.unsubscribed: list[str] = []
        self.closed = False

    async def connect(self) -> None:
        if self.fail:
            raise NetworkError("refused")

    async def subscribe(self, channel: str) -> None:
        self.subscribed.append(channel)

    async def unsubscribe(self, channel: str) -> None:
        self.unsubscribed.append(channel)

    async def events(self):  # noqa: ANN201
        for frame in self.frames:
            yield frame

    async def close(self) -> None:
        self.closed = True


class FakeSleep:
    """Records delays and cancels the loop after ``limit`` sleeps."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if len(self.delays) >= self.limit:
            raise asyncio.CancelledError


def _api(**overrides) -> MagicMock:  # noqa: ANN003
    api = MagicMock()
    api.get_bookings = AsyncMock(return_value=[])
    api.get_all_transactions = AsyncMock(return_value=[])
    api.get_all_notifications = AsyncMock(return_value=[])
    api.get_conversations = AsyncMock(return_value=[])
    api.get_messages = AsyncMock(return_value=[])
    for name, value in overrides.items():
        setattr(api, name, value)
    return api


def _frame(table: str, row: dict, op: str = "insert") -> dict:
    return {"channel": table, "data": {"table": table, "op": op, "row": row}}


def _booking(booking_id: int, status: str, ts: str) -> dict:
    return {"id": booking_id, "status": status, "updated_at": ts}


class TestConnection:
    @pytest.mark.asyncio
    async def test_subscribes_then_reconciles_then_streams(self) -> None:
        api = _api(get_bookings=AsyncMock(return_value=[_booking(1, "pending", "2026-05-01T10:00:00Z")]))
        feed = FakeFeed([_frame("bookings", _booking(1, "accepted", "2026-05-01T10:05:00Z"), op="update")])
        sleep = FakeSleep(limit=1)
        broker = RealtimeSyncBroker(api, lambda: feed, sleep=sleep)
        states: list[ConnectionState] = []
        broker.on_state_change(states.append)

        with pytest.raises(asyncio.CancelledError):
            await broker.run()

        assert feed.subscribed == ["bookings", "points", "notifications", "conversations"]
        assert broker.cache("bookings").get(1)["status"] == "accepted"
        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
        ]
        assert feed.closed
        assert sleep.delays == [1]

    @pytest.mark.asyncio
    async def test_backoff_then_degraded_polling(self) -> None:
        api = _api()
        sleep = FakeSleep(limit=10)
        broker = RealtimeSyncBroker(api, lambda: FakeFeed(fail=True), sleep=sleep)
        states: list[ConnectionState] = []
        broker.on_state_change(states.append)

        with pytest.raises(asyncio.CancelledError):
            await broker.run()

        assert sleep.delays == [1, 2, 4, 8, 16, 30, 30, 30, 60, 60]
        assert broker.state is ConnectionState.DEGRADED
        assert states.count(ConnectionState.DEGRADED) == 1
        # one reconciliation pass per degraded poll
        assert api.get_bookings.await_count == 1

    @pytest.mark.asyncio
    async def test_reconnect_from_degraded_resets_backoff(self) -> None:
        feeds = iter([FakeFeed(fail=True)] * 9 + [FakeFeed()] + [FakeFeed(fail=True)] * 5)
        sleep = FakeSleep(limit=11)
        broker = RealtimeSyncBroker(_api(), lambda: next(feeds), sleep=sleep)
        states: list[ConnectionState] = []
        broker.on_state_change(states.append)

        with pytest.raises(asyncio.CancelledError):
            await broker.run()

        assert ConnectionState.CONNECTED in states
        assert sleep.delays[8:] == [60, 1, 2]

    @pytest.mark.asyncio
    async def test_missed_message_appears_after_reconnect(self) -> None:
        message = {
            "id": 5, "booking_id": 9, "message": "sent while you were offline",
            "client_id": None, "updated_at": "2026-05-01T10:00:00Z",
        }
        api = _api(get_messages=AsyncMock(side_effect=[[], [message]]))
        feeds = iter([FakeFeed(), FakeFeed()])
        broker = RealtimeSyncBroker(api, lambda: next(feeds), sleep=FakeSleep(limit=2))
        broker.messages(9)

        with pytest.raises(asyncio.CancelledError):
            await broker.run()

        assert [m["id"] for m in broker.messages(9).rows()] == [5]

    @pytest.mark.asyncio
    async def test_poll_failure_is_reported(self) -> None:
        api = _api(get_bookings=AsyncMock(side_effect=NetworkError("offline")))
        broker = RealtimeSyncBroker(api, FakeFeed)
        assert await broker.poll_once() is False


class TestStartStop:
    @pytest.mark.asyncio
    async def test_stop_cancels_and_disconnects(self) -> None:
        release = asyncio.Event()

        class BlockingFeed(FakeFeed):
            async def events(self):  # noqa: ANN202
                await release.wait()
                yield _frame("points", {"id": 1})

        feed = BlockingFeed()
        broker = RealtimeSyncBroker(_api(), lambda: feed)
        broker.start()
        for _ in range(20):
            await asyncio.sleep(0)
            if broker.state is ConnectionState.CONNECTED:
                break
        assert broker.running
        assert broker.state is ConnectionState.CONNECTED

        await broker.stop()

        assert not broker.running
        assert broker.state is ConnectionState.DISCONNECTED
        assert feed.closed


class TestRouting:
    def test_user_table_events(self) -> None:
        broker = RealtimeSyncBroker(_api(), FakeFeed)
        assert broker.handle_event(_frame("points", {"id": 1, "amount": 5, "created_at": "2026-05-01T10:00:00Z"}))
        assert broker.cache("points").get(1)["amount"] == 5

    def test_message_events_need_a_watched_booking(self) -> None:
        broker = RealtimeSyncBroker(_api(), FakeFeed)
        row = {"id": 1, "booking_id": 4, "updated_at": "2026-05-01T10:00:00Z"}
        assert broker.handle_event(_frame("messages", row)) is False
        broker.messages(4)
        assert broker.handle_event(_frame("messages", row)) is True

    def test_malformed_frames(self) -> None:
        broker = RealtimeSyncBroker(_api(), FakeFeed)
        assert broker.handle_event({"channel": "points"}) is False
        assert broker.handle_event(_frame("blocks", {"id": 1})) is False

    @pytest.mark.asyncio
    async def test_watch_while_connected_subscribes_and_loads(self) -> None:
        message = {"id": 2, "booking_id": 6, "updated_at": "2026-05-01T10:00:00Z"}
        api = _api(get_messages=AsyncMock(return_value=[message]))
        feed = FakeFeed()
        broker = RealtimeSyncBroker(api, FakeFeed)
        broker._feed = feed
        broker.state = ConnectionState.CONNECTED

        cache = await broker.watch_messages(6)
        assert feed.subscribed == ["messages:6"]
        assert [m["id"] for m in cache.rows()] == [2]

        await broker.unwatch_messages(6)
        assert feed.unsubscribed == ["messages:6"]
        assert 6 not in broker.message_caches
