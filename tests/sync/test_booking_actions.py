"""Client booking actions: in-flight guard, optimistic status, retries."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from racestay.errors import ConflictError, NetworkError, OperationInProgressError, UnauthorizedError
from racestay.sync.actions import BookingActions
from racestay.sync.cache import SyncCache


def _row(status: str, ts: str = "2026-05-01T10:00:00Z") -> dict:
    return {"id": 1, "status": status, "updated_at": ts}


class FakeSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def bookings() -> SyncCache:
    cache = SyncCache("bookings")
    cache.upsert(_row("pending"))
    return cache


@pytest.fixture
def api() -> MagicMock:
    api = MagicMock()
    api.respond = AsyncMock(return_value={"booking": _row("accepted", "2026-05-01T10:01:00Z"), "replayed": False})
    api.confirm = AsyncMock(return_value={"booking": _row("confirmed", "2026-05-01T10:02:00Z"), "replayed": False})
    api.cancel = AsyncMock()
    api.complete = AsyncMock()
    api.get_booking = AsyncMock()
    return api


class TestBookingActions:
    @pytest.mark.asyncio
    async def test_success_replaces_guess_with_server_row(self, api, bookings) -> None:  # noqa: ANN001
        actions = BookingActions(api, bookings)
        row = await actions.respond(1, "accepted", "See you")

        assert row["status"] == "accepted"
        assert bookings.authoritative(1)["status"] == "accepted"
        args = api.respond.await_args
        assert args.args == (1, "accepted", "See you")
        assert args.kwargs["operation_id"]
        assert actions.pending_operation(1, "respond:accepted") is None

    @pytest.mark.asyncio
    async def test_second_call_while_in_flight_is_rejected(self, api, bookings) -> None:  # noqa: ANN001
        release = asyncio.Event()
        seen_status: list[str] = []

        async def slow_respond(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
            seen_status.append(bookings.get(1)["status"])
            await release.wait()
            return {"booking": _row("accepted", "2026-05-01T10:01:00Z"), "replayed": False}

        api.respond = slow_respond
        actions = BookingActions(api, bookings)
        first = asyncio.create_task(actions.respond(1, "accepted"))
        await asyncio.sleep(0)

        with pytest.raises(OperationInProgressError):
            await actions.cancel(1, "host")
        assert actions.registry.is_busy(1)

        release.set()
        await first
        assert seen_status == ["accepted"]
        assert not actions.registry.is_busy(1)
        api.cancel.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_network_failure_rolls_back_and_keeps_operation_id(self, api, bookings) -> None:  # noqa: ANN001
        api.confirm = AsyncMock(side_effect=NetworkError("offline"))
        actions = BookingActions(api, bookings)

        with pytest.raises(NetworkError):
            await actions.confirm(1)
        assert bookings.get(1)["status"] == "pending"
        kept = actions.pending_operation(1, "confirm")
        assert kept is not None

        api.confirm = AsyncMock(return_value={"booking": _row("confirmed", "2026-05-01T10:02:00Z"), "replayed": True})
        await actions.confirm(1)
        assert api.confirm.await_args.kwargs["operation_id"] == kept
        assert actions.pending_operation(1, "confirm") is None

    @pytest.mark.asyncio
    async def test_conflict_refetches(self, api, bookings) -> None:  # noqa: ANN001
        api.respond = AsyncMock(side_effect=ConflictError("stale"))
        api.get_booking = AsyncMock(return_value=_row("cancelled", "2026-05-01T10:03:00Z"))
        actions = BookingActions(api, bookings)

        with pytest.raises(ConflictError):
            await actions.respond(1, "accepted")

        api.get_booking.assert_awaited_once_with(1)
        assert bookings.get(1)["status"] == "cancelled"
        assert actions.pending_operation(1, "respond:accepted") is None

    @pytest.mark.asyncio
    async def test_other_errors_roll_back(self, api, bookings) -> None:  # noqa: ANN001
        api.complete = AsyncMock(side_effect=UnauthorizedError("not yours"))
        actions = BookingActions(api, bookings)
        with pytest.raises(UnauthorizedError):
            await actions.complete(1)
        assert bookings.get(1)["status"] == "pending"
        api.get_booking.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_accept_and_confirm_waits_between_steps(self, api, bookings) -> None:  # noqa: ANN001
        sleep = FakeSleep()
        actions = BookingActions(api, bookings, sleep=sleep)

        row = await actions.accept_and_confirm(1)

        assert row["status"] == "confirmed"
        assert sleep.delays == [0.5]
        api.respond.assert_awaited_once()
        api.confirm.assert_awaited_once()
