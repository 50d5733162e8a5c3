"""Client notification state: derived unread count and mark-read rollback."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from racestay.errors import NetworkError
from racestay.sync.cache import SyncCache
from racestay.sync.notifications import NotificationDispatcher


def _note(note_id: int, read: bool = False) -> dict:
    return {
        "id": note_id, "read": read, "title": f"n{note_id}",
        "created_at": f"2026-05-01T10:00:0{note_id}Z", "updated_at": f"2026-05-01T10:00:0{note_id}Z",
    }


@pytest.fixture
def cache() -> SyncCache:
    cache = SyncCache("notifications", correlation_field=None)
    cache.replace_all([_note(1), _note(2), _note(3, read=True)])
    return cache


class TestNotificationDispatcher:
    def test_unread_count_is_derived(self, cache: SyncCache) -> None:
        dispatcher = NotificationDispatcher(MagicMock(), cache)
        assert dispatcher.unread_count == 2
        cache.upsert(_note(4))
        assert dispatcher.unread_count == 3

    def test_newest_first(self, cache: SyncCache) -> None:
        dispatcher = NotificationDispatcher(MagicMock(), cache)
        assert [n["id"] for n in dispatcher.notifications()] == [3, 2, 1]

    @pytest.mark.asyncio
    async def test_mark_read(self, cache: SyncCache) -> None:
        api = MagicMock()
        api.mark_notification_read = AsyncMock(return_value=1)
        dispatcher = NotificationDispatcher(api, cache)

        await dispatcher.mark_read(1)

        assert dispatcher.unread_count == 1
        assert cache.authoritative(1)["read"] is True

    @pytest.mark.asyncio
    async def test_mark_read_failure_rolls_back_and_refetches(self, cache: SyncCache) -> None:
        api = MagicMock()
        api.mark_notification_read = AsyncMock(side_effect=NetworkError("offline"))
        api.get_all_notifications = AsyncMock(return_value=[_note(1), _note(2), _note(3, read=True)])
        dispatcher = NotificationDispatcher(api, cache)

        with pytest.raises(NetworkError):
            await dispatcher.mark_read(1)

        assert dispatcher.unread_count == 2
        api.get_all_notifications.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_mark_all_read(self, cache: SyncCache) -> None:
        api = MagicMock()
        api.mark_all_notifications_read = AsyncMock(return_value=2)
        dispatcher = NotificationDispatcher(api, cache)
        assert await dispatcher.mark_all_read() == 2
        assert dispatcher.unread_count == 0

    @pytest.mark.asyncio
    async def test_mark_all_read_failure_survives_refetch_failure(self, cache: SyncCache) -> None:
        api = MagicMock()
        api.mark_all_notifications_read = AsyncMock(side_effect=NetworkError("offline"))
        api.get_all_notifications = AsyncMock(side_effect=NetworkError("still offline"))
        dispatcher = NotificationDispatcher(api, cache)

        with pytest.raises(NetworkError, match="offline"):
            await dispatcher.mark_all_read()
        assert dispatcher.unread_count == 2

    @pytest.mark.asyncio
    async def test_feed_update_during_refresh_is_not_reverted(self, cache: SyncCache) -> None:
        fetched = asyncio.Event()
        stale = [_note(1), _note(2), _note(3, read=True)]

        async def slow_fetch() -> list[dict]:
            await fetched.wait()
            return stale

        api = MagicMock()
        api.get_all_notifications = AsyncMock(side_effect=slow_fetch)
        dispatcher = NotificationDispatcher(api, cache)

        refresh = asyncio.create_task(dispatcher.refresh())
        await asyncio.sleep(0)
        cache.apply_event("update", {**_note(1), "read": True, "updated_at": "2026-05-01T10:00:06Z"})
        fetched.set()
        await refresh

        assert cache.get(1)["read"] is True
        assert dispatcher.unread_count == 1
