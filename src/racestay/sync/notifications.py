"""Notification state for one user, derived from the notification cache."""

from __future__ import annotations

import logging
from collections.abc import Callable

from racestay.errors import RaceStayError
from racestay.sync.api import ApiClient
from racestay.sync.cache import SyncCache

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Unread count is always counted from cached rows, never stored.

    Mark-read flips the row optimistically, then writes. On failure the guess
    is rolled back and the authoritative list re-fetched.
    """

    def __init__(self, api: ApiClient, cache: SyncCache) -> None:
        self.api = api
        self.cache = cache

    @property
    def unread_count(self) -> int:
        return sum(1 for row in self.cache.rows() if not row.get("read"))

    def notifications(self) -> list[dict]:
        return sorted(self.cache.rows(), key=lambda r: (r.get("created_at") or "", r.get("id") or 0), reverse=True)

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        return self.cache.subscribe(listener)

    async def refresh(self) -> None:
        self.cache.replace_all(await self.api.get_all_notifications())

    async def _recover(self) -> None:
        try:
            await self.refresh()
        except RaceStayError as exc:
            logger.warning("Notification re-fetch failed: %s", exc)

    async def mark_read(self, notification_id: int) -> None:
        self.cache.patch(notification_id, read=True)
        try:
            await self.api.mark_notification_read(notification_id)
        except RaceStayError:
            self.cache.drop_patch(notification_id)
            await self._recover()
            raise
        self.cache.confirm_patch(notification_id)

    async def mark_all_read(self) -> int:
        unread = [row["id"] for row in self.cache.rows() if not row.get("read") and row.get("id") is not None]
        for notification_id in unread:
            self.cache.patch(notification_id, read=True)
        try:
            updated = await self.api.mark_all_notifications_read()
        except RaceStayError:
            for notification_id in unread:
                self.cache.drop_patch(notification_id)
            await self._recover()
            raise
        for notification_id in unread:
            self.cache.confirm_patch(notification_id)
        return updated
