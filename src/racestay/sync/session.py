"""One signed-in user's client session.

``start(user_id)`` runs the client-side expiry check, then starts the
realtime broker. ``stop()`` tears everything down. Independent instances share
nothing, so several sessions for the same user can run side by side.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from racestay.config import Settings, get_settings
from racestay.errors import RaceStayError
from racestay.sync.actions import BookingActions
from racestay.sync.api import ApiClient
from racestay.sync.broker import ConnectionState, FeedFactory, RealtimeSyncBroker
from racestay.sync.feed import FeedConnection
from racestay.sync.inflight import InFlightRegistry
from racestay.sync.messages import MessageComposer
from racestay.sync.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)


class ClientSession:
    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        ws_url: str | None = None,
        settings: Settings | None = None,
        api: ApiClient | None = None,
        feed_factory: FeedFactory | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.api = api or ApiClient(base_url, token, settings=self.settings)
        if feed_factory is None:
            url = ws_url or base_url.replace("http", "ws", 1).rstrip("/") + "/ws"

            def feed_factory() -> FeedConnection:
                return FeedConnection(
                    url,
                    token,
                    heartbeat=float(self.settings.ws_heartbeat_interval_seconds),
                    receive_timeout=self.settings.sync_heartbeat_timeout_seconds,
                )

        self.broker = RealtimeSyncBroker(self.api, feed_factory, settings=self.settings)
        self.registry = InFlightRegistry()
        self.actions = BookingActions(
            self.api, self.broker.cache("bookings"), registry=self.registry, settings=self.settings,
        )
        self.notifications = NotificationDispatcher(self.api, self.broker.cache("notifications"))
        self.messages: MessageComposer | None = None
        self.user_id: int | None = None

    @property
    def state(self) -> ConnectionState:
        return self.broker.state

    async def start(self, user_id: int) -> None:
        if self.user_id is not None:
            raise RuntimeError("Session already started")
        self.user_id = user_id
        self.messages = MessageComposer(self.api, self.broker.messages, user_id)
        try:
            outcome = await self.api.expire_overdue()
            if outcome.get("expired"):
                logger.info("Expired %d overdue bookings on session start", outcome["expired"])
        except RaceStayError as exc:
            logger.warning("Overdue booking check failed on session start: %s", exc)
        self.broker.start()

    async def stop(self) -> None:
        await self.broker.stop()
        for cache in (*self.broker.caches.values(), *self.broker.message_caches.values()):
            cache.clear()
        self.broker.message_caches.clear()
        self.messages = None
        self.user_id = None

    async def aclose(self) -> None:
        await self.stop()
        await self.api.aclose()

    async def refresh(self) -> None:
        """Force a reconciliation pass outside the feed cycle."""
        await self.broker.reconcile()

    # -- snapshots -------------------------------------------------------

    @property
    def bookings(self) -> list[dict[str, Any]]:
        return self.broker.cache("bookings").rows()

    @property
    def transactions(self) -> list[dict[str, Any]]:
        rows = self.broker.cache("points").rows()
        return sorted(rows, key=lambda r: (r.get("created_at") or "", r.get("id") or 0), reverse=True)

    @property
    def balance(self) -> int:
        return sum(int(row.get("amount") or 0) for row in self.broker.cache("points").rows())

    @property
    def unread_count(self) -> int:
        return self.notifications.unread_count

    def subscribe(self, table: str, listener: Callable[[], None]) -> Callable[[], None]:
        """Live-update handle for one table's snapshot."""
        return self.broker.cache(table).subscribe(listener)
