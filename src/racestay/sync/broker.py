"""Realtime sync broker: change feed subscriptions plus reconciliation.

Connection lifecycle::

    disconnected -> connecting -> connected
    connected -> disconnected            (close / timeout; backoff, then retry)
    * -> degraded                        (reconnect attempts exhausted)

Every (re)subscribe is followed by one reconciliation pass that re-fetches
authoritative state, since events published while disconnected are lost.
In ``degraded`` the broker polls with reconciliation passes and keeps
trying to reconnect at the polling cadence.
"""

from __future__ import annotations

import asyncio
import enum
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import structlog

from racestay.config import Settings, get_settings
from racestay.sync.api import ApiClient
from racestay.sync.backoff import ExponentialBackoff
from racestay.sync.cache import SyncCache

logger = structlog.get_logger()

USER_TABLES = ("bookings", "points", "notifications", "conversations")


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"


class Feed(Protocol):
    async def connect(self) -> None: ...
    async def subscribe(self, channel: str) -> None: ...
    async def unsubscribe(self, channel: str) -> None: ...
    def events(self) -> Any: ...  # noqa: ANN401
    async def close(self) -> None: ...


FeedFactory = Callable[[], Feed]
StateListener = Callable[[ConnectionState], None]


def message_channel(booking_id: int) -> str:
    return f"messages:{booking_id}"


class RealtimeSyncBroker:
    """Keeps per-table caches consistent with the server for one user."""

    def __init__(
        self,
        api: ApiClient,
        feed_factory: FeedFactory,
        *,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api = api
        self.feed_factory = feed_factory
        self.settings = settings or get_settings()
        self._sleep = sleep
        self.caches: dict[str, SyncCache] = {
            "bookings": SyncCache("bookings"),
            "points": SyncCache("points", timestamp_field="created_at", correlation_field=None),
            "notifications": SyncCache("notifications", correlation_field=None),
            "conversations": SyncCache("conversations", correlation_field=None),
        }
        self.message_caches: dict[int, SyncCache] = {}
        self.state = ConnectionState.DISCONNECTED
        self.backoff = ExponentialBackoff.for_reconnect(self.settings)
        self._listeners: list[StateListener] = []
        self._feed: Feed | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    # -- state -------------------------------------------------------------

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        logger.info("sync_state_changed", previous=self.state.value, state=state.value)
        self.state = state
        for listener in list(self._listeners):
            listener(state)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # -- caches ------------------------------------------------------------

    def cache(self, table: str) -> SyncCache:
        return self.caches[table]

    def messages(self, booking_id: int) -> SyncCache:
        cache = self.message_caches.get(booking_id)
        if cache is None:
            cache = self.message_caches[booking_id] = SyncCache(f"messages:{booking_id}")
        return cache

    async def watch_messages(self, booking_id: int) -> SyncCache:
        """Track a booking's messages; subscribes immediately when connected."""
        cache = self.messages(booking_id)
        if self._feed is not None and self.state is ConnectionState.CONNECTED:
            await self._feed.subscribe(message_channel(booking_id))
            cache.replace_all(await self.api.get_messages(booking_id))
        return cache

    async def unwatch_messages(self, booking_id: int) -> None:
        self.message_caches.pop(booking_id, None)
        if self._feed is not None and self.state is ConnectionState.CONNECTED:
            await self._feed.unsubscribe(message_channel(booking_id))

    def handle_event(self, frame: dict[str, Any]) -> bool:
        """Route one feed frame into its cache. Returns True if state changed."""
        data = frame.get("data") or {}
        table = data.get("table")
        row = data.get("row")
        op = data.get("op", "update")
        if not isinstance(row, dict):
            return False
        if table == "messages":
            cache = self.message_caches.get(row.get("booking_id"))
        else:
            cache = self.caches.get(table)
        if cache is None:
            return False
        return cache.apply_event(op, row)

    # -- reconciliation ----------------------------------------------------

    async def reconcile(self) -> None:
        """Re-fetch authoritative state for every tracked scope."""
        self.caches["bookings"].replace_all(await self.api.get_bookings())
        self.caches["points"].replace_all(await self.api.get_all_transactions())
        self.caches["notifications"].replace_all(await self.api.get_all_notifications())
        self.caches["conversations"].replace_all(await self.api.get_conversations())
        for booking_id, cache in list(self.message_caches.items()):
            cache.replace_all(await self.api.get_messages(booking_id))
        logger.debug("sync_reconciled", message_scopes=len(self.message_caches))

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._close_feed()
        self._set_state(ConnectionState.DISCONNECTED)

    async def _close_feed(self) -> None:
        feed, self._feed = self._feed, None
        if feed is not None:
            try:
                await feed.close()
            except Exception:
                logger.debug("feed_close_failed", exc_info=True)

    async def _session(self) -> None:
        """One connection: connect, subscribe, reconcile, then stream events."""
        feed = self.feed_factory()
        self._feed = feed
        await feed.connect()
        for table in USER_TABLES:
            await feed.subscribe(table)
        for booking_id in list(self.message_caches):
            await feed.subscribe(message_channel(booking_id))
        await self.reconcile()

        self._set_state(ConnectionState.CONNECTED)
        self.backoff.reset()
        async for frame in feed.events():
            self.handle_event(frame)

    async def run(self) -> None:
        """Connection loop; runs until :meth:`stop` or cancellation."""
        while not self._stopping.is_set():
            if self.state is not ConnectionState.DEGRADED:
                self._set_state(ConnectionState.CONNECTING)
            try:
                await self._session()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("sync_connection_lost", error=str(exc), attempt=self.backoff.attempts + 1)
            finally:
                await self._close_feed()

            if self._stopping.is_set():
                break

            if self.state is not ConnectionState.DEGRADED:
                self._set_state(ConnectionState.DISCONNECTED)
                delay = self.backoff.next_delay()
                if delay is not None:
                    await self._sleep(delay)
                    continue
                self._set_state(ConnectionState.DEGRADED)

            await self._sleep(self.settings.sync_poll_interval_seconds)
            await self.poll_once()

    async def poll_once(self) -> bool:
        """Safety-net reconciliation used while degraded."""
        try:
            await self.reconcile()
        except Exception as exc:
            logger.warning("sync_poll_failed", error=str(exc))
            return False
        return True
