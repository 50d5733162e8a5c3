"""Live feed connections for the web and mobile clients.

Two kinds of channel:

- user-scoped: ``bookings``, ``points``, ``notifications``, ``conversations``.
  A connection only ever receives rows for its own authenticated user.
- booking-scoped: ``messages:{booking_id}``. Admission is checked by the
  endpoint before :meth:`ConnectionManager.subscribe` is called.
"""

import json
import time
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog
from fastapi import WebSocket

logger = structlog.get_logger()

USER_CHANNELS = frozenset({"bookings", "points", "notifications", "conversations"})
MESSAGES_PREFIX = "messages:"


def parse_booking_channel(channel: str) -> int | None:
    """Return the booking id of a ``messages:{id}`` channel, else None."""
    if not channel.startswith(MESSAGES_PREFIX):
        return None
    try:
        return int(channel[len(MESSAGES_PREFIX):])
    except ValueError:
        return None


def is_valid_channel(channel: str) -> bool:
    return channel in USER_CHANNELS or parse_booking_channel(channel) is not None


def _discard(index: dict[Any, set[str]], key: Any, conn_id: str) -> None:  # noqa: ANN401
    members = index.get(key)
    if members is None:
        return
    members.discard(conn_id)
    if not members:
        del index[key]


@dataclass
class LiveSocket:
    websocket: WebSocket
    user_id: int
    opened_at: float = field(default_factory=time.monotonic)
    channels: set[str] = field(default_factory=set)
    delivered: int = 0


class ConnectionManager:
    """Indexes open sockets by id, by user and by booking thread.

    User channels are matched against ``LiveSocket.channels`` at send
    time; only booking threads need a reverse index.
    """

    def __init__(self) -> None:
        self._connections: dict[str, LiveSocket] = {}
        self._channels: dict[str, set[str]] = defaultdict(set)
        self._user_connections: dict[int, set[str]] = defaultdict(set)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def user_connection_count(self, user_id: int) -> int:
        return len(self._user_connections.get(user_id, ()))

    async def connect(self, websocket: WebSocket, conn_id: str, user_id: int) -> None:
        await websocket.accept()
        self._connections[conn_id] = LiveSocket(websocket=websocket, user_id=user_id)
        self._user_connections[user_id].add(conn_id)
        logger.info("ws_connected", conn_id=conn_id, user_id=user_id)

    async def disconnect(self, conn_id: str) -> None:
        conn = self._connections.pop(conn_id, None)
        if conn is None:
            return
        for channel in conn.channels:
            _discard(self._channels, channel, conn_id)
        _discard(self._user_connections, conn.user_id, conn_id)
        logger.info(
            "ws_disconnected",
            conn_id=conn_id,
            user_id=conn.user_id,
            delivered=conn.delivered,
            seconds=round(time.monotonic() - conn.opened_at, 1),
        )

    async def subscribe(self, conn_id: str, channel: str) -> bool:
        """Add ``channel`` to the connection; False for unknown sockets or channels."""
        conn = self._connections.get(conn_id)
        if conn is None or not is_valid_channel(channel):
            return False
        conn.channels.add(channel)
        if channel not in USER_CHANNELS:
            self._channels[channel].add(conn_id)
        logger.debug("ws_subscribed", conn_id=conn_id, channel=channel)
        return True

    async def unsubscribe(self, conn_id: str, channel: str) -> bool:
        conn = self._connections.get(conn_id)
        if conn is None:
            return False
        conn.channels.discard(channel)
        _discard(self._channels, channel, conn_id)
        return True

    async def _deliver(self, conn_ids: Iterable[str], channel: str, message: dict[str, Any]) -> int:
        frame = json.dumps({"channel": channel, "data": message})
        delivered = 0
        for conn_id in list(conn_ids):
            conn = self._connections.get(conn_id)
            if conn is None or channel not in conn.channels:
                continue
            try:
                await conn.websocket.send_text(frame)
            except Exception:
                # A dead socket is dropped; the client reconciles on reconnect.
                logger.debug("ws_send_failed", conn_id=conn_id, channel=channel)
                await self.disconnect(conn_id)
                continue
            conn.delivered += 1
            delivered += 1
        return delivered

    async def broadcast_to_channel(self, channel: str, message: dict[str, Any]) -> int:
        """Fan a message thread row out to both parties of a booking.

        Returns how many sockets received it.
        """
        return await self._deliver(self._channels.get(channel, ()), channel, message)

    async def send_to_user(self, user_id: int, channel: str, message: dict[str, Any]) -> int:
        return await self._deliver(self._user_connections.get(user_id, ()), channel, message)

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_connections": len(self._connections),
            "unique_users": len(self._user_connections),
            "channels": {channel: len(ids) for channel, ids in self._channels.items() if ids},
        }


manager = ConnectionManager()
