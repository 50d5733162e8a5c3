"""Bridges the Redis change feed to WebSocket clients.

Pattern-subscribes to ``feed:*`` and routes each committed change event:

    feed:{table}:user:{user_id}         -> that user's connections on ``{table}``
    feed:messages:booking:{booking_id}  -> subscribers of ``messages:{booking_id}``
"""

import asyncio
import json
from typing import Any

import redis.asyncio as aioredis
import structlog

from racestay.ws.manager import ConnectionManager, manager as default_manager

logger = structlog.get_logger()

FEED_PATTERN = "feed:*"


async def route_feed_message(conn_manager: ConnectionManager, channel: str, payload: dict[str, Any]) -> int:
    """Deliver one change event. Returns the number of recipients."""
    parts = channel.split(":")
    if len(parts) != 4 or parts[0] != "feed":
        logger.warning("feed_unknown_channel", channel=channel)
        return 0

    _, table, scope, raw_id = parts
    try:
        scope_id = int(raw_id)
    except ValueError:
        logger.warning("feed_invalid_scope_id", channel=channel)
        return 0

    if scope == "user":
        return await conn_manager.send_to_user(scope_id, table, payload)
    if scope == "booking" and table == "messages":
        return await conn_manager.broadcast_to_channel(f"messages:{scope_id}", payload)

    logger.warning("feed_unknown_scope", channel=channel)
    return 0


class PubSubBridge:
    """Subscribes to Redis pub/sub and pushes change events to WebSocket clients."""

    def __init__(self, redis_client: aioredis.Redis, conn_manager: ConnectionManager | None = None) -> None:
        self.redis = redis_client
        self.manager = conn_manager or default_manager
        self._running = False

    async def start(self) -> None:
        """Listen on the feed pattern until stopped."""
        self._running = True
        pubsub = self.redis.pubsub()
        await pubsub.psubscribe(FEED_PATTERN)
        logger.info("pubsub_bridge_started", patterns=[FEED_PATTERN])

        try:
            while self._running:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue
                await self.handle_message(message)
        except asyncio.CancelledError:
            pass
        finally:
            await pubsub.punsubscribe()
            await pubsub.aclose()
            logger.info("pubsub_bridge_stopped")

    async def handle_message(self, message: dict[str, Any]) -> int:
        """Decode one pub/sub message and route it."""
        if message.get("type") != "pmessage":
            return 0

        channel = message.get("channel", "")
        if isinstance(channel, bytes):
            channel = channel.decode()

        try:
            data = message.get("data", b"")
            if isinstance(data, bytes):
                data = data.decode()
            payload = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("pubsub_invalid_message", channel=channel)
            return 0

        sent = await route_feed_message(self.manager, channel, payload)
        if sent > 0:
            logger.debug("feed_delivered", channel=channel, recipients=sent)
        return sent

    async def stop(self) -> None:
        """Signal the bridge to stop."""
        self._running = False
