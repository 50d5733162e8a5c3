"""Publishes committed change events onto Redis pub/sub."""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from racestay.realtime.changes import ChangeCollector, ChangeEvent

logger = structlog.get_logger()


async def publish_changes(redis: Any | None, events: list[ChangeEvent]) -> int:
    """Publish events to every channel they are scoped to.

    Delivery is best effort: a failed publish is logged and skipped, clients
    recover through their reconciliation pass. Returns the number of
    successful publishes.
    """
    if redis is None or not events:
        return 0

    published = 0
    for event in events:
        payload = event.to_json()
        for channel in event.channels:
            try:
                await redis.publish(channel, payload)
                published += 1
            except Exception:
                logger.warning("feed_publish_failed", channel=channel, table=event.table, exc_info=True)
    return published


async def commit_and_publish(db: AsyncSession, redis: Any | None, changes: ChangeCollector) -> None:
    """Commit the unit of work, then fan its change events out."""
    await db.commit()
    await publish_changes(redis, changes.drain())
