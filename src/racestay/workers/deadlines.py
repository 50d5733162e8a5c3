"""arq worker for booking deadlines and notification retention.

Cron schedule:
- deadline sweep every ``sweep_interval_minutes`` (default 15)
- host deadline reminders hourly
- read-notification pruning daily at 03:30 UTC
"""

from __future__ import annotations

import logging
from datetime import timedelta

import redis.asyncio as aioredis
from arq import cron
from arq.connections import RedisSettings

from racestay.bookings.deadlines import DeadlineScheduler
from racestay.config import get_settings
from racestay.database import close_db, get_session_factory, init_db
from racestay.db.base import utcnow
from racestay.middleware.logging import setup_logging
from racestay.notifications.service import prune_read_notifications

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize DB and Redis connections on worker startup."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    ctx["redis"] = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=10,
    )
    ctx["scheduler"] = DeadlineScheduler(settings)
    logger.info("Deadline worker started")


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    redis_client: aioredis.Redis | None = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Deadline worker shut down")


async def sweep_expired_bookings(ctx: dict) -> int:  # type: ignore[type-arg]
    """Expire pending bookings past their host response deadline."""
    scheduler: DeadlineScheduler = ctx["scheduler"]
    async with get_session_factory()() as db:
        outcome = await scheduler.sweep(db, ctx.get("redis"))
    return outcome.expired


async def send_deadline_reminders(ctx: dict) -> int:  # type: ignore[type-arg]
    """Remind hosts whose response deadline is near."""
    scheduler: DeadlineScheduler = ctx["scheduler"]
    async with get_session_factory()() as db:
        sent = await scheduler.send_reminders(db, ctx.get("redis"))
    if sent:
        logger.info("Sent %d deadline reminders", sent)
    return sent


async def prune_notifications(ctx: dict) -> int:  # type: ignore[type-arg]
    """Delete read notifications older than the retention window."""
    settings = get_settings()
    cutoff = utcnow() - timedelta(days=settings.notification_retention_days)
    async with get_session_factory()() as db:
        deleted = await prune_read_notifications(db, cutoff)
        await db.commit()
    return deleted


def _sweep_minutes(interval: int) -> set[int]:
    interval = max(1, min(interval, 60))
    return set(range(0, 60, interval))


class WorkerSettings:
    """arq worker settings for deadline enforcement."""

    functions = [sweep_expired_bookings, send_deadline_reminders, prune_notifications]
    cron_jobs = [
        cron(
            sweep_expired_bookings,
            minute=_sweep_minutes(get_settings().sweep_interval_minutes),
            run_at_startup=True,
            unique=True,
        ),
        cron(send_deadline_reminders, minute=5, unique=True),
        cron(prune_notifications, hour=3, minute=30, unique=True),
    ]
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = 4
    job_timeout = 300
