"""Redis client for the change feed bus and rate-limit counters.

The API keeps working when Redis is down: mutations still commit, their
change events are just not fanned out (clients recover on their next
reconciliation pass).
"""

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from racestay.config import get_settings

logger = structlog.get_logger()

_client: redis.Redis | None = None


async def init_redis(url: str) -> None:
    global _client  # noqa: PLW0603
    _client = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=get_settings().redis_max_connections,
        health_check_interval=30,
    )
    logger.info("redis_initialized")


async def close_redis() -> None:
    global _client  # noqa: PLW0603
    if _client is not None:
        await _client.aclose()
        _client = None


def get_redis() -> redis.Redis:
    """The shared client; raises RuntimeError before :func:`init_redis`."""
    if _client is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _client


def get_redis_optional() -> redis.Redis | None:
    return _client


async def feed_bus_status() -> str:
    """``ok`` or a short error description, for the readiness probe."""
    try:
        await get_redis().ping()
    except (RuntimeError, RedisError) as exc:
        return f"error: {exc}"
    return "ok"
