"""Shared FastAPI dependencies."""

from collections.abc import AsyncGenerator

from redis.asyncio import Redis

from racestay.redis_client import get_redis_optional


async def get_redis_dep() -> AsyncGenerator[Redis | None, None]:
    """Yield the Redis client, or None when the feed bus is not running."""
    yield get_redis_optional()
