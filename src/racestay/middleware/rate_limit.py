"""Fixed-window rate limiting on Redis counters.

Reads and writes are counted in separate buckets per client IP: state-changing
calls (booking transitions, messages, mark-read) get the smaller budget, so a
client polling its feed cannot starve its own mutations. When Redis is
unavailable requests pass through unlimited.
"""

import time
from typing import Any

import structlog
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from racestay.redis_client import get_redis

logger = structlog.get_logger()

_EXEMPT_PATHS = frozenset({"/health", "/ready"})
_WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: Any,  # noqa: ANN401
        read_limit: int = 100,
        write_limit: int = 30,
        window_seconds: int = 60,
    ) -> None:
        super().__init__(app)
        self.read_limit = read_limit
        self.write_limit = write_limit
        self.window_seconds = window_seconds

    def _bucket(self, request: Request) -> tuple[str, int]:
        if request.method in _WRITE_METHODS:
            return "write", self.write_limit
        return "read", self.read_limit

    async def _hit(self, key: str) -> int | None:
        """Increment the window counter; None when Redis cannot be reached."""
        try:
            redis = get_redis()
        except RuntimeError:
            return None
        try:
            pipe = redis.pipeline()
            pipe.incr(key)
            pipe.expire(key, self.window_seconds + 1)
            results: list[Any] = await pipe.execute()
        except RedisError as exc:
            logger.warning("rate_limit_unavailable", error=str(exc))
            return None
        return int(results[0])

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in _EXEMPT_PATHS:
            return await call_next(request)

        bucket, limit = self._bucket(request)
        client_ip = request.client.host if request.client else "unknown"
        window = int(time.time()) // self.window_seconds
        count = await self._hit(f"ratelimit:{bucket}:{client_ip}:{window}")
        if count is None:
            return await call_next(request)

        if count > limit:
            logger.info("rate_limited", bucket=bucket, client_ip=client_ip, path=request.url.path)
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later.", "code": "rate_limited"},
                headers={
                    "Retry-After": str(self.window_seconds),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Limit": str(limit),
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Remaining"] = str(max(0, limit - count))
        response.headers["X-RateLimit-Limit"] = str(limit)
        return response
