"""Middleware registration."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from racestay.config import Settings
from racestay.middleware.error_handler import setup_error_handlers
from racestay.middleware.logging import setup_logging
from racestay.middleware.rate_limit import RateLimitMiddleware
from racestay.middleware.request_id import RequestIdMiddleware

# Headers the client SDK and web UI read from responses.
EXPOSED_HEADERS = ["X-Request-Id", "X-RateLimit-Remaining", "X-RateLimit-Limit"]


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register handlers and middleware.

    Starlette runs middleware in reverse-add order (last added = outermost):
    CORS wraps the request id, which wraps the rate limiter, so even 429s
    carry both CORS headers and an ``X-Request-Id``.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(
        RateLimitMiddleware,
        read_limit=settings.rate_limit_requests,
        write_limit=settings.rate_limit_write_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-Id"],
        expose_headers=EXPOSED_HEADERS,
    )
