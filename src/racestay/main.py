"""ASGI entry point: ``uvicorn racestay.main:app``."""

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from racestay.bookings.router import router as bookings_router
from racestay.config import get_settings
from racestay.database import close_db, init_db
from racestay.health.router import router as health_router
from racestay.messaging.router import router as messaging_router
from racestay.middleware import setup_middleware
from racestay.notifications.router import router as notifications_router
from racestay.points.router import router as points_router
from racestay.redis_client import close_redis, get_redis, init_redis
from racestay.ws.bridge import PubSubBridge
from racestay.ws.router import router as ws_router

logger = structlog.get_logger()

_API_ROUTERS = (bookings_router, points_router, messaging_router, notifications_router, ws_router)


async def _stop_bridge(bridge: PubSubBridge, task: asyncio.Task[None]) -> None:
    await bridge.stop()
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)

    # feed:* pub/sub -> WebSocket clients
    bridge = PubSubBridge(get_redis())
    bridge_task = asyncio.create_task(bridge.start())
    logger.info("app_started", environment=settings.environment, version=settings.app_version)
    try:
        yield
    finally:
        await _stop_bridge(bridge, bridge_task)
        await close_db()
        await close_redis()
        logger.info("app_stopped")


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="RaceStay API",
        description="Race-week stay exchange: booking lifecycle, points ledger and change feed",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    for router in _API_ROUTERS:
        app.include_router(router)
    return app


app = create_app()
