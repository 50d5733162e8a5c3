"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Callable
from datetime import date, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from racestay.auth.jwt import create_access_token, reset_keys
from racestay.bookings.state_machine import BookingStateMachine
from racestay.config import get_settings
from racestay.database import build_engine, build_session_factory, get_session
from racestay.db.base import Base, utcnow
from racestay.db.enums import TransactionType
from racestay.db.models import Booking, User
from racestay.dependencies import get_redis_dep
from racestay.points.ledger import credit

STARTING_POINTS = 500


@pytest.fixture(scope="session", autouse=True)
def jwt_keys(tmp_path_factory: pytest.TempPathFactory) -> tuple[str, str]:
    """Generate an RSA key pair for the session and point settings at it."""
    keydir = tmp_path_factory.mktemp("keys")
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_path = keydir / "jwt_private.pem"
    public_path = keydir / "jwt_public.pem"
    private_path.write_bytes(private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ))
    public_path.write_bytes(private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ))

    os.environ["RACESTAY_JWT_PRIVATE_KEY_PATH"] = str(private_path)
    os.environ["RACESTAY_JWT_PUBLIC_KEY_PATH"] = str(public_path)
    get_settings.cache_clear()
    reset_keys()
    return str(private_path), str(public_path)


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite database per test; separate sessions act as separate clients."""
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'racestay.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """Direct database session for setup and assertions."""
    async with session_factory() as session:
        yield session


async def _create_user(db: AsyncSession, email: str, points: int = STARTING_POINTS) -> User:
    user = User(email=email, display_name=email.split("@")[0])
    db.add(user)
    await db.flush()
    if points:
        await credit(
            db, user.id, points, TransactionType.SUBSCRIPTION_BONUS, "Starting points",
            idempotency_key=f"seed:{user.id}",
        )
    await db.commit()
    return user


@pytest_asyncio.fixture
async def guest(db_session: AsyncSession) -> User:
    return await _create_user(db_session, "guest@example.com")


@pytest_asyncio.fixture
async def host(db_session: AsyncSession) -> User:
    return await _create_user(db_session, "host@example.com", points=0)


@pytest_asyncio.fixture
async def outsider(db_session: AsyncSession) -> User:
    return await _create_user(db_session, "outsider@example.com", points=0)


@pytest.fixture
def make_booking(
    session_factory: async_sessionmaker[AsyncSession],
    guest: User,
    host: User,
) -> Callable[..., object]:
    """Factory: request a booking through the state machine and commit it."""

    async def _make(
        points_cost: int = 40,
        *,
        created_at: datetime | None = None,
        check_in: date | None = None,
        nights: int = 2,
    ) -> Booking:
        check_in = check_in or (utcnow().date() + timedelta(days=30))
        async with session_factory() as db:
            clock = (lambda: created_at) if created_at else None
            machine = BookingStateMachine(db, clock=clock)
            result = await machine.request_booking(
                guest.id,
                host_id=host.id,
                race_id=7,
                property_id=11,
                check_in_date=check_in,
                check_out_date=check_in + timedelta(days=nights),
                points_cost=points_cost,
            )
            await db.commit()
            return result.booking

    return _make


@pytest.fixture
def fake_redis() -> AsyncMock:
    redis = AsyncMock()
    redis.publish = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def app(session_factory: async_sessionmaker[AsyncSession], fake_redis: AsyncMock):  # noqa: ANN201
    from racestay.main import create_app

    application = create_app()

    async def _session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def _redis() -> AsyncGenerator[AsyncMock, None]:
        yield fake_redis

    application.dependency_overrides[get_session] = _session
    application.dependency_overrides[get_redis_dep] = _redis
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:  # noqa: ANN001
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth_headers() -> Callable[[User], dict[str, str]]:
    """Bearer header for a user."""

    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user.id, user.email)}"}

    return _headers
