"""Pytest fixtures for testing."""
import asyncio
import os
from collections.abc import AsyncGenerator, Callable
from unittest.mock import patch

# Settings are validated when db.session is first imported; configure the
# environment before any app import. Tests run in dev mode (bypasses auth)
# regardless of local .env.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["VITE_DEV_MODE"] = "true"
os.environ["REDIS_ENABLED"] = "false"
os.environ["SESSION_COOKIE_SECURE"] = "false"

import fakeredis.aioredis  # noqa: E402
import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

from core.redis import RedisClient  # noqa: E402
from models.base import Base  # noqa: E402
from models.user import User  # noqa: E402


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until ``predicate()`` is true; pub/sub delivery happens on a background task."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
async def async_engine() -> AsyncGenerator[AsyncEngine]:
    """
    Create an in-memory SQLite engine with the schema in place.

    StaticPool keeps a single connection so every session in the test sees the
    same in-memory database.
    """
    engine = create_async_engine("sqlite+aiosqlite://", echo=False, poolclass=StaticPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine (used by unit-of-work code paths)."""
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create an async session for direct database access in tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create and commit a test user."""
    user = User(auth0_id="test-user-123", email="test@example.com")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
async def other_user(db_session: AsyncSession) -> User:
    """Create and commit a second user."""
    user = User(auth0_id="other-user-456", email="other@example.com")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
async def redis_client() -> AsyncGenerator[RedisClient]:
    """Connected RedisClient backed by fakeredis."""
    fake = fakeredis.aioredis.FakeRedis()
    with patch("core.redis.Redis", return_value=fake):
        client = RedisClient("redis://localhost:6379")
        await client.connect()
    assert client.is_connected

    yield client

    await client.close()


@pytest.fixture
async def client(
    db_session: AsyncSession,
) -> AsyncGenerator[AsyncClient]:
    """Create a test client with database session override."""
    # Clear the settings cache so it picks up the test environment
    from core.config import get_settings

    get_settings.cache_clear()

    from api.main import app
    from db.session import get_async_session

    async def override_get_async_session() -> AsyncGenerator[AsyncSession]:
        yield db_session

    app.dependency_overrides[get_async_session] = override_get_async_session

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as test_client:
        yield test_client

    app.dependency_overrides.clear()
