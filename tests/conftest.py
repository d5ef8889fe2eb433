"""Test fixtures: throwaway SQLite database and no Redis."""

import os
from collections.abc import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Force SQLite test database and a disabled cache *before* any app import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_sendlists.db"
os.environ["CACHE_ENABLED"] = "false"
os.environ["MAINTENANCE_CONCURRENCY"] = "1"
os.environ["EXTERNAL_RETRY_BACKOFF_SECONDS"] = "0"
os.environ["NOTIFICATION_WEBHOOK_URL"] = ""
os.environ["RECOMMENDER_BACKEND"] = "rules"

from sendlists.database import Base, async_session, engine  # noqa: E402
from sendlists.main import app  # noqa: E402


@pytest_asyncio.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db():
    async with async_session() as session:
        yield session


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
