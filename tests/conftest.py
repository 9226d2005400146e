"""
Shared test configuration and fixtures for gatekeeper tests.

Provides PostgreSQL setup for the model tests, fake Redis for the persistent
resolution tier, and wired-up component fixtures (task runner, record store,
coordinator) for everything else.
"""

import os
import uuid
import pytest
import pytest_asyncio
import fakeredis.aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from social.graze.gatekeeper.app.tasks import BackgroundTaskRunner
from social.graze.gatekeeper.model.base import Base
from social.graze.gatekeeper.store.coordinator import PlayerRecordCoordinator
from social.graze.gatekeeper.store.invalidation import InvalidationChannel
from tests.test_helpers import FakeClock, InMemoryPlayerStore, MockMetricsClient


# Test database configuration
TEST_DB_HOST = os.getenv("TEST_DB_HOST", "postgres")
TEST_DB_PORT = os.getenv("TEST_DB_PORT", "5432")
TEST_DB_USER = os.getenv("TEST_DB_USER", "postgres")
TEST_DB_PASSWORD = os.getenv("TEST_DB_PASSWORD", "password")

# Admin URL for database creation/deletion (connects to postgres database)
ADMIN_DATABASE_URL = f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@{TEST_DB_HOST}:{TEST_DB_PORT}/postgres"


async def check_postgres_available():
    """Check if PostgreSQL is available for testing."""
    try:
        admin_engine = create_async_engine(ADMIN_DATABASE_URL, echo=False)
        async with admin_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        await admin_engine.dispose()
        return True
    except Exception:
        return False


@pytest_asyncio.fixture(scope="function")
async def test_database():
    """Create and clean up test database for each test function."""
    if not await check_postgres_available():
        pytest.skip("PostgreSQL database not available for testing")

    unique_db_name = f"gatekeeper_test_{uuid.uuid4().hex[:8]}"
    unique_db_url = (
        f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@"
        f"{TEST_DB_HOST}:{TEST_DB_PORT}/{unique_db_name}"
    )

    admin_engine = create_async_engine(
        ADMIN_DATABASE_URL, echo=False, isolation_level="AUTOCOMMIT"
    )

    try:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"CREATE DATABASE {unique_db_name}"))

        yield unique_db_url

    finally:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"DROP DATABASE IF EXISTS {unique_db_name}"))
        await admin_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def engine(test_database):
    """Create async SQLAlchemy engine for testing with PostgreSQL."""
    engine = create_async_engine(test_database, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session(engine):
    """Create async database session for testing."""
    async_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def clock():
    """Manually advanced clock shared by the components under test."""
    return FakeClock()


@pytest.fixture
def metrics_client():
    """Recording metrics client."""
    return MockMetricsClient()


@pytest_asyncio.fixture
async def runner(metrics_client):
    """Started background task runner, shut down after the test."""
    task_runner = BackgroundTaskRunner(metrics_client, worker_id="test")
    task_runner.start()
    yield task_runner
    await task_runner.shutdown(grace_seconds=1.0)


@pytest.fixture
def player_store():
    """In-memory player store."""
    return InMemoryPlayerStore()


@pytest.fixture
def channel(runner):
    """Invalidation channel delivering on the test runner."""
    return InvalidationChannel(runner)


@pytest.fixture
def coordinator(player_store, channel):
    """Coordinator over the in-memory store."""
    return PlayerRecordCoordinator(player_store, channel)
