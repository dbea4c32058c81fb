"""Test fixtures for request-engine tests."""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base
from app.services.auth import Requester
from app.services.lifecycle import RequestLifecycleManager
from app.services.resolver import MediaIdentityResolver
from tests.mocks import MockNotifier, MockRadarrClient, MockSonarrClient, MockTmdbClient


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest_asyncio.fixture
async def db_session():
    """
    In-memory SQLite async database for tests.

    Creates a fresh database for each test, with all tables.
    Uses StaticPool to keep the same connection across the session
    (required for in-memory SQLite with async).
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session() as session:
        yield session
        await session.rollback()

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """
    File-backed SQLite session factory.

    Independent sessions get independent connections, so concurrent
    writers really race on the unique constraints.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'requests.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def radarr():
    return MockRadarrClient()


@pytest.fixture
def sonarr():
    return MockSonarrClient()


@pytest.fixture
def tmdb():
    return MockTmdbClient()


@pytest.fixture
def notifier():
    return MockNotifier()


@pytest.fixture
def resolver(radarr, sonarr, clock):
    return MediaIdentityResolver(radarr=radarr, sonarr=sonarr, ttl=30, profile_ttl=30, clock=clock)


@pytest.fixture
def manager(resolver, tmdb, notifier):
    """Lifecycle manager wired to the mock services."""
    return RequestLifecycleManager(resolver=resolver, tmdb=tmdb, notifier=notifier)


@pytest.fixture
def user():
    return Requester(user_id="user-1", username="alice", is_admin=False)


@pytest.fixture
def other_user():
    return Requester(user_id="user-2", username="bob", is_admin=False)


@pytest.fixture
def admin():
    return Requester(user_id="admin-1", username="root", is_admin=True)
