"""
Centralized Test Configuration.
"""

import httpx
import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from backend.app.main import app
from backend.app.core.clock import ManualClock
from backend.app.core.dependencies import assemble_container, get_container
from backend.app.core.events import EventBus
from backend.app.db.session import Base
from backend.app.models import presence, emergency_call, vehicle_claim, geofence_zone, dlq  # noqa: F401
from backend.app.services.datastore import InMemoryDatastore

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self.expiry = {}
        self.published = []
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def get(self, key):
        if self._closed:
            return None
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        if self._closed:
            return False
        self.store[key] = value
        self.expiry[key] = ex
        return True

    async def delete(self, key):
        if self._closed:
            return 0
        if key in self.store:
            del self.store[key]
            return 1
        return 0

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 0

    async def flushdb(self):
        if not self._closed:
            self.store = {}

    async def aclose(self):
        self._closed = True
        self.store = {}


def offline_transport() -> httpx.MockTransport:
    """Transport where every routing provider is unreachable."""
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("network unreachable", request=request)
    return httpx.MockTransport(handler)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def datastore():
    return InMemoryDatastore()


@pytest.fixture
def mock_redis():
    return MockRedis()


@pytest.fixture
async def session_factory():
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def container(datastore, mock_redis, clock, events):
    """Service container with in-memory datastore and unreachable providers."""
    services = assemble_container(
        datastore,
        http_client=httpx.AsyncClient(transport=offline_transport()),
        redis_client=mock_redis,
        clock=clock,
        events=events,
    )
    await services.directory.start()
    app.dependency_overrides[get_container] = lambda: services

    yield services

    app.dependency_overrides = {}
    await services.tracking.stop_all()
    await services.directory.stop()
    await services.http_client.aclose()


@pytest.fixture
async def client(container):
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
