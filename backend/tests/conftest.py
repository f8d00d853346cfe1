"""Pytest configuration and fixtures for the nursery ledger tests.

Tests run against a throwaway SQLite file per test (aiosqlite), created
from the model metadata.  Transactions use BEGIN IMMEDIATE so concurrent
writers queue on SQLite's write lock instead of failing with SQLITE_BUSY.
Redis is replaced by an in-memory double; see `fake_redis`.
"""

import fnmatch
from typing import AsyncGenerator

import pytest
import pytest_asyncio
import redis.asyncio as redis
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.auth.jwt import create_access_token
from app.database import Base, get_db, get_session_factory
from app.main import app
from app.models import *  # noqa: F401,F403
from app.schemas.batch import CheckInRequest
from app.services import ledger
from app.services.transaction import run_ledger_transaction

ORG_A = "org-a"
ORG_B = "org-b"
USER_ID = "user-1"


# ── Test Database Setup ──────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Per-test SQLite database with every ledger table."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Test client with both session dependencies pointed at the test database."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ── Ledger helpers ───────────────────────────────────────────────

@pytest.fixture
def run_tx(session_factory):
    """Run `work(tx)` in one ledger transaction for an org."""
    async def _run(work, org_id: str = ORG_A, **kwargs):
        return await run_ledger_transaction(
            session_factory, work, org_id=org_id, user_id=USER_ID, **kwargs
        )
    return _run


@pytest.fixture
def make_batch(run_tx):
    """Check in a batch and return it (detached, attributes loaded)."""
    async def _make(
        quantity: int = 100,
        phase: str = "propagation",
        org_id: str = ORG_A,
        location_id: str = "L1",
        variety: str = "Lavandula angustifolia",
        size: str = "9cm",
    ):
        body = CheckInRequest(
            phase=phase,
            quantity=quantity,
            location_id=location_id,
            variety=variety,
            size=size,
        )
        return await run_tx(lambda tx: ledger.check_in(tx, body), org_id=org_id)
    return _make


# ── Auth fixtures ────────────────────────────────────────────────

def make_headers(org_id: str = ORG_A, permissions: list[str] | None = None, **extra) -> dict:
    token = create_access_token(
        user_id=USER_ID,
        org_id=org_id,
        permissions=["*"] if permissions is None else permissions,
    )
    return {"Authorization": f"Bearer {token}", **extra}


@pytest.fixture
def auth_headers() -> dict:
    return make_headers(ORG_A)


@pytest.fixture
def other_org_headers() -> dict:
    return make_headers(ORG_B)


# ── Redis Fixtures ───────────────────────────────────────────────

class FakeRedis:
    """The slice of redis.asyncio.Redis the cache helpers use."""

    def __init__(self):
        self.store: dict[str, str] = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value):
        self.store[key] = value

    async def setex(self, key, ttl, value):
        self.store[key] = value

    async def delete(self, *keys):
        for key in keys:
            self.store.pop(key, None)

    async def scan_iter(self, match="*"):
        for key in list(self.store):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def ping(self):
        return True


@pytest.fixture(autouse=True)
def redis_unavailable(monkeypatch):
    """By default every Redis call fails, exercising the uncached fallback."""
    async def _unavailable():
        raise redis.ConnectionError("Redis disabled in tests")

    monkeypatch.setattr("app.utils.cache.get_redis", _unavailable)
    monkeypatch.setattr("app.routers.health.get_redis", _unavailable)


@pytest.fixture
def fake_redis(monkeypatch) -> FakeRedis:
    """Swap in an in-memory Redis for cache behaviour tests."""
    fake = FakeRedis()

    async def _get():
        return fake

    monkeypatch.setattr("app.utils.cache.get_redis", _get)
    monkeypatch.setattr("app.routers.health.get_redis", _get)
    return fake


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "api: HTTP API tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "cache: Cache tests")
