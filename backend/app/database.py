"""Database engine, session factories, and base class.

Tenancy is row-level: every ledger table carries an `org_id` column and
every statement that reads or writes batch data filters on it.

Two session dependencies for FastAPI:
  - get_db()               → request-scoped session for read endpoints
  - get_session_factory()  → factory for ledger writes, which open their own
                             transactions (see app.services.transaction)
"""

from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=20,
    max_overflow=10,
)

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ── Base class ──────────────────────────────────────────────

class Base(DeclarativeBase):
    """Ledger models. Every table is tenant-scoped by `org_id`."""
    pass


# ── Session dependencies ────────────────────────────────────

async def get_db() -> AsyncSession:
    """Yield a request-scoped session."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session_factory() -> async_sessionmaker:
    """Return the session factory used by guarded ledger mutations."""
    return async_session
