"""
Async SQLAlchemy engine and session factory, built lazily from DATABASE_URL.

Nothing connects until the first session is requested; with DATABASE_URL
empty the SQL ingestion backend and the DB readiness check are disabled.
"""
from collections.abc import AsyncGenerator
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from livehub.core.config import settings
from livehub.db.models import Base

_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None


def database_enabled() -> bool:
    return bool(settings.DATABASE_URL.strip())


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        if not database_enabled():
            raise RuntimeError("DATABASE_URL is not configured")
        _engine = create_async_engine(settings.DATABASE_URL, pool_pre_ping=True)
    return _engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    global _sessionmaker
    if _sessionmaker is None:
        _sessionmaker = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _sessionmaker


def AsyncSessionLocal() -> AsyncSession:
    return get_sessionmaker()()


async def init_models() -> None:
    """Create tables that do not exist yet."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session
