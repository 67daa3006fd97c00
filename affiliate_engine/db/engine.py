"""Async SQLAlchemy engine + session factory.

SQLite in development and tests, PostgreSQL (asyncpg) in production. All
cross-request coordination in the engine goes through rows in this database,
so every request handler and webhook delivery gets its own session.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from config.settings import settings


def normalize_db_url(url: str) -> str:
    """postgresql:// → postgresql+asyncpg:// so the async engine can use it."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


_db_url = normalize_db_url(settings.DATABASE_URL)
_is_sqlite = _db_url.startswith("sqlite")

_engine_kwargs: dict = {
    "echo": False,
    "future": True,
}

if _is_sqlite:
    # Concurrent webhook deliveries wait on the write lock instead of failing
    _engine_kwargs["connect_args"] = {"timeout": 30}
else:
    _engine_kwargs.update({
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    })

engine = create_async_engine(_db_url, **_engine_kwargs)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncIterator[AsyncSession]:
    """Dependency for FastAPI: yields an async session."""
    async with async_session() as session:
        yield session


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Session for work outside a request (batch payouts, scripts)."""
    async with async_session() as session:
        yield session
