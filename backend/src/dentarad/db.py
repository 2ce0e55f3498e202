"""Database connection managers for DentaRad.

Provides async connections to PostgreSQL and Redis.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import redis.asyncio as redis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .config import get_settings

# =========================
# SQLAlchemy Setup
# =========================

# Engine and session factory (lazy initialization)
_engine = None
_session_factory = None


def get_engine():
    """Get or create the async SQLAlchemy engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            echo=settings.api_debug,
            pool_size=10,
            max_overflow=20,
            pool_pre_ping=True,
        )
    return _engine


def get_session_factory():
    """Get or create the async session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session.

    Usage:
        async with get_db_session() as session:
            result = await session.execute(query)
    """
    factory = get_session_factory()
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


@asynccontextmanager
async def use_session(session: AsyncSession | None) -> AsyncGenerator[AsyncSession, None]:
    """Yield ``session`` if one was injected, otherwise open a fresh one.

    An injected session belongs to the caller, which commits it.
    """
    if session is not None:
        yield session
        return
    async with get_db_session() as fresh:
        yield fresh


@asynccontextmanager
async def use_savepoint(session: AsyncSession | None) -> AsyncGenerator[AsyncSession, None]:
    """Like ``use_session``, but an injected session runs inside a SAVEPOINT.

    For writes whose failure is logged and ignored: a failed statement is
    rolled back to the savepoint and the caller's transaction stays usable.
    """
    if session is None:
        async with get_db_session() as fresh:
            yield fresh
        return
    async with session.begin_nested():
        yield session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for database sessions."""
    async with get_db_session() as session:
        yield session


async def call_rpc(session: AsyncSession, function: str, **params: Any) -> list[dict[str, Any]]:
    """Call a stored database function and return its rows as dicts.

    Functions are the ones shipped in the schema migrations
    (is_account_locked, get_unbilled_reports, ...). Arguments are passed
    by name using PostgreSQL's ``arg => value`` syntax.

    Usage:
        rows = await call_rpc(session, "is_account_locked", p_email=email)
    """
    args = ", ".join(f"{name} => :{name}" for name in params)
    result = await session.execute(
        text(f"SELECT * FROM {function}({args})"),
        params,
    )
    return [dict(row._mapping) for row in result.fetchall()]


# =========================
# Redis Setup
# =========================

_redis_client: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    """Get or create the Redis async client."""
    global _redis_client
    if _redis_client is None:
        settings = get_settings()
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
    return _redis_client


async def close_redis():
    """Close the Redis connection."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.close()
        _redis_client = None


# =========================
# Cleanup
# =========================


async def close_all_connections():
    """Close all database connections (for shutdown)."""
    global _engine, _session_factory

    await close_redis()

    if _engine is not None:
        await _engine.dispose()
        _engine = None
    _session_factory = None
