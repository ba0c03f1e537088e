"""Async database engine and session management.

This module provides the async SQLAlchemy 2.0 engine configuration,
session factory, and FastAPI dependency injection for database sessions.

Sync services open their own short transactions through a session factory
(lock acquisition must be able to roll back a unique-constraint failure
without disturbing any other pending work), so the factory itself is also
exposed as a dependency.

Usage:
    from subsync.database import get_session, get_session_factory

    async def my_route(db: AsyncSession = Depends(get_session)):
        result = await db.execute(select(Channel))
        ...
"""

import os
from collections.abc import AsyncGenerator

from fastapi import Depends
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from subsync.config import get_database_url

# Check if DATABASE_URL is available (may not be during import in tests)
_database_url = os.getenv("DATABASE_URL")

if _database_url:
    engine: AsyncEngine | None = create_async_engine(
        get_database_url(),
        pool_size=10,
        max_overflow=5,
        pool_pre_ping=True,
        echo=os.getenv("DATABASE_ECHO", "").lower() == "true",
    )
else:
    engine = None


async_session_factory: async_sessionmaker[AsyncSession] | None = (
    async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,  # CRITICAL: prevents attribute expiration after commit
    )
    if engine
    else None
)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency returning the configured session factory.

    Raises:
        RuntimeError: If database is not configured.
    """
    if async_session_factory is None:
        raise RuntimeError("Database not configured. Set DATABASE_URL environment variable.")
    return async_session_factory


async def get_session(
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for database session injection.

    Yields an async database session with automatic commit on success
    and rollback on exception. The factory is itself a dependency, so
    overriding get_session_factory covers both.

    Yields:
        AsyncSession: Database session for the request.
    """
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def create_test_engine(
    database_url: str = "sqlite+aiosqlite:///:memory:",
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create an async engine for testing.

    In-memory SQLite uses StaticPool so every session sees the same database.

    Args:
        database_url: Test database URL (defaults to in-memory SQLite).

    Returns:
        Tuple of (engine, async_session_factory) for testing.
    """
    kwargs = {"poolclass": StaticPool} if ":memory:" in database_url else {}
    test_engine = create_async_engine(database_url, echo=False, **kwargs)
    test_session_factory = async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return test_engine, test_session_factory


def dialect_insert(
    session: AsyncSession, model: type
) -> postgresql.Insert | sqlite.Insert:
    """Build an INSERT supporting ``on_conflict_do_update`` for the session's dialect.

    PostgreSQL in production, SQLite in tests. Both expose the same
    ``on_conflict_do_nothing`` / ``on_conflict_do_update`` API.
    """
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)
