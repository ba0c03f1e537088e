"""Tests for database connection and session management.

Tests the async engine helpers, the session factory dependency, the
commit/rollback behavior of get_session, and dialect-aware inserts.
"""

from unittest.mock import patch

import pytest
from sqlalchemy import select, text
from sqlalchemy.dialects import sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subsync.database import create_test_engine, dialect_insert, get_session, get_session_factory
from subsync.models import Channel
from tests.support.factories import create_channel


async def test_create_test_engine_creates_working_connection():
    engine, factory = create_test_engine()

    async with factory() as session:
        result = await session.execute(text("SELECT 1"))
        assert result.scalar() == 1

    await engine.dispose()


async def test_session_expire_on_commit_is_false(async_session: AsyncSession):
    """Attributes stay readable after commit (services return committed rows)."""
    channel = create_channel("UCexpire")
    async_session.add(channel)
    await async_session.commit()

    assert channel.youtube_id == "UCexpire"


class TestGetSessionFactory:
    def test_raises_when_not_configured(self):
        with patch("subsync.database.async_session_factory", None):
            with pytest.raises(RuntimeError, match="Database not configured"):
                get_session_factory()


class TestGetSession:
    async def test_commits_on_success(self, session_factory: async_sessionmaker[AsyncSession]):
        """
        GIVEN: A request that adds a row through the dependency session
        WHEN: The request finishes normally
        THEN: The row is committed
        """
        dependency = get_session(session_factory)
        session = await anext(dependency)
        session.add(create_channel("UCcommit"))
        with pytest.raises(StopAsyncIteration):
            await anext(dependency)

        async with session_factory() as check:
            stored = (
                await check.execute(select(Channel).where(Channel.youtube_id == "UCcommit"))
            ).scalar_one_or_none()
        assert stored is not None

    async def test_rolls_back_on_exception(
        self, session_factory: async_sessionmaker[AsyncSession]
    ):
        dependency = get_session(session_factory)
        session = await anext(dependency)
        session.add(create_channel("UCrollback"))
        await session.flush()

        with pytest.raises(ValueError):
            await dependency.athrow(ValueError("request failed"))

        async with session_factory() as check:
            stored = (
                await check.execute(select(Channel).where(Channel.youtube_id == "UCrollback"))
            ).scalar_one_or_none()
        assert stored is None


async def test_dialect_insert_uses_sqlite_in_tests(async_session: AsyncSession):
    stmt = dialect_insert(async_session, Channel)

    assert isinstance(stmt, sqlite.Insert)
