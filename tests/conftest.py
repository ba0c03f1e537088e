"""Shared pytest fixtures for the sync core tests.

Database fixtures live in tests/fixtures/database.py and are re-exported at
the bottom of this module. Provider fakes and row builders live in
tests/support/.
"""

import uuid

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.models import User

SYNC_ENV_VARS = (
    "DISCORD_WEBHOOK_URL",
    "YOUTUBE_API_KEY",
    "YOUTUBE_DAILY_QUOTA_LIMIT",
    "YOUTUBE_QUOTA_RESERVE_UNITS",
    "CRON_SECRET",
    "SYNC_FORCED_RELEASE_SECONDS",
)


@pytest.fixture(autouse=True)
def clean_sync_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Run every test against default configuration.

    Removes environment overrides (quota limit, reserve, webhook, secrets)
    so a developer's shell cannot change test outcomes. Tests that need a
    value set it with monkeypatch.
    """
    for name in SYNC_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
async def user_id(async_session: AsyncSession) -> uuid.UUID:
    """Id of a stored user."""
    user = User(email=f"{uuid.uuid4().hex[:12]}@example.com")
    async_session.add(user)
    await async_session.commit()
    return user.id


@pytest.fixture
async def other_user_id(async_session: AsyncSession) -> uuid.UUID:
    user = User(email=f"{uuid.uuid4().hex[:12]}@example.com")
    async_session.add(user)
    await async_session.commit()
    return user.id


# Import additional fixtures from fixtures/ package
from tests.fixtures.database import (  # noqa: F401, E402
    async_engine,
    async_session,
    mock_async_session,
    session_factory,
)
