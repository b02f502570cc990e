"""Shared test fixtures.

Database tests run against in-memory SQLite through aiosqlite; every test
gets a fresh schema from the ORM metadata.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from gamepulse.db import models  # noqa: F401
from gamepulse.db.base import Base
from gamepulse.db.models import Event

# ISO week 2026-W10: Monday 2026-03-02 through Sunday 2026-03-08.
WEEK_MONDAY = datetime(2026, 3, 2, tzinfo=timezone.utc)


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """Get a direct database session for test setup and assertions."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_redis() -> MagicMock:
    """Redis client whose pipelines record calls and succeed."""
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])
    client = MagicMock()
    client.pipeline.return_value = pipe
    return client


async def add_event(
    db: AsyncSession,
    event_type: str,
    user_id: str,
    received_at: datetime,
    **payload: Any,
) -> Event:
    """Insert an event directly, bypassing ingestion checks."""
    event = Event(
        id=str(uuid.uuid4()),
        event_type=event_type,
        user_id=user_id,
        payload=payload,
        received_at=received_at,
        processed_at=None,
        processing_attempts=0,
    )
    db.add(event)
    await db.commit()
    return event


async def add_game(db: AsyncSession, user_id: str, score: Any, received_at: datetime, **extra: Any) -> Event:
    """Insert an endless-mode game_ended event."""
    return await add_event(
        db,
        "game_ended",
        user_id,
        received_at,
        game_mode="endless",
        score=score,
        duration_seconds=extra.pop("duration_seconds", 60),
        **extra,
    )
