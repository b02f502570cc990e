"""Integration tests for the weekly partition lifecycle (metadata path)."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from conftest import add_event, utc
from gamepulse.db.models import Event
from gamepulse.errors import NotFoundError
from gamepulse.events.partitions import (
    ensure_future_partitions,
    list_partitions,
    partition_for,
    reattach_partition,
    require_partition,
    retire_old_partitions,
)

NOW = utc(2026, 3, 4, 12)


class TestPartitionNaming:
    def test_named_after_monday(self):
        part = partition_for(utc(2026, 3, 8, 23, 59, 59, 999000))
        assert part.name == "events_week_2026_03_02"
        assert part.start == utc(2026, 3, 2)
        assert part.end == utc(2026, 3, 9)

    def test_monday_midnight_opens_next_partition(self):
        assert partition_for(utc(2026, 3, 9)).name == "events_week_2026_03_09"


class TestEnsureFuturePartitions:
    async def test_creates_current_and_horizon(self, db_session):
        created = await ensure_future_partitions(db_session, 2, NOW)
        assert created == ["events_week_2026_03_02", "events_week_2026_03_09", "events_week_2026_03_16"]

    async def test_idempotent(self, db_session):
        await ensure_future_partitions(db_session, 2, NOW)
        assert await ensure_future_partitions(db_session, 2, NOW) == []
        assert len(await list_partitions(db_session)) == 3

    async def test_extends_as_time_moves(self, db_session):
        await ensure_future_partitions(db_session, 1, NOW)
        created = await ensure_future_partitions(db_session, 1, utc(2026, 3, 10))
        assert created == ["events_week_2026_03_16"]

    async def test_negative_horizon(self, db_session):
        with pytest.raises(ValueError):
            await ensure_future_partitions(db_session, -1, NOW)


class TestRetirement:
    """Partitions older than the retention cutoff are retired."""

    async def _setup_weeks(self, db_session):
        # Weeks of Feb 2, Feb 9, Feb 16, Feb 23 and Mar 2.
        await ensure_future_partitions(db_session, 4, utc(2026, 2, 2))

    async def test_detach_then_reattach(self, db_session):
        await self._setup_weeks(db_session)
        retired = await retire_old_partitions(db_session, 2, NOW, drop=False)
        # Cutoff is Feb 16: the weeks of Feb 2 and Feb 9 end on or before it.
        assert retired == ["events_week_2026_02_02", "events_week_2026_02_09"]
        assert not await require_partition(db_session, utc(2026, 2, 10))

        part = await reattach_partition(db_session, "events_week_2026_02_09")
        assert part.status == "attached"
        assert await require_partition(db_session, utc(2026, 2, 10))

    async def test_detach_is_idempotent(self, db_session):
        await self._setup_weeks(db_session)
        await retire_old_partitions(db_session, 2, NOW, drop=False)
        assert await retire_old_partitions(db_session, 2, NOW, drop=False) == []

    async def test_drop_removes_events_of_range_only(self, db_session):
        await self._setup_weeks(db_session)
        await add_event(db_session, "app_launched", "old", utc(2026, 2, 3))
        await add_event(db_session, "app_launched", "kept", utc(2026, 2, 17))

        retired = await retire_old_partitions(db_session, 2, NOW, drop=True)
        assert len(retired) == 2
        users = (await db_session.execute(select(Event.user_id))).scalars().all()
        assert users == ["kept"]
        names = [p.name for p in await list_partitions(db_session)]
        assert "events_week_2026_02_02" not in names
        assert "events_week_2026_02_16" in names

    async def test_retention_floor(self, db_session):
        with pytest.raises(ValueError):
            await retire_old_partitions(db_session, 1, NOW)

    async def test_reattach_unknown(self, db_session):
        with pytest.raises(NotFoundError):
            await reattach_partition(db_session, "events_week_1999_01_04")

    async def test_current_week_never_retired(self, db_session):
        await ensure_future_partitions(db_session, 0, NOW)
        await retire_old_partitions(db_session, 2, NOW)
        count = len(await list_partitions(db_session))
        assert count == 1
        assert (await db_session.execute(select(func.count()).select_from(Event))).scalar_one() == 0
