"""Weekly partition lifecycle for the events table.

Partitions cover half-open ISO weeks ``[Monday 00:00 UTC, next Monday)`` and
are named ``events_week_YYYY_MM_DD`` after their Monday. Every partition has
a row in ``event_partitions``; on PostgreSQL the matching DDL is issued as
well. Other dialects keep only the metadata and, when a partition is
dropped, delete the rows of its range.

Restructuring is reversible until the final drop: ``retire_old_partitions``
with ``drop=False`` only detaches, and ``reattach_partition`` undoes that.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from gamepulse.db.dialect import is_postgres
from gamepulse.db.models import Event, EventPartition
from gamepulse.errors import NotFoundError
from gamepulse.week_utils import WEEK, ensure_utc, iter_week_starts, utcnow, week_start

logger = logging.getLogger(__name__)

PARTITION_PREFIX = "events_week_"
MIN_RETENTION_WEEKS = 2
_NAME_RE = re.compile(r"^events_week_\d{4}_\d{2}_\d{2}$")


@dataclass(frozen=True)
class PartitionRange:
    name: str
    start: datetime
    end: datetime


def partition_name(start: datetime) -> str:
    return f"{PARTITION_PREFIX}{start:%Y_%m_%d}"


def partition_for(received_at: datetime) -> PartitionRange:
    """The weekly partition an event with this timestamp is routed to."""
    start = week_start(ensure_utc(received_at))
    return PartitionRange(partition_name(start), start, start + WEEK)


def _checked_name(name: str) -> str:
    if not _NAME_RE.match(name):
        msg = f"Invalid partition name: {name}"
        raise ValueError(msg)
    return name


def _bounds_sql(start: datetime, end: datetime) -> str:
    return f"FROM ('{start.isoformat()}') TO ('{end.isoformat()}')"


async def require_partition(db: AsyncSession, received_at: datetime) -> bool:
    """True if an attached partition covers ``received_at``."""
    part = await db.get(EventPartition, partition_for(received_at).name, populate_existing=True)
    return part is not None and part.status == "attached"


async def list_partitions(db: AsyncSession) -> list[EventPartition]:
    result = await db.execute(select(EventPartition).order_by(EventPartition.range_start))
    return list(result.scalars().all())


async def ensure_future_partitions(
    db: AsyncSession,
    horizon_weeks: int,
    now: datetime | None = None,
) -> list[str]:
    """Create partitions from the current week through ``horizon_weeks`` ahead.

    Idempotent: existing partitions are left alone. Returns the names created.
    """
    if horizon_weeks < 0:
        msg = "horizon_weeks must be >= 0"
        raise ValueError(msg)
    now = ensure_utc(now or utcnow())
    wanted = [partition_for(s) for s in iter_week_starts(now, horizon_weeks + 1)]

    result = await db.execute(
        select(EventPartition.name).where(EventPartition.name.in_([p.name for p in wanted]))
    )
    existing = set(result.scalars().all())

    created: list[str] = []
    postgres = is_postgres(db)
    for part in wanted:
        if part.name in existing:
            continue
        if postgres:
            await db.execute(
                text(
                    f"CREATE TABLE IF NOT EXISTS {_checked_name(part.name)} "
                    f"PARTITION OF events FOR VALUES {_bounds_sql(part.start, part.end)}"
                )
            )
        db.add(
            EventPartition(
                name=part.name,
                range_start=part.start,
                range_end=part.end,
                status="attached",
                created_at=now,
            )
        )
        created.append(part.name)

    await db.commit()
    if created:
        logger.info("Created %d event partitions: %s", len(created), ", ".join(created))
    return created


async def retire_old_partitions(
    db: AsyncSession,
    retention_weeks: int,
    now: datetime | None = None,
    drop: bool = True,
) -> list[str]:
    """Retire partitions whose whole range ends before the retention cutoff.

    With ``drop=True`` the partition and its events are deleted for good;
    anything needed from them must be exported first. With ``drop=False``
    partitions are only detached and can be restored with
    ``reattach_partition``.

    Each partition is handled in its own transaction; a failure is logged
    and left for the next run.
    """
    if retention_weeks < MIN_RETENTION_WEEKS:
        msg = f"retention_weeks must be >= {MIN_RETENTION_WEEKS}"
        raise ValueError(msg)
    now = ensure_utc(now or utcnow())
    cutoff = week_start(now) - WEEK * retention_weeks

    stmt = (
        select(EventPartition.name)
        .where(EventPartition.range_end <= cutoff)
        .order_by(EventPartition.range_start)
    )
    if not drop:
        stmt = stmt.where(EventPartition.status == "attached")
    candidates = list((await db.execute(stmt)).scalars().all())

    retired: list[str] = []
    for name in candidates:
        part = await db.get(EventPartition, name)
        if part is None:
            continue
        try:
            if drop:
                await _drop_partition(db, part)
            else:
                await _detach_partition(db, part, now)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("Failed to retire partition %s", name)
            continue
        retired.append(name)

    if retired:
        logger.info(
            "%s %d event partitions older than %s",
            "Dropped" if drop else "Detached",
            len(retired),
            cutoff.date().isoformat(),
        )
    return retired


async def _detach_partition(db: AsyncSession, part: EventPartition, now: datetime) -> None:
    if is_postgres(db):
        await db.execute(text(f"ALTER TABLE events DETACH PARTITION {_checked_name(part.name)}"))
    part.status = "detached"
    part.detached_at = now


async def _drop_partition(db: AsyncSession, part: EventPartition) -> None:
    if is_postgres(db):
        name = _checked_name(part.name)
        if part.status == "attached":
            await db.execute(text(f"ALTER TABLE events DETACH PARTITION {name}"))
        await db.execute(text(f"DROP TABLE IF EXISTS {name}"))
    else:
        await db.execute(
            delete(Event)
            .where(Event.received_at >= part.range_start, Event.received_at < part.range_end)
            .execution_options(synchronize_session=False)
        )
    await db.delete(part)


async def reattach_partition(db: AsyncSession, name: str) -> EventPartition:
    """Undo a detach. No-op for a partition that is already attached."""
    part = await db.get(EventPartition, name)
    if part is None:
        msg = f"Partition {name} not found"
        raise NotFoundError(msg)
    if part.status == "attached":
        return part

    if is_postgres(db):
        start, end = ensure_utc(part.range_start), ensure_utc(part.range_end)
        await db.execute(
            text(f"ALTER TABLE events ATTACH PARTITION {_checked_name(name)} FOR VALUES {_bounds_sql(start, end)}")
        )
    part.status = "attached"
    part.detached_at = None
    await db.commit()
    logger.info("Reattached event partition %s", name)
    return part
