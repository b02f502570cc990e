"""Single-flight execution of named jobs.

A job holds its ``job_state`` row as a lease: acquiring it is one
conditional UPDATE on ``locked_until``, so two workers firing the same
trigger cannot both run it. A crashed holder's lease simply expires.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import redis.asyncio as aioredis
import structlog
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gamepulse.config import Settings, get_settings
from gamepulse.db.models import JobState
from gamepulse.errors import NotFoundError
from gamepulse.jobs.registry import JOBS, JobContext, JobSpec
from gamepulse.week_utils import ensure_utc, utcnow

logger = structlog.get_logger()

SUCCESS = "success"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class JobOutcome:
    name: str
    status: str
    started_at: datetime
    finished_at: datetime | None = None
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "result": self.result,
            "error": self.error,
        }


def get_job(name: str) -> JobSpec:
    spec = JOBS.get(name)
    if spec is None:
        msg = f"Unknown job {name}"
        raise NotFoundError(msg)
    return spec


async def _ensure_state_row(db: AsyncSession, name: str) -> None:
    if await db.get(JobState, name) is not None:
        return
    db.add(JobState(name=name, status="idle", run_count=0, failure_count=0, skip_count=0))
    try:
        await db.commit()
    except IntegrityError:
        # Another worker created it first.
        await db.rollback()


async def acquire_lock(db: AsyncSession, name: str, owner: str, now: datetime, ttl_seconds: int) -> bool:
    """Take the job's lease if it is free or expired. Counts a skip otherwise."""
    await _ensure_state_row(db, name)
    result = await db.execute(
        update(JobState)
        .where(JobState.name == name, or_(JobState.locked_until.is_(None), JobState.locked_until < now))
        .values(
            status="running",
            locked_until=now + timedelta(seconds=ttl_seconds),
            lock_owner=owner,
            last_started_at=now,
            run_count=JobState.run_count + 1,
        )
        .execution_options(synchronize_session=False)
    )
    acquired = (result.rowcount or 0) == 1
    if not acquired:
        await db.execute(
            update(JobState)
            .where(JobState.name == name)
            .values(skip_count=JobState.skip_count + 1)
            .execution_options(synchronize_session=False)
        )
    await db.commit()
    return acquired


async def release_lock(db: AsyncSession, name: str, owner: str, values: dict[str, Any]) -> bool:
    """Record the run and free the lease, unless another owner took it over."""
    result = await db.execute(
        update(JobState)
        .where(JobState.name == name, JobState.lock_owner == owner)
        .values(locked_until=None, lock_owner=None, **values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return (result.rowcount or 0) == 1


async def run_job(
    session_factory: async_sessionmaker[AsyncSession],
    name: str,
    redis: aioredis.Redis | None = None,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> JobOutcome:
    """Run one job under its single-flight lock.

    Exceptions from the job are recorded on its state row and logged; they
    are not raised, so one failing job never takes the scheduler down.
    """
    spec = get_job(name)
    settings = settings or get_settings()
    fixed_clock = now is not None
    started_at = ensure_utc(now) if now is not None else utcnow()
    owner = uuid.uuid4().hex
    log = logger.bind(job=name, owner=owner)

    async with session_factory() as db:
        if not await acquire_lock(db, name, owner, started_at, settings.job_lock_ttl_seconds):
            log.info("Job skipped, lock held")
            return JobOutcome(name=name, status=SKIPPED, started_at=started_at)

    outcome = JobOutcome(name=name, status=SUCCESS, started_at=started_at)
    async with session_factory() as db:
        try:
            outcome.result = await spec.func(JobContext(db=db, settings=settings, now=started_at, redis=redis))
        except Exception as exc:
            await db.rollback()
            outcome.status = FAILED
            outcome.error = f"{type(exc).__name__}: {exc}"
            log.exception("Job failed", error=outcome.error)

    outcome.finished_at = started_at if fixed_clock else utcnow()
    values: dict[str, Any] = {
        "status": outcome.status,
        "last_finished_at": outcome.finished_at,
        "next_run_at": started_at + spec.interval,
    }
    if outcome.status == SUCCESS:
        values.update(last_success_at=outcome.finished_at, last_error=None)
    else:
        values.update(last_error=(outcome.error or "")[:2000], failure_count=JobState.failure_count + 1)

    async with session_factory() as db:
        if not await release_lock(db, name, owner, values):
            log.warning("Job lease expired before the run finished")

    log.info("Job finished", status=outcome.status, result=outcome.result)
    return outcome


async def run_all(
    session_factory: async_sessionmaker[AsyncSession],
    redis: aioredis.Redis | None = None,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> list[JobOutcome]:
    """Run every registered job once, in registry order."""
    return [await run_job(session_factory, name, redis, now, settings) for name in JOBS]
