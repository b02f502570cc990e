"""Named scheduled jobs and their cadences.

Every aggregator runs as its own job so a failure in one (typically the
campaign cost import) never blocks the others. ``schedule`` holds the
keyword arguments handed to ``arq.cron``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from gamepulse.aggregation.analytics import run_daily_analytics
from gamepulse.aggregation.campaign_roi import cost_source_from_settings, run_campaign_roi
from gamepulse.aggregation.cohorts import aggregate_cohorts
from gamepulse.aggregation.leaderboard import process_batch
from gamepulse.aggregation.tournament_leaderboard import process_tournaments
from gamepulse.config import Settings
from gamepulse.events.partitions import ensure_future_partitions, retire_old_partitions
from gamepulse.snapshots import refresh_all
from gamepulse.tournaments.lifecycle import advance_statuses, ensure_current_and_next

# Leaderboard batches drained per run before yielding to the next trigger.
MAX_LEADERBOARD_BATCHES = 10


@dataclass
class JobContext:
    db: AsyncSession
    settings: Settings
    now: datetime
    redis: aioredis.Redis | None = None


JobFunc = Callable[[JobContext], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class JobSpec:
    name: str
    func: JobFunc
    interval: timedelta
    schedule: dict[str, Any] = field(default_factory=dict)
    run_at_startup: bool = False


async def leaderboard_job(ctx: JobContext) -> dict[str, Any]:
    s = ctx.settings
    totals = {"batches": 0, "processed": 0, "failed": 0, "rows_written": 0}
    for _ in range(MAX_LEADERBOARD_BATCHES):
        result = await process_batch(
            ctx.db,
            ctx.redis,
            s.event_batch_size,
            s.max_processing_attempts,
            s.leaderboard_cache_size,
            s.leaderboard_cache_ttl_seconds,
            ctx.now,
        )
        totals["batches"] += 1
        totals["processed"] += result.processed
        totals["failed"] += result.failed
        totals["rows_written"] += result.rows_written
        if result.processed + result.failed < s.event_batch_size:
            break
    return totals


async def tournament_leaderboard_job(ctx: JobContext) -> dict[str, Any]:
    s = ctx.settings
    outcomes = await process_tournaments(
        ctx.db, ctx.redis, s.event_batch_size, s.tournament_cache_size, s.tournament_cache_ttl_seconds
    )
    return {tid: r.as_dict() for tid, r in outcomes.items()}


async def tournament_status_job(ctx: JobContext) -> dict[str, Any]:
    result = await advance_statuses(ctx.db, ctx.now)
    return {
        "activated": result.activated,
        "ended": result.ended,
        "failed": result.failed,
        "prizes_awarded": result.prizes_awarded,
    }


async def tournament_create_job(ctx: JobContext) -> dict[str, Any]:
    created = await ensure_current_and_next(ctx.db, ctx.now, ctx.settings.tournament_max_participants)
    return {"created": created}


async def analytics_job(ctx: JobContext) -> dict[str, Any]:
    rows = await run_daily_analytics(ctx.db, ctx.now)
    return {"days": [r.metric_date.isoformat() for r in rows]}


async def cohorts_job(ctx: JobContext) -> dict[str, Any]:
    return {"rows": await aggregate_cohorts(ctx.db, now=ctx.now)}


async def campaign_roi_job(ctx: JobContext) -> dict[str, Any]:
    s = ctx.settings
    rows = await run_campaign_roi(
        ctx.db,
        cost_source_from_settings(s),
        s.cost_import_lookback_days,
        s.cost_import_max_attempts,
        s.cost_import_backoff_seconds,
        ctx.now,
    )
    return {"rows": rows}


async def snapshots_job(ctx: JobContext) -> dict[str, Any]:
    report = await refresh_all(ctx.db, ctx.now)
    return {
        "refreshed": [o.view for o in report.outcomes if o.ok],
        "failed": report.failed,
    }


async def partitions_job(ctx: JobContext) -> dict[str, Any]:
    s = ctx.settings
    created = await ensure_future_partitions(ctx.db, s.partition_horizon_weeks, ctx.now)
    retired = await retire_old_partitions(ctx.db, s.partition_retention_weeks, ctx.now, s.partition_drop_retired)
    return {"created": created, "retired": retired}


def _every(minutes: int) -> dict[str, Any]:
    return {"minute": set(range(0, 60, minutes))}


JOBS: dict[str, JobSpec] = {
    spec.name: spec
    for spec in (
        JobSpec("partitions", partitions_job, timedelta(days=1), {"hour": 0, "minute": 30}, run_at_startup=True),
        JobSpec("leaderboard", leaderboard_job, timedelta(minutes=1)),
        JobSpec("tournament_leaderboard", tournament_leaderboard_job, timedelta(minutes=2), _every(2)),
        JobSpec("tournament_status", tournament_status_job, timedelta(minutes=5), _every(5)),
        JobSpec(
            "tournament_create",
            tournament_create_job,
            timedelta(weeks=1),
            {"weekday": 6, "hour": 23, "minute": 50},
            run_at_startup=True,
        ),
        JobSpec("analytics", analytics_job, timedelta(hours=1), {"minute": 5}),
        JobSpec("cohorts", cohorts_job, timedelta(days=1), {"hour": 1, "minute": 15}),
        # After cohorts: ROI reads user_acquisitions.
        JobSpec("campaign_roi", campaign_roi_job, timedelta(days=1), {"hour": 2, "minute": 0}),
        JobSpec("snapshots", snapshots_job, timedelta(hours=1), {"minute": 20}),
    )
}
