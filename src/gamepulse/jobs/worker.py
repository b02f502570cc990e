"""arq worker for the scheduled jobs.

Run with: arq gamepulse.jobs.worker.WorkerSettings
"""

from __future__ import annotations

import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from gamepulse.config import get_settings
from gamepulse.database import close_db, get_session_factory, init_db
from gamepulse.jobs.registry import JOBS
from gamepulse.jobs.runner import run_job
from gamepulse.logging_config import setup_logging
from gamepulse.redis_client import close_redis, get_redis, init_redis

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize logging, DB and Redis on worker startup."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    await init_redis(settings.redis_url, settings.redis_max_connections)
    ctx["session_factory"] = get_session_factory()
    ctx["redis"] = get_redis()
    logger.info("Job worker started with %d jobs", len(JOBS))


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    await close_redis()
    await close_db()
    logger.info("Job worker shut down")


async def _run(ctx: dict, name: str) -> dict[str, Any]:  # type: ignore[type-arg]
    outcome = await run_job(ctx["session_factory"], name, ctx.get("redis"))
    return outcome.as_dict()


async def leaderboard(ctx: dict) -> dict[str, Any]:  # type: ignore[type-arg]
    """Fold new game_ended events into the all-time leaderboard."""
    return await _run(ctx, "leaderboard")


async def tournament_leaderboard(ctx: dict) -> dict[str, Any]:  # type: ignore[type-arg]
    """Fold new events into every open tournament."""
    return await _run(ctx, "tournament_leaderboard")


async def tournament_status(ctx: dict) -> dict[str, Any]:  # type: ignore[type-arg]
    """Activate and close tournaments; closing awards prizes."""
    return await _run(ctx, "tournament_status")


async def tournament_create(ctx: dict) -> dict[str, Any]:  # type: ignore[type-arg]
    """Create next week's tournament. Sunday 23:50 UTC."""
    return await _run(ctx, "tournament_create")


async def analytics(ctx: dict) -> dict[str, Any]:  # type: ignore[type-arg]
    return await _run(ctx, "analytics")


async def cohorts(ctx: dict) -> dict[str, Any]:  # type: ignore[type-arg]
    return await _run(ctx, "cohorts")


async def campaign_roi(ctx: dict) -> dict[str, Any]:  # type: ignore[type-arg]
    return await _run(ctx, "campaign_roi")


async def snapshots(ctx: dict) -> dict[str, Any]:  # type: ignore[type-arg]
    return await _run(ctx, "snapshots")


async def partitions(ctx: dict) -> dict[str, Any]:  # type: ignore[type-arg]
    """Create upcoming weekly partitions and retire expired ones."""
    return await _run(ctx, "partitions")


TASKS = {
    "leaderboard": leaderboard,
    "tournament_leaderboard": tournament_leaderboard,
    "tournament_status": tournament_status,
    "tournament_create": tournament_create,
    "analytics": analytics,
    "cohorts": cohorts,
    "campaign_roi": campaign_roi,
    "snapshots": snapshots,
    "partitions": partitions,
}


def build_cron_jobs() -> list[Any]:
    return [
        cron(TASKS[name], name=f"cron:{name}", run_at_startup=spec.run_at_startup, **spec.schedule)
        for name, spec in JOBS.items()
    ]


class WorkerSettings:
    """arq worker settings for all scheduled jobs."""

    functions = list(TASKS.values())
    cron_jobs = build_cron_jobs()
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().arq_redis_url)
    max_jobs = len(TASKS)
    job_timeout = get_settings().job_lock_ttl_seconds
    allow_abort_jobs = True
