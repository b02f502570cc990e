"""Tournament leaderboard aggregator.

Folds endless-mode ``game_ended`` events received inside an open
tournament's ``[start_date, end_date)`` window into its participant rows.
Runs every couple of minutes; each tournament is committed separately so a
failure in one does not hold back the others.
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gamepulse.aggregation.base import AggregationResult
from gamepulse.db.models import Tournament
from gamepulse.tournaments.lifecycle import ACTIVE, UPCOMING
from gamepulse.tournaments.participants import fold_tournament_events, refresh_tournament_cache

logger = logging.getLogger(__name__)


async def process_tournaments(
    db: AsyncSession,
    redis_client: aioredis.Redis | None = None,
    batch_size: int = 1000,
    cache_size: int = 50,
    cache_ttl: int = 120,
) -> dict[str, AggregationResult]:
    """Apply one batch of new events to every upcoming/active tournament."""
    result = await db.execute(
        select(Tournament.id).where(Tournament.status.in_([UPCOMING, ACTIVE])).order_by(Tournament.start_date)
    )
    tournament_ids = list(result.scalars().all())

    outcomes: dict[str, AggregationResult] = {}
    for tournament_id in tournament_ids:
        tournament = await db.get(Tournament, tournament_id, populate_existing=True)
        if tournament is None or tournament.status not in (UPCOMING, ACTIVE):
            continue
        try:
            outcome = await fold_tournament_events(db, tournament, batch_size)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("Tournament leaderboard update failed for %s", tournament_id)
            continue
        outcomes[tournament_id] = outcome
        if outcome.rows_written:
            await refresh_tournament_cache(db, redis_client, tournament_id, cache_size, cache_ttl)
        if outcome.processed:
            logger.info(
                "Tournament %s leaderboard: %d events folded, %d participants updated",
                tournament_id,
                outcome.processed,
                outcome.rows_written,
            )
    return outcomes
