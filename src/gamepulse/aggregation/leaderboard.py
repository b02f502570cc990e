"""All-time endless-mode leaderboard aggregator.

Consumes ``game_ended`` events. Each cycle claims one batch of unprocessed
events, folds them per user, upserts the entries and marks the batch
processed in the same transaction, so a crash either keeps or discards the
whole cycle. The upsert uses max for scores and timestamps; the counters
are only ever incremented for events that flip from unprocessed to
processed in that transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

import redis.asyncio as aioredis
from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from gamepulse.aggregation.base import AggregationResult, write_sorted_set
from gamepulse.db.models import Event, LeaderboardEntry
from gamepulse.errors import ProcessingError
from gamepulse.events.games import GAME_ENDED, GameResult, extract_game_result
from gamepulse.events.store import fetch_unprocessed, mark_failed, mark_processed
from gamepulse.week_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

CACHE_KEY = "leaderboard:endless:alltime"
REBUILD_PAGE_SIZE = 5000


@dataclass
class ScoreDelta:
    """Per-user contribution of a batch."""

    high_score: int = 0
    games: int = 0
    playtime_seconds: int = 0
    last_played_at: datetime | None = None

    def add(self, result: GameResult) -> None:
        self.high_score = max(self.high_score, result.score)
        self.games += 1
        self.playtime_seconds += result.duration_seconds
        if self.last_played_at is None or result.played_at > self.last_played_at:
            self.last_played_at = result.played_at


def fold_results(results: Iterable[GameResult]) -> dict[str, ScoreDelta]:
    deltas: dict[str, ScoreDelta] = {}
    for result in results:
        deltas.setdefault(result.user_id, ScoreDelta()).add(result)
    return deltas


async def apply_deltas(db: AsyncSession, deltas: dict[str, ScoreDelta], now: datetime) -> int:
    """Upsert entries for the folded batch. Does not commit."""
    if not deltas:
        return 0
    result = await db.execute(select(LeaderboardEntry).where(LeaderboardEntry.user_id.in_(list(deltas))))
    entries = {e.user_id: e for e in result.scalars().all()}

    for user_id, delta in deltas.items():
        entry = entries.get(user_id)
        if entry is None:
            db.add(
                LeaderboardEntry(
                    user_id=user_id,
                    high_score=delta.high_score,
                    total_games=delta.games,
                    total_playtime_seconds=delta.playtime_seconds,
                    last_played_at=delta.last_played_at,
                    updated_at=now,
                )
            )
            continue
        entry.high_score = max(entry.high_score, delta.high_score)
        entry.total_games += delta.games
        entry.total_playtime_seconds += delta.playtime_seconds
        if delta.last_played_at is not None and (
            entry.last_played_at is None or delta.last_played_at > ensure_utc(entry.last_played_at)
        ):
            entry.last_played_at = delta.last_played_at
        entry.updated_at = now
    return len(deltas)


async def process_batch(
    db: AsyncSession,
    redis_client: aioredis.Redis | None = None,
    batch_size: int = 1000,
    max_attempts: int = 5,
    cache_size: int = 100,
    cache_ttl: int = 300,
    now: datetime | None = None,
) -> AggregationResult:
    """Apply one batch of game_ended events to the leaderboard."""
    now = ensure_utc(now or utcnow())
    events = await fetch_unprocessed(db, GAME_ENDED, batch_size, max_attempts)
    if not events:
        await db.rollback()
        return AggregationResult()

    results: list[GameResult] = []
    ok_ids: list[str] = []
    failures: list[ProcessingError] = []
    for event in events:
        try:
            game = extract_game_result(event)
        except ProcessingError as exc:
            failures.append(exc)
            continue
        ok_ids.append(event.id)
        if game is not None:
            results.append(game)

    applied = await apply_deltas(db, fold_results(results), now)
    await mark_processed(db, ok_ids, now)
    for failure in failures:
        await mark_failed(db, failure.event_id, failure.reason)
    await db.commit()

    if failures:
        logger.warning("Leaderboard batch: %d events failed to apply", len(failures))
    if applied:
        await refresh_cache(db, redis_client, cache_size, cache_ttl)

    logger.info("Leaderboard batch processed: %d events, %d users updated", len(ok_ids), applied)
    return AggregationResult(
        processed=len(ok_ids),
        applied=len(results),
        failed=len(failures),
        failed_ids=[f.event_id for f in failures],
        rows_written=applied,
    )


async def top_players(db: AsyncSession, limit: int = 100, offset: int = 0) -> list[LeaderboardEntry]:
    """Ranked entries: high score desc, earlier last play first, then user id."""
    result = await db.execute(
        select(LeaderboardEntry)
        .order_by(
            LeaderboardEntry.high_score.desc(),
            LeaderboardEntry.last_played_at.asc().nulls_last(),
            LeaderboardEntry.user_id.asc(),
        )
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def user_rank(db: AsyncSession, user_id: str) -> int | None:
    """1-based position of ``user_id`` in the ``top_players`` order, None if unranked."""
    entry = await db.get(LeaderboardEntry, user_id, populate_existing=True)
    if entry is None:
        return None

    same_score = LeaderboardEntry.high_score == entry.high_score
    if entry.last_played_at is None:
        # Entries without a play time sort after every timed entry with the same score.
        played_earlier = LeaderboardEntry.last_played_at.is_not(None)
        same_time = LeaderboardEntry.last_played_at.is_(None)
    else:
        played_earlier = LeaderboardEntry.last_played_at < entry.last_played_at
        same_time = LeaderboardEntry.last_played_at == entry.last_played_at
    ahead = or_(
        LeaderboardEntry.high_score > entry.high_score,
        and_(same_score, played_earlier),
        and_(same_score, same_time, LeaderboardEntry.user_id < user_id),
    )
    result = await db.execute(select(func.count()).select_from(LeaderboardEntry).where(ahead))
    return int(result.scalar_one()) + 1


async def refresh_cache(
    db: AsyncSession,
    redis_client: aioredis.Redis | None,
    cache_size: int = 100,
    cache_ttl: int = 300,
) -> bool:
    if redis_client is None:
        return False
    top = await top_players(db, cache_size)
    return await write_sorted_set(redis_client, CACHE_KEY, {e.user_id: e.high_score for e in top}, cache_ttl)


async def rebuild_leaderboard(
    db: AsyncSession,
    redis_client: aioredis.Redis | None = None,
    now: datetime | None = None,
) -> AggregationResult:
    """Recompute the whole leaderboard from event history.

    Runs in one transaction and must hold the leaderboard job lock, since
    it also marks any still-unprocessed valid events as processed.
    """
    now = ensure_utc(now or utcnow())
    await db.execute(delete(LeaderboardEntry).execution_options(synchronize_session=False))
    db.expunge_all()

    deltas: dict[str, ScoreDelta] = {}
    pending_ids: list[str] = []
    skipped = 0
    applied = 0
    last_key: tuple[datetime, str] | None = None
    while True:
        stmt = select(Event).where(Event.event_type == GAME_ENDED)
        if last_key is not None:
            stmt = stmt.where(
                (Event.received_at > last_key[0]) | ((Event.received_at == last_key[0]) & (Event.id > last_key[1]))
            )
        page = list(
            (await db.execute(stmt.order_by(Event.received_at, Event.id).limit(REBUILD_PAGE_SIZE))).scalars().all()
        )
        if not page:
            break
        for event in page:
            try:
                game = extract_game_result(event)
            except ProcessingError:
                skipped += 1
                continue
            if event.processed_at is None:
                pending_ids.append(event.id)
            if game is not None:
                deltas.setdefault(game.user_id, ScoreDelta()).add(game)
                applied += 1
        last_key = (page[-1].received_at, page[-1].id)

    written = await apply_deltas(db, deltas, now)
    await mark_processed(db, pending_ids, now)
    await db.commit()
    await refresh_cache(db, redis_client)

    logger.info("Leaderboard rebuilt: %d users from %d games (%d unusable events)", written, applied, skipped)
    return AggregationResult(processed=applied + skipped, applied=applied, failed=skipped, rows_written=written)
