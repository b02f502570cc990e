"""Tournament standings folded from game_ended events.

Each tournament keeps a ledger of the events already applied to it, so the
same event can be offered to the fold any number of times and still counts
once. The global processed flag belongs to the all-time leaderboard and is
not consulted here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

import redis.asyncio as aioredis
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gamepulse.aggregation.base import AggregationResult, write_sorted_set
from gamepulse.db.models import Event, Tournament, TournamentEventLedger, TournamentParticipant
from gamepulse.errors import ProcessingError
from gamepulse.events.games import GAME_ENDED, GameResult, extract_game_result
from gamepulse.week_utils import ensure_utc

logger = logging.getLogger(__name__)


def cache_key(tournament_id: str) -> str:
    return f"leaderboard:tournament:{tournament_id}"


@dataclass
class AttemptSummary:
    best_score: int = 0
    games: int = 0
    first_attempt_at: datetime | None = None
    last_attempt_at: datetime | None = None

    def add(self, result: GameResult) -> None:
        self.best_score = max(self.best_score, result.score)
        self.games += 1
        if self.first_attempt_at is None or result.played_at < self.first_attempt_at:
            self.first_attempt_at = result.played_at
        if self.last_attempt_at is None or result.played_at > self.last_attempt_at:
            self.last_attempt_at = result.played_at


async def _unapplied_events(db: AsyncSession, tournament: Tournament, limit: int) -> list[Event]:
    applied = select(TournamentEventLedger.event_id).where(TournamentEventLedger.tournament_id == tournament.id)
    result = await db.execute(
        select(Event)
        .where(
            Event.event_type == GAME_ENDED,
            Event.received_at >= tournament.start_date,
            Event.received_at < tournament.end_date,
            Event.id.not_in(applied),
        )
        .order_by(Event.received_at, Event.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def fold_tournament_events(
    db: AsyncSession,
    tournament: Tournament,
    limit: int = 1000,
) -> AggregationResult:
    """Apply one batch of in-window events to a tournament. Does not commit."""
    events = await _unapplied_events(db, tournament, limit)
    if not events:
        return AggregationResult()

    summaries: dict[str, AttemptSummary] = {}
    failed: list[str] = []
    for event in events:
        try:
            game = extract_game_result(event)
        except ProcessingError as exc:
            # Unusable payloads are recorded by the leaderboard aggregator;
            # here they are consumed without effect.
            logger.warning("Tournament %s skipped event %s: %s", tournament.id, exc.event_id, exc.reason)
            failed.append(event.id)
            continue
        if game is not None:
            summaries.setdefault(game.user_id, AttemptSummary()).add(game)

    written = 0
    if summaries:
        result = await db.execute(
            select(TournamentParticipant).where(
                TournamentParticipant.tournament_id == tournament.id,
                TournamentParticipant.user_id.in_(list(summaries)),
            )
        )
        existing = {p.user_id: p for p in result.scalars().all()}
        count = await db.scalar(
            select(func.count())
            .select_from(TournamentParticipant)
            .where(TournamentParticipant.tournament_id == tournament.id)
        )
        capacity = tournament.max_participants - (count or 0)

        for user_id in sorted(summaries, key=lambda u: (summaries[u].first_attempt_at, u)):
            summary = summaries[user_id]
            participant = existing.get(user_id)
            if participant is None:
                if capacity <= 0:
                    logger.info("Tournament %s is full, ignoring %s", tournament.id, user_id)
                    continue
                capacity -= 1
                db.add(
                    TournamentParticipant(
                        tournament_id=tournament.id,
                        user_id=user_id,
                        best_score=summary.best_score,
                        total_games=summary.games,
                        first_attempt_at=summary.first_attempt_at,
                        last_attempt_at=summary.last_attempt_at,
                        prize_won=False,
                    )
                )
            else:
                participant.best_score = max(participant.best_score, summary.best_score)
                participant.total_games += summary.games
                if participant.first_attempt_at is None or (
                    summary.first_attempt_at is not None
                    and summary.first_attempt_at < ensure_utc(participant.first_attempt_at)
                ):
                    participant.first_attempt_at = summary.first_attempt_at
                if participant.last_attempt_at is None or (
                    summary.last_attempt_at is not None
                    and summary.last_attempt_at > ensure_utc(participant.last_attempt_at)
                ):
                    participant.last_attempt_at = summary.last_attempt_at
            written += 1

    db.add_all(TournamentEventLedger(tournament_id=tournament.id, event_id=e.id) for e in events)
    return AggregationResult(
        processed=len(events),
        applied=sum(s.games for s in summaries.values()),
        failed=len(failed),
        failed_ids=failed,
        rows_written=written,
    )


async def drain_tournament_events(db: AsyncSession, tournament: Tournament, batch_size: int = 1000) -> int:
    """Fold every remaining in-window event. Does not commit."""
    total = 0
    while True:
        result = await fold_tournament_events(db, tournament, batch_size)
        if result.processed == 0:
            return total
        await db.flush()
        total += result.processed


async def standings(db: AsyncSession, tournament_id: str, limit: int | None = None) -> list[TournamentParticipant]:
    """Participants in ranking order."""
    stmt = (
        select(TournamentParticipant)
        .where(TournamentParticipant.tournament_id == tournament_id)
        .order_by(
            TournamentParticipant.best_score.desc(),
            TournamentParticipant.last_attempt_at.asc(),
            TournamentParticipant.user_id.asc(),
        )
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def refresh_tournament_cache(
    db: AsyncSession,
    redis_client: aioredis.Redis | None,
    tournament_id: str,
    size: int = 50,
    ttl: int = 120,
) -> bool:
    if redis_client is None:
        return False
    top = await standings(db, tournament_id, size)
    return await write_sorted_set(redis_client, cache_key(tournament_id), {p.user_id: p.best_score for p in top}, ttl)
