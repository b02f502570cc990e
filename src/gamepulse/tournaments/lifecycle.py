"""Weekly tournament lifecycle: creation, status advancement, close and prizes.

Status is driven purely by wall-clock time:

    upcoming -> active -> ended
    upcoming | active -> cancelled

Every status change is a conditional UPDATE on the expected current status,
so two workers racing on the same tournament cannot both perform it. The
``active -> ended`` update is the single trigger for prize computation and
runs in the same transaction as the prize writes.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gamepulse.db.models import Prize, Tournament, TournamentParticipant
from gamepulse.errors import InvalidTransitionError, NotFoundError, StateError
from gamepulse.tournaments.participants import drain_tournament_events, standings
from gamepulse.tournaments.ranking import determine_prize, rank_participants, tier_budget
from gamepulse.week_utils import DAY, ensure_utc, get_next_week_iso, get_week_iso, iso_week_bounds, utcnow

logger = logging.getLogger(__name__)

UPCOMING = "upcoming"
ACTIVE = "active"
ENDED = "ended"
CANCELLED = "cancelled"

VALID_TRANSITIONS: dict[str, list[str]] = {
    UPCOMING: [ACTIVE, CANCELLED],
    ACTIVE: [ENDED, CANCELLED],
    ENDED: [],
    CANCELLED: [],
}

# Lower sorts first when picking "the" current tournament.
STATUS_PRIORITY: dict[str, int] = {ACTIVE: 0, UPCOMING: 1}

DEFAULT_MAX_PARTICIPANTS = 10_000


@dataclass
class AdvanceResult:
    activated: list[str] = field(default_factory=list)
    ended: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    prizes_awarded: int = 0


def validate_transition(current_status: str, target_status: str) -> None:
    """Validate a state transition. Raises InvalidTransitionError if invalid."""
    valid = VALID_TRANSITIONS.get(current_status, [])
    if target_status not in valid:
        raise InvalidTransitionError(
            f"Invalid transition: {current_status} -> {target_status}. Valid transitions: {valid}"
        )


def tournament_id_for_week(week_iso: str) -> str:
    """'2026-W09' -> 'weekly-2026-W09'."""
    return f"weekly-{week_iso}"


def build_weekly_tournament(
    week_iso: str,
    now: datetime,
    max_participants: int = DEFAULT_MAX_PARTICIPANTS,
) -> Tournament:
    """Unsaved tournament for an ISO week: Monday 00:00 UTC to the next Monday."""
    start, end = iso_week_bounds(week_iso)
    coins, _ = tier_budget()
    return Tournament(
        id=tournament_id_for_week(week_iso),
        name=f"Weekly Championship {start:%Y-%m-%d}",
        week_iso=week_iso,
        status=UPCOMING,
        start_date=start,
        end_date=end,
        registration_start=start - DAY,
        registration_end=end,
        prize_pool=coins,
        max_participants=max_participants,
        created_at=now,
    )


def current_tournament(tournaments: Iterable[Tournament]) -> Tournament | None:
    """The tournament players should see: active first, then the earliest upcoming."""
    candidates = [t for t in tournaments if t.status in STATUS_PRIORITY]
    if not candidates:
        return None
    return min(candidates, key=lambda t: (STATUS_PRIORITY[t.status], ensure_utc(t.start_date), t.id))


async def get_current_tournament(db: AsyncSession) -> Tournament | None:
    result = await db.execute(
        select(Tournament)
        .where(Tournament.status.in_(list(STATUS_PRIORITY)))
        .execution_options(populate_existing=True)
    )
    return current_tournament(result.scalars().all())


async def get_tournament(db: AsyncSession, tournament_id: str) -> Tournament:
    tournament = await db.get(Tournament, tournament_id, populate_existing=True)
    if tournament is None:
        raise NotFoundError(f"Tournament {tournament_id} not found")
    return tournament


async def ensure_tournament(
    db: AsyncSession,
    week_iso: str,
    now: datetime | None = None,
    max_participants: int = DEFAULT_MAX_PARTICIPANTS,
) -> tuple[Tournament, bool]:
    """Create the tournament for ``week_iso`` unless it exists.

    Returns (tournament, created). Idempotent: if a tournament already
    exists for this week, returns it.
    """
    now = ensure_utc(now or utcnow())
    tournament_id = tournament_id_for_week(week_iso)
    existing = await db.get(Tournament, tournament_id)
    if existing is not None:
        logger.debug("Tournament %s already exists, skipping", tournament_id)
        return existing, False

    tournament = build_weekly_tournament(week_iso, now, max_participants)
    db.add(tournament)
    try:
        await db.commit()
    except IntegrityError:
        # Another scheduler instance created it first.
        await db.rollback()
        return await get_tournament(db, tournament_id), False

    logger.info("Created tournament %s (%s)", tournament.id, tournament.name)
    return tournament, True


async def create_next(
    db: AsyncSession,
    now: datetime | None = None,
    max_participants: int = DEFAULT_MAX_PARTICIPANTS,
) -> tuple[Tournament, bool]:
    """Create next week's tournament. Scheduled shortly before the week boundary."""
    now = ensure_utc(now or utcnow())
    return await ensure_tournament(db, get_next_week_iso(now), now, max_participants)


async def ensure_current_and_next(
    db: AsyncSession,
    now: datetime | None = None,
    max_participants: int = DEFAULT_MAX_PARTICIPANTS,
) -> list[str]:
    """Bootstrap helper: make sure this week's and next week's tournaments exist."""
    now = ensure_utc(now or utcnow())
    created: list[str] = []
    for week_iso in (get_week_iso(now), get_next_week_iso(now)):
        tournament, was_created = await ensure_tournament(db, week_iso, now, max_participants)
        if was_created:
            created.append(tournament.id)
    return created


async def _transition(
    db: AsyncSession,
    tournament_id: str,
    current_status: str,
    target_status: str,
    **values: Any,
) -> bool:
    """Conditional status update. True if this call performed it. Does not commit."""
    validate_transition(current_status, target_status)
    result = await db.execute(
        update(Tournament)
        .where(Tournament.id == tournament_id, Tournament.status == current_status)
        .values(status=target_status, **values)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def compute_prizes(
    db: AsyncSession,
    tournament_id: str,
    now: datetime | None = None,
    commit: bool = True,
) -> list[Prize]:
    """Rank participants and write one prize per rewarded participant.

    Re-runnable: participants that already have a final rank keep it, and a
    prize is only written when none exists for (tournament, user).
    Returns the prizes created by this call.
    """
    now = ensure_utc(now or utcnow())
    tournament = await get_tournament(db, tournament_id)
    await db.refresh(tournament)
    if tournament.status != ENDED:
        raise StateError(f"Tournament {tournament_id} is {tournament.status}, prizes require {ENDED}")

    participants = await standings(db, tournament_id)
    result = await db.execute(select(Prize.user_id).where(Prize.tournament_id == tournament_id))
    already_awarded = set(result.scalars().all())

    ranked = rank_participants(
        [
            {"user_id": p.user_id, "best_score": p.best_score, "last_attempt_at": p.last_attempt_at, "row": p}
            for p in participants
        ]
    )

    created: list[Prize] = []
    for entry in ranked:
        participant: TournamentParticipant = entry["row"]
        if participant.final_rank is None:
            participant.final_rank = entry["rank"]
        prize = determine_prize(participant.final_rank)
        participant.prize_won = prize is not None
        if prize is None or participant.user_id in already_awarded:
            continue
        coins, gems = prize
        award = Prize(
            prize_id=f"prize_{tournament_id}_{participant.user_id}",
            tournament_id=tournament_id,
            user_id=participant.user_id,
            rank=participant.final_rank,
            coins=coins,
            gems=gems,
            awarded_at=now,
            claimed_at=None,
        )
        db.add(award)
        created.append(award)

    if commit:
        await db.commit()
    logger.info(
        "Prizes computed for %s: %d participants ranked, %d prizes created",
        tournament_id,
        len(ranked),
        len(created),
    )
    return created


async def end_tournament(
    db: AsyncSession,
    tournament_id: str,
    now: datetime | None = None,
    batch_size: int = 1000,
) -> bool:
    """Close an active tournament and award its prizes in one transaction.

    Returns False when the tournament had already ended (already done, not an
    error). Raises InvalidTransitionError for cancelled or upcoming ones.
    """
    now = ensure_utc(now or utcnow())
    tournament = await get_tournament(db, tournament_id)
    if tournament.status == ENDED:
        return False
    validate_transition(tournament.status, ENDED)

    if not await _transition(db, tournament_id, ACTIVE, ENDED, closed_at=now):
        await db.rollback()
        logger.info("Tournament %s was closed by another worker", tournament_id)
        return False

    try:
        await db.refresh(tournament)
        drained = await drain_tournament_events(db, tournament, batch_size)
        prizes = await compute_prizes(db, tournament_id, now, commit=False)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Tournament %s ended: %d late events folded, %d prizes", tournament_id, drained, len(prizes))
    return True


async def advance_statuses(db: AsyncSession, now: datetime | None = None) -> AdvanceResult:
    """Move tournaments along their lifecycle according to ``now``."""
    now = ensure_utc(now or utcnow())
    outcome = AdvanceResult()

    result = await db.execute(
        select(Tournament.id).where(Tournament.status == UPCOMING, Tournament.start_date <= now)
    )
    for tournament_id in result.scalars().all():
        if await _transition(db, tournament_id, UPCOMING, ACTIVE):
            outcome.activated.append(tournament_id)
    await db.commit()
    if outcome.activated:
        logger.info("Activated tournaments: %s", ", ".join(outcome.activated))

    result = await db.execute(
        select(Tournament.id)
        .where(Tournament.status == ACTIVE, Tournament.end_date <= now)
        .order_by(Tournament.start_date)
    )
    for tournament_id in list(result.scalars().all()):
        try:
            ended = await end_tournament(db, tournament_id, now)
        except Exception:
            await db.rollback()
            logger.exception("Tournament %s left active after a failed close", tournament_id)
            outcome.failed.append(tournament_id)
            continue
        if ended:
            outcome.ended.append(tournament_id)
            outcome.prizes_awarded += len(await _prizes_for(db, tournament_id))
    return outcome


async def _prizes_for(db: AsyncSession, tournament_id: str) -> list[str]:
    result = await db.execute(select(Prize.prize_id).where(Prize.tournament_id == tournament_id))
    return list(result.scalars().all())


async def cancel_tournament(db: AsyncSession, tournament_id: str) -> Tournament:
    """Cancel an upcoming or active tournament. No prizes are awarded."""
    tournament = await get_tournament(db, tournament_id)
    if tournament.status == CANCELLED:
        return tournament
    current = tournament.status
    validate_transition(current, CANCELLED)
    if not await _transition(db, tournament_id, current, CANCELLED):
        await db.rollback()
        raise StateError(f"Tournament {tournament_id} changed status concurrently")
    await db.commit()
    await db.refresh(tournament)
    logger.info("Tournament %s cancelled (was %s)", tournament_id, current)
    return tournament

