"""Prize ledger: poll for pending prizes and claim them exactly once.

Prizes are written only at tournament close. The only mutation afterwards
is ``claimed_at`` going from NULL to a timestamp, done with a conditional
UPDATE so concurrent claims cannot both succeed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gamepulse.db.models import Prize
from gamepulse.errors import AlreadyClaimedError, PrizeForbiddenError, PrizeNotFoundError, StateError
from gamepulse.tournaments.ranking import prize_value
from gamepulse.week_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingPrize:
    prize_id: str
    tournament_id: str
    rank: int
    coins: int
    gems: int
    awarded_at: datetime

    @property
    def total_value(self) -> int:
        return prize_value(self.coins, self.gems)


@dataclass(frozen=True)
class ClaimResult:
    prize_id: str
    claimed_at: datetime
    coins: int
    gems: int
    already_claimed: bool = False


async def list_pending(db: AsyncSession, user_id: str) -> list[PendingPrize]:
    """Unclaimed prizes of a user, newest first."""
    result = await db.execute(
        select(Prize)
        .where(Prize.user_id == user_id, Prize.claimed_at.is_(None))
        .order_by(Prize.awarded_at.desc(), Prize.prize_id)
    )
    return [
        PendingPrize(
            prize_id=p.prize_id,
            tournament_id=p.tournament_id,
            rank=p.rank,
            coins=p.coins,
            gems=p.gems,
            awarded_at=ensure_utc(p.awarded_at),
        )
        for p in result.scalars().all()
    ]


async def claim(
    db: AsyncSession,
    prize_id: str,
    user_id: str,
    now: datetime | None = None,
    strict: bool = False,
) -> ClaimResult:
    """Claim a prize for its owner.

    A repeated claim by the owner returns ``already_claimed=True`` so client
    retries are harmless; with ``strict=True`` it raises AlreadyClaimedError
    instead. Unknown prizes raise PrizeNotFoundError and prizes of other
    users raise PrizeForbiddenError.
    """
    now = ensure_utc(now or utcnow())
    result = await db.execute(
        update(Prize)
        .where(
            Prize.prize_id == prize_id,
            Prize.user_id == user_id,
            Prize.claimed_at.is_(None),
            Prize.awarded_at <= now,
        )
        .values(claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    claimed = (result.rowcount or 0) == 1
    await db.commit()

    prize = await db.get(Prize, prize_id, populate_existing=True)
    if prize is None:
        raise PrizeNotFoundError(f"Prize {prize_id} not found")
    if prize.user_id != user_id:
        logger.warning("User %s tried to claim prize %s owned by %s", user_id, prize_id, prize.user_id)
        raise PrizeForbiddenError(f"Prize {prize_id} belongs to another user")

    if claimed:
        logger.info("Prize %s claimed by %s", prize_id, user_id)
        return ClaimResult(prize_id, now, prize.coins, prize.gems)

    if prize.claimed_at is None:
        # Owner matched but the update did not apply: awarded_at is ahead of now.
        raise StateError(f"Prize {prize_id} cannot be claimed before it is awarded")
    if strict:
        raise AlreadyClaimedError(f"Prize {prize_id} was already claimed")
    return ClaimResult(prize_id, ensure_utc(prize.claimed_at), prize.coins, prize.gems, already_claimed=True)
