"""Tests for polling and claiming prizes."""

from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy import select

from conftest import utc
from gamepulse.db.models import Prize
from gamepulse.errors import AlreadyClaimedError, PrizeForbiddenError, PrizeNotFoundError, StateError
from gamepulse.tournaments.prizes import claim, list_pending


async def _award(db, tournament_id: str, user_id: str, rank: int, coins: int, gems: int, awarded_at) -> Prize:
    prize = Prize(
        prize_id=f"prize_{tournament_id}_{user_id}",
        tournament_id=tournament_id,
        user_id=user_id,
        rank=rank,
        coins=coins,
        gems=gems,
        awarded_at=awarded_at,
        claimed_at=None,
    )
    db.add(prize)
    await db.commit()
    return prize


@pytest_asyncio.fixture
async def prizes(db_session):
    older = await _award(db_session, "weekly-2026-W09", "alice", 1, 5000, 250, utc(2026, 3, 2, 0, 5))
    newer = await _award(db_session, "weekly-2026-W10", "alice", 4, 1000, 50, utc(2026, 3, 9, 0, 5))
    other = await _award(db_session, "weekly-2026-W10", "bob", 2, 3000, 150, utc(2026, 3, 9, 0, 5))
    return older, newer, other


class TestListPending:
    async def test_newest_first(self, db_session, prizes):
        pending = await list_pending(db_session, "alice")
        assert [p.tournament_id for p in pending] == ["weekly-2026-W10", "weekly-2026-W09"]
        assert pending[0].total_value == 1000 + 50 * 10
        assert pending[1].awarded_at == utc(2026, 3, 2, 0, 5)

    async def test_nothing_for_unknown_user(self, db_session, prizes):
        assert await list_pending(db_session, "carol") == []

    async def test_claimed_prizes_drop_out(self, db_session, prizes):
        _, newer, _ = prizes
        await claim(db_session, newer.prize_id, "alice", utc(2026, 3, 10))
        pending = await list_pending(db_session, "alice")
        assert [p.prize_id for p in pending] == ["prize_weekly-2026-W09_alice"]


class TestClaim:
    async def test_claim_once(self, db_session, prizes):
        _, newer, _ = prizes
        result = await claim(db_session, newer.prize_id, "alice", utc(2026, 3, 10))
        assert result.already_claimed is False
        assert (result.coins, result.gems) == (1000, 50)
        assert result.claimed_at == utc(2026, 3, 10)

        stored = (await db_session.execute(select(Prize).where(Prize.prize_id == newer.prize_id))).scalar_one()
        assert stored.claimed_at is not None

    async def test_repeat_claim_reports_original_time(self, db_session, prizes):
        _, newer, _ = prizes
        await claim(db_session, newer.prize_id, "alice", utc(2026, 3, 10))
        again = await claim(db_session, newer.prize_id, "alice", utc(2026, 3, 11))
        assert again.already_claimed is True
        assert again.claimed_at == utc(2026, 3, 10)

    async def test_strict_repeat_claim(self, db_session, prizes):
        _, newer, _ = prizes
        await claim(db_session, newer.prize_id, "alice", utc(2026, 3, 10))
        with pytest.raises(AlreadyClaimedError):
            await claim(db_session, newer.prize_id, "alice", utc(2026, 3, 11), strict=True)

    async def test_other_users_prize(self, db_session, prizes):
        _, _, other = prizes
        with pytest.raises(PrizeForbiddenError):
            await claim(db_session, other.prize_id, "alice", utc(2026, 3, 10))
        assert [p.prize_id for p in await list_pending(db_session, "bob")] == [other.prize_id]

    async def test_unknown_prize(self, db_session, prizes):
        with pytest.raises(PrizeNotFoundError):
            await claim(db_session, "prize_weekly-2026-W10_nobody", "alice", utc(2026, 3, 10))

    async def test_claim_before_award(self, db_session, prizes):
        _, newer, _ = prizes
        with pytest.raises(StateError):
            await claim(db_session, newer.prize_id, "alice", utc(2026, 3, 8))
