"""Deterministic tournament ranking and prize tiers.

Participants are ranked by best_score DESC, then by last_attempt_at ASC
(earlier wins), then by user_id ASC as the final tiebreaker, so the same
standings always produce the same ranks.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from gamepulse.week_utils import ensure_utc

# Ratio used when expressing coins + gems as a single value.
GEM_VALUE_IN_COINS = 10


@dataclass(frozen=True)
class PrizeTier:
    first_rank: int
    last_rank: int
    coins: int
    gems: int

    @property
    def slots(self) -> int:
        return self.last_rank - self.first_rank + 1


PRIZE_TIERS: tuple[PrizeTier, ...] = (
    PrizeTier(1, 1, coins=5000, gems=250),
    PrizeTier(2, 2, coins=3000, gems=150),
    PrizeTier(3, 3, coins=2000, gems=100),
    PrizeTier(4, 10, coins=1000, gems=50),
    PrizeTier(11, 50, coins=500, gems=25),
)

REWARDED_RANKS = PRIZE_TIERS[-1].last_rank


def determine_prize(rank: int) -> tuple[int, int] | None:
    """(coins, gems) for a final rank, or None outside the rewarded ranks.

    Rank 1      → 5000 coins, 250 gems
    Rank 2      → 3000 coins, 150 gems
    Rank 3      → 2000 coins, 100 gems
    Rank 4-10   → 1000 coins, 50 gems
    Rank 11-50  → 500 coins, 25 gems
    """
    for tier in PRIZE_TIERS:
        if tier.first_rank <= rank <= tier.last_rank:
            return tier.coins, tier.gems
    return None


def tier_budget() -> tuple[int, int]:
    """Total (coins, gems) paid out when every rewarded rank is filled."""
    coins = sum(t.coins * t.slots for t in PRIZE_TIERS)
    gems = sum(t.gems * t.slots for t in PRIZE_TIERS)
    return coins, gems


def prize_value(coins: int, gems: int) -> int:
    return coins + gems * GEM_VALUE_IN_COINS


def rank_participants(participants: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Rank participants deterministically by best score.

    Input: list of dicts with at least:
        - user_id: str
        - best_score: int
        - last_attempt_at: datetime (optional, for tiebreaking)

    Output: same list sorted and augmented with rank (1-indexed).
    """
    if not participants:
        return []

    _far_future = datetime(2099, 12, 31, 23, 59, 59, tzinfo=timezone.utc)

    def sort_key(p: dict[str, Any]) -> tuple[int, datetime, str]:
        last = p.get("last_attempt_at")
        return (
            -p.get("best_score", 0),
            ensure_utc(last) if last is not None else _far_future,
            str(p["user_id"]),
        )

    sorted_p = sorted(participants, key=sort_key)
    for rank, p in enumerate(sorted_p, start=1):
        p["rank"] = rank

    return sorted_p
