"""Unit tests for the deterministic tournament ranking and prize tiers."""

from datetime import datetime, timezone

from gamepulse.tournaments.ranking import (
    PRIZE_TIERS,
    REWARDED_RANKS,
    determine_prize,
    prize_value,
    rank_participants,
    tier_budget,
)

UTC = timezone.utc


class TestRanking:
    """Test the deterministic ranking algorithm."""

    def test_higher_score_ranks_first(self):
        participants = [
            {"user_id": "a", "best_score": 50},
            {"user_id": "b", "best_score": 100},
            {"user_id": "c", "best_score": 10},
        ]
        ranked = rank_participants(participants)
        assert [p["user_id"] for p in ranked] == ["b", "a", "c"]

    def test_tie_broken_by_earlier_last_attempt(self):
        participants = [
            {"user_id": "a", "best_score": 80, "last_attempt_at": datetime(2026, 3, 6, tzinfo=UTC)},
            {"user_id": "b", "best_score": 80, "last_attempt_at": datetime(2026, 3, 4, tzinfo=UTC)},
        ]
        ranked = rank_participants(participants)
        assert ranked[0]["user_id"] == "b"

    def test_tie_broken_by_user_id(self):
        """Same score, same time: user_id ascending decides."""
        ts = datetime(2026, 3, 4, tzinfo=UTC)
        participants = [
            {"user_id": "zed", "best_score": 80, "last_attempt_at": ts},
            {"user_id": "amy", "best_score": 80, "last_attempt_at": ts},
        ]
        ranked = rank_participants(participants)
        assert [p["user_id"] for p in ranked] == ["amy", "zed"]

    def test_naive_and_aware_timestamps_compare(self):
        participants = [
            {"user_id": "a", "best_score": 5, "last_attempt_at": datetime(2026, 3, 5)},
            {"user_id": "b", "best_score": 5, "last_attempt_at": datetime(2026, 3, 4, tzinfo=UTC)},
        ]
        assert rank_participants(participants)[0]["user_id"] == "b"

    def test_zero_participants(self):
        assert rank_participants([]) == []

    def test_ranks_are_contiguous(self):
        participants = [{"user_id": f"u{i:03d}", "best_score": 1000 - i} for i in range(60)]
        ranked = rank_participants(participants)
        assert [p["rank"] for p in ranked] == list(range(1, 61))
        assert [determine_prize(p["rank"]) for p in ranked[49:51]] == [(500, 25), None]


class TestPrizeTiers:
    """Test the fixed prize table."""

    def test_podium(self):
        assert determine_prize(1) == (5000, 250)
        assert determine_prize(2) == (3000, 150)
        assert determine_prize(3) == (2000, 100)

    def test_tier_edges(self):
        assert determine_prize(4) == (1000, 50)
        assert determine_prize(10) == (1000, 50)
        assert determine_prize(11) == (500, 25)
        assert determine_prize(50) == (500, 25)

    def test_outside_rewarded_ranks(self):
        assert determine_prize(51) is None
        assert determine_prize(0) is None

    def test_tiers_cover_ranks_without_gaps(self):
        expected = 1
        for tier in PRIZE_TIERS:
            assert tier.first_rank == expected
            expected = tier.last_rank + 1
        assert REWARDED_RANKS == 50

    def test_budget(self):
        """A full tournament pays exactly the tier budget."""
        assert tier_budget() == (37000, 1850)

    def test_prize_value(self):
        assert prize_value(5000, 250) == 7500
