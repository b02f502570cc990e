"""Unit tests for the tournament state machine and weekly scheduling."""

from datetime import datetime, timezone

import pytest

from gamepulse.errors import InvalidTransitionError, StateError
from gamepulse.tournaments.lifecycle import (
    ACTIVE,
    CANCELLED,
    ENDED,
    UPCOMING,
    VALID_TRANSITIONS,
    build_weekly_tournament,
    current_tournament,
    tournament_id_for_week,
    validate_transition,
)

UTC = timezone.utc
NOW = datetime(2026, 2, 28, tzinfo=UTC)


class TestValidTransitions:
    """Test all valid state transitions."""

    def test_upcoming_to_active(self):
        validate_transition(UPCOMING, ACTIVE)

    def test_active_to_ended(self):
        validate_transition(ACTIVE, ENDED)

    def test_upcoming_and_active_can_be_cancelled(self):
        validate_transition(UPCOMING, CANCELLED)
        validate_transition(ACTIVE, CANCELLED)


class TestInvalidTransitions:
    """Test that invalid transitions raise InvalidTransitionError."""

    def test_upcoming_to_ended(self):
        """Cannot skip the active phase."""
        with pytest.raises(InvalidTransitionError):
            validate_transition(UPCOMING, ENDED)

    def test_ended_is_terminal(self):
        for target in (UPCOMING, ACTIVE, CANCELLED):
            with pytest.raises(InvalidTransitionError):
                validate_transition(ENDED, target)

    def test_cancelled_is_terminal(self):
        assert VALID_TRANSITIONS[CANCELLED] == []
        with pytest.raises(InvalidTransitionError):
            validate_transition(CANCELLED, ACTIVE)

    def test_active_back_to_upcoming(self):
        with pytest.raises(InvalidTransitionError):
            validate_transition(ACTIVE, UPCOMING)

    def test_unknown_state(self):
        with pytest.raises(InvalidTransitionError):
            validate_transition("paused", ACTIVE)

    def test_error_is_a_state_error(self):
        with pytest.raises(StateError):
            validate_transition(ENDED, ACTIVE)


class TestWeeklyTournament:
    def test_id_from_week(self):
        assert tournament_id_for_week("2026-W10") == "weekly-2026-W10"

    def test_window_is_monday_to_next_monday(self):
        t = build_weekly_tournament("2026-W10", NOW)
        assert t.start_date == datetime(2026, 3, 2, tzinfo=UTC)
        assert t.end_date == datetime(2026, 3, 9, tzinfo=UTC)
        assert t.end_date > t.start_date

    def test_registration_opens_a_day_early(self):
        t = build_weekly_tournament("2026-W10", NOW)
        assert t.registration_start == datetime(2026, 3, 1, tzinfo=UTC)
        assert t.registration_end == t.end_date

    def test_prize_pool_is_tier_budget(self):
        t = build_weekly_tournament("2026-W10", NOW, max_participants=500)
        assert t.prize_pool == 37000
        assert t.max_participants == 500
        assert t.status == UPCOMING


class TestCurrentTournament:
    """The player-facing tournament: active first, else the earliest upcoming."""

    def test_active_preferred(self):
        upcoming = build_weekly_tournament("2026-W11", NOW)
        active = build_weekly_tournament("2026-W10", NOW)
        active.status = ACTIVE
        assert current_tournament([upcoming, active]) is active

    def test_earliest_upcoming(self):
        later = build_weekly_tournament("2026-W12", NOW)
        sooner = build_weekly_tournament("2026-W11", NOW)
        assert current_tournament([later, sooner]) is sooner

    def test_none_when_all_closed(self):
        ended = build_weekly_tournament("2026-W09", NOW)
        ended.status = ENDED
        assert current_tournament([ended]) is None
