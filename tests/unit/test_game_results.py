"""Tests for reading game results out of game_ended events."""

from datetime import datetime, timezone

import pytest

from gamepulse.db.models import Event
from gamepulse.errors import ProcessingError
from gamepulse.events.games import extract_game_result


def _event(**payload) -> Event:
    return Event(
        id="evt-1",
        event_type="game_ended",
        user_id="u1",
        payload=payload,
        received_at=datetime(2026, 3, 3, 12),
    )


class TestExtractGameResult:
    def test_endless_game(self):
        result = extract_game_result(_event(game_mode="endless", score=120, duration_seconds=45))
        assert result is not None
        assert result.score == 120
        assert result.duration_seconds == 45
        assert result.played_at == datetime(2026, 3, 3, 12, tzinfo=timezone.utc)

    def test_other_modes_ignored(self):
        assert extract_game_result(_event(game_mode="level", score=5)) is None

    def test_missing_score(self):
        with pytest.raises(ProcessingError, match="without score"):
            extract_game_result(_event(game_mode="endless"))

    def test_non_numeric_score(self):
        with pytest.raises(ProcessingError) as exc_info:
            extract_game_result(_event(game_mode="endless", score="abc"))
        assert exc_info.value.event_id == "evt-1"

    def test_negative_score(self):
        with pytest.raises(ProcessingError, match="negative"):
            extract_game_result(_event(game_mode="endless", score=-1))

    def test_boolean_score(self):
        with pytest.raises(ProcessingError):
            extract_game_result(_event(game_mode="endless", score=True))
