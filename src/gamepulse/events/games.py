"""Interpretation of game_ended events shared by the leaderboards."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from gamepulse.db.models import Event
from gamepulse.errors import ProcessingError
from gamepulse.week_utils import ensure_utc

GAME_ENDED = "game_ended"
ENDLESS_MODE = "endless"


@dataclass(frozen=True)
class GameResult:
    event_id: str
    user_id: str
    score: int
    duration_seconds: int
    played_at: datetime


def _as_int(event_id: str, name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ProcessingError(event_id, f"{name} is not a number")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ProcessingError(event_id, f"{name} is not a number: {value!r}") from exc
    if number < 0:
        raise ProcessingError(event_id, f"{name} is negative: {number}")
    return number


def extract_game_result(event: Event) -> GameResult | None:
    """Endless-mode result of a game_ended event, or None for other modes.

    Raises ProcessingError when an endless game has no usable score.
    """
    payload = event.payload or {}
    if payload.get("game_mode") != ENDLESS_MODE:
        return None
    if payload.get("score") is None:
        raise ProcessingError(event.id, "endless game_ended without score")
    score = _as_int(event.id, "score", payload["score"])
    duration = _as_int(event.id, "duration_seconds", payload.get("duration_seconds") or 0)
    return GameResult(
        event_id=event.id,
        user_id=event.user_id,
        score=score,
        duration_seconds=duration,
        played_at=ensure_utc(event.received_at),
    )
