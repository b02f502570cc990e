"""Week and day boundary utilities.

Every weekly structure (partitions, tournaments, weekly aggregates) uses the
same convention: ISO weeks starting Monday 00:00 UTC, half-open intervals.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

WEEK = timedelta(weeks=1)
DAY = timedelta(days=1)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite returns them without tzinfo)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_week_iso(dt: datetime | date) -> str:
    """Get ISO week string e.g. '2026-W09'. Uses %G-W%V (ISO year + ISO week)."""
    return dt.strftime("%G-W%V")


def get_monday(dt: datetime | date) -> date:
    """Get the Monday of the ISO week containing dt."""
    d = ensure_utc(dt).date() if isinstance(dt, datetime) else dt
    return d - timedelta(days=d.weekday())


def start_of_day(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


def day_bounds(d: date) -> tuple[datetime, datetime]:
    """[00:00, next 00:00) of a UTC day."""
    start = start_of_day(d)
    return start, start + DAY


def week_start(dt: datetime | date) -> datetime:
    """Monday 00:00 UTC of the ISO week containing dt."""
    return start_of_day(get_monday(dt))


def get_week_boundaries(dt: datetime | None = None) -> tuple[datetime, datetime]:
    """Get (Monday 00:00 UTC, next Monday 00:00 UTC) for the ISO week containing dt.

    The end is exclusive, so an event at Sunday 23:59:59.999 belongs to the
    week and one at Monday 00:00:00.000 belongs to the next.
    """
    if dt is None:
        dt = utcnow()
    start = week_start(dt)
    return start, start + WEEK


def get_next_week_iso(now: datetime | None = None) -> str:
    """Get the ISO week string for the week after the current one."""
    if now is None:
        now = utcnow()
    return get_week_iso(now + WEEK)


def iso_week_to_dates(week_iso: str) -> tuple[date, date]:
    """Convert '2026-W09' to (Monday date, Sunday date).

    Uses ISO 8601: Monday is day 1 of the ISO week.
    """
    # Parse "YYYY-WNN" → Monday of that ISO week
    monday = datetime.strptime(week_iso + "-1", "%G-W%V-%u").date()
    sunday = monday + timedelta(days=6)
    return monday, sunday


def iso_week_bounds(week_iso: str) -> tuple[datetime, datetime]:
    """Half-open UTC datetime range of an ISO week string."""
    monday, _ = iso_week_to_dates(week_iso)
    start = start_of_day(monday)
    return start, start + WEEK


def iter_week_starts(first: datetime, count: int) -> list[datetime]:
    """`count` consecutive week starts beginning at the week containing `first`."""
    start = week_start(first)
    return [start + WEEK * i for i in range(count)]

