"""Tests for ISO week and day boundaries."""

from datetime import date, datetime, timedelta, timezone

from gamepulse.week_utils import (
    day_bounds,
    ensure_utc,
    get_next_week_iso,
    get_week_boundaries,
    get_week_iso,
    iso_week_bounds,
    iso_week_to_dates,
    iter_week_starts,
    week_start,
)

UTC = timezone.utc


class TestWeekIso:
    """Test ISO week strings."""

    def test_monday_of_week_10(self):
        assert get_week_iso(datetime(2026, 3, 2, tzinfo=UTC)) == "2026-W10"

    def test_sunday_same_week(self):
        assert get_week_iso(date(2026, 3, 8)) == "2026-W10"

    def test_iso_year_differs_from_calendar_year(self):
        """Dec 29, 2025 belongs to ISO week 1 of 2026."""
        assert get_week_iso(date(2025, 12, 29)) == "2026-W01"
        assert get_week_iso(date(2021, 1, 3)) == "2020-W53"

    def test_next_week(self):
        assert get_next_week_iso(datetime(2026, 3, 8, 23, 50, tzinfo=UTC)) == "2026-W11"

    def test_round_trip_dates(self):
        monday, sunday = iso_week_to_dates("2026-W10")
        assert monday == date(2026, 3, 2)
        assert sunday == date(2026, 3, 8)


class TestBoundaries:
    """Weeks are half-open [Monday 00:00, next Monday 00:00) in UTC."""

    def test_last_millisecond_of_sunday_belongs_to_week(self):
        ts = datetime(2026, 3, 8, 23, 59, 59, 999000, tzinfo=UTC)
        start, end = get_week_boundaries(ts)
        assert start == datetime(2026, 3, 2, tzinfo=UTC)
        assert end == datetime(2026, 3, 9, tzinfo=UTC)
        assert start <= ts < end

    def test_monday_midnight_starts_next_week(self):
        ts = datetime(2026, 3, 9, tzinfo=UTC)
        start, _ = get_week_boundaries(ts)
        assert start == ts

    def test_iso_week_bounds(self):
        start, end = iso_week_bounds("2026-W10")
        assert start == datetime(2026, 3, 2, tzinfo=UTC)
        assert end - start == timedelta(weeks=1)

    def test_week_start_converts_timezones(self):
        """Sunday 23:30 in UTC-5 is Monday 04:30 UTC, i.e. the next week."""
        local = datetime(2026, 3, 8, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
        assert week_start(local) == datetime(2026, 3, 9, tzinfo=UTC)

    def test_day_bounds(self):
        start, end = day_bounds(date(2026, 3, 4))
        assert start == datetime(2026, 3, 4, tzinfo=UTC)
        assert end == datetime(2026, 3, 5, tzinfo=UTC)

    def test_iter_week_starts(self):
        starts = iter_week_starts(datetime(2026, 3, 4, 12, tzinfo=UTC), 3)
        assert starts == [
            datetime(2026, 3, 2, tzinfo=UTC),
            datetime(2026, 3, 9, tzinfo=UTC),
            datetime(2026, 3, 16, tzinfo=UTC),
        ]


class TestHelpers:
    def test_ensure_utc_attaches_tz_to_naive(self):
        assert ensure_utc(datetime(2026, 3, 2, 10)).tzinfo == UTC
