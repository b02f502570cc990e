"""ORM models for the event store, aggregates, tournaments and snapshots.

Tables are created by the Alembic revisions in ``alembic/versions``; on
PostgreSQL ``events`` is range-partitioned by ``received_at``. The models
describe the logical columns and are also used with ``create_all`` for
SQLite-backed tests.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from gamepulse.db.base import Base, JSONDocument

# Money columns come back as floats; analytics never needs exact decimals.
Money = Numeric(14, 4, asdecimal=False)


# ---------------------------------------------------------------------------
# Event store
# ---------------------------------------------------------------------------


class Event(Base):
    """Immutable player event. Only processing metadata mutates."""

    __tablename__ = "events"
    __table_args__ = (
        Index(
            "ix_events_unprocessed",
            "event_type",
            "received_at",
            postgresql_where=text("processed_at IS NULL"),
            sqlite_where=text("processed_at IS NULL"),
        ),
        Index("ix_events_user_received", "user_id", "received_at"),
        Index("ix_events_type_received", "event_type", "received_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False, default=dict)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processing_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)


class EventPartition(Base):
    """Weekly partition of the events table."""

    __tablename__ = "event_partitions"
    __table_args__ = (CheckConstraint("range_end > range_start", name="event_partitions_range_check"),)

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    range_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, unique=True)
    range_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="attached")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    detached_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Leaderboards
# ---------------------------------------------------------------------------


class LeaderboardEntry(Base):
    """All-time endless-mode leaderboard row, one per user."""

    __tablename__ = "leaderboard_entries"
    __table_args__ = (Index("ix_leaderboard_rank", "high_score", "last_played_at"),)

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    high_score: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_games: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_playtime_seconds: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_played_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Tournaments & prizes
# ---------------------------------------------------------------------------


class Tournament(Base):
    """Weekly tournament. id is derived from the ISO week."""

    __tablename__ = "tournaments"
    __table_args__ = (
        CheckConstraint("end_date > start_date", name="tournaments_dates_check"),
        CheckConstraint(
            "status IN ('upcoming', 'active', 'ended', 'cancelled')",
            name="tournaments_status_check",
        ),
        Index("ix_tournaments_status_start", "status", "start_date"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    week_iso: Mapped[str] = mapped_column(String(10), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="upcoming")
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    registration_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    registration_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    prize_pool: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=10_000)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TournamentParticipant(Base):
    """A player's standing inside one tournament."""

    __tablename__ = "tournament_participants"
    __table_args__ = (Index("ix_participants_ranking", "tournament_id", "best_score", "last_attempt_at"),)

    tournament_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    best_score: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_games: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    final_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    prize_won: Mapped[bool] = mapped_column(default=False, nullable=False)


class TournamentEventLedger(Base):
    """Events already folded into a tournament's standings."""

    __tablename__ = "tournament_event_ledger"

    tournament_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    event_id: Mapped[str] = mapped_column(String(36), primary_key=True)


class Prize(Base):
    """Write-once prize awarded at tournament close."""

    __tablename__ = "prizes"
    __table_args__ = (
        UniqueConstraint("tournament_id", "user_id", name="prizes_tournament_user_key"),
        Index("ix_prizes_user_pending", "user_id", "awarded_at"),
    )

    prize_id: Mapped[str] = mapped_column(String(180), primary_key=True)
    tournament_id: Mapped[str] = mapped_column(String(32), nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    coins: Mapped[int] = mapped_column(Integer, nullable=False)
    gems: Mapped[int] = mapped_column(Integer, nullable=False)
    awarded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------


class DailyMetrics(Base):
    """Per-day product counters. Unique counts are distinct users."""

    __tablename__ = "daily_metrics"

    metric_date: Mapped[date] = mapped_column(Date, primary_key=True)
    dau: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    mau: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    new_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sessions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    games_started: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    games_ended: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    crashes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    crashed_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    revenue_usd: Mapped[float] = mapped_column(Money, nullable=False, default=0.0)
    ad_revenue_usd: Mapped[float] = mapped_column(Money, nullable=False, default=0.0)
    iap_revenue_usd: Mapped[float] = mapped_column(Money, nullable=False, default=0.0)
    paying_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    levels_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    continues_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    coins_earned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    coins_spent: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    gems_earned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    gems_spent: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    computed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class DailyPlatformMetrics(Base):
    """Distinct active users per platform per day."""

    __tablename__ = "daily_platform_metrics"

    metric_date: Mapped[date] = mapped_column(Date, primary_key=True)
    platform: Mapped[str] = mapped_column(String(16), primary_key=True)
    dau: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class DailyGameModeMetrics(Base):
    """Finished games and distinct players per game mode per day."""

    __tablename__ = "daily_game_mode_metrics"

    metric_date: Mapped[date] = mapped_column(Date, primary_key=True)
    game_mode: Mapped[str] = mapped_column(String(32), primary_key=True)
    games_ended: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    players: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class DailyCurrency(Base):
    """Coins or gems moved on a day, by where they came from or went.

    ``direction`` is ``earned`` or ``spent``; ``category`` is the event's
    ``source`` (earned) or ``spent_on`` (spent), ``unknown`` when absent.
    """

    __tablename__ = "daily_currency"
    __table_args__ = (
        CheckConstraint("direction IN ('earned', 'spent')", name="daily_currency_direction_check"),
    )

    metric_date: Mapped[date] = mapped_column(Date, primary_key=True)
    currency: Mapped[str] = mapped_column(String(16), primary_key=True)
    direction: Mapped[str] = mapped_column(String(8), primary_key=True)
    category: Mapped[str] = mapped_column(String(64), primary_key=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    events: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class DailyFunnelStep(Base):
    """Distinct users reaching an onboarding funnel step on a day."""

    __tablename__ = "daily_funnel_steps"

    metric_date: Mapped[date] = mapped_column(Date, primary_key=True)
    step: Mapped[str] = mapped_column(String(32), primary_key=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class WeeklyMetrics(Base):
    """Per-ISO-week counters aligned with event partitions."""

    __tablename__ = "weekly_metrics"

    week_iso: Mapped[str] = mapped_column(String(10), primary_key=True)
    week_start: Mapped[date] = mapped_column(Date, nullable=False)
    wau: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    new_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    games_ended: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    revenue_usd: Mapped[float] = mapped_column(Money, nullable=False, default=0.0)
    computed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class UserTotals(Base):
    """Lifetime counters per user, recomputed from that user's history."""

    __tablename__ = "user_totals"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sessions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    games_played: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    revenue_usd: Mapped[float] = mapped_column(Money, nullable=False, default=0.0)
    coins_earned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    coins_spent: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    gems_earned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    gems_spent: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    levels_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    continues_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ads_watched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    purchases_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# ---------------------------------------------------------------------------
# Cohorts & campaigns
# ---------------------------------------------------------------------------


class UserAcquisition(Base):
    """First install of a user, with attribution."""

    __tablename__ = "user_acquisitions"
    __table_args__ = (Index("ix_acquisitions_install", "install_date", "campaign_id"),)

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    installed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    install_date: Mapped[date] = mapped_column(Date, nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False, default="organic")
    platform: Mapped[str] = mapped_column(String(16), nullable=False, default="unknown")


class CohortRetention(Base):
    """Retention counts of one (install date, campaign, platform) cohort.

    A ``retained_dN`` column stays NULL until the cohort is old enough for
    that horizon.
    """

    __tablename__ = "cohort_retention"

    cohort_date: Mapped[date] = mapped_column(Date, primary_key=True)
    campaign_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    platform: Mapped[str] = mapped_column(String(16), primary_key=True)
    cohort_size: Mapped[int] = mapped_column(Integer, nullable=False)
    retained_d1: Mapped[int | None] = mapped_column(Integer, nullable=True)
    retained_d2: Mapped[int | None] = mapped_column(Integer, nullable=True)
    retained_d3: Mapped[int | None] = mapped_column(Integer, nullable=True)
    retained_d7: Mapped[int | None] = mapped_column(Integer, nullable=True)
    retained_d30: Mapped[int | None] = mapped_column(Integer, nullable=True)
    computed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CampaignCost(Base):
    """Daily spend imported from the ad network."""

    __tablename__ = "campaign_costs"

    campaign_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    cost_date: Mapped[date] = mapped_column(Date, primary_key=True)
    cost_usd: Mapped[float] = mapped_column(Money, nullable=False, default=0.0)
    impressions: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    clicks: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    reported_installs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    imported_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CampaignMetrics(Base):
    """Daily campaign performance. cpi/roi_pct are NULL when undefined."""

    __tablename__ = "campaign_metrics"

    campaign_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    metric_date: Mapped[date] = mapped_column(Date, primary_key=True)
    installs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_usd: Mapped[float] = mapped_column(Money, nullable=False, default=0.0)
    revenue_usd: Mapped[float] = mapped_column(Money, nullable=False, default=0.0)
    cpi: Mapped[float | None] = mapped_column(Money, nullable=True)
    roi_pct: Mapped[float | None] = mapped_column(Money, nullable=True)
    computed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Snapshots & jobs
# ---------------------------------------------------------------------------


class SnapshotView(Base):
    """Pointer to the live version of a snapshot view."""

    __tablename__ = "snapshot_views"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    current_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="fresh")
    refreshed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refresh_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)


class SnapshotRow(Base):
    """One row of a versioned snapshot."""

    __tablename__ = "snapshot_rows"

    view_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    position: Mapped[int] = mapped_column(Integer, primary_key=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)


class JobState(Base):
    """Bookkeeping and single-flight lock for a named scheduled job."""

    __tablename__ = "job_state"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="idle")
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lock_owner: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_success_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    run_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skip_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
