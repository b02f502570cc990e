"""Leaderboards, weekly tournaments and the prize ledger.

Revision ID: 002_leaderboards_tournaments
Revises: 001_event_store
Create Date: 2026-10-05
"""

from collections.abc import Sequence

from alembic import op

revision: str = "002_leaderboards_tournaments"
down_revision: str | None = "001_event_store"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- All-time leaderboard ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS leaderboard_entries (
            user_id VARCHAR(128) PRIMARY KEY,
            high_score BIGINT NOT NULL DEFAULT 0,
            total_games INTEGER NOT NULL DEFAULT 0,
            total_playtime_seconds BIGINT NOT NULL DEFAULT 0,
            last_played_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_leaderboard_rank
        ON leaderboard_entries(high_score DESC, last_played_at ASC)
    """)

    # --- Tournaments ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS tournaments (
            id VARCHAR(32) PRIMARY KEY,
            name VARCHAR(128) NOT NULL,
            week_iso VARCHAR(10) NOT NULL UNIQUE,
            status VARCHAR(16) NOT NULL DEFAULT 'upcoming',
            start_date TIMESTAMPTZ NOT NULL,
            end_date TIMESTAMPTZ NOT NULL,
            registration_start TIMESTAMPTZ NOT NULL,
            registration_end TIMESTAMPTZ NOT NULL,
            prize_pool INTEGER NOT NULL DEFAULT 0,
            max_participants INTEGER NOT NULL DEFAULT 10000,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            closed_at TIMESTAMPTZ,
            CONSTRAINT tournaments_dates_check CHECK (end_date > start_date),
            CONSTRAINT tournaments_status_check
                CHECK (status IN ('upcoming', 'active', 'ended', 'cancelled'))
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_tournaments_status_start
        ON tournaments(status, start_date)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS tournament_participants (
            tournament_id VARCHAR(32) NOT NULL REFERENCES tournaments(id) ON DELETE CASCADE,
            user_id VARCHAR(128) NOT NULL,
            best_score BIGINT NOT NULL DEFAULT 0,
            total_games INTEGER NOT NULL DEFAULT 0,
            first_attempt_at TIMESTAMPTZ,
            last_attempt_at TIMESTAMPTZ,
            final_rank INTEGER,
            prize_won BOOLEAN NOT NULL DEFAULT FALSE,
            PRIMARY KEY (tournament_id, user_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_participants_ranking
        ON tournament_participants(tournament_id, best_score DESC, last_attempt_at ASC)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS tournament_event_ledger (
            tournament_id VARCHAR(32) NOT NULL REFERENCES tournaments(id) ON DELETE CASCADE,
            event_id VARCHAR(36) NOT NULL,
            PRIMARY KEY (tournament_id, event_id)
        )
    """)

    # --- Prize ledger ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS prizes (
            prize_id VARCHAR(180) PRIMARY KEY,
            tournament_id VARCHAR(32) NOT NULL REFERENCES tournaments(id),
            user_id VARCHAR(128) NOT NULL,
            rank INTEGER NOT NULL,
            coins INTEGER NOT NULL,
            gems INTEGER NOT NULL,
            awarded_at TIMESTAMPTZ NOT NULL,
            claimed_at TIMESTAMPTZ,
            CONSTRAINT prizes_tournament_user_key UNIQUE (tournament_id, user_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_prizes_user_pending
        ON prizes(user_id, awarded_at)
        WHERE claimed_at IS NULL
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS prizes CASCADE")
    op.execute("DROP TABLE IF EXISTS tournament_event_ledger CASCADE")
    op.execute("DROP TABLE IF EXISTS tournament_participants CASCADE")
    op.execute("DROP TABLE IF EXISTS tournaments CASCADE")
    op.execute("DROP TABLE IF EXISTS leaderboard_entries CASCADE")
