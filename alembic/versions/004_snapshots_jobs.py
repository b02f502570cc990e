"""Versioned snapshot views and scheduled job state.

Revision ID: 004_snapshots_jobs
Revises: 003_analytics
Create Date: 2026-10-07
"""

from collections.abc import Sequence

from alembic import op

revision: str = "004_snapshots_jobs"
down_revision: str | None = "003_analytics"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Snapshot views ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS snapshot_views (
            name VARCHAR(64) PRIMARY KEY,
            current_version INTEGER NOT NULL DEFAULT 0,
            status VARCHAR(16) NOT NULL DEFAULT 'fresh',
            refreshed_at TIMESTAMPTZ,
            refresh_started_at TIMESTAMPTZ,
            last_error TEXT
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS snapshot_rows (
            view_name VARCHAR(64) NOT NULL,
            version INTEGER NOT NULL,
            position INTEGER NOT NULL,
            data JSONB NOT NULL,
            PRIMARY KEY (view_name, version, position)
        )
    """)

    # --- Job state ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS job_state (
            name VARCHAR(64) PRIMARY KEY,
            status VARCHAR(16) NOT NULL DEFAULT 'idle',
            locked_until TIMESTAMPTZ,
            lock_owner VARCHAR(64),
            last_started_at TIMESTAMPTZ,
            last_finished_at TIMESTAMPTZ,
            last_success_at TIMESTAMPTZ,
            next_run_at TIMESTAMPTZ,
            last_error TEXT,
            run_count INTEGER NOT NULL DEFAULT 0,
            failure_count INTEGER NOT NULL DEFAULT 0,
            skip_count INTEGER NOT NULL DEFAULT 0
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS job_state")
    op.execute("DROP TABLE IF EXISTS snapshot_rows")
    op.execute("DROP TABLE IF EXISTS snapshot_views")
