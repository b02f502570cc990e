"""Event store: weekly range-partitioned events table and partition metadata.

Partitions themselves are created by the partition job
(gamepulse.events.partitions), which also records them in event_partitions.

Revision ID: 001_event_store
Revises: None
Create Date: 2026-10-05
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_event_store"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Events (partitioned by received_at, one partition per ISO week) ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS events (
            id VARCHAR(36) NOT NULL,
            received_at TIMESTAMPTZ NOT NULL,
            event_type VARCHAR(64) NOT NULL,
            user_id VARCHAR(128) NOT NULL,
            payload JSONB NOT NULL DEFAULT '{}'::jsonb,
            processed_at TIMESTAMPTZ,
            processing_attempts INTEGER NOT NULL DEFAULT 0,
            processing_error TEXT,
            PRIMARY KEY (id, received_at)
        ) PARTITION BY RANGE (received_at)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_events_unprocessed
        ON events(event_type, received_at)
        WHERE processed_at IS NULL
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_events_user_received
        ON events(user_id, received_at)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_events_type_received
        ON events(event_type, received_at)
    """)

    # --- Partition metadata ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS event_partitions (
            name VARCHAR(64) PRIMARY KEY,
            range_start TIMESTAMPTZ NOT NULL UNIQUE,
            range_end TIMESTAMPTZ NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'attached',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            detached_at TIMESTAMPTZ,
            CONSTRAINT event_partitions_range_check CHECK (range_end > range_start)
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS event_partitions CASCADE")
    op.execute("DROP TABLE IF EXISTS events CASCADE")
