"""Currency flows, game-mode breakdown and richer per-user totals.

Revision ID: 005_economy_gameplay
Revises: 004_snapshots_jobs
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "005_economy_gameplay"
down_revision: str | None = "004_snapshots_jobs"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

DAILY_COLUMNS = (
    ("levels_completed", "INTEGER"),
    ("continues_used", "INTEGER"),
    ("coins_earned", "BIGINT"),
    ("coins_spent", "BIGINT"),
    ("gems_earned", "BIGINT"),
    ("gems_spent", "BIGINT"),
)

USER_COLUMNS = (
    ("coins_earned", "BIGINT"),
    ("coins_spent", "BIGINT"),
    ("gems_earned", "BIGINT"),
    ("gems_spent", "BIGINT"),
    ("levels_completed", "INTEGER"),
    ("continues_used", "INTEGER"),
    ("ads_watched", "INTEGER"),
    ("purchases_made", "INTEGER"),
)


def upgrade() -> None:
    for column, sql_type in DAILY_COLUMNS:
        op.execute(f"ALTER TABLE daily_metrics ADD COLUMN IF NOT EXISTS {column} {sql_type} NOT NULL DEFAULT 0")
    for column, sql_type in USER_COLUMNS:
        op.execute(f"ALTER TABLE user_totals ADD COLUMN IF NOT EXISTS {column} {sql_type} NOT NULL DEFAULT 0")

    op.execute("""
        CREATE TABLE IF NOT EXISTS daily_game_mode_metrics (
            metric_date DATE NOT NULL,
            game_mode VARCHAR(32) NOT NULL,
            games_ended INTEGER NOT NULL DEFAULT 0,
            players INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (metric_date, game_mode)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS daily_currency (
            metric_date DATE NOT NULL,
            currency VARCHAR(16) NOT NULL,
            direction VARCHAR(8) NOT NULL,
            category VARCHAR(64) NOT NULL,
            amount BIGINT NOT NULL DEFAULT 0,
            events INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (metric_date, currency, direction, category),
            CONSTRAINT daily_currency_direction_check CHECK (direction IN ('earned', 'spent'))
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS daily_currency CASCADE")
    op.execute("DROP TABLE IF EXISTS daily_game_mode_metrics CASCADE")
    for column, _ in USER_COLUMNS:
        op.execute(f"ALTER TABLE user_totals DROP COLUMN IF EXISTS {column}")
    for column, _ in DAILY_COLUMNS:
        op.execute(f"ALTER TABLE daily_metrics DROP COLUMN IF EXISTS {column}")
