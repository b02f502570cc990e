"""Product analytics, install cohorts and campaign performance.

Revision ID: 003_analytics
Revises: 002_leaderboards_tournaments
Create Date: 2026-10-06
"""

from collections.abc import Sequence

from alembic import op

revision: str = "003_analytics"
down_revision: str | None = "002_leaderboards_tournaments"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Daily / weekly metrics ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS daily_metrics (
            metric_date DATE PRIMARY KEY,
            dau INTEGER NOT NULL DEFAULT 0,
            mau INTEGER NOT NULL DEFAULT 0,
            new_users INTEGER NOT NULL DEFAULT 0,
            sessions INTEGER NOT NULL DEFAULT 0,
            games_started INTEGER NOT NULL DEFAULT 0,
            games_ended INTEGER NOT NULL DEFAULT 0,
            crashes INTEGER NOT NULL DEFAULT 0,
            crashed_users INTEGER NOT NULL DEFAULT 0,
            revenue_usd NUMERIC(14, 4) NOT NULL DEFAULT 0,
            ad_revenue_usd NUMERIC(14, 4) NOT NULL DEFAULT 0,
            iap_revenue_usd NUMERIC(14, 4) NOT NULL DEFAULT 0,
            paying_users INTEGER NOT NULL DEFAULT 0,
            computed_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS daily_platform_metrics (
            metric_date DATE NOT NULL,
            platform VARCHAR(16) NOT NULL,
            dau INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (metric_date, platform)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS daily_funnel_steps (
            metric_date DATE NOT NULL,
            step VARCHAR(32) NOT NULL,
            position INTEGER NOT NULL,
            users INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (metric_date, step)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS weekly_metrics (
            week_iso VARCHAR(10) PRIMARY KEY,
            week_start DATE NOT NULL,
            wau INTEGER NOT NULL DEFAULT 0,
            new_users INTEGER NOT NULL DEFAULT 0,
            games_ended INTEGER NOT NULL DEFAULT 0,
            revenue_usd NUMERIC(14, 4) NOT NULL DEFAULT 0,
            computed_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_totals (
            user_id VARCHAR(128) PRIMARY KEY,
            first_seen_at TIMESTAMPTZ NOT NULL,
            last_seen_at TIMESTAMPTZ NOT NULL,
            total_events INTEGER NOT NULL DEFAULT 0,
            sessions INTEGER NOT NULL DEFAULT 0,
            games_played INTEGER NOT NULL DEFAULT 0,
            revenue_usd NUMERIC(14, 4) NOT NULL DEFAULT 0
        )
    """)

    # --- Cohorts ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_acquisitions (
            user_id VARCHAR(128) PRIMARY KEY,
            installed_at TIMESTAMPTZ NOT NULL,
            install_date DATE NOT NULL,
            campaign_id VARCHAR(64) NOT NULL DEFAULT 'organic',
            platform VARCHAR(16) NOT NULL DEFAULT 'unknown'
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_acquisitions_install
        ON user_acquisitions(install_date, campaign_id)
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS cohort_retention (
            cohort_date DATE NOT NULL,
            campaign_id VARCHAR(64) NOT NULL,
            platform VARCHAR(16) NOT NULL,
            cohort_size INTEGER NOT NULL,
            retained_d1 INTEGER,
            retained_d2 INTEGER,
            retained_d3 INTEGER,
            retained_d7 INTEGER,
            retained_d30 INTEGER,
            computed_at TIMESTAMPTZ,
            PRIMARY KEY (cohort_date, campaign_id, platform)
        )
    """)

    # --- Campaigns ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS campaign_costs (
            campaign_id VARCHAR(64) NOT NULL,
            cost_date DATE NOT NULL,
            cost_usd NUMERIC(14, 4) NOT NULL DEFAULT 0,
            impressions BIGINT NOT NULL DEFAULT 0,
            clicks BIGINT NOT NULL DEFAULT 0,
            reported_installs INTEGER NOT NULL DEFAULT 0,
            imported_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            PRIMARY KEY (campaign_id, cost_date)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS campaign_metrics (
            campaign_id VARCHAR(64) NOT NULL,
            metric_date DATE NOT NULL,
            installs INTEGER NOT NULL DEFAULT 0,
            cost_usd NUMERIC(14, 4) NOT NULL DEFAULT 0,
            revenue_usd NUMERIC(14, 4) NOT NULL DEFAULT 0,
            cpi NUMERIC(14, 4),
            roi_pct NUMERIC(14, 4),
            computed_at TIMESTAMPTZ,
            PRIMARY KEY (campaign_id, metric_date)
        )
    """)


def downgrade() -> None:
    for table in (
        "campaign_metrics",
        "campaign_costs",
        "cohort_retention",
        "user_acquisitions",
        "user_totals",
        "weekly_metrics",
        "daily_funnel_steps",
        "daily_platform_metrics",
        "daily_metrics",
    ):
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE")
