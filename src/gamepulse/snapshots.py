"""Versioned, read-optimized snapshot views for dashboards.

A rebuild writes its rows under a new version number and then moves the
view's pointer in the same transaction, so readers only ever see a complete
version. If a rebuild fails, the pointer keeps the previous version and is
flagged ``failed``; reads keep working and report ``stale=True``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gamepulse.aggregation.analytics import level_performance
from gamepulse.aggregation.campaign_roi import campaign_totals
from gamepulse.aggregation.cohorts import HORIZONS, load_cohorts, rollup_by, rollup_retention
from gamepulse.aggregation.leaderboard import top_players
from gamepulse.db.models import DailyMetrics, SnapshotRow, SnapshotView, WeeklyMetrics
from gamepulse.errors import NotFoundError, StateError
from gamepulse.week_utils import day_bounds, ensure_utc, utcnow

logger = logging.getLogger(__name__)

SnapshotBuilder = Callable[[AsyncSession, datetime], Awaitable[list[dict[str, Any]]]]

DAILY_WINDOW_DAYS = 90
WEEKLY_WINDOW = 26
COHORT_WINDOW_DAYS = 90
ROI_WINDOW_DAYS = 30
LEADERBOARD_SIZE = 100
LEVEL_WINDOW_DAYS = 7


@dataclass(frozen=True)
class SnapshotResult:
    view: str
    rows: list[dict[str, Any]]
    version: int
    status: str
    refreshed_at: datetime | None
    stale: bool


@dataclass
class RefreshOutcome:
    view: str
    ok: bool
    version: int | None = None
    rows: int = 0
    error: str | None = None
    superseded: bool = False


@dataclass
class RefreshReport:
    outcomes: list[RefreshOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)

    @property
    def failed(self) -> list[str]:
        return [o.view for o in self.outcomes if not o.ok]


def _iso(value: date | datetime | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    return value.isoformat()


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


async def build_daily_overview(db: AsyncSession, now: datetime) -> list[dict[str, Any]]:
    since = now.date() - timedelta(days=DAILY_WINDOW_DAYS)
    result = await db.execute(
        select(DailyMetrics).where(DailyMetrics.metric_date >= since).order_by(DailyMetrics.metric_date)
    )
    return [
        {
            "date": _iso(m.metric_date),
            "dau": m.dau,
            "mau": m.mau,
            "new_users": m.new_users,
            "sessions": m.sessions,
            "games_ended": m.games_ended,
            "crashes": m.crashes,
            "crashed_users": m.crashed_users,
            "revenue_usd": m.revenue_usd,
            "paying_users": m.paying_users,
            "levels_completed": m.levels_completed,
            "continues_used": m.continues_used,
            "coins_earned": m.coins_earned,
            "coins_spent": m.coins_spent,
            "gems_earned": m.gems_earned,
            "gems_spent": m.gems_spent,
            "arpdau": round(m.revenue_usd / m.dau, 4) if m.dau else None,
        }
        for m in result.scalars().all()
    ]


async def build_weekly_overview(db: AsyncSession, now: datetime) -> list[dict[str, Any]]:
    result = await db.execute(select(WeeklyMetrics).order_by(WeeklyMetrics.week_start.desc()).limit(WEEKLY_WINDOW))
    rows = [
        {
            "week": w.week_iso,
            "week_start": _iso(w.week_start),
            "wau": w.wau,
            "new_users": w.new_users,
            "games_ended": w.games_ended,
            "revenue_usd": w.revenue_usd,
        }
        for w in result.scalars().all()
    ]
    rows.reverse()
    return rows


def _retention_row(campaign_id: str, rollups: dict[int, Any]) -> dict[str, Any]:
    row: dict[str, Any] = {"campaign_id": campaign_id}
    for horizon in HORIZONS:
        rollup = rollups[horizon]
        row[f"d{horizon}_retained"] = rollup.retained
        row[f"d{horizon}_size"] = rollup.size
        row[f"d{horizon}_pct"] = rollup.percent
    return row


async def build_cohort_retention(db: AsyncSession, now: datetime) -> list[dict[str, Any]]:
    today = now.date()
    cohorts = await load_cohorts(db, today - timedelta(days=COHORT_WINDOW_DAYS), today)
    rows = [_retention_row("all", {h: rollup_retention(cohorts, h) for h in HORIZONS})]
    for campaign_id, rollups in sorted(rollup_by(cohorts, lambda c: c.campaign_id).items()):
        rows.append(_retention_row(campaign_id, rollups))
    return rows


async def build_campaign_roi(db: AsyncSession, now: datetime) -> list[dict[str, Any]]:
    today = now.date()
    totals = await campaign_totals(db, today - timedelta(days=ROI_WINDOW_DAYS), today)
    return [
        {
            "campaign_id": campaign_id,
            "installs": t.installs,
            "cost_usd": t.cost_usd,
            "revenue_usd": t.revenue_usd,
            "cpi": t.cpi,
            "roi_pct": t.roi_pct,
        }
        for campaign_id, t in totals.items()
    ]


async def build_leaderboard_top(db: AsyncSession, now: datetime) -> list[dict[str, Any]]:
    return [
        {
            "rank": idx + 1,
            "user_id": e.user_id,
            "high_score": e.high_score,
            "total_games": e.total_games,
            "last_played_at": _iso(e.last_played_at),
        }
        for idx, e in enumerate(await top_players(db, LEADERBOARD_SIZE))
    ]


async def build_level_performance(db: AsyncSession, now: datetime) -> list[dict[str, Any]]:
    """Per-day, per-level tries and completions over the last week, today included."""
    today = now.date()
    rows: list[dict[str, Any]] = []
    for offset in range(LEVEL_WINDOW_DAYS - 1, -1, -1):
        day = today - timedelta(days=offset)
        start, end = day_bounds(day)
        levels = await level_performance(db, start, end)
        rows.extend(
            {
                "date": _iso(day),
                "level_id": stats.level_id,
                "tries": stats.tries,
                "completions": stats.completions,
                "failures": stats.failures,
                "players": stats.players,
                "completion_rate": stats.completion_rate,
            }
            for stats in levels
        )
    return rows


SNAPSHOT_BUILDERS: dict[str, SnapshotBuilder] = {
    "daily_overview": build_daily_overview,
    "weekly_overview": build_weekly_overview,
    "cohort_retention": build_cohort_retention,
    "campaign_roi": build_campaign_roi,
    "leaderboard_top": build_leaderboard_top,
    "level_performance": build_level_performance,
}


# ---------------------------------------------------------------------------
# Rebuild / read
# ---------------------------------------------------------------------------


async def _pointer(db: AsyncSession, view: str) -> SnapshotView:
    pointer = await db.get(SnapshotView, view, populate_existing=True)
    if pointer is None:
        pointer = SnapshotView(name=view, current_version=0, status="fresh")
        db.add(pointer)
        await db.flush()
    return pointer


async def _mark_failed(db: AsyncSession, view: str, old_version: int, error: str) -> bool:
    """Flag the view failed unless another rebuild already moved it past ``old_version``."""
    result = await db.execute(
        update(SnapshotView)
        .where(SnapshotView.name == view, SnapshotView.current_version == old_version)
        .values(status="failed", last_error=error[:2000])
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return (result.rowcount or 0) == 1


async def rebuild(
    db: AsyncSession,
    view: str,
    now: datetime | None = None,
    builders: dict[str, SnapshotBuilder] | None = None,
) -> RefreshOutcome:
    """Build a new version of ``view`` and swap it in atomically.

    A rebuild that loses the swap to a concurrent one leaves the winner's
    pointer untouched and reports ``superseded=True``.
    """
    now = ensure_utc(now or utcnow())
    builders = builders if builders is not None else SNAPSHOT_BUILDERS
    builder = builders.get(view)
    if builder is None:
        raise NotFoundError(f"Unknown snapshot view {view}")

    pointer = await _pointer(db, view)
    old_version = pointer.current_version
    pointer.status = "refreshing"
    pointer.refresh_started_at = now
    await db.commit()

    new_version = old_version + 1
    try:
        rows = await builder(db, now)
        db.add_all(
            SnapshotRow(view_name=view, version=new_version, position=idx, data=data) for idx, data in enumerate(rows)
        )
        await db.flush()
        swapped = await db.execute(
            update(SnapshotView)
            .where(SnapshotView.name == view, SnapshotView.current_version == old_version)
            .values(current_version=new_version, status="fresh", refreshed_at=now, last_error=None)
            .execution_options(synchronize_session=False)
        )
        if (swapped.rowcount or 0) != 1:
            raise StateError(f"Snapshot {view} was rebuilt concurrently")
        await db.execute(
            delete(SnapshotRow)
            .where(SnapshotRow.view_name == view, SnapshotRow.version < new_version)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception as exc:
        await db.rollback()
        if not await _mark_failed(db, view, old_version, f"{type(exc).__name__}: {exc}"):
            pointer = await _pointer(db, view)
            logger.info("Snapshot %s was rebuilt concurrently, version %d is live", view, pointer.current_version)
            return RefreshOutcome(view=view, ok=True, version=pointer.current_version, superseded=True)
        logger.exception("Snapshot %s rebuild failed; version %d stays live", view, old_version)
        raise

    logger.info("Snapshot %s rebuilt: version %d, %d rows", view, new_version, len(rows))
    return RefreshOutcome(view=view, ok=True, version=new_version, rows=len(rows))


async def read(
    db: AsyncSession,
    view: str,
    now: datetime | None = None,
    max_age_seconds: int = 7200,
) -> SnapshotResult:
    """Rows of the live version plus a staleness indicator. Never fails on a bad refresh."""
    now = ensure_utc(now or utcnow())
    pointer = await db.get(SnapshotView, view, populate_existing=True)
    if pointer is None or pointer.current_version == 0:
        status = pointer.status if pointer is not None else "missing"
        return SnapshotResult(view=view, rows=[], version=0, status=status, refreshed_at=None, stale=True)

    result = await db.execute(
        select(SnapshotRow.data)
        .where(SnapshotRow.view_name == view, SnapshotRow.version == pointer.current_version)
        .order_by(SnapshotRow.position)
    )
    refreshed_at = ensure_utc(pointer.refreshed_at) if pointer.refreshed_at else None
    too_old = refreshed_at is None or (now - refreshed_at).total_seconds() > max_age_seconds
    return SnapshotResult(
        view=view,
        rows=list(result.scalars().all()),
        version=pointer.current_version,
        status=pointer.status,
        refreshed_at=refreshed_at,
        stale=pointer.status != "fresh" or too_old,
    )


async def refresh_all(
    db: AsyncSession,
    now: datetime | None = None,
    builders: dict[str, SnapshotBuilder] | None = None,
) -> RefreshReport:
    """Rebuild every view. Operators may call this to force early recomputation.

    A failing view is reported and the remaining views are still rebuilt.
    """
    now = ensure_utc(now or utcnow())
    builders = builders if builders is not None else SNAPSHOT_BUILDERS
    report = RefreshReport()
    for view in builders:
        try:
            outcome = await rebuild(db, view, now, builders)
        except Exception as exc:  # noqa: BLE001
            outcome = RefreshOutcome(view=view, ok=False, error=f"{type(exc).__name__}: {exc}")
        report.outcomes.append(outcome)
    if report.failed:
        logger.warning("Snapshot refresh finished with failures: %s", ", ".join(report.failed))
    return report
