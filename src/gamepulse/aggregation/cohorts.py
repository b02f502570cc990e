"""Install cohorts and retention.

A cohort is every user whose first install happened on the same UTC day,
sliced by campaign and platform. ``retained_dN`` counts cohort members
active exactly N days after install. A horizon stays NULL until the cohort
is old enough to report it, and rollups skip those cohorts instead of
treating them as zero.

Rollups across cohorts add numerators and denominators separately and
divide once::

    C1: 20 / 100, C2: 8 / 10  ->  28 / 110 = 25.45 %   (not (20 % + 80 %) / 2)
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import distinct, exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gamepulse.aggregation.analytics import INSTALL_EVENTS
from gamepulse.db.models import CohortRetention, Event, UserAcquisition
from gamepulse.week_utils import day_bounds, ensure_utc, utcnow

logger = logging.getLogger(__name__)

HORIZONS: tuple[int, ...] = (1, 2, 3, 7, 30)
ACTIVITY_EVENTS = ("app_launched", "game_started", "session_started")
ORGANIC = "organic"
UNKNOWN_PLATFORM = "unknown"
DEFAULT_LOOKBACK_DAYS = 35


@dataclass(frozen=True)
class RetentionRollup:
    horizon: int
    cohorts: int
    retained: int
    size: int

    @property
    def rate(self) -> float | None:
        """retained / size, or None when no cohort is mature for this horizon."""
        if self.size == 0:
            return None
        return self.retained / self.size

    @property
    def percent(self) -> float | None:
        rate = self.rate
        return None if rate is None else round(rate * 100, 2)


def horizon_column(horizon: int) -> str:
    if horizon not in HORIZONS:
        msg = f"Unsupported retention horizon: {horizon}"
        raise ValueError(msg)
    return f"retained_d{horizon}"


def is_mature(cohort_date: date, horizon: int, today: date) -> bool:
    return today >= cohort_date + timedelta(days=horizon)


def rollup_retention(rows: Iterable[Any], horizon: int) -> RetentionRollup:
    """Combine cohorts for one horizon as Σretained / Σsize."""
    column = horizon_column(horizon)
    cohorts = retained = size = 0
    for row in rows:
        value = getattr(row, column)
        if value is None:
            continue
        cohorts += 1
        retained += value
        size += row.cohort_size
    return RetentionRollup(horizon=horizon, cohorts=cohorts, retained=retained, size=size)


def rollup_by(
    rows: Iterable[Any],
    key: Callable[[Any], Any],
    horizons: Iterable[int] = HORIZONS,
) -> dict[Any, dict[int, RetentionRollup]]:
    """Group cohorts by ``key`` (e.g. campaign) and roll each group up per horizon."""
    groups: dict[Any, list[Any]] = defaultdict(list)
    for row in rows:
        groups[key(row)].append(row)
    horizons = tuple(horizons)
    return {k: {h: rollup_retention(group, h) for h in horizons} for k, group in groups.items()}


def _attribution(payload: dict[str, Any] | None) -> tuple[str, str]:
    payload = payload or {}
    campaign = payload.get("campaign_id")
    platform = payload.get("platform")
    campaign_id = str(campaign).strip() if campaign not in (None, "") else ORGANIC
    platform_name = str(platform).strip().lower() if platform not in (None, "") else UNKNOWN_PLATFORM
    return campaign_id[:64] or ORGANIC, platform_name[:16] or UNKNOWN_PLATFORM


async def rebuild_acquisitions(db: AsyncSession) -> int:
    """Record the first install of every user not yet acquired. Does not commit.

    Install time is the server receive time, so a user's first install never
    changes once recorded.
    """
    known = select(UserAcquisition.user_id)
    result = await db.execute(
        select(Event)
        .where(Event.event_type.in_(INSTALL_EVENTS), Event.user_id.not_in(known))
        .order_by(Event.user_id, Event.received_at, Event.id)
    )
    added = 0
    seen: set[str] = set()
    for event in result.scalars().all():
        if event.user_id in seen:
            continue
        seen.add(event.user_id)
        campaign_id, platform = _attribution(event.payload)
        installed_at = ensure_utc(event.received_at)
        db.add(
            UserAcquisition(
                user_id=event.user_id,
                installed_at=installed_at,
                install_date=installed_at.date(),
                campaign_id=campaign_id,
                platform=platform,
            )
        )
        added += 1
    return added


async def _cohort_sizes(db: AsyncSession, cohort_date: date) -> dict[tuple[str, str], int]:
    result = await db.execute(
        select(UserAcquisition.campaign_id, UserAcquisition.platform, func.count())
        .where(UserAcquisition.install_date == cohort_date)
        .group_by(UserAcquisition.campaign_id, UserAcquisition.platform)
    )
    return {(campaign, platform): int(n) for campaign, platform, n in result.all()}


async def _retained(db: AsyncSession, cohort_date: date, horizon: int) -> dict[tuple[str, str], int]:
    """Distinct cohort members active on install day + horizon."""
    start, end = day_bounds(cohort_date + timedelta(days=horizon))
    active = exists().where(
        Event.user_id == UserAcquisition.user_id,
        Event.event_type.in_(ACTIVITY_EVENTS),
        Event.received_at >= start,
        Event.received_at < end,
    )
    result = await db.execute(
        select(UserAcquisition.campaign_id, UserAcquisition.platform, func.count(distinct(UserAcquisition.user_id)))
        .where(UserAcquisition.install_date == cohort_date, active)
        .group_by(UserAcquisition.campaign_id, UserAcquisition.platform)
    )
    return {(campaign, platform): int(n) for campaign, platform, n in result.all()}


async def compute_cohort_day(db: AsyncSession, cohort_date: date, today: date, now: datetime) -> int:
    """Overwrite the cohort rows of one install date. Does not commit."""
    sizes = await _cohort_sizes(db, cohort_date)
    if not sizes:
        return 0

    retained: dict[int, dict[tuple[str, str], int]] = {}
    for horizon in HORIZONS:
        if is_mature(cohort_date, horizon, today):
            retained[horizon] = await _retained(db, cohort_date, horizon)

    for (campaign_id, platform), size in sizes.items():
        values = {
            horizon_column(h): (retained[h].get((campaign_id, platform), 0) if h in retained else None)
            for h in HORIZONS
        }
        await db.merge(
            CohortRetention(
                cohort_date=cohort_date,
                campaign_id=campaign_id,
                platform=platform,
                cohort_size=size,
                computed_at=now,
                **values,
            )
        )
    return len(sizes)


async def aggregate_cohorts(
    db: AsyncSession,
    today: date | None = None,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    now: datetime | None = None,
) -> int:
    """Daily entry point: refresh acquisitions, then recompute recent cohorts.

    Cohorts older than the lookback have every horizon filled and no longer
    change.
    """
    now = ensure_utc(now or utcnow())
    today = today or now.date()
    acquired = await rebuild_acquisitions(db)
    await db.flush()

    rows = 0
    for offset in range(lookback_days, -1, -1):
        rows += await compute_cohort_day(db, today - timedelta(days=offset), today, now)
    await db.commit()
    logger.info("Cohorts refreshed: %d new acquisitions, %d cohort rows", acquired, rows)
    return rows


async def load_cohorts(db: AsyncSession, start: date, end: date) -> list[CohortRetention]:
    """Cohort rows with install date in [start, end]."""
    result = await db.execute(
        select(CohortRetention)
        .where(CohortRetention.cohort_date >= start, CohortRetention.cohort_date <= end)
        .order_by(CohortRetention.cohort_date, CohortRetention.campaign_id, CohortRetention.platform)
    )
    return list(result.scalars().all())
