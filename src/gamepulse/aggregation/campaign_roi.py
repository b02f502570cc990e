"""Campaign spend import and ROI.

Spend comes from an external ad-network API and is treated as fallible: the
import is retried with backoff, and when it still fails the ROI cycle is
skipped with a DependencyError while every other aggregator carries on.

Installs come from ``user_acquisitions`` and revenue from revenue events of
users acquired through the campaign. CPI and ROI are undefined (None), not
zero, when their denominator is zero.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Protocol

import httpx
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gamepulse.aggregation.analytics import REVENUE_EVENTS
from gamepulse.config import Settings
from gamepulse.db.models import CampaignCost, CampaignMetrics, Event, UserAcquisition
from gamepulse.errors import DependencyError
from gamepulse.week_utils import day_bounds, ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CostRecord:
    campaign_id: str
    cost_date: date
    cost_usd: float
    impressions: int = 0
    clicks: int = 0
    installs: int = 0

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CostRecord:
        return cls(
            campaign_id=str(raw["campaign_id"]),
            cost_date=date.fromisoformat(str(raw["date"])),
            cost_usd=float(raw.get("cost_usd") or 0.0),
            impressions=int(raw.get("impressions") or 0),
            clicks=int(raw.get("clicks") or 0),
            installs=int(raw.get("installs") or 0),
        )


class CostSource(Protocol):
    """Anything that can report daily campaign spend for a date range."""

    async def fetch_costs(self, start: date, end: date) -> list[CostRecord]: ...


class HttpCostSource:
    """Ad-network reporting API over HTTPS."""

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def fetch_costs(self, start: date, end: date) -> list[CostRecord]:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(
                    self.url,
                    params={"start_date": start.isoformat(), "end_date": end.isoformat()},
                    headers=headers,
                )
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise DependencyError(f"Cost source request failed: {exc}") from exc

        rows = body.get("costs", []) if isinstance(body, dict) else body
        try:
            return [CostRecord.from_dict(row) for row in rows]
        except (KeyError, TypeError, ValueError) as exc:
            raise DependencyError(f"Cost source returned malformed data: {exc}") from exc


def cost_source_from_settings(settings: Settings) -> CostSource | None:
    """The configured cost source, or None when spend import is disabled."""
    if not settings.cost_source_url:
        return None
    return HttpCostSource(settings.cost_source_url, settings.cost_source_api_key, settings.cost_import_timeout_seconds)


def compute_cpi(cost_usd: float, installs: int) -> float | None:
    if installs == 0:
        return None
    return round(cost_usd / installs, 4)


def compute_roi_pct(revenue_usd: float, cost_usd: float) -> float | None:
    if cost_usd == 0:
        return None
    return round((revenue_usd - cost_usd) / cost_usd * 100, 4)


@dataclass(frozen=True)
class CampaignRollup:
    installs: int
    cost_usd: float
    revenue_usd: float

    @property
    def cpi(self) -> float | None:
        return compute_cpi(self.cost_usd, self.installs)

    @property
    def roi_pct(self) -> float | None:
        return compute_roi_pct(self.revenue_usd, self.cost_usd)


def rollup_roi(rows: Iterable[Any]) -> CampaignRollup:
    """Sum installs, cost and revenue across rows, then derive CPI/ROI once."""
    installs, cost, revenue = 0, 0.0, 0.0
    for row in rows:
        installs += row.installs
        cost += row.cost_usd
        revenue += row.revenue_usd
    return CampaignRollup(installs=installs, cost_usd=round(cost, 4), revenue_usd=round(revenue, 4))


async def import_costs(
    db: AsyncSession,
    source: CostSource,
    start: date,
    end: date,
    max_attempts: int = 3,
    backoff_seconds: float = 2.0,
    now: datetime | None = None,
) -> int:
    """Fetch spend for [start, end] and upsert it. Raises DependencyError after the last attempt."""
    now = ensure_utc(now or utcnow())
    last_error: DependencyError | None = None
    records: list[CostRecord] | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            records = await source.fetch_costs(start, end)
            break
        except DependencyError as exc:
            last_error = exc
            logger.warning("Cost import attempt %d/%d failed: %s", attempt, max_attempts, exc)
            if attempt < max_attempts:
                await asyncio.sleep(backoff_seconds * 2 ** (attempt - 1))
    if records is None:
        raise DependencyError(f"Cost import failed after {max_attempts} attempts") from last_error

    for record in records:
        await db.merge(
            CampaignCost(
                campaign_id=record.campaign_id,
                cost_date=record.cost_date,
                cost_usd=record.cost_usd,
                impressions=record.impressions,
                clicks=record.clicks,
                reported_installs=record.installs,
                imported_at=now,
            )
        )
    await db.commit()
    logger.info("Imported %d campaign cost rows for %s..%s", len(records), start, end)
    return len(records)


async def _installs(db: AsyncSession, day: date) -> dict[str, int]:
    result = await db.execute(
        select(UserAcquisition.campaign_id, func.count())
        .where(UserAcquisition.install_date == day)
        .group_by(UserAcquisition.campaign_id)
    )
    return {campaign: int(n) for campaign, n in result.all()}


async def _costs(db: AsyncSession, day: date) -> dict[str, float]:
    result = await db.execute(
        select(CampaignCost.campaign_id, CampaignCost.cost_usd).where(CampaignCost.cost_date == day)
    )
    return {campaign: float(cost or 0.0) for campaign, cost in result.all()}


async def _revenue(db: AsyncSession, day: date) -> dict[str, float]:
    start, end = day_bounds(day)
    result = await db.execute(
        select(UserAcquisition.campaign_id, func.sum(Event.payload["revenue_usd"].as_float()))
        .select_from(Event)
        .join(UserAcquisition, UserAcquisition.user_id == Event.user_id)
        .where(Event.event_type.in_(REVENUE_EVENTS), Event.received_at >= start, Event.received_at < end)
        .group_by(UserAcquisition.campaign_id)
    )
    return {campaign: float(total or 0.0) for campaign, total in result.all()}


async def compute_campaign_day(db: AsyncSession, day: date, now: datetime) -> int:
    """Overwrite campaign metrics of one day. Does not commit."""
    installs = await _installs(db, day)
    costs = await _costs(db, day)
    revenue = await _revenue(db, day)

    campaigns = set(installs) | set(costs) | set(revenue)
    for campaign_id in campaigns:
        n_installs = installs.get(campaign_id, 0)
        cost = round(costs.get(campaign_id, 0.0), 4)
        rev = round(revenue.get(campaign_id, 0.0), 4)
        await db.merge(
            CampaignMetrics(
                campaign_id=campaign_id,
                metric_date=day,
                installs=n_installs,
                cost_usd=cost,
                revenue_usd=rev,
                cpi=compute_cpi(cost, n_installs),
                roi_pct=compute_roi_pct(rev, cost),
                computed_at=now,
            )
        )
    return len(campaigns)


async def aggregate_campaigns(
    db: AsyncSession,
    start: date,
    end: date,
    now: datetime | None = None,
) -> int:
    """Recompute campaign metrics for every day in [start, end]."""
    now = ensure_utc(now or utcnow())
    rows = 0
    day = start
    while day <= end:
        rows += await compute_campaign_day(db, day, now)
        day += timedelta(days=1)
    await db.commit()
    logger.info("Campaign metrics refreshed for %s..%s: %d rows", start, end, rows)
    return rows


async def run_campaign_roi(
    db: AsyncSession,
    source: CostSource | None,
    lookback_days: int = 7,
    max_attempts: int = 3,
    backoff_seconds: float = 2.0,
    now: datetime | None = None,
) -> int:
    """Daily entry point: import recent spend, then recompute ROI.

    Raises DependencyError (and writes nothing) when spend cannot be fetched.
    Without a configured source ROI is computed from spend already imported.
    """
    now = ensure_utc(now or utcnow())
    end = now.date()
    start = end - timedelta(days=lookback_days)
    if source is None:
        logger.info("Cost source not configured, computing ROI from stored spend")
    else:
        await import_costs(db, source, start, end, max_attempts, backoff_seconds, now)
    return await aggregate_campaigns(db, start, end, now)


async def campaign_totals(db: AsyncSession, start: date, end: date) -> dict[str, CampaignRollup]:
    """Per-campaign rollup of stored daily metrics for [start, end]."""
    result = await db.execute(
        select(CampaignMetrics).where(CampaignMetrics.metric_date >= start, CampaignMetrics.metric_date <= end)
    )
    grouped: dict[str, list[CampaignMetrics]] = defaultdict(list)
    for row in result.scalars().all():
        grouped[row.campaign_id].append(row)
    return {campaign: rollup_roi(rows) for campaign, rows in sorted(grouped.items())}
