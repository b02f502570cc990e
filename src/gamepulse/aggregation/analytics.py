"""Daily and weekly product analytics.

Every row is recomputed from the events of its period and overwritten, so
running a day twice, or after late events arrive, converges on the same
numbers. Unique counts are always ``COUNT(DISTINCT user_id)``; MAU is the
distinct union over a trailing 30-day window, never a sum of daily counts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import and_, case, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gamepulse.db.models import (
    DailyCurrency,
    DailyFunnelStep,
    DailyGameModeMetrics,
    DailyMetrics,
    DailyPlatformMetrics,
    Event,
    UserTotals,
    WeeklyMetrics,
)
from gamepulse.events.allowlist import HOLDING_EVENT_TYPE
from gamepulse.week_utils import day_bounds, ensure_utc, get_week_iso, iso_week_bounds, utcnow

logger = logging.getLogger(__name__)

MAU_WINDOW_DAYS = 30
INSTALL_EVENTS = ("app_installed", "user_installed")
REVENUE_EVENTS = ("ad_revenue", "purchase_completed")
PLATFORMS = ("ios", "android")
CURRENCIES = ("coins", "gems")
CURRENCY_EVENTS = ("currency_earned", "currency_spent")
LEVEL_EVENTS = ("level_started", "level_completed", "level_failed")
UNKNOWN = "unknown"


@dataclass(frozen=True)
class CurrencyFlow:
    currency: str
    direction: str
    category: str
    amount: int
    events: int


@dataclass(frozen=True)
class LevelStats:
    level_id: int
    tries: int
    completions: int
    failures: int
    players: int

    @property
    def completion_rate(self) -> float | None:
        """Completions per 100 tries, None before the first try."""
        if not self.tries:
            return None
        return round(100.0 * self.completions / self.tries, 1)


@dataclass(frozen=True)
class FunnelStep:
    name: str
    event_type: str
    level_id: int | None = None


FUNNEL_STEPS: tuple[FunnelStep, ...] = (
    FunnelStep("installed", "user_installed"),
    FunnelStep("first_open", "first_open"),
    FunnelStep("tutorial_started", "tutorial_started"),
    FunnelStep("tutorial_completed", "tutorial_completed"),
    *(FunnelStep(f"level_{n}", "level_started", n) for n in range(1, 11)),
)


def _in_range(start: datetime, end: datetime) -> Any:
    return and_(Event.received_at >= start, Event.received_at < end, Event.event_type != HOLDING_EVENT_TYPE)


def _revenue() -> Any:
    return func.coalesce(func.sum(Event.payload["revenue_usd"].as_float()), 0.0)


async def _scalar(db: AsyncSession, stmt: Any) -> Any:
    return (await db.execute(stmt)).scalar_one()


async def distinct_users(db: AsyncSession, start: datetime, end: datetime, *conditions: Any) -> int:
    """COUNT(DISTINCT user_id) over events in [start, end)."""
    stmt = select(func.count(distinct(Event.user_id))).where(_in_range(start, end), *conditions)
    return int(await _scalar(db, stmt) or 0)


async def count_events(db: AsyncSession, start: datetime, end: datetime, *event_types: str) -> int:
    stmt = select(func.count()).select_from(Event).where(_in_range(start, end), Event.event_type.in_(event_types))
    return int(await _scalar(db, stmt) or 0)


async def new_users_between(db: AsyncSession, start: datetime, end: datetime) -> int:
    """Users whose first install event falls in [start, end)."""
    first_install = (
        select(Event.user_id, func.min(Event.received_at).label("first_at"))
        .where(Event.event_type.in_(INSTALL_EVENTS))
        .group_by(Event.user_id)
        .subquery()
    )
    stmt = select(func.count()).select_from(first_install).where(
        first_install.c.first_at >= start, first_install.c.first_at < end
    )
    return int(await _scalar(db, stmt) or 0)


async def rolling_active_users(db: AsyncSession, day: date, window_days: int = MAU_WINDOW_DAYS) -> int:
    """Distinct users active in the ``window_days`` ending with ``day`` (inclusive)."""
    _, end = day_bounds(day)
    start, _ = day_bounds(day - timedelta(days=window_days - 1))
    return await distinct_users(db, start, end)


async def count_sessions(db: AsyncSession, start: datetime, end: datetime) -> int:
    """Distinct session ids; session_started events without one count individually."""
    session_id = Event.payload["session_id"].as_string()
    with_id = select(func.count(distinct(session_id))).where(
        _in_range(start, end), Event.event_type == "session_started", session_id.is_not(None)
    )
    without_id = (
        select(func.count())
        .select_from(Event)
        .where(_in_range(start, end), Event.event_type == "session_started", session_id.is_(None))
    )
    return int(await _scalar(db, with_id) or 0) + int(await _scalar(db, without_id) or 0)


async def revenue_between(db: AsyncSession, start: datetime, end: datetime, *event_types: str) -> float:
    stmt = select(_revenue()).where(_in_range(start, end), Event.event_type.in_(event_types or REVENUE_EVENTS))
    return float(await _scalar(db, stmt) or 0.0)


async def funnel_counts(db: AsyncSession, day: date) -> dict[str, int]:
    """Distinct users per funnel step on a day. Repeats by one user count once."""
    start, end = day_bounds(day)
    counts: dict[str, int] = {}
    for step in FUNNEL_STEPS:
        conditions = [Event.event_type == step.event_type]
        if step.level_id is not None:
            conditions.append(Event.payload["level_id"].as_integer() == step.level_id)
        counts[step.name] = await distinct_users(db, start, end, *conditions)
    return counts


async def _platform_counts(db: AsyncSession, start: datetime, end: datetime) -> dict[str, int]:
    # Payload fields are grouped through a subquery; PostgreSQL does not match
    # a JSON path in GROUP BY against the same path in the select list.
    tagged = (
        select(Event.payload["platform"].as_string().label("platform"), Event.user_id)
        .where(_in_range(start, end))
        .subquery()
    )
    result = await db.execute(
        select(tagged.c.platform, func.count(distinct(tagged.c.user_id)))
        .where(tagged.c.platform.in_(PLATFORMS))
        .group_by(tagged.c.platform)
    )
    counts = {p: 0 for p in PLATFORMS}
    counts.update({row[0]: int(row[1]) for row in result.all()})
    return counts


async def currency_flows(db: AsyncSession, start: datetime, end: datetime) -> list[CurrencyFlow]:
    """Coins and gems earned by ``source`` and spent by ``spent_on`` in [start, end)."""
    earned = Event.event_type == "currency_earned"
    tagged = (
        select(
            Event.payload["currency_type"].as_string().label("currency"),
            case((earned, "earned"), else_="spent").label("direction"),
            func.coalesce(
                case((earned, Event.payload["source"].as_string()), else_=Event.payload["spent_on"].as_string()),
                UNKNOWN,
            ).label("category"),
            Event.payload["amount"].as_integer().label("amount"),
        )
        .where(_in_range(start, end), Event.event_type.in_(CURRENCY_EVENTS))
        .subquery()
    )
    result = await db.execute(
        select(
            tagged.c.currency,
            tagged.c.direction,
            tagged.c.category,
            func.coalesce(func.sum(tagged.c.amount), 0),
            func.count(),
        )
        .where(tagged.c.currency.in_(CURRENCIES))
        .group_by(tagged.c.currency, tagged.c.direction, tagged.c.category)
        .order_by(tagged.c.currency, tagged.c.direction, tagged.c.category)
    )
    return [
        CurrencyFlow(currency, direction, category, int(amount or 0), int(events))
        for currency, direction, category, amount, events in result.all()
    ]


async def game_mode_counts(db: AsyncSession, start: datetime, end: datetime) -> dict[str, tuple[int, int]]:
    """game_mode -> (games ended, distinct players); games without a mode count as ``unknown``."""
    tagged = (
        select(
            func.coalesce(Event.payload["game_mode"].as_string(), UNKNOWN).label("game_mode"),
            Event.user_id,
        )
        .where(_in_range(start, end), Event.event_type == "game_ended")
        .subquery()
    )
    result = await db.execute(
        select(tagged.c.game_mode, func.count(), func.count(distinct(tagged.c.user_id))).group_by(tagged.c.game_mode)
    )
    return {mode: (int(games), int(players)) for mode, games, players in result.all()}


async def level_performance(db: AsyncSession, start: datetime, end: datetime) -> list[LevelStats]:
    """Tries, completions and failures per level in [start, end), by level id."""
    tagged = (
        select(Event.payload["level_id"].as_integer().label("level_id"), Event.event_type, Event.user_id)
        .where(_in_range(start, end), Event.event_type.in_(LEVEL_EVENTS))
        .subquery()
    )

    def _count(event_type: str) -> Any:
        return func.sum(case((tagged.c.event_type == event_type, 1), else_=0))

    result = await db.execute(
        select(
            tagged.c.level_id,
            _count("level_started"),
            _count("level_completed"),
            _count("level_failed"),
            func.count(distinct(tagged.c.user_id)),
        )
        .where(tagged.c.level_id.is_not(None))
        .group_by(tagged.c.level_id)
        .order_by(tagged.c.level_id)
    )
    return [
        LevelStats(int(level_id), int(tries or 0), int(completions or 0), int(failures or 0), int(players))
        for level_id, tries, completions, failures, players in result.all()
    ]


def _currency_total(flows: list[CurrencyFlow], currency: str, direction: str) -> int:
    return sum(f.amount for f in flows if f.currency == currency and f.direction == direction)


async def aggregate_day(db: AsyncSession, day: date, now: datetime | None = None) -> DailyMetrics:
    """Recompute and overwrite the metrics of one UTC day."""
    now = ensure_utc(now or utcnow())
    start, end = day_bounds(day)

    ad_revenue = await revenue_between(db, start, end, "ad_revenue")
    iap_revenue = await revenue_between(db, start, end, "purchase_completed")
    flows = await currency_flows(db, start, end)
    row = DailyMetrics(
        metric_date=day,
        dau=await distinct_users(db, start, end),
        mau=await rolling_active_users(db, day),
        new_users=await new_users_between(db, start, end),
        sessions=await count_sessions(db, start, end),
        games_started=await count_events(db, start, end, "game_started"),
        games_ended=await count_events(db, start, end, "game_ended"),
        crashes=await count_events(db, start, end, "app_crashed"),
        crashed_users=await distinct_users(db, start, end, Event.event_type == "app_crashed"),
        revenue_usd=round(ad_revenue + iap_revenue, 4),
        ad_revenue_usd=round(ad_revenue, 4),
        iap_revenue_usd=round(iap_revenue, 4),
        paying_users=await distinct_users(db, start, end, Event.event_type == "purchase_completed"),
        levels_completed=await count_events(db, start, end, "level_completed"),
        continues_used=await count_events(db, start, end, "continue_used"),
        coins_earned=_currency_total(flows, "coins", "earned"),
        coins_spent=_currency_total(flows, "coins", "spent"),
        gems_earned=_currency_total(flows, "gems", "earned"),
        gems_spent=_currency_total(flows, "gems", "spent"),
        computed_at=now,
    )
    row = await db.merge(row)

    for position, (name, users) in enumerate((await funnel_counts(db, day)).items()):
        await db.merge(DailyFunnelStep(metric_date=day, step=name, position=position, users=users))
    for platform, users in (await _platform_counts(db, start, end)).items():
        await db.merge(DailyPlatformMetrics(metric_date=day, platform=platform, dau=users))
    for mode, (games, players) in (await game_mode_counts(db, start, end)).items():
        await db.merge(DailyGameModeMetrics(metric_date=day, game_mode=mode, games_ended=games, players=players))
    for flow in flows:
        await db.merge(
            DailyCurrency(
                metric_date=day,
                currency=flow.currency,
                direction=flow.direction,
                category=flow.category,
                amount=flow.amount,
                events=flow.events,
            )
        )

    updated = await update_user_totals(db, start, end)
    await db.commit()
    logger.info("Daily metrics for %s: dau=%d mau=%d, %d user totals updated", day, row.dau, row.mau, updated)
    return row


async def aggregate_week(db: AsyncSession, week_iso: str, now: datetime | None = None) -> WeeklyMetrics:
    """Recompute and overwrite the metrics of one ISO week."""
    now = ensure_utc(now or utcnow())
    start, end = iso_week_bounds(week_iso)
    row = await db.merge(
        WeeklyMetrics(
            week_iso=week_iso,
            week_start=start.date(),
            wau=await distinct_users(db, start, end),
            new_users=await new_users_between(db, start, end),
            games_ended=await count_events(db, start, end, "game_ended"),
            revenue_usd=round(await revenue_between(db, start, end), 4),
            computed_at=now,
        )
    )
    await db.commit()
    logger.info("Weekly metrics for %s: wau=%d", week_iso, row.wau)
    return row


async def update_user_totals(db: AsyncSession, start: datetime, end: datetime) -> int:
    """Recompute lifetime totals of every user active in [start, end). Does not commit."""
    active = select(distinct(Event.user_id)).where(_in_range(start, end))
    revenue = Event.payload["revenue_usd"].as_float()
    currency = Event.payload["currency_type"].as_string()
    amount = Event.payload["amount"].as_integer()

    def _events(*event_types: str) -> Any:
        return func.coalesce(func.sum(case((Event.event_type.in_(event_types), 1), else_=0)), 0)

    def _currency(event_type: str, currency_type: str) -> Any:
        moved = and_(Event.event_type == event_type, currency == currency_type)
        return func.coalesce(func.sum(case((moved, amount), else_=0)), 0)

    result = await db.execute(
        select(
            Event.user_id,
            func.min(Event.received_at).label("first_seen"),
            func.max(Event.received_at).label("last_seen"),
            func.count().label("total"),
            _events("session_started").label("sessions"),
            _events("game_ended").label("games"),
            func.coalesce(func.sum(case((Event.event_type.in_(REVENUE_EVENTS), revenue), else_=0.0)), 0.0).label(
                "revenue"
            ),
            _currency("currency_earned", "coins").label("coins_earned"),
            _currency("currency_spent", "coins").label("coins_spent"),
            _currency("currency_earned", "gems").label("gems_earned"),
            _currency("currency_spent", "gems").label("gems_spent"),
            _events("level_completed").label("levels_completed"),
            _events("continue_used").label("continues_used"),
            _events("ad_watched").label("ads_watched"),
            _events("purchase_completed").label("purchases_made"),
        )
        .where(Event.user_id.in_(active), Event.event_type != HOLDING_EVENT_TYPE)
        .group_by(Event.user_id)
    )
    count = 0
    for row in result.all():
        await db.merge(
            UserTotals(
                user_id=row.user_id,
                first_seen_at=ensure_utc(row.first_seen),
                last_seen_at=ensure_utc(row.last_seen),
                total_events=int(row.total),
                sessions=int(row.sessions),
                games_played=int(row.games),
                revenue_usd=round(float(row.revenue or 0.0), 4),
                coins_earned=int(row.coins_earned),
                coins_spent=int(row.coins_spent),
                gems_earned=int(row.gems_earned),
                gems_spent=int(row.gems_spent),
                levels_completed=int(row.levels_completed),
                continues_used=int(row.continues_used),
                ads_watched=int(row.ads_watched),
                purchases_made=int(row.purchases_made),
            )
        )
        count += 1
    return count


async def run_daily_analytics(db: AsyncSession, now: datetime | None = None) -> list[DailyMetrics]:
    """Hourly entry point: refresh today and finalize yesterday, plus the current week."""
    now = ensure_utc(now or utcnow())
    today = now.date()
    rows = [await aggregate_day(db, today - timedelta(days=1), now), await aggregate_day(db, today, now)]
    await aggregate_week(db, get_week_iso(today), now)
    if today.weekday() == 0:
        await aggregate_week(db, get_week_iso(today - timedelta(days=1)), now)
    return rows
