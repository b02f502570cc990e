"""Tests for campaign spend import and ROI."""

from __future__ import annotations

from datetime import date

import httpx
import pytest
from sqlalchemy import func, select

from conftest import add_event, utc
from gamepulse.aggregation.campaign_roi import (
    CostRecord,
    HttpCostSource,
    campaign_totals,
    run_campaign_roi,
)
from gamepulse.db.models import CampaignCost, CampaignMetrics, UserAcquisition
from gamepulse.errors import DependencyError

DAY = date(2026, 3, 3)
NOW = utc(2026, 3, 4, 2)


class FakeCostSource:
    def __init__(self, records=None, error: Exception | None = None):
        self.records = records or []
        self.error = error
        self.calls = 0

    async def fetch_costs(self, start, end):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return [r for r in self.records if start <= r.cost_date <= end]


async def _acquire(db, user_id: str, campaign_id: str) -> None:
    installed_at = utc(2026, 3, 3, 9)
    db.add(
        UserAcquisition(
            user_id=user_id,
            installed_at=installed_at,
            install_date=installed_at.date(),
            campaign_id=campaign_id,
            platform="ios",
        )
    )
    await db.commit()


async def _seed(db) -> None:
    await _acquire(db, "p1", "camp_a")
    await _acquire(db, "p2", "camp_a")
    await _acquire(db, "p3", "camp_b")
    await add_event(db, "purchase_completed", "p1", utc(2026, 3, 3, 12), revenue_usd=120.0)
    await add_event(db, "ad_revenue", "p2", utc(2026, 3, 3, 13), revenue_usd=30.0)
    await add_event(db, "purchase_completed", "p3", utc(2026, 3, 3, 13), revenue_usd=9.99)


async def _metrics(db, campaign_id: str) -> CampaignMetrics:
    return await db.get(CampaignMetrics, (campaign_id, DAY))


class TestRoiCycle:
    async def test_cpi_and_roi(self, db_session):
        await _seed(db_session)
        source = FakeCostSource([CostRecord("camp_a", DAY, 100.0, installs=2)])
        await run_campaign_roi(db_session, source, now=NOW)

        row = await _metrics(db_session, "camp_a")
        assert row.installs == 2
        assert row.cost_usd == pytest.approx(100.0)
        assert row.revenue_usd == pytest.approx(150.0)
        assert row.cpi == pytest.approx(50.0)
        assert row.roi_pct == pytest.approx(50.0)

    async def test_zero_cost_leaves_roi_undefined(self, db_session):
        await _seed(db_session)
        await run_campaign_roi(db_session, FakeCostSource([]), now=NOW)
        row = await _metrics(db_session, "camp_b")
        assert row.installs == 1
        assert row.cpi is None
        assert row.roi_pct is None

    async def test_source_failure_writes_nothing(self, db_session):
        await _seed(db_session)
        source = FakeCostSource(error=DependencyError("ad network down"))
        with pytest.raises(DependencyError):
            await run_campaign_roi(db_session, source, max_attempts=3, backoff_seconds=0, now=NOW)
        assert source.calls == 3
        for model in (CampaignMetrics, CampaignCost):
            count = (await db_session.execute(select(func.count()).select_from(model))).scalar_one()
            assert count == 0

    async def test_stored_spend_without_source(self, db_session):
        await _seed(db_session)
        db_session.add(CampaignCost(campaign_id="camp_a", cost_date=DAY, cost_usd=300.0, imported_at=NOW))
        await db_session.commit()
        await run_campaign_roi(db_session, None, now=NOW)
        row = await _metrics(db_session, "camp_a")
        assert row.roi_pct == pytest.approx(-50.0)

    async def test_totals_roll_up_once(self, db_session):
        await _seed(db_session)
        source = FakeCostSource([CostRecord("camp_a", DAY, 100.0), CostRecord("camp_a", date(2026, 3, 2), 50.0)])
        await run_campaign_roi(db_session, source, now=NOW)
        totals = await campaign_totals(db_session, date(2026, 3, 1), DAY)
        camp_a = totals["camp_a"]
        assert camp_a.installs == 2
        assert camp_a.cost_usd == pytest.approx(150.0)
        assert camp_a.cpi == pytest.approx(75.0)
        assert camp_a.roi_pct == pytest.approx(0.0)


class TestHttpCostSource:
    async def test_fetches_costs(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={"costs": [{"campaign_id": "camp_a", "date": "2026-03-03", "cost_usd": "100.5", "clicks": 40}]},
            )

        source = HttpCostSource("https://ads.example.test/costs", "secret", transport=httpx.MockTransport(handler))
        records = await source.fetch_costs(date(2026, 3, 1), DAY)

        assert records == [CostRecord("camp_a", DAY, 100.5, clicks=40)]
        assert seen[0].url.params["start_date"] == "2026-03-01"
        assert seen[0].headers["Authorization"] == "Bearer secret"

    async def test_server_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
        source = HttpCostSource("https://ads.example.test/costs", transport=transport)
        with pytest.raises(DependencyError):
            await source.fetch_costs(date(2026, 3, 1), DAY)

    async def test_malformed_rows(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json=[{"cost_usd": 1}]))
        source = HttpCostSource("https://ads.example.test/costs", transport=transport)
        with pytest.raises(DependencyError):
            await source.fetch_costs(date(2026, 3, 1), DAY)
