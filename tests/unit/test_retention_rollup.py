"""Unit tests for cohort retention rollups."""

from datetime import date
from types import SimpleNamespace

import pytest

from gamepulse.aggregation.cohorts import horizon_column, is_mature, rollup_by, rollup_retention


def _cohort(size, campaign="c1", **retained):
    values = {f"retained_d{h}": retained.get(f"d{h}") for h in (1, 2, 3, 7, 30)}
    return SimpleNamespace(cohort_size=size, campaign_id=campaign, **values)


class TestRollup:
    """Rollups divide summed numerators by summed denominators."""

    def test_weighted_not_averaged(self):
        """20/100 and 8/10 combine to 28/110, not the mean of 20% and 80%."""
        rows = [_cohort(100, d1=20), _cohort(10, d1=8)]
        rollup = rollup_retention(rows, 1)
        assert rollup.retained == 28
        assert rollup.size == 110
        assert rollup.percent == pytest.approx(25.45)

    def test_immature_cohorts_excluded(self):
        """A NULL horizon is skipped, never counted as zero retention."""
        rows = [_cohort(100, d7=30), _cohort(50)]
        rollup = rollup_retention(rows, 7)
        assert rollup.cohorts == 1
        assert rollup.size == 100
        assert rollup.rate == pytest.approx(0.3)

    def test_no_mature_cohorts(self):
        rollup = rollup_retention([_cohort(10)], 30)
        assert rollup.rate is None
        assert rollup.percent is None

    def test_group_by_campaign(self):
        rows = [_cohort(10, "a", d1=5), _cohort(30, "a", d1=3), _cohort(20, "b", d1=10)]
        groups = rollup_by(rows, lambda r: r.campaign_id, horizons=(1,))
        assert groups["a"][1].retained == 8
        assert groups["a"][1].size == 40
        assert groups["b"][1].percent == 50.0


class TestHorizons:
    def test_column_names(self):
        assert horizon_column(7) == "retained_d7"

    def test_unsupported_horizon(self):
        with pytest.raises(ValueError):
            horizon_column(14)

    def test_maturity(self):
        cohort = date(2026, 3, 2)
        assert is_mature(cohort, 1, date(2026, 3, 3))
        assert not is_mature(cohort, 7, date(2026, 3, 8))
        assert is_mature(cohort, 7, date(2026, 3, 9))
