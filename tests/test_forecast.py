"""
Tests for the Revenue Forecaster
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from wilsy_metering.billing.forecast import RevenueForecaster, trend_slope
from wilsy_metering.core.errors import ValidationError
from wilsy_metering.core.ingestion import StaticTenantDirectory, TenantProfile

from conftest import FakeClock


class StubRepository:
    """Returns canned aggregates in the shape UsageRepository produces."""

    def __init__(self, daily=None, breakdown=None):
        self.daily = daily or []
        self.breakdown = breakdown or {}
        self.calls = []

    def daily_summaries(self, tenant_id, start, end):
        self.calls.append((tenant_id, start, end))
        return self.daily

    def service_breakdown(self, tenant_id, start, end):
        return self.breakdown


def _service(requests, tokens, cost, revenue):
    return {"requests": requests, "tokens": tokens, "cost": Decimal(cost), "revenue": Decimal(revenue)}


@pytest.fixture
def month_end_clock():
    return FakeClock(datetime(2025, 3, 31, 12, 0, tzinfo=timezone.utc))


class TestTrendSlope:

    def test_rising(self):
        assert trend_slope([Decimal(1), Decimal(2), Decimal(3)]) == Decimal("1.00")

    def test_flat(self):
        assert trend_slope([Decimal(5)] * 4) == Decimal("0.00")

    def test_too_short(self):
        assert trend_slope([Decimal(5)]) == Decimal("0.00")


class TestProjections:

    def test_projections_from_daily_average(self, catalog, month_end_clock):
        repo = StubRepository(daily=[
            {"date": "2025-03-10", "requests": 2, "tokens": 4000, "revenue": Decimal("154.10")},
            {"date": "2025-03-20", "requests": 2, "tokens": 4000, "revenue": Decimal("145.90")},
        ])
        forecast = RevenueForecaster(repo, catalog, clock=month_end_clock).forecast("tenant-a", 30)

        assert forecast.window_revenue == Decimal("300.00")
        assert forecast.window_tokens == 8000
        assert forecast.daily_average == Decimal("10.00")
        assert forecast.monthly_projection == Decimal("300.00")
        assert forecast.annual_projection == Decimal("3650.00")

    def test_projection_uses_unrounded_average(self, catalog, month_end_clock):
        repo = StubRepository(daily=[
            {"date": "2025-03-30", "requests": 1, "tokens": 10, "revenue": Decimal("100.00")},
        ])
        forecast = RevenueForecaster(repo, catalog, clock=month_end_clock).forecast("tenant-a", 7)

        assert forecast.daily_average == Decimal("14.29")
        assert forecast.monthly_projection == Decimal("428.57")
        assert forecast.annual_projection == Decimal("5214.29")

    def test_window_bounds(self, catalog, month_end_clock):
        repo = StubRepository()
        forecast = RevenueForecaster(repo, catalog, clock=month_end_clock).forecast("tenant-a", 30)

        assert forecast.window_start == "2025-03-01T12:00:00.000000+00:00"
        assert forecast.window_end == "2025-03-31T12:00:00.000000+00:00"
        assert repo.calls == [("tenant-a", forecast.window_start, forecast.window_end)]

    def test_trend_over_days(self, catalog, month_end_clock):
        repo = StubRepository(daily=[
            {"date": "2025-03-29", "requests": 1, "tokens": 1, "revenue": Decimal("10.00")},
            {"date": "2025-03-30", "requests": 1, "tokens": 1, "revenue": Decimal("20.00")},
            {"date": "2025-03-31", "requests": 1, "tokens": 1, "revenue": Decimal("30.00")},
        ])
        forecast = RevenueForecaster(repo, catalog, clock=month_end_clock).forecast("tenant-a", 3)

        assert forecast.trend_slope == Decimal("10.00")

    @pytest.mark.parametrize("days", [0, -3, "30", True])
    def test_invalid_window(self, catalog, days):
        with pytest.raises(ValidationError):
            RevenueForecaster(StubRepository(), catalog).forecast("tenant-a", days)

    def test_no_usage(self, catalog, month_end_clock):
        forecast = RevenueForecaster(StubRepository(), catalog, clock=month_end_clock).forecast("tenant-a")

        assert forecast.monthly_projection == Decimal("0.00")
        types = {o.type for o in forecast.opportunities}
        assert types == {"HIGH_VALUE_OPPORTUNITY"}


class TestOpportunities:

    def _types(self, forecast):
        return [(o.type, o.service_type) for o in forecast.opportunities]

    def test_underutilized_service(self, catalog, month_end_clock):
        repo = StubRepository(breakdown={
            "DOCUMENT_ANALYSIS": _service(95, 190_000, "6365.00", "7319.75"),
            "PII_DETECTION": _service(5, 10_000, "335.00", "385.25"),
        })
        forecast = RevenueForecaster(repo, catalog, clock=month_end_clock).forecast("tenant-a")

        underused = [o for o in forecast.opportunities if o.type == "UNDERUTILIZED_SERVICE"]
        assert [o.service_type for o in underused] == ["PII_DETECTION"]
        assert underused[0].potential_amount == Decimal("770.50")

    def test_high_value_services_flagged_when_rare(self, catalog, month_end_clock):
        repo = StubRepository(breakdown={
            "RISK_ASSESSMENT": _service(10, 20_000, "670.00", "770.50"),
            "COMPLIANCE_CHECK": _service(2, 4_000, "134.00", "154.10"),
        })
        forecast = RevenueForecaster(repo, catalog, clock=month_end_clock).forecast("tenant-a")

        high_value = [o for o in forecast.opportunities if o.type == "HIGH_VALUE_OPPORTUNITY"]
        assert [o.service_type for o in high_value] == ["COMPLIANCE_CHECK"]
        assert high_value[0].potential_amount == Decimal("5000.00")

    def test_cost_optimization(self, catalog, month_end_clock):
        repo = StubRepository(
            daily=[{"date": "2025-03-30", "requests": 1, "tokens": 1000, "revenue": Decimal("115.00")}],
            breakdown={"DOCUMENT_ANALYSIS": _service(1, 1000, "100.00", "115.00")},
        )
        forecast = RevenueForecaster(repo, catalog, clock=month_end_clock).forecast("tenant-a")

        optimization = [o for o in forecast.opportunities if o.type == "COST_OPTIMIZATION"]
        assert len(optimization) == 1
        assert optimization[0].potential_amount == Decimal("15.00")
        assert optimization[0].service_type is None

    def test_tier_upgrade(self, catalog, month_end_clock):
        directory = StaticTenantDirectory()
        directory.add_tenant(TenantProfile("tenant-a", tier="STARTER"))
        repo = StubRepository(daily=[
            {"date": "2025-03-30", "requests": 10, "tokens": 200_000, "revenue": Decimal("770.50")},
        ])
        forecast = RevenueForecaster(repo, catalog, directory, month_end_clock).forecast("tenant-a")

        upgrade = [o for o in forecast.opportunities if o.type == "TIER_UPGRADE"]
        assert len(upgrade) == 1
        assert upgrade[0].details["suggested_tier"] == "PROFESSIONAL"
        assert upgrade[0].details["projected_monthly_tokens"] == 200_000

    def test_no_upgrade_beyond_enterprise(self, catalog, month_end_clock):
        directory = StaticTenantDirectory()
        directory.add_tenant(TenantProfile("tenant-a", tier="ENTERPRISE"))
        repo = StubRepository(daily=[
            {"date": "2025-03-30", "requests": 10, "tokens": 50_000_000, "revenue": Decimal("770.50")},
        ])
        forecast = RevenueForecaster(repo, catalog, directory, month_end_clock).forecast("tenant-a")

        assert "TIER_UPGRADE" not in {o.type for o in forecast.opportunities}

    def test_forecast_serializes(self, catalog, month_end_clock):
        data = RevenueForecaster(StubRepository(), catalog, clock=month_end_clock).forecast("tenant-a").to_dict()

        assert data["monthly_projection"] == "0.00"
        assert isinstance(data["opportunities"], list)
