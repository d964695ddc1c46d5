"""
Revenue Forecaster

Read-only projections from a tenant's recent usage:

    daily_average      = window revenue / window_days
    monthly_projection = daily_average * 30
    annual_projection  = daily_average * 365

Projections use the unrounded average and are quantized once at the end.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import structlog

from ..core.cost import quantize_billing
from ..core.errors import ValidationError
from ..core.ingestion import TenantDirectory
from ..core.pricing import PricingCatalog
from ..core.usage import utc_iso
from ..persistence.repository import UsageRepository

logger = structlog.get_logger()

UNDERUTILIZED_SHARE = Decimal("0.10")
UNDERUTILIZED_UPSIDE = Decimal("2")
HIGH_VALUE_SERVICES = ("RISK_ASSESSMENT", "COMPLIANCE_CHECK")
HIGH_VALUE_MIN_REQUESTS = 5
HIGH_VALUE_PER_REQUEST = Decimal("5000.00")
COST_PER_TOKEN_THRESHOLD = Decimal("0.01")
COST_OPTIMIZATION_SAVINGS = Decimal("0.15")

TIER_ORDER = ("STARTER", "PROFESSIONAL", "ENTERPRISE")

_ZERO = Decimal("0.00")


@dataclass
class Opportunity:
    type: str
    recommendation: str
    potential_amount: Decimal = _ZERO
    service_type: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "service_type": self.service_type,
            "recommendation": self.recommendation,
            "potential_amount": str(self.potential_amount),
            "details": self.details,
        }


@dataclass
class Forecast:
    tenant_id: str
    window_days: int
    window_start: str
    window_end: str
    window_revenue: Decimal
    window_tokens: int
    daily_average: Decimal
    monthly_projection: Decimal
    annual_projection: Decimal
    trend_slope: Decimal
    opportunities: List[Opportunity] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "window_days": self.window_days,
            "window_start": self.window_start,
            "window_end": self.window_end,
            "window_revenue": str(self.window_revenue),
            "window_tokens": self.window_tokens,
            "daily_average": str(self.daily_average),
            "monthly_projection": str(self.monthly_projection),
            "annual_projection": str(self.annual_projection),
            "trend_slope": str(self.trend_slope),
            "opportunities": [o.to_dict() for o in self.opportunities],
        }


def trend_slope(values: List[Decimal]) -> Decimal:
    """Least-squares slope of values against their index (revenue per day, per day)."""
    n = len(values)
    if n < 2:
        return _ZERO
    x_mean = Decimal(n - 1) / 2
    y_mean = sum(values, _ZERO) / n
    numerator = sum((Decimal(i) - x_mean) * (y - y_mean) for i, y in enumerate(values))
    denominator = sum((Decimal(i) - x_mean) ** 2 for i in range(n))
    return quantize_billing(numerator / denominator)


class RevenueForecaster:
    """Projects revenue and flags growth opportunities. Never writes."""

    def __init__(
        self,
        repository: UsageRepository,
        catalog: PricingCatalog,
        directory: Optional[TenantDirectory] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.catalog = catalog
        self.directory = directory
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def forecast(self, tenant_id: str, window_days: int = 30) -> Forecast:
        if isinstance(window_days, bool) or not isinstance(window_days, int) or window_days < 1:
            raise ValidationError("window_days must be a positive integer", field="window_days", tenant_id=tenant_id)

        end = self.clock()
        start = end - timedelta(days=window_days)
        start_iso, end_iso = utc_iso(start), utc_iso(end)

        daily = self.repository.daily_summaries(tenant_id, start_iso, end_iso)
        breakdown = self.repository.service_breakdown(tenant_id, start_iso, end_iso)

        revenue = sum((d["revenue"] for d in daily), _ZERO)
        tokens = sum(d["tokens"] for d in daily)
        raw_average = revenue / Decimal(window_days)

        by_day = {d["date"]: d["revenue"] for d in daily}
        series = [
            by_day.get(str((start + timedelta(days=i + 1)).date()), _ZERO)
            for i in range(window_days)
        ]

        forecast = Forecast(
            tenant_id=tenant_id,
            window_days=window_days,
            window_start=start_iso,
            window_end=end_iso,
            window_revenue=revenue,
            window_tokens=tokens,
            daily_average=quantize_billing(raw_average),
            monthly_projection=quantize_billing(raw_average * 30),
            annual_projection=quantize_billing(raw_average * 365),
            trend_slope=trend_slope(series),
            opportunities=self._opportunities(tenant_id, breakdown, tokens, window_days),
        )

        logger.debug(
            "forecast_computed",
            tenant_id=tenant_id,
            window_days=window_days,
            monthly_projection=str(forecast.monthly_projection),
        )
        return forecast

    def _opportunities(
        self,
        tenant_id: str,
        breakdown: Dict[str, Dict[str, Any]],
        window_tokens: int,
        window_days: int,
    ) -> List[Opportunity]:
        opportunities: List[Opportunity] = []
        total_requests = sum(s["requests"] for s in breakdown.values())

        for service, data in sorted(breakdown.items()):
            share = Decimal(data["requests"]) / Decimal(total_requests)
            if share < UNDERUTILIZED_SHARE:
                opportunities.append(Opportunity(
                    type="UNDERUTILIZED_SERVICE",
                    service_type=service,
                    recommendation=f"Promote {service} services to increase adoption",
                    potential_amount=quantize_billing(data["revenue"] * UNDERUTILIZED_UPSIDE),
                    details={"usage_share": str(quantize_billing(share * 100))},
                ))

        for service in HIGH_VALUE_SERVICES:
            count = breakdown.get(service, {}).get("requests", 0)
            if count < HIGH_VALUE_MIN_REQUESTS:
                opportunities.append(Opportunity(
                    type="HIGH_VALUE_OPPORTUNITY",
                    service_type=service,
                    recommendation=f"Targeted marketing for {service} to high-value clients",
                    potential_amount=HIGH_VALUE_PER_REQUEST,
                    details={"requests": count, "potential_clients": "ENTERPRISE_TIER"},
                ))

        total_cost = sum((s["cost"] for s in breakdown.values()), _ZERO)
        if window_tokens > 0:
            cost_per_token = total_cost / Decimal(window_tokens)
            if cost_per_token > COST_PER_TOKEN_THRESHOLD:
                opportunities.append(Opportunity(
                    type="COST_OPTIMIZATION",
                    recommendation="Consider optimizing model usage or caching strategies",
                    potential_amount=quantize_billing(total_cost * COST_OPTIMIZATION_SAVINGS),
                    details={"cost_per_token": str(cost_per_token.quantize(Decimal("0.000001")))},
                ))

        upgrade = self._tier_upgrade(tenant_id, window_tokens, window_days)
        if upgrade is not None:
            opportunities.append(upgrade)

        return opportunities

    def _tier_upgrade(self, tenant_id: str, window_tokens: int, window_days: int) -> Optional[Opportunity]:
        if self.directory is None:
            return None
        profile = self.directory.resolve_tenant(tenant_id)
        if profile is None:
            return None

        current = profile.tier.upper()
        try:
            quota = self.catalog.tier(current).monthly_token_quota
        except ValidationError:
            return None

        projected = (window_tokens * 30) // window_days
        if projected <= quota or current not in TIER_ORDER or current == TIER_ORDER[-1]:
            return None

        suggested = TIER_ORDER[TIER_ORDER.index(current) + 1]
        return Opportunity(
            type="TIER_UPGRADE",
            recommendation=f"Projected usage exceeds the {current} quota; offer {suggested}",
            details={
                "current_tier": current,
                "suggested_tier": suggested,
                "projected_monthly_tokens": projected,
                "monthly_token_quota": quota,
            },
        )
