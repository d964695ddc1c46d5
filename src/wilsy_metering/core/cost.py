"""
Cost Calculator

Pure function: token quantities + pricing catalog -> cost breakdown.

    base       = in/1000 * in_cost + out/1000 * out_cost      (source currency)
    marked_up  = base * markup
    converted  = marked_up * exchange_rate                   (billing currency)
    final      = max(converted, minimum_charge)
    tax        = final * tax_rate
    total      = final + tax

Every stored value is quantized once, here. Aggregations only ever add
already-final Decimals.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from .pricing import PricingCatalog

SOURCE_PRECISION = Decimal("0.000001")
BILLING_PRECISION = Decimal("0.01")

_THOUSAND = Decimal("1000")


def quantize_source(amount: Decimal) -> Decimal:
    return amount.quantize(SOURCE_PRECISION, rounding=ROUND_HALF_UP)


def quantize_billing(amount: Decimal) -> Decimal:
    return amount.quantize(BILLING_PRECISION, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CostBreakdown:
    """Priced result for a single usage record."""
    base_cost: Decimal  # source currency
    markup_multiplier: Decimal
    exchange_rate: Decimal
    cost_source: Decimal  # after markup, source currency
    converted_cost: Decimal  # after conversion, before the floor
    cost_billing: Decimal  # final cost, billing currency
    tax_rate: Decimal
    tax_amount: Decimal
    total_charge: Decimal
    minimum_charge_applied: bool
    source_currency: str
    billing_currency: str
    catalog_version: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_cost": str(self.base_cost),
            "markup_multiplier": str(self.markup_multiplier),
            "exchange_rate": str(self.exchange_rate),
            "cost_source": str(self.cost_source),
            "converted_cost": str(self.converted_cost),
            "cost_billing": str(self.cost_billing),
            "tax_rate": str(self.tax_rate),
            "tax_amount": str(self.tax_amount),
            "total_charge": str(self.total_charge),
            "minimum_charge_applied": self.minimum_charge_applied,
            "source_currency": self.source_currency,
            "billing_currency": self.billing_currency,
            "catalog_version": self.catalog_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CostBreakdown":
        return cls(
            base_cost=Decimal(data["base_cost"]),
            markup_multiplier=Decimal(data["markup_multiplier"]),
            exchange_rate=Decimal(data["exchange_rate"]),
            cost_source=Decimal(data["cost_source"]),
            converted_cost=Decimal(data["converted_cost"]),
            cost_billing=Decimal(data["cost_billing"]),
            tax_rate=Decimal(data["tax_rate"]),
            tax_amount=Decimal(data["tax_amount"]),
            total_charge=Decimal(data["total_charge"]),
            minimum_charge_applied=bool(data["minimum_charge_applied"]),
            source_currency=data["source_currency"],
            billing_currency=data["billing_currency"],
            catalog_version=data["catalog_version"],
        )


def calculate_cost(
    input_tokens: int,
    output_tokens: int,
    model,
    catalog: PricingCatalog,
    at: Optional[datetime] = None,
) -> CostBreakdown:
    """
    Price a usage event.

    Args:
        input_tokens: Prompt tokens
        output_tokens: Completion tokens
        model: AIModel or model id string
        catalog: Pricing catalog
        at: Instant used to select the catalog version (default: latest)

    Raises:
        UnknownPricingModel: If the model is not in the catalog version
    """
    version = catalog.version_at(at)
    entry = catalog.entry_for(model, at)

    input_cost = (Decimal(input_tokens) / _THOUSAND) * entry.input_cost_per_1k
    output_cost = (Decimal(output_tokens) / _THOUSAND) * entry.output_cost_per_1k
    base_cost = quantize_source(input_cost + output_cost)

    cost_source = quantize_source(base_cost * entry.markup_multiplier)
    converted = quantize_billing(cost_source * entry.exchange_rate)

    # Floor is compared after conversion; minimum_charge is in billing currency
    minimum = quantize_billing(entry.minimum_charge)
    minimum_applied = converted < minimum
    final_cost = minimum if minimum_applied else converted

    tax = quantize_billing(final_cost * version.tax_rate)

    return CostBreakdown(
        base_cost=base_cost,
        markup_multiplier=entry.markup_multiplier,
        exchange_rate=entry.exchange_rate,
        cost_source=cost_source,
        converted_cost=converted,
        cost_billing=final_cost,
        tax_rate=version.tax_rate,
        tax_amount=tax,
        total_charge=final_cost + tax,
        minimum_charge_applied=minimum_applied,
        source_currency=entry.source_currency,
        billing_currency=version.billing_currency,
        catalog_version=version.version,
    )
