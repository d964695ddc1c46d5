"""
Value Estimator

Informational ROI estimates for dashboards. Nothing here feeds back into
pricing: the estimator reads the final cost, never writes it.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict

from .cost import quantize_billing

# Legal industry coefficients (ZAR)
LAWYER_HOURLY_RATE = Decimal("3500")
MINUTES_SAVED_PER_TOKEN = Decimal("0.005")

RISK_MULTIPLIERS = {
    "RISK_ASSESSMENT": Decimal("10"),
}

COMPLIANCE_MULTIPLIERS = {
    "COMPLIANCE_CHECK": Decimal("50"),
}


@dataclass(frozen=True)
class ValueEstimate:
    estimated_minutes_saved: Decimal
    lawyer_hour_value: Decimal
    risk_reduction_value: Decimal
    compliance_value: Decimal
    total_value_generated: Decimal
    roi_multiple: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {k: str(v) for k, v in self.__dict__.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValueEstimate":
        return cls(**{k: Decimal(str(data[k])) for k in cls.__dataclass_fields__})

    @classmethod
    def zero(cls) -> "ValueEstimate":
        z = Decimal("0.00")
        return cls(z, z, z, z, z, z)


def estimate_value(service_type: str, total_tokens: int, final_cost: Decimal) -> ValueEstimate:
    """Estimate business value generated by one request."""
    service = getattr(service_type, "value", service_type)

    minutes = quantize_billing(Decimal(total_tokens) * MINUTES_SAVED_PER_TOKEN)
    hour_value = quantize_billing(minutes / Decimal(60) * LAWYER_HOURLY_RATE)
    risk = quantize_billing(final_cost * RISK_MULTIPLIERS.get(service, Decimal(0)))
    compliance = quantize_billing(final_cost * COMPLIANCE_MULTIPLIERS.get(service, Decimal(0)))
    total = hour_value + risk + compliance

    roi = quantize_billing(total / final_cost) if final_cost > 0 else Decimal("0.00")

    return ValueEstimate(
        estimated_minutes_saved=minutes,
        lawyer_hour_value=hour_value,
        risk_reduction_value=risk,
        compliance_value=compliance,
        total_value_generated=total,
        roi_multiple=roi,
    )
