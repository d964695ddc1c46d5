"""
WILSY METERING - Billing Module

Batch persistence, billing-cycle aggregation, invoicing, real-time
dashboard counters and revenue forecasting.
"""

from .batch_writer import BatchWriter, UsageStore
from .invoice import InvoiceGenerator, PAYMENT_TERMS_DAYS
from .cycles import (
    CycleType,
    parse_cycle_type,
    BillingCycleWindow,
    BillingCycleAggregator,
    BillingResult,
    NoOpResult,
)
from .metrics_cache import RealTimeMetricsCache
from .forecast import Forecast, Opportunity, RevenueForecaster, trend_slope

__all__ = [
    "BatchWriter",
    "UsageStore",
    "InvoiceGenerator",
    "PAYMENT_TERMS_DAYS",
    "CycleType",
    "parse_cycle_type",
    "BillingCycleWindow",
    "BillingCycleAggregator",
    "BillingResult",
    "NoOpResult",
    "RealTimeMetricsCache",
    "Forecast",
    "Opportunity",
    "RevenueForecaster",
    "trend_slope",
]
