"""
WILSY METERING - Core Module

Pricing, cost calculation, value estimation, the usage record model and the
ingestion gate. Everything here is pure or in-memory.
"""

from .errors import (
    MeteringError,
    ValidationError,
    InvalidStatusTransition,
    UnknownPricingModel,
    PersistenceError,
    IntegrityViolation,
    BillingRaceError,
    NotFoundError,
)
from .pricing import AIModel, PricingEntry, ServiceTier, CatalogVersion, PricingCatalog, default_catalog
from .cost import CostBreakdown, calculate_cost
from .value import ValueEstimate, estimate_value
from .usage import ServiceType, BillingStatus, TokenUsage, IntegrityBlock, AuditNote, UsageRecord
from .ingestion import UsageEvent, TenantProfile, TenantDirectory, StaticTenantDirectory, IngestionGate

__all__ = [
    "MeteringError",
    "ValidationError",
    "InvalidStatusTransition",
    "UnknownPricingModel",
    "PersistenceError",
    "IntegrityViolation",
    "BillingRaceError",
    "NotFoundError",
    "AIModel",
    "PricingEntry",
    "ServiceTier",
    "CatalogVersion",
    "PricingCatalog",
    "default_catalog",
    "CostBreakdown",
    "calculate_cost",
    "ValueEstimate",
    "estimate_value",
    "ServiceType",
    "BillingStatus",
    "TokenUsage",
    "IntegrityBlock",
    "AuditNote",
    "UsageRecord",
    "UsageEvent",
    "TenantProfile",
    "TenantDirectory",
    "StaticTenantDirectory",
    "IngestionGate",
]
