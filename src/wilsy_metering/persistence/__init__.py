"""
WILSY METERING - Persistence Layer

Durable storage for sealed usage records, invoices and billing-cycle locks.
Supports SQLite (development) and PostgreSQL (production).
"""

from .database import Database, get_database
from .models import (
    BillingCycleRecord,
    BillingCycleState,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    usage_from_row,
    usage_to_db_tuple,
)
from .repository import BillingCycleRepository, InvoiceRepository, UsageRepository

__all__ = [
    "Database",
    "get_database",
    "BillingCycleRecord",
    "BillingCycleState",
    "Invoice",
    "InvoiceLineItem",
    "InvoiceStatus",
    "usage_from_row",
    "usage_to_db_tuple",
    "BillingCycleRepository",
    "InvoiceRepository",
    "UsageRepository",
]
