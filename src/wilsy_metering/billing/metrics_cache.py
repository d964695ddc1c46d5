"""
Real-Time Metrics Cache

Dashboard counters updated on every sealed usage record. Best effort and
single-process: each worker holds its own counters, and nothing here is
ever read for billing. A multi-instance deployment needs a shared store
with atomic increments instead.
"""

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import structlog

from ..core.cost import quantize_billing
from ..core.usage import UsageRecord, utc_iso

logger = structlog.get_logger()

_ZERO = Decimal("0.00")


class RealTimeMetricsCache:
    """In-process counters with per-tenant snapshots that expire after ttl_seconds."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None, ttl_seconds: int = 300):
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.ttl = timedelta(seconds=ttl_seconds)
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._day = self.clock().date()
            self._today = self._zero_counters()
            self._lifetime = self._zero_counters()
            self._lifetime["value_generated"] = _ZERO
            self._lifetime["cost"] = _ZERO

            self._second_bucket: Optional[int] = None
            self._second_tokens = 0
            self._peak_tokens_per_second = 0

            self._hour_bucket: Optional[int] = None
            self._hour_revenue = _ZERO
            self._peak_revenue_per_hour = _ZERO

            self._tenants: Dict[str, Dict[str, Any]] = {}

    @staticmethod
    def _zero_counters() -> Dict[str, Any]:
        return {"requests": 0, "tokens": 0, "documents": 0, "revenue": _ZERO}

    def _roll_day(self, now: datetime) -> None:
        if now.date() != self._day:
            logger.debug("metrics_day_rolled", previous=str(self._day), current=str(now.date()))
            self._day = now.date()
            self._today = self._zero_counters()

    def record(self, record: UsageRecord) -> None:
        """Fold one sealed record into the counters."""
        now = self.clock()
        tokens = record.tokens.total_tokens
        charge = record.cost.total_charge
        has_document = 1 if record.document_id else 0

        with self._lock:
            self._roll_day(now)

            for counters in (self._today, self._lifetime):
                counters["requests"] += 1
                counters["tokens"] += tokens
                counters["documents"] += has_document
                counters["revenue"] += charge
            self._lifetime["value_generated"] += record.value.total_value_generated
            self._lifetime["cost"] += record.cost.cost_billing

            second = int(now.timestamp())
            if second != self._second_bucket:
                self._second_bucket = second
                self._second_tokens = 0
            self._second_tokens += tokens
            self._peak_tokens_per_second = max(self._peak_tokens_per_second, self._second_tokens)

            hour = second // 3600
            if hour != self._hour_bucket:
                self._hour_bucket = hour
                self._hour_revenue = _ZERO
            self._hour_revenue += charge
            self._peak_revenue_per_hour = max(self._peak_revenue_per_hour, self._hour_revenue)

            tenant = self._tenants.get(record.tenant_id)
            if tenant is None or tenant["day"] != self._day or self._expired(tenant, now):
                tenant = {"day": self._day, "requests": 0, "tokens": 0, "revenue": _ZERO}
                self._tenants[record.tenant_id] = tenant
            tenant["requests"] += 1
            tenant["tokens"] += tokens
            tenant["revenue"] += charge
            tenant["last_usage_id"] = record.usage_id
            tenant["last_service_type"] = record.service_type.value
            tenant["updated_at"] = now

    def _expired(self, tenant: Dict[str, Any], now: datetime) -> bool:
        return now - tenant["updated_at"] > self.ttl

    def tenant_snapshot(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        """Latest activity for a tenant, or None once it has expired."""
        now = self.clock()
        with self._lock:
            tenant = self._tenants.get(tenant_id)
            if tenant is None or self._expired(tenant, now):
                self._tenants.pop(tenant_id, None)
                return None
            return {
                "tenant_id": tenant_id,
                "requests": tenant["requests"],
                "tokens": tenant["tokens"],
                "revenue": str(tenant["revenue"]),
                "last_usage_id": tenant["last_usage_id"],
                "last_service_type": tenant["last_service_type"],
                "updated_at": utc_iso(tenant["updated_at"]),
            }

    def snapshot(self) -> Dict[str, Any]:
        """Dashboard view of all counters."""
        now = self.clock()
        with self._lock:
            self._roll_day(now)
            expired = [t for t, data in self._tenants.items() if self._expired(data, now)]
            for tenant_id in expired:
                del self._tenants[tenant_id]

            cost = self._lifetime["cost"]
            value = self._lifetime["value_generated"]
            roi = quantize_billing(value / cost) if cost > 0 else _ZERO

            return {
                "as_of": utc_iso(now),
                "today": {
                    "date": str(self._day),
                    "requests": self._today["requests"],
                    "tokens": self._today["tokens"],
                    "documents": self._today["documents"],
                    "revenue": str(self._today["revenue"]),
                },
                "lifetime": {
                    "requests": self._lifetime["requests"],
                    "tokens": self._lifetime["tokens"],
                    "documents": self._lifetime["documents"],
                    "revenue": str(self._lifetime["revenue"]),
                    "value_generated": str(value),
                    "roi_multiple": str(roi),
                },
                "peaks": {
                    "tokens_per_second": self._peak_tokens_per_second,
                    "revenue_per_hour": str(self._peak_revenue_per_hour),
                },
                "active_tenants": len(self._tenants),
            }
