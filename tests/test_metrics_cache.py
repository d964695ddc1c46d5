"""
Tests for the Real-Time Metrics Cache
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from wilsy_metering.billing.metrics_cache import RealTimeMetricsCache


@pytest.fixture
def cache(clock):
    return RealTimeMetricsCache(clock, ttl_seconds=300)


class TestCounters:

    def test_record_updates_today_and_lifetime(self, cache, make_record):
        cache.record(make_record(document_id="doc-1"))
        cache.record(make_record())

        snapshot = cache.snapshot()
        assert snapshot["today"]["requests"] == 2
        assert snapshot["today"]["tokens"] == 4000
        assert snapshot["today"]["documents"] == 1
        assert snapshot["today"]["revenue"] == "154.10"
        assert snapshot["lifetime"]["requests"] == 2

    def test_day_rollover_resets_today(self, cache, make_record, clock):
        cache.record(make_record())
        clock.advance(days=1)
        cache.record(make_record())

        snapshot = cache.snapshot()
        assert snapshot["today"]["requests"] == 1
        assert snapshot["lifetime"]["requests"] == 2

    def test_roi_multiple(self, cache, make_record):
        cache.record(make_record())

        # 583.33 value on 67.00 cost
        assert cache.snapshot()["lifetime"]["roi_multiple"] == "8.71"

    def test_reset(self, cache, make_record):
        cache.record(make_record())
        cache.reset()
        assert cache.snapshot()["lifetime"]["requests"] == 0


class TestPeaks:

    def test_tokens_per_second(self, cache, make_record, clock):
        cache.record(make_record())
        cache.record(make_record())
        clock.advance(seconds=1)
        cache.record(make_record())

        assert cache.snapshot()["peaks"]["tokens_per_second"] == 4000

    def test_revenue_per_hour(self, cache, make_record, clock):
        cache.record(make_record())
        clock.advance(hours=1)
        cache.record(make_record())
        cache.record(make_record())

        assert Decimal(cache.snapshot()["peaks"]["revenue_per_hour"]) == Decimal("154.10")


class TestTenantSnapshots:

    def test_tenant_snapshot(self, cache, make_record):
        record = make_record(tenant_id="tenant-b")
        cache.record(record)

        snapshot = cache.tenant_snapshot("tenant-b")
        assert snapshot["requests"] == 1
        assert snapshot["last_usage_id"] == record.usage_id
        assert cache.tenant_snapshot("tenant-z") is None

    def test_snapshot_expires(self, cache, make_record, clock):
        cache.record(make_record(tenant_id="tenant-b"))
        assert cache.snapshot()["active_tenants"] == 1

        clock.advance(seconds=301)
        assert cache.tenant_snapshot("tenant-b") is None
        assert cache.snapshot()["active_tenants"] == 0

    def test_activity_keeps_snapshot_alive(self, cache, make_record, clock):
        cache.record(make_record())
        clock.advance(seconds=200)
        cache.record(make_record())
        clock.advance(seconds=200)

        assert cache.tenant_snapshot("tenant-a")["requests"] == 2
