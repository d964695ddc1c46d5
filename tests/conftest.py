"""
Pytest Configuration and Fixtures
"""

import os
import sys
import uuid
from datetime import datetime, timedelta, timezone

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"
os.environ["USAGE_SIGNING_SECRET"] = "test-signing-secret"
os.environ["USAGE_SIGNING_KEY_ID"] = "test-k1"

from wilsy_metering.config import MeteringConfig  # noqa: E402
from wilsy_metering.core.cost import calculate_cost  # noqa: E402
from wilsy_metering.core.pricing import default_catalog  # noqa: E402
from wilsy_metering.core.usage import ServiceType, TokenUsage, UsageRecord, utc_iso  # noqa: E402
from wilsy_metering.core.value import estimate_value  # noqa: E402
from wilsy_metering.crypto.keys import SigningKeyring  # noqa: E402
from wilsy_metering.persistence.database import Database  # noqa: E402
from wilsy_metering.service import MeteringService  # noqa: E402

TEST_NOW = datetime(2025, 3, 15, 10, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock; every component under test reads time through it."""

    def __init__(self, now: datetime = TEST_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def catalog():
    return default_catalog()


@pytest.fixture
def keyring():
    """Low iteration count keeps key derivation fast in tests."""
    return SigningKeyring("test-signing-secret", "test-k1", iterations=1000)


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'metering.db'}"


@pytest.fixture
def db(db_url):
    """Create a temporary database for testing."""
    database = Database(db_url)
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def config(db_url):
    return MeteringConfig(
        database_url=db_url,
        signing_secret="test-signing-secret",
        signing_key_id="test-k1",
        batch_flush_interval=60.0,
        batch_size=100,
        api_key="test-key-12345",
    )


@pytest.fixture
def violations():
    """Collects integrity violations reported to the audit sink."""
    return []


@pytest.fixture
def service(config, db, catalog, keyring, clock, violations):
    svc = MeteringService(
        config,
        db=db,
        catalog=catalog,
        keyring=keyring,
        clock=clock,
        audit_sink=violations.append,
    )
    yield svc
    svc.stop(drain=False)


@pytest.fixture
def sample_event():
    """Sample usage event as dictionary."""
    return {
        "tenant_id": "tenant-a",
        "user_id": "user-1",
        "service_type": "DOCUMENT_ANALYSIS",
        "model": "GPT4_TURBO",
        "input_tokens": 1000,
        "output_tokens": 1000,
        "document_id": "doc-1",
    }


@pytest.fixture
def make_record(catalog):
    """Build an unsealed usage record priced against the default catalog."""

    def _make(
        tenant_id: str = "tenant-a",
        service_type: ServiceType = ServiceType.DOCUMENT_ANALYSIS,
        model: str = "GPT4_TURBO",
        input_tokens: int = 1000,
        output_tokens: int = 1000,
        at: datetime = TEST_NOW,
        document_id=None,
    ) -> UsageRecord:
        cost = calculate_cost(input_tokens, output_tokens, model, catalog, at=at)
        total = input_tokens + output_tokens
        return UsageRecord(
            usage_id=f"usage_{uuid.uuid4().hex}",
            tenant_id=tenant_id,
            user_id="user-1",
            timestamp=utc_iso(at),
            service_type=service_type,
            model=model,
            tokens=TokenUsage(input_tokens, output_tokens, total, total * 4, 1),
            cost=cost,
            value=estimate_value(service_type, total, cost.cost_billing),
            tier="PROFESSIONAL",
            document_id=document_id,
        )

    return _make
