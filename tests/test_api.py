"""
Tests for FastAPI Endpoints

Integration tests for the metering API.
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from wilsy_metering.api.server import create_app
from wilsy_metering.billing.cycles import BillingCycleWindow, CycleType
from wilsy_metering.core.pricing import AIModel, default_catalog
from wilsy_metering.core.usage import utc_iso
from wilsy_metering.service import MeteringService

from conftest import TEST_NOW

APRIL = TEST_NOW.replace(month=4, day=1)


@pytest.fixture
def client(service):
    """Create test client over the fixture service."""
    with TestClient(create_app(service)) as c:
        yield c


@pytest.fixture
def auth_headers():
    """Headers with valid API key."""
    return {"X-API-Key": "test-key-12345"}


@pytest.fixture
def recorded(client, auth_headers, sample_event):
    response = client.post("/usage", json=sample_event, headers=auth_headers)
    assert response.status_code == 201
    return response.json()


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_no_auth_required(self, client):
        """Health check should not require authentication."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == "1.0.0"
        assert "uptime_seconds" in data
        assert data["pending_records"] == 0


class TestAuth:

    def test_missing_api_key(self, client, sample_event):
        """Missing header is a malformed request."""
        response = client.post("/usage", json=sample_event)

        assert response.status_code == 400

    def test_invalid_api_key(self, client, sample_event):
        """Invalid API key should be rejected."""
        response = client.post("/usage", json=sample_event, headers={"X-API-Key": "wrong-key"})

        assert response.status_code == 401


class TestUsageEndpoint:
    """Test usage recording."""

    def test_record_usage(self, recorded):
        assert recorded["usage_id"].startswith("usage_")
        assert recorded["total_charge"] == "77.05"
        assert recorded["value_generated"] == "583.33"

    def test_invalid_field(self, client, auth_headers, sample_event):
        """Gate rejections name the offending field."""
        response = client.post("/usage", json={**sample_event, "input_tokens": -5}, headers=auth_headers)

        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "ValidationError"
        assert data["field"] == "input_tokens"

    @pytest.mark.parametrize("value", [True, "100", 100.0])
    def test_token_counts_not_coerced(self, client, service, auth_headers, sample_event, value):
        response = client.post("/usage", json={**sample_event, "input_tokens": value}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["field"] == "input_tokens"
        assert service.writer.pending_count == 0

    def test_missing_field(self, client, auth_headers, sample_event):
        event = dict(sample_event)
        del event["tenant_id"]
        response = client.post("/usage", json=event, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["field"] == "tenant_id"

    def test_unknown_pricing_model(self, config, db, keyring, clock, auth_headers, sample_event):
        catalog = default_catalog()
        del catalog.versions[0].entries[AIModel.CLAUDE_3_OPUS]
        service = MeteringService(config, db=db, catalog=catalog, keyring=keyring, clock=clock)

        with TestClient(create_app(service)) as client:
            response = client.post("/usage", json={**sample_event, "model": "CLAUDE_3_OPUS"}, headers=auth_headers)

        assert response.status_code == 422
        assert response.json()["error"] == "UnknownPricingModel"

    def test_dispute(self, client, clock, auth_headers, recorded):
        clock.now = APRIL
        client.post("/billing/tenant-a/run", headers=auth_headers)
        response = client.post(
            f"/usage/{recorded['usage_id']}/dispute",
            json={"reason": "customer query", "actor": "ops"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["billing_status"] == "DISPUTED"
        assert "signature" not in data["integrity"]

    def test_dispute_requires_reason(self, client, auth_headers, recorded):
        response = client.post(f"/usage/{recorded['usage_id']}/dispute", json={"reason": ""}, headers=auth_headers)

        assert response.status_code == 400

    def test_dispute_missing_record(self, client, auth_headers):
        response = client.post("/usage/usage_missing/dispute", json={"reason": "x"}, headers=auth_headers)

        assert response.status_code == 404

    def test_pending_record_cannot_be_disputed(self, client, auth_headers, recorded):
        response = client.post(f"/usage/{recorded['usage_id']}/dispute", json={"reason": "x"}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidStatusTransition"


class TestBillingEndpoints:

    def test_billing_flow(self, client, clock, auth_headers, recorded):
        clock.now = APRIL
        response = client.post("/billing/tenant-a/run", json={"cycle_type": "MONTHLY"}, headers=auth_headers)
        assert response.status_code == 200
        run = response.json()
        assert run["status"] == "INVOICED"
        assert run["invoice"]["invoice_number"] == "INV-tenant-a-20250301-0001"
        invoice_id = run["invoice"]["invoice_id"]
        assert run["invoice"]["total"] == "77.05"
        assert "signature" not in run["invoice"]

        response = client.get(f"/invoices/{invoice_id}", headers=auth_headers)
        assert response.status_code == 200
        invoice = response.json()
        assert invoice["signature_valid"] is True
        assert invoice["overdue"] is False
        assert invoice["status"] == "ISSUED"

        response = client.post(f"/invoices/{invoice_id}/paid", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "PAID"

        response = client.post(f"/invoices/{invoice_id}/paid", headers=auth_headers)
        assert response.status_code == 400

    def test_rerun_returns_existing_invoice(self, client, clock, auth_headers, recorded):
        clock.now = APRIL
        first = client.post("/billing/tenant-a/run", headers=auth_headers).json()
        second = client.post("/billing/tenant-a/run", headers=auth_headers).json()

        assert second["status"] == "ALREADY_CLOSED"
        assert second["invoice"]["invoice_id"] == first["invoice"]["invoice_id"]

    def test_nothing_to_bill(self, client, auth_headers):
        response = client.post("/billing/tenant-a/run", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "NO_OP"

    def test_invalid_cycle_type(self, client, auth_headers):
        response = client.post("/billing/tenant-a/run", json={"cycle_type": "WEEKLY"}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["field"] == "cycle_type"

    def test_invalid_reference(self, client, auth_headers):
        response = client.post("/billing/tenant-a/run", json={"reference": "soon"}, headers=auth_headers)

        assert response.status_code == 400

    def test_open_window_rejected(self, client, auth_headers, recorded):
        response = client.post(
            "/billing/tenant-a/run",
            json={"reference": "2025-03-15T10:00:00Z"},
            headers=auth_headers,
        )

        assert response.status_code == 400
        assert response.json()["field"] == "reference"

    def test_unflushed_usage_postpones_billing(self, client, service, clock, auth_headers, recorded, monkeypatch):
        def unavailable(records, stored_at):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(service.usage_repo, "upsert_many", unavailable)
        clock.now = APRIL

        response = client.post("/billing/tenant-a/run", headers=auth_headers)

        assert response.status_code == 503
        data = response.json()
        assert data["error"] == "PersistenceError"
        assert data["pending"] == 1

    def test_corrected_record_supplementary_invoice(self, client, clock, auth_headers, recorded):
        clock.now = APRIL
        first = client.post("/billing/tenant-a/run", headers=auth_headers).json()
        usage_id = recorded["usage_id"]
        client.post(f"/usage/{usage_id}/dispute", json={"reason": "query"}, headers=auth_headers)
        client.post(f"/usage/{usage_id}/correct", json={"reason": "resolved"}, headers=auth_headers)

        run = client.post("/billing/tenant-a/run", headers=auth_headers).json()

        assert run["status"] == "SUPPLEMENTED"
        assert run["invoice"]["invoice_id"] == first["invoice"]["invoice_id"]
        assert run["supplementary_invoice"]["total"] == "77.05"
        assert run["late_records"] == 1

    def test_held_window_conflicts(self, client, service, clock, auth_headers, recorded):
        window = BillingCycleWindow.for_cycle(CycleType.MONTHLY, clock())
        clock.now = APRIL
        service.cycle_repo.acquire(
            "tenant-a", window.start_iso, window.end_iso, "MONTHLY",
            utc_iso(clock()), utc_iso(clock() - timedelta(seconds=900)),
        )

        response = client.post("/billing/tenant-a/run", headers=auth_headers)

        assert response.status_code == 409
        assert response.json()["error"] == "BillingRaceError"

    def test_missing_invoice(self, client, auth_headers):
        response = client.get("/invoices/inv_missing", headers=auth_headers)

        assert response.status_code == 404


class TestReadEndpoints:

    def test_chain_verify(self, client, auth_headers, recorded):
        client.post("/usage", json={"tenant_id": "tenant-a", "user_id": "u", "service_type": "PII_DETECTION",
                                    "model": "GPT4_TURBO", "input_tokens": 10, "output_tokens": 10},
                    headers=auth_headers)

        response = client.get("/chain/tenant-a/verify", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert data["checked"] == 2
        assert data["root"]

    def test_records_are_redacted(self, client, auth_headers, recorded):
        response = client.get("/records/tenant-a", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        record = data["records"][0]
        assert record["usage_id"] == recorded["usage_id"]
        assert "signature" not in record["integrity"]
        assert "key_id" not in record["integrity"]

    def test_forecast(self, client, auth_headers, recorded):
        response = client.get("/forecast/tenant-a?window_days=30", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["window_revenue"] == "77.05"

    def test_forecast_invalid_window(self, client, auth_headers):
        response = client.get("/forecast/tenant-a?window_days=0", headers=auth_headers)

        assert response.status_code == 400

    def test_summary(self, client, auth_headers, recorded):
        response = client.get("/tenants/tenant-a/summary", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["buffered"] == 1

    def test_metrics(self, client, auth_headers, recorded):
        response = client.get("/metrics", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["metrics"]["lifetime"]["requests"] == 1
        assert data["batch_writer"]["pending"] == 1
