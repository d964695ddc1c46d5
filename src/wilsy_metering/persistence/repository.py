"""
Repository Layer for Wilsy Metering

Provides the queries the metering engine runs against the durable store.
Writes issued inside Database.transaction() join that transaction.
"""

import json
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog

from ..core.usage import BillingStatus, UsageRecord
from .database import Database, get_database
from .models import (
    USAGE_COLUMNS,
    BillingCycleRecord,
    BillingCycleState,
    Invoice,
    InvoiceStatus,
    decode_json,
    usage_from_row,
    usage_to_db_tuple,
)

logger = structlog.get_logger()


class UsageRepository:
    """Repository for sealed usage records."""

    INSERT_SQL = (
        f"INSERT INTO usage_records ({', '.join(USAGE_COLUMNS)}) "
        f"VALUES ({', '.join('?' for _ in USAGE_COLUMNS)}) "
        "ON CONFLICT (usage_id) DO NOTHING"
    )

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def upsert_many(self, records: List[UsageRecord], stored_at: str) -> int:
        """
        Insert records, ignoring ids already stored.

        Replaying a batch after a partial failure is therefore harmless.
        Returns the number of newly inserted rows.
        """
        if not records:
            return 0
        inserted = self.db.execute_many(
            self.INSERT_SQL,
            [usage_to_db_tuple(r, stored_at) for r in records],
        )
        return max(inserted, 0)

    def get(self, usage_id: str) -> Optional[UsageRecord]:
        results = self.db.execute(
            "SELECT * FROM usage_records WHERE usage_id = ?",
            (usage_id,)
        )
        return usage_from_row(results[0]) if results else None

    def get_chain(
        self,
        tenant_id: str,
        from_sequence: Optional[int] = None,
        to_sequence: Optional[int] = None,
    ) -> List[UsageRecord]:
        """Tenant chain in sequence order, optionally bounded (inclusive)."""
        query = "SELECT * FROM usage_records WHERE tenant_id = ?"
        params: List[Any] = [tenant_id]
        if from_sequence is not None:
            query += " AND chain_sequence >= ?"
            params.append(from_sequence)
        if to_sequence is not None:
            query += " AND chain_sequence <= ?"
            params.append(to_sequence)
        query += " ORDER BY chain_sequence ASC"
        return [usage_from_row(r) for r in self.db.execute(query, params)]

    def chain_head(self, tenant_id: str) -> Optional[Tuple[int, str]]:
        """(last chain_sequence, its seal hash) or None for an empty chain."""
        results = self.get_chain_tail(tenant_id, 1)
        if not results:
            return None
        record = results[0]
        return record.integrity.chain_sequence, record.integrity.seal_hash

    def get_chain_tail(self, tenant_id: str, limit: int) -> List[UsageRecord]:
        results = self.db.execute(
            "SELECT * FROM usage_records WHERE tenant_id = ? ORDER BY chain_sequence DESC LIMIT ?",
            (tenant_id, limit)
        )
        return [usage_from_row(r) for r in results]

    def pending_in_window(self, tenant_id: str, start: str, end: str) -> List[UsageRecord]:
        """PENDING records with start <= timestamp <= end."""
        results = self.db.execute(
            """SELECT * FROM usage_records
               WHERE tenant_id = ? AND billing_status = ?
                 AND timestamp >= ? AND timestamp <= ?
               ORDER BY timestamp ASC, chain_sequence ASC""",
            (tenant_id, BillingStatus.PENDING.value, start, end)
        )
        return [usage_from_row(r) for r in results]

    def count_pending_in_window(self, tenant_id: str, start: str, end: str) -> int:
        results = self.db.execute(
            """SELECT COUNT(*) AS n FROM usage_records
               WHERE tenant_id = ? AND billing_status = ?
                 AND timestamp >= ? AND timestamp <= ?""",
            (tenant_id, BillingStatus.PENDING.value, start, end)
        )
        return results[0]["n"] if results else 0

    def mark_billed(self, records: List[UsageRecord], invoice_id: str) -> int:
        """
        Guarded PENDING -> BILLED update.

        The records carry their new audit notes and custody digests. Only
        rows still PENDING are touched; the caller compares the returned
        count with len(records).
        """
        return self._apply_transition(records, BillingStatus.PENDING, invoice_id)

    def transition_status(self, record: UsageRecord, from_status: BillingStatus) -> bool:
        """Persist a single status change, guarded on the expected prior status."""
        return self._apply_transition([record], from_status, record.invoice_id) == 1

    def _apply_transition(
        self,
        records: List[UsageRecord],
        from_status: BillingStatus,
        invoice_id: Optional[str],
    ) -> int:
        if not records:
            return 0
        updated = self.db.execute_many(
            """UPDATE usage_records
               SET billing_status = ?, invoice_id = ?, audit_notes = ?, hashes = ?
               WHERE usage_id = ? AND billing_status = ?""",
            [
                (
                    r.billing_status.value,
                    invoice_id,
                    json.dumps([n.to_dict() for n in r.audit_notes]),
                    json.dumps(r.integrity.hashes),
                    r.usage_id,
                    from_status.value,
                )
                for r in records
            ],
        )
        return max(updated, 0)

    def get_by_invoice(self, invoice_id: str) -> List[UsageRecord]:
        results = self.db.execute(
            "SELECT * FROM usage_records WHERE invoice_id = ? ORDER BY timestamp ASC, chain_sequence ASC",
            (invoice_id,)
        )
        return [usage_from_row(r) for r in results]

    def get_by_tenant(self, tenant_id: str, limit: int = 1000, offset: int = 0) -> List[UsageRecord]:
        results = self.db.execute(
            "SELECT * FROM usage_records WHERE tenant_id = ? ORDER BY chain_sequence ASC LIMIT ? OFFSET ?",
            (tenant_id, limit, offset)
        )
        return [usage_from_row(r) for r in results]

    def _light_rows(self, tenant_id: str, start: str, end: str) -> List[Dict[str, Any]]:
        """Reporting rows with amounts taken from the sealed tokens and cost."""
        results = self.db.execute(
            """SELECT substr(timestamp, 1, 10) AS day, service_type, tokens, cost, billing_status
               FROM usage_records
               WHERE tenant_id = ? AND timestamp >= ? AND timestamp <= ?""",
            (tenant_id, start, end)
        )
        rows = []
        for row in results:
            tokens = decode_json(row["tokens"])
            cost = decode_json(row["cost"])
            rows.append({
                "day": row["day"],
                "service_type": row["service_type"],
                "billing_status": row["billing_status"],
                "total_tokens": tokens["total_tokens"],
                "cost_billing": cost["cost_billing"],
                "total_charge": cost["total_charge"],
            })
        return rows

    def daily_summaries(self, tenant_id: str, start: str, end: str) -> List[Dict[str, Any]]:
        """Per-UTC-day request count, tokens and revenue, oldest first."""
        days: Dict[str, Dict[str, Any]] = {}
        for row in self._light_rows(tenant_id, start, end):
            day = days.setdefault(row["day"], {
                "date": row["day"],
                "requests": 0,
                "tokens": 0,
                "revenue": Decimal("0.00"),
            })
            day["requests"] += 1
            day["tokens"] += row["total_tokens"]
            day["revenue"] += Decimal(row["total_charge"])
        return [days[d] for d in sorted(days)]

    def service_breakdown(self, tenant_id: str, start: str, end: str) -> Dict[str, Dict[str, Any]]:
        """Per service type: requests, tokens, pre-tax cost and revenue."""
        breakdown: Dict[str, Dict[str, Any]] = defaultdict(lambda: {
            "requests": 0,
            "tokens": 0,
            "cost": Decimal("0.00"),
            "revenue": Decimal("0.00"),
        })
        for row in self._light_rows(tenant_id, start, end):
            entry = breakdown[row["service_type"]]
            entry["requests"] += 1
            entry["tokens"] += row["total_tokens"]
            entry["cost"] += Decimal(row["cost_billing"])
            entry["revenue"] += Decimal(row["total_charge"])
        return dict(breakdown)

    def tenant_summary(self, tenant_id: str, start: str = "", end: str = "9999") -> Dict[str, Any]:
        """Totals and per-status counts for a tenant, optionally within a window."""
        by_status: Dict[str, int] = defaultdict(int)
        total_tokens = 0
        total_charge = Decimal("0.00")
        outstanding = Decimal("0.00")
        rows = self._light_rows(tenant_id, start, end)
        for row in rows:
            by_status[row["billing_status"]] += 1
            total_tokens += row["total_tokens"]
            total_charge += Decimal(row["total_charge"])
            if row["billing_status"] in (BillingStatus.PENDING.value, BillingStatus.BILLED.value):
                outstanding += Decimal(row["total_charge"])

        return {
            "tenant_id": tenant_id,
            "record_count": len(rows),
            "total_tokens": total_tokens,
            "total_charge": str(total_charge),
            "outstanding": str(outstanding),
            "by_status": dict(by_status),
        }

    def count(self, tenant_id: Optional[str] = None) -> int:
        if tenant_id is None:
            results = self.db.execute("SELECT COUNT(*) AS n FROM usage_records")
        else:
            results = self.db.execute(
                "SELECT COUNT(*) AS n FROM usage_records WHERE tenant_id = ?",
                (tenant_id,)
            )
        return results[0]["n"] if results else 0


class InvoiceRepository:
    """Repository for invoices."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, invoice: Invoice) -> Invoice:
        self.db.execute(
            """INSERT INTO invoices
               (invoice_id, invoice_number, tenant_id, cycle_type, period_start,
                period_end, issued_at, due_date, currency, subtotal, tax_total,
                total, record_count, total_tokens, line_items, status,
                payment_reference, signature, key_id, paid_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            invoice.to_db_tuple()
        )
        logger.info(
            "invoice_created",
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.invoice_number,
            tenant_id=invoice.tenant_id,
            total=str(invoice.total),
        )
        return invoice

    def get(self, invoice_id: str) -> Optional[Invoice]:
        results = self.db.execute(
            "SELECT * FROM invoices WHERE invoice_id = ?",
            (invoice_id,)
        )
        return Invoice.from_row(results[0]) if results else None

    def get_by_number(self, invoice_number: str) -> Optional[Invoice]:
        results = self.db.execute(
            "SELECT * FROM invoices WHERE invoice_number = ?",
            (invoice_number,)
        )
        return Invoice.from_row(results[0]) if results else None

    def get_by_tenant(self, tenant_id: str, limit: int = 100) -> List[Invoice]:
        results = self.db.execute(
            "SELECT * FROM invoices WHERE tenant_id = ? ORDER BY issued_at DESC LIMIT ?",
            (tenant_id, limit)
        )
        return [Invoice.from_row(r) for r in results]

    def next_sequence(self, tenant_id: str, period_stamp: str) -> int:
        """Next invoice sequence for a tenant and window start date."""
        prefix = f"INV-{tenant_id}-{period_stamp}-"
        results = self.db.execute(
            "SELECT COUNT(*) AS n FROM invoices WHERE tenant_id = ? AND substr(invoice_number, 1, ?) = ?",
            (tenant_id, len(prefix), prefix)
        )
        return (results[0]["n"] if results else 0) + 1

    def mark_paid(self, invoice_id: str, paid_at: str) -> bool:
        updated = self.db.execute_update(
            "UPDATE invoices SET status = ?, paid_at = ? WHERE invoice_id = ? AND status = ?",
            (InvoiceStatus.PAID.value, paid_at, invoice_id, InvoiceStatus.ISSUED.value)
        )
        return updated == 1


class BillingCycleRepository:
    """Advisory lock rows for billing windows."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def get(self, tenant_id: str, period_start: str, period_end: str) -> Optional[BillingCycleRecord]:
        results = self.db.execute(
            """SELECT * FROM billing_cycles
               WHERE tenant_id = ? AND period_start = ? AND period_end = ?""",
            (tenant_id, period_start, period_end)
        )
        return BillingCycleRecord.from_row(results[0]) if results else None

    def acquire(
        self,
        tenant_id: str,
        period_start: str,
        period_end: str,
        cycle_type: str,
        now: str,
        stale_before: str,
    ) -> Tuple[bool, BillingCycleRecord]:
        """
        Move the window to AGGREGATING if it is OPEN (or stale AGGREGATING).

        Returns (acquired, row as seen after the attempt).
        """
        with self.db.transaction():
            self.db.execute(
                """INSERT INTO billing_cycles
                   (tenant_id, period_start, period_end, cycle_type, state, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT (tenant_id, period_start, period_end) DO NOTHING""",
                (tenant_id, period_start, period_end, cycle_type, BillingCycleState.OPEN.value, now)
            )
            updated = self.db.execute_update(
                """UPDATE billing_cycles SET state = ?, locked_at = ?, updated_at = ?
                   WHERE tenant_id = ? AND period_start = ? AND period_end = ?
                     AND (state = ? OR (state = ? AND locked_at < ?))""",
                (
                    BillingCycleState.AGGREGATING.value, now, now,
                    tenant_id, period_start, period_end,
                    BillingCycleState.OPEN.value,
                    BillingCycleState.AGGREGATING.value, stale_before,
                )
            )
            row = self.get(tenant_id, period_start, period_end)
        return updated == 1, row

    def reopen(self, tenant_id: str, period_start: str, period_end: str, now: str) -> Tuple[bool, Optional[BillingCycleRecord]]:
        """
        CLOSED -> AGGREGATING, to bill records that reached PENDING after
        the window closed. The window keeps its original invoice id.
        """
        with self.db.transaction():
            updated = self.db.execute_update(
                """UPDATE billing_cycles SET state = ?, locked_at = ?, updated_at = ?
                   WHERE tenant_id = ? AND period_start = ? AND period_end = ? AND state = ?""",
                (
                    BillingCycleState.AGGREGATING.value, now, now,
                    tenant_id, period_start, period_end,
                    BillingCycleState.CLOSED.value,
                )
            )
            row = self.get(tenant_id, period_start, period_end)
        return updated == 1, row

    def release(self, tenant_id: str, period_start: str, period_end: str, now: str) -> bool:
        """AGGREGATING -> OPEN, or back to CLOSED if the window was already invoiced."""
        updated = self.db.execute_update(
            """UPDATE billing_cycles
               SET state = CASE WHEN invoice_id IS NULL THEN ? ELSE ? END,
                   locked_at = NULL, updated_at = ?
               WHERE tenant_id = ? AND period_start = ? AND period_end = ? AND state = ?""",
            (
                BillingCycleState.OPEN.value, BillingCycleState.CLOSED.value, now,
                tenant_id, period_start, period_end,
                BillingCycleState.AGGREGATING.value,
            )
        )
        return updated == 1

    def close(self, tenant_id: str, period_start: str, period_end: str, invoice_id: str, now: str) -> bool:
        """AGGREGATING -> CLOSED. The first invoice for the window stays its invoice id."""
        updated = self.db.execute_update(
            """UPDATE billing_cycles
               SET state = ?, invoice_id = COALESCE(invoice_id, ?), locked_at = NULL, updated_at = ?
               WHERE tenant_id = ? AND period_start = ? AND period_end = ? AND state = ?""",
            (
                BillingCycleState.CLOSED.value, invoice_id, now,
                tenant_id, period_start, period_end,
                BillingCycleState.AGGREGATING.value,
            )
        )
        return updated == 1

    def get_by_tenant(self, tenant_id: str) -> List[BillingCycleRecord]:
        results = self.db.execute(
            "SELECT * FROM billing_cycles WHERE tenant_id = ? ORDER BY period_start DESC",
            (tenant_id,)
        )
        return [BillingCycleRecord.from_row(r) for r in results]
