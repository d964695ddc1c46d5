"""
Data Models for Persistence Layer

Row mapping for usage records, plus the invoice and billing-cycle records
that exist only in storage.
"""

import json
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from ..core.cost import CostBreakdown
from ..core.usage import (
    AuditNote,
    BillingStatus,
    IntegrityBlock,
    ServiceType,
    TokenUsage,
    UsageRecord,
)
from ..core.value import ValueEstimate


def decode_json(value: Any) -> Any:
    # PostgreSQL JSONB columns come back already decoded
    if isinstance(value, str):
        return json.loads(value)
    return value


# ============================================================================
# Usage records
# ============================================================================

USAGE_COLUMNS = (
    "usage_id", "tenant_id", "user_id", "document_id", "timestamp",
    "service_type", "model", "tier", "jurisdiction", "tokens", "total_tokens",
    "cost", "value", "cost_billing", "tax_amount", "total_charge",
    "catalog_version", "billing_status", "invoice_id", "chain_sequence",
    "previous_hash", "hashes", "signature", "key_id", "audit_notes",
    "metadata", "stored_at",
)

# Plain copies of sealed values, kept for indexing and reporting
INDEXED_COLUMNS = ("total_tokens", "cost_billing", "tax_amount", "total_charge", "catalog_version")


def usage_to_db_tuple(record: UsageRecord, stored_at: str) -> tuple:
    """Convert a sealed record to an insert tuple in USAGE_COLUMNS order."""
    indexed = record.indexed_column_values()
    return (
        record.usage_id,
        record.tenant_id,
        record.user_id,
        record.document_id,
        record.timestamp,
        record.service_type.value,
        record.model,
        record.tier,
        record.jurisdiction,
        json.dumps(record.tokens.to_dict()),
        indexed["total_tokens"],
        json.dumps(record.cost.to_dict()),
        json.dumps(record.value.to_dict()),
        indexed["cost_billing"],
        indexed["tax_amount"],
        indexed["total_charge"],
        indexed["catalog_version"],
        record.billing_status.value,
        record.invoice_id,
        record.integrity.chain_sequence,
        record.integrity.previous_hash,
        json.dumps(record.integrity.hashes),
        record.integrity.signature,
        record.integrity.key_id,
        json.dumps([n.to_dict() for n in record.audit_notes]),
        json.dumps(record.metadata, default=str),
        stored_at,
    )


def usage_from_row(row: Dict[str, Any]) -> UsageRecord:
    return UsageRecord(
        usage_id=row["usage_id"],
        tenant_id=row["tenant_id"],
        user_id=row["user_id"],
        document_id=row.get("document_id"),
        timestamp=row["timestamp"],
        service_type=ServiceType(row["service_type"]),
        model=row["model"],
        tier=row["tier"],
        jurisdiction=row["jurisdiction"],
        tokens=TokenUsage(**decode_json(row["tokens"])),
        cost=CostBreakdown.from_dict(decode_json(row["cost"])),
        value=ValueEstimate.from_dict(decode_json(row["value"])),
        billing_status=BillingStatus(row["billing_status"]),
        invoice_id=row.get("invoice_id"),
        integrity=IntegrityBlock(
            hashes=list(decode_json(row["hashes"])),
            previous_hash=row["previous_hash"],
            signature=row["signature"],
            key_id=row["key_id"],
            chain_sequence=row["chain_sequence"],
        ),
        audit_notes=[AuditNote.from_dict(n) for n in decode_json(row["audit_notes"])],
        metadata=decode_json(row.get("metadata") or "{}"),
        indexed_columns={name: row[name] for name in INDEXED_COLUMNS if name in row},
    )


# ============================================================================
# Invoices
# ============================================================================

class InvoiceStatus(Enum):
    ISSUED = "ISSUED"
    PAID = "PAID"


@dataclass
class InvoiceLineItem:
    description: str
    quantity: int
    unit: str
    amount: Decimal
    service_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "quantity": self.quantity,
            "unit": self.unit,
            "amount": str(self.amount),
            "service_type": self.service_type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InvoiceLineItem":
        return cls(
            description=data["description"],
            quantity=data["quantity"],
            unit=data["unit"],
            amount=Decimal(data["amount"]),
            service_type=data.get("service_type"),
        )


@dataclass
class Invoice:
    """Persisted invoice record."""
    invoice_id: str
    invoice_number: str
    tenant_id: str
    cycle_type: str
    period_start: str
    period_end: str
    issued_at: str
    due_date: str
    currency: str
    subtotal: Decimal
    tax_total: Decimal
    total: Decimal
    record_count: int
    total_tokens: int
    payment_reference: str
    line_items: List[InvoiceLineItem] = field(default_factory=list)
    status: InvoiceStatus = InvoiceStatus.ISSUED
    signature: str = ""
    key_id: str = ""
    paid_at: Optional[str] = None

    def signing_fields(self) -> Dict[str, Any]:
        """Fields covered by the invoice signature (status and paid_at excluded)."""
        return {
            "invoice_id": self.invoice_id,
            "invoice_number": self.invoice_number,
            "tenant_id": self.tenant_id,
            "cycle_type": self.cycle_type,
            "period_start": self.period_start,
            "period_end": self.period_end,
            "issued_at": self.issued_at,
            "due_date": self.due_date,
            "currency": self.currency,
            "subtotal": str(self.subtotal),
            "tax_total": str(self.tax_total),
            "total": str(self.total),
            "record_count": self.record_count,
            "total_tokens": self.total_tokens,
            "payment_reference": self.payment_reference,
            "line_items": [item.to_dict() for item in self.line_items],
        }

    def to_dict(self, redact: bool = False) -> Dict[str, Any]:
        data = self.signing_fields()
        data["status"] = self.status.value
        data["paid_at"] = self.paid_at
        if not redact:
            data["signature"] = self.signature
            data["key_id"] = self.key_id
        return data

    def to_db_tuple(self) -> tuple:
        return (
            self.invoice_id,
            self.invoice_number,
            self.tenant_id,
            self.cycle_type,
            self.period_start,
            self.period_end,
            self.issued_at,
            self.due_date,
            self.currency,
            str(self.subtotal),
            str(self.tax_total),
            str(self.total),
            self.record_count,
            self.total_tokens,
            json.dumps([item.to_dict() for item in self.line_items]),
            self.status.value,
            self.payment_reference,
            self.signature,
            self.key_id,
            self.paid_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Invoice":
        return cls(
            invoice_id=row["invoice_id"],
            invoice_number=row["invoice_number"],
            tenant_id=row["tenant_id"],
            cycle_type=row["cycle_type"],
            period_start=row["period_start"],
            period_end=row["period_end"],
            issued_at=row["issued_at"],
            due_date=row["due_date"],
            currency=row["currency"],
            subtotal=Decimal(row["subtotal"]),
            tax_total=Decimal(row["tax_total"]),
            total=Decimal(row["total"]),
            record_count=row["record_count"],
            total_tokens=row["total_tokens"],
            payment_reference=row["payment_reference"],
            line_items=[InvoiceLineItem.from_dict(i) for i in decode_json(row["line_items"])],
            status=InvoiceStatus(row.get("status", "ISSUED")),
            signature=row["signature"],
            key_id=row["key_id"],
            paid_at=row.get("paid_at"),
        )


# ============================================================================
# Billing cycle lock rows
# ============================================================================

class BillingCycleState(Enum):
    OPEN = "OPEN"
    AGGREGATING = "AGGREGATING"
    CLOSED = "CLOSED"


@dataclass
class BillingCycleRecord:
    """Advisory lock row for one tenant billing window."""
    tenant_id: str
    period_start: str
    period_end: str
    cycle_type: str
    state: BillingCycleState = BillingCycleState.OPEN
    invoice_id: Optional[str] = None
    locked_at: Optional[str] = None
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "period_start": self.period_start,
            "period_end": self.period_end,
            "cycle_type": self.cycle_type,
            "state": self.state.value,
            "invoice_id": self.invoice_id,
            "locked_at": self.locked_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "BillingCycleRecord":
        return cls(
            tenant_id=row["tenant_id"],
            period_start=row["period_start"],
            period_end=row["period_end"],
            cycle_type=row["cycle_type"],
            state=BillingCycleState(row["state"]),
            invoice_id=row.get("invoice_id"),
            locked_at=row.get("locked_at"),
            updated_at=row["updated_at"],
        )
