"""
Usage Record Domain Model

A UsageRecord is created once by ingestion; cost, value and integrity fields
are populated before persistence and are immutable afterwards. Only the
billing status (through the transition table) and appended audit notes change.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .cost import CostBreakdown
from .errors import InvalidStatusTransition
from .value import ValueEstimate


class ServiceType(Enum):
    """Metered AI service types."""
    DOCUMENT_ANALYSIS = "DOCUMENT_ANALYSIS"
    CLAUSE_EXTRACTION = "CLAUSE_EXTRACTION"
    RISK_ASSESSMENT = "RISK_ASSESSMENT"
    COMPLIANCE_CHECK = "COMPLIANCE_CHECK"
    PII_DETECTION = "PII_DETECTION"
    PII_REDACTION = "PII_REDACTION"
    BATCH_PROCESSING = "BATCH_PROCESSING"
    PRECEDENT_SEARCH = "PRECEDENT_SEARCH"
    CUSTOM_ANALYSIS = "CUSTOM_ANALYSIS"


class BillingStatus(Enum):
    PENDING = "PENDING"
    BILLED = "BILLED"
    PAID = "PAID"
    DISPUTED = "DISPUTED"
    WRITTEN_OFF = "WRITTEN_OFF"


# Monotonic, except DISPUTED -> PENDING through an explicit correction
ALLOWED_TRANSITIONS = {
    BillingStatus.PENDING: {BillingStatus.BILLED},
    BillingStatus.BILLED: {BillingStatus.PAID, BillingStatus.DISPUTED, BillingStatus.WRITTEN_OFF},
    BillingStatus.DISPUTED: {BillingStatus.PENDING, BillingStatus.WRITTEN_OFF},
    BillingStatus.PAID: set(),
    BillingStatus.WRITTEN_OFF: set(),
}


def check_transition(current: BillingStatus, new: BillingStatus, usage_id: Optional[str] = None) -> None:
    """Raise InvalidStatusTransition unless current -> new is allowed."""
    if new not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStatusTransition(
            f"Billing status cannot move from {current.value} to {new.value}",
            field="billing_status",
            usage_id=usage_id,
        )


def utc_iso(dt: datetime) -> str:
    """Fixed-width UTC ISO-8601, so stored timestamps sort lexicographically."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int
    output_tokens: int
    total_tokens: int
    character_count: int
    document_pages: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "character_count": self.character_count,
            "document_pages": self.document_pages,
        }


@dataclass
class IntegrityBlock:
    """
    Seal attached by the IntegritySealer.

    hashes[0] is the seal digest that links into the tenant chain; each later
    entry is a custody digest over one appended audit note.
    """
    hashes: List[str] = field(default_factory=list)
    previous_hash: str = ""
    signature: str = ""
    key_id: str = ""
    chain_sequence: int = -1

    @property
    def seal_hash(self) -> Optional[str]:
        return self.hashes[0] if self.hashes else None

    @property
    def custody_head(self) -> Optional[str]:
        return self.hashes[-1] if self.hashes else None

    @property
    def is_sealed(self) -> bool:
        return bool(self.hashes and self.signature)

    def to_dict(self, redact: bool = False) -> Dict[str, Any]:
        data = {
            "hashes": list(self.hashes),
            "previous_hash": self.previous_hash,
            "chain_sequence": self.chain_sequence,
        }
        if not redact:
            data["signature"] = self.signature
            data["key_id"] = self.key_id
        return data


@dataclass
class AuditNote:
    timestamp: str
    action: str  # CREATED, BILLED, PAID, DISPUTED, CORRECTED, WRITTEN_OFF
    actor: str = "SYSTEM"
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "action": self.action,
            "actor": self.actor,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditNote":
        return cls(
            timestamp=data["timestamp"],
            action=data["action"],
            actor=data.get("actor", "SYSTEM"),
            reason=data.get("reason"),
        )


@dataclass
class UsageRecord:
    """One metered AI event."""
    usage_id: str
    tenant_id: str
    user_id: str
    timestamp: str
    service_type: ServiceType
    model: str
    tokens: TokenUsage
    cost: CostBreakdown
    value: ValueEstimate
    tier: str
    jurisdiction: str = "RSA"
    document_id: Optional[str] = None
    billing_status: BillingStatus = BillingStatus.PENDING
    invoice_id: Optional[str] = None
    integrity: IntegrityBlock = field(default_factory=IntegrityBlock)
    audit_notes: List[AuditNote] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    # Copied column values as read back from storage; not sealed
    indexed_columns: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def total_charge(self):
        return self.cost.total_charge

    def canonical_fields(self) -> Dict[str, Any]:
        """
        Immutable fields covered by the integrity hash.

        Billing status, invoice id and audit notes are excluded: they are the
        only fields allowed to change after sealing.
        """
        return {
            "usage_id": self.usage_id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "document_id": self.document_id or "NO_DOCUMENT",
            "timestamp": self.timestamp,
            "service_type": self.service_type.value,
            "model": self.model,
            "tier": self.tier,
            "jurisdiction": self.jurisdiction,
            "tokens": self.tokens.to_dict(),
            "cost": self.cost.to_dict(),
            "value": self.value.to_dict(),
            "previous_hash": self.integrity.previous_hash,
            "chain_sequence": self.integrity.chain_sequence,
        }

    def indexed_column_values(self) -> Dict[str, Any]:
        """Values of the plain columns copied out of the sealed tokens and cost."""
        return {
            "total_tokens": self.tokens.total_tokens,
            "cost_billing": str(self.cost.cost_billing),
            "tax_amount": str(self.cost.tax_amount),
            "total_charge": str(self.cost.total_charge),
            "catalog_version": self.cost.catalog_version,
        }

    def add_note(self, action: str, at: datetime, actor: str = "SYSTEM", reason: Optional[str] = None) -> AuditNote:
        note = AuditNote(timestamp=utc_iso(at), action=action, actor=actor, reason=reason)
        self.audit_notes.append(note)
        return note

    def to_dict(self, redact: bool = False) -> Dict[str, Any]:
        """
        Serialize the record.

        redact=True produces the tenant-facing view: signature and key id are
        dropped, everything else is preserved.
        """
        return {
            "usage_id": self.usage_id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "document_id": self.document_id,
            "timestamp": self.timestamp,
            "service_type": self.service_type.value,
            "model": self.model,
            "tier": self.tier,
            "jurisdiction": self.jurisdiction,
            "tokens": self.tokens.to_dict(),
            "cost": self.cost.to_dict(),
            "value": self.value.to_dict(),
            "billing_status": self.billing_status.value,
            "invoice_id": self.invoice_id,
            "integrity": self.integrity.to_dict(redact=redact),
            "audit_notes": [n.to_dict() for n in self.audit_notes],
            "metadata": self.metadata,
        }
