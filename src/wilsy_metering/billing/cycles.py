"""
Billing Cycle Aggregator

Rolls PENDING usage records for one tenant and one calendar window into an
invoice. Each window has an advisory lock row (OPEN -> AGGREGATING ->
CLOSED); the invoice insert, the guarded PENDING -> BILLED update and the
window close commit together or not at all.

Only windows that have ended are billed, so no new usage can land in a
CLOSED window. Running a CLOSED window again returns its invoice; records
that went back to PENDING after it closed (corrections) are billed on a
supplementary invoice and the window keeps its original invoice id.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

import structlog

from ..core.errors import BillingRaceError, NotFoundError, ValidationError
from ..core.usage import BillingStatus, check_transition, utc_iso
from ..crypto.sealer import IntegritySealer
from ..persistence.database import Database
from ..persistence.models import BillingCycleState, Invoice
from ..persistence.repository import BillingCycleRepository, InvoiceRepository, UsageRepository
from .invoice import InvoiceGenerator

logger = structlog.get_logger()


class CycleType(Enum):
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    ANNUAL = "ANNUAL"

    @property
    def months(self) -> int:
        return {"MONTHLY": 1, "QUARTERLY": 3, "ANNUAL": 12}[self.value]

    @property
    def grace_days(self) -> int:
        return CYCLE_TERMS[self]["grace_days"]

    @property
    def late_fee_rate(self) -> Decimal:
        return CYCLE_TERMS[self]["late_fee_rate"]


CYCLE_TERMS: Dict[CycleType, Dict[str, Any]] = {
    CycleType.MONTHLY: {"grace_days": 7, "late_fee_rate": Decimal("0.02")},
    CycleType.QUARTERLY: {"grace_days": 14, "late_fee_rate": Decimal("0.015")},
    CycleType.ANNUAL: {"grace_days": 30, "late_fee_rate": Decimal("0.01")},
}


def parse_cycle_type(value: Union[CycleType, str]) -> CycleType:
    if isinstance(value, CycleType):
        return value
    try:
        return CycleType(str(value).upper())
    except ValueError:
        raise ValidationError(f"Invalid cycle type: {value}", field="cycle_type")


def _add_months(dt: datetime, months: int) -> datetime:
    index = dt.month - 1 + months
    return dt.replace(year=dt.year + index // 12, month=index % 12 + 1)


@dataclass(frozen=True)
class BillingCycleWindow:
    """Calendar-aligned UTC window; start and end are both inclusive."""
    cycle_type: CycleType
    start: datetime
    end: datetime

    @classmethod
    def for_cycle(cls, cycle_type: Union[CycleType, str], reference: datetime) -> "BillingCycleWindow":
        """The window of the given cycle type that contains reference."""
        cycle_type = parse_cycle_type(cycle_type)
        if reference.tzinfo is None:
            reference = reference.replace(tzinfo=timezone.utc)
        reference = reference.astimezone(timezone.utc)

        if cycle_type == CycleType.MONTHLY:
            month = reference.month
        elif cycle_type == CycleType.QUARTERLY:
            month = ((reference.month - 1) // 3) * 3 + 1
        else:
            month = 1

        start = datetime(reference.year, month, 1, tzinfo=timezone.utc)
        end = _add_months(start, cycle_type.months) - timedelta(microseconds=1)
        return cls(cycle_type, start, end)

    @property
    def start_iso(self) -> str:
        return utc_iso(self.start)

    @property
    def end_iso(self) -> str:
        return utc_iso(self.end)

    def contains(self, timestamp: str) -> bool:
        return self.start_iso <= timestamp <= self.end_iso

    def previous(self) -> "BillingCycleWindow":
        return BillingCycleWindow.for_cycle(self.cycle_type, self.start - timedelta(microseconds=1))

    def to_dict(self) -> Dict[str, str]:
        return {
            "cycle_type": self.cycle_type.value,
            "start": self.start_iso,
            "end": self.end_iso,
        }


@dataclass
class BillingResult:
    """
    invoice is the window's invoice. When a rerun finds records that reached
    PENDING after the window closed (corrections), they are billed on
    supplementary_invoice and the window keeps its original invoice.
    """
    tenant_id: str
    window: BillingCycleWindow
    invoice: Invoice
    already_closed: bool = False
    supplementary_invoice: Optional[Invoice] = None

    @property
    def record_count(self) -> int:
        return self.invoice.record_count

    @property
    def late_records(self) -> int:
        return self.supplementary_invoice.record_count if self.supplementary_invoice else 0

    def to_dict(self, redact: bool = False) -> Dict[str, Any]:
        if self.supplementary_invoice is not None:
            status = "SUPPLEMENTED"
        elif self.already_closed:
            status = "ALREADY_CLOSED"
        else:
            status = "INVOICED"
        return {
            "status": status,
            "tenant_id": self.tenant_id,
            "window": self.window.to_dict(),
            "invoice": self.invoice.to_dict(redact=redact),
            "supplementary_invoice": (
                self.supplementary_invoice.to_dict(redact=redact) if self.supplementary_invoice else None
            ),
            "already_closed": self.already_closed,
            "late_records": self.late_records,
        }


@dataclass
class NoOpResult:
    tenant_id: str
    window: BillingCycleWindow
    reason: str = "no_pending_records"

    def to_dict(self, redact: bool = False) -> Dict[str, Any]:
        return {
            "status": "NO_OP",
            "tenant_id": self.tenant_id,
            "window": self.window.to_dict(),
            "reason": self.reason,
        }


class BillingCycleAggregator:
    """
    Closes billing windows into invoices.

    The lock row is taken in its own short transaction so a concurrent run
    sees AGGREGATING and fails fast with BillingRaceError. A lock older than
    lock_timeout_seconds is treated as abandoned and may be taken over.
    """

    def __init__(
        self,
        db: Database,
        usage_repo: UsageRepository,
        invoice_repo: InvoiceRepository,
        cycle_repo: BillingCycleRepository,
        generator: InvoiceGenerator,
        sealer: IntegritySealer,
        clock: Optional[Callable[[], datetime]] = None,
        lock_timeout_seconds: int = 900,
    ):
        self.db = db
        self.usage_repo = usage_repo
        self.invoice_repo = invoice_repo
        self.cycle_repo = cycle_repo
        self.generator = generator
        self.sealer = sealer
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.lock_timeout = timedelta(seconds=lock_timeout_seconds)

    def window_for(
        self,
        cycle_type: Union[CycleType, str] = CycleType.MONTHLY,
        reference: Optional[datetime] = None,
    ) -> BillingCycleWindow:
        """The window containing reference, or the last completed window."""
        if reference is None:
            return BillingCycleWindow.for_cycle(cycle_type, self.clock()).previous()
        return BillingCycleWindow.for_cycle(cycle_type, reference)

    def run(
        self,
        tenant_id: str,
        cycle_type: Union[CycleType, str] = CycleType.MONTHLY,
        reference: Optional[datetime] = None,
    ) -> Union[BillingResult, NoOpResult]:
        """
        Aggregate the window containing reference (default: the last
        completed window). Only windows that have ended can be billed.

        Raises:
            ValidationError: the window has not ended yet
            BillingRaceError: another run holds the window, or records were
                billed underneath this run
        """
        now = self.clock()
        window = self.window_for(cycle_type, reference)
        cycle_type = window.cycle_type

        if window.end >= now:
            raise ValidationError(
                "Billing window has not ended yet",
                field="reference",
                tenant_id=tenant_id,
                period_start=window.start_iso,
                period_end=window.end_iso,
            )

        existing = self.cycle_repo.get(tenant_id, window.start_iso, window.end_iso)
        reopening = existing is not None and existing.state == BillingCycleState.CLOSED
        if reopening:
            if not self.usage_repo.count_pending_in_window(tenant_id, window.start_iso, window.end_iso):
                return self._closed_result(tenant_id, window, existing.invoice_id)
            acquired, row = self.cycle_repo.reopen(tenant_id, window.start_iso, window.end_iso, utc_iso(now))
        else:
            acquired, row = self.cycle_repo.acquire(
                tenant_id,
                window.start_iso,
                window.end_iso,
                cycle_type.value,
                utc_iso(now),
                utc_iso(now - self.lock_timeout),
            )

        if not acquired:
            if row is not None and row.state == BillingCycleState.CLOSED:
                return self._closed_result(tenant_id, window, row.invoice_id)
            logger.warning(
                "billing_cycle_locked",
                tenant_id=tenant_id,
                period_start=window.start_iso,
                locked_at=row.locked_at if row else None,
            )
            raise BillingRaceError(
                "Billing window is being aggregated by another run",
                existing_invoice_id=row.invoice_id if row else None,
                tenant_id=tenant_id,
                period_start=window.start_iso,
                period_end=window.end_iso,
            )

        try:
            invoice = self._aggregate(tenant_id, window, now)
        except Exception:
            self.cycle_repo.release(tenant_id, window.start_iso, window.end_iso, utc_iso(self.clock()))
            raise

        if invoice is None:
            self.cycle_repo.release(tenant_id, window.start_iso, window.end_iso, utc_iso(self.clock()))
            if reopening:
                return self._closed_result(tenant_id, window, existing.invoice_id)
            logger.info("billing_cycle_noop", tenant_id=tenant_id, period_start=window.start_iso)
            return NoOpResult(tenant_id, window)

        if reopening:
            logger.warning(
                "billing_cycle_supplemented",
                tenant_id=tenant_id,
                period_start=window.start_iso,
                invoice_id=existing.invoice_id,
                supplementary_invoice_id=invoice.invoice_id,
                records=invoice.record_count,
                total=str(invoice.total),
            )
            original = self._closed_result(tenant_id, window, existing.invoice_id)
            original.supplementary_invoice = invoice
            return original

        logger.info(
            "billing_cycle_closed",
            tenant_id=tenant_id,
            cycle_type=cycle_type.value,
            period_start=window.start_iso,
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.invoice_number,
            records=invoice.record_count,
            total=str(invoice.total),
        )
        return BillingResult(tenant_id, window, invoice)

    def _aggregate(self, tenant_id: str, window: BillingCycleWindow, now: datetime) -> Optional[Invoice]:
        with self.db.transaction():
            records = self.usage_repo.pending_in_window(tenant_id, window.start_iso, window.end_iso)
            if not records:
                return None

            sequence = self.invoice_repo.next_sequence(tenant_id, window.start.strftime("%Y%m%d"))
            invoice = self.generator.build(tenant_id, window, records, sequence)
            self.invoice_repo.create(invoice)

            for record in records:
                check_transition(record.billing_status, BillingStatus.BILLED, record.usage_id)
                record.billing_status = BillingStatus.BILLED
                record.invoice_id = invoice.invoice_id
                note = record.add_note("BILLED", now, reason=invoice.invoice_number)
                self.sealer.append_custody(record, note)

            updated = self.usage_repo.mark_billed(records, invoice.invoice_id)
            if updated != len(records):
                raise BillingRaceError(
                    "Records were billed by a concurrent run",
                    tenant_id=tenant_id,
                    expected=len(records),
                    updated=updated,
                    period_start=window.start_iso,
                )

            if not self.cycle_repo.close(tenant_id, window.start_iso, window.end_iso, invoice.invoice_id, utc_iso(now)):
                raise BillingRaceError(
                    "Billing window lock was lost before close",
                    tenant_id=tenant_id,
                    period_start=window.start_iso,
                )

            return invoice

    def _closed_result(self, tenant_id: str, window: BillingCycleWindow, invoice_id: Optional[str]) -> BillingResult:
        invoice = self.invoice_repo.get(invoice_id) if invoice_id else None
        if invoice is None:
            raise NotFoundError(
                f"Closed window references missing invoice {invoice_id}",
                tenant_id=tenant_id,
            )

        return BillingResult(tenant_id, window, invoice, already_closed=True)
