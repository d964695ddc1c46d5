"""
Metering Service

The engine's front door. record_usage() runs the synchronous half of the
pipeline (validate, price, value, seal, enqueue, count) and returns as soon
as the sealed record is buffered; the batch writer persists it later.
Billing, forecasting and verification read the durable store.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from .billing.batch_writer import BatchWriter
from .billing.cycles import BillingCycleAggregator, BillingResult, CycleType, NoOpResult
from .billing.forecast import Forecast, RevenueForecaster
from .billing.invoice import InvoiceGenerator
from .billing.metrics_cache import RealTimeMetricsCache
from .config import MeteringConfig
from .core.cost import calculate_cost
from .core.errors import (
    BillingRaceError,
    InvalidStatusTransition,
    NotFoundError,
    PersistenceError,
    UnknownPricingModel,
    ValidationError,
)
from .core.ingestion import IngestionGate, StaticTenantDirectory, TenantDirectory, UsageEvent
from .core.pricing import PricingCatalog, default_catalog
from .core.usage import BillingStatus, UsageRecord, check_transition, parse_iso, utc_iso
from .core.value import estimate_value
from .crypto.chain import GENESIS_HASH, TenantChainLog
from .crypto.keys import SigningKeyring
from .crypto.sealer import AuditSink, ChainVerification, IntegritySealer
from .persistence.database import Database
from .persistence.models import Invoice, InvoiceStatus
from .persistence.repository import BillingCycleRepository, InvoiceRepository, UsageRepository

logger = structlog.get_logger()


@dataclass(frozen=True)
class RecordUsageResult:
    usage_id: str
    tenant_id: str
    timestamp: str
    total_charge: Decimal
    value_generated: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "usage_id": self.usage_id,
            "tenant_id": self.tenant_id,
            "timestamp": self.timestamp,
            "total_charge": str(self.total_charge),
            "value_generated": str(self.value_generated),
        }


class MeteringService:
    """
    Wires the metering pipeline together.

    Every collaborator can be injected; anything omitted is built from the
    config.
    """

    def __init__(
        self,
        config: Optional[MeteringConfig] = None,
        db: Optional[Database] = None,
        catalog: Optional[PricingCatalog] = None,
        keyring: Optional[SigningKeyring] = None,
        directory: Optional[TenantDirectory] = None,
        metrics: Optional[RealTimeMetricsCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.config = config or MeteringConfig.from_env()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.db = db or Database(self.config.database_url)
        self.db.initialize()

        self.catalog = catalog or default_catalog()
        self.keyring = keyring or SigningKeyring(
            self.config.signing_secret or None,
            self.config.signing_key_id,
        )
        self.directory = directory or StaticTenantDirectory(allow_unknown=self.config.allow_unknown_tenants)

        self.usage_repo = UsageRepository(self.db)
        self.invoice_repo = InvoiceRepository(self.db)
        self.cycle_repo = BillingCycleRepository(self.db)

        self.gate = IngestionGate(self.catalog, self.directory)
        self.chain_log = TenantChainLog(head_loader=self.usage_repo.chain_head)
        self.sealer = IntegritySealer(self.keyring, self.chain_log, audit_sink)
        self.metrics = metrics or RealTimeMetricsCache(self.clock, self.config.metrics_ttl_seconds)
        self.writer = BatchWriter(
            self.usage_repo,
            flush_interval=self.config.batch_flush_interval,
            batch_size=self.config.batch_size,
            max_backoff=self.config.batch_max_backoff,
            clock=self.clock,
        )
        self.invoices = InvoiceGenerator(self.keyring, self.clock)
        self.aggregator = BillingCycleAggregator(
            self.db,
            self.usage_repo,
            self.invoice_repo,
            self.cycle_repo,
            self.invoices,
            self.sealer,
            clock=self.clock,
            lock_timeout_seconds=self.config.billing_lock_timeout,
        )
        self.forecaster = RevenueForecaster(self.usage_repo, self.catalog, self.directory, self.clock)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self) -> None:
        self.writer.start()

    def stop(self, drain: bool = True) -> int:
        """Stop the background writer. Returns records left unwritten."""
        return self.writer.stop(drain=drain)

    def flush(self) -> int:
        """Persist everything buffered so far."""
        return self.writer.drain()

    # ========================================================================
    # Recording
    # ========================================================================

    def record_usage(self, event: Union[UsageEvent, Dict[str, Any]]) -> RecordUsageResult:
        """
        Validate, price, value, seal and buffer one usage event.

        Raises:
            ValidationError: the event was rejected; nothing was recorded
            UnknownPricingModel: the model has no price in the catalog in force
        """
        if isinstance(event, dict):
            event = UsageEvent.from_dict(event)

        admitted = self.gate.admit(event)
        now = self.clock()

        try:
            cost = calculate_cost(
                admitted.tokens.input_tokens,
                admitted.tokens.output_tokens,
                admitted.model,
                self.catalog,
                at=now,
            )
        except UnknownPricingModel as e:
            logger.error(
                "unknown_pricing_model",
                model=e.model,
                tenant_id=admitted.tenant_id,
                service_type=admitted.service_type.value,
            )
            e.tenant_id = admitted.tenant_id
            raise

        value = estimate_value(admitted.service_type, admitted.tokens.total_tokens, cost.cost_billing)

        record = UsageRecord(
            usage_id=f"usage_{uuid.uuid4().hex}",
            tenant_id=admitted.tenant_id,
            user_id=admitted.user_id,
            timestamp=utc_iso(now),
            service_type=admitted.service_type,
            model=admitted.model.value,
            tokens=admitted.tokens,
            cost=cost,
            value=value,
            tier=admitted.tier,
            jurisdiction=admitted.jurisdiction,
            document_id=admitted.document_id,
            metadata=admitted.metadata,
        )

        self.sealer.seal(record)
        self.writer.enqueue(record)

        try:
            self.metrics.record(record)
        except Exception as e:
            # Dashboard counters never block recording
            logger.warning("metrics_update_failed", usage_id=record.usage_id, error=str(e))

        logger.info(
            "usage_recorded",
            usage_id=record.usage_id,
            tenant_id=record.tenant_id,
            service_type=record.service_type.value,
            model=record.model,
            total_tokens=record.tokens.total_tokens,
            total_charge=str(cost.total_charge),
            minimum_charge_applied=cost.minimum_charge_applied,
        )

        return RecordUsageResult(
            usage_id=record.usage_id,
            tenant_id=record.tenant_id,
            timestamp=record.timestamp,
            total_charge=cost.total_charge,
            value_generated=value.total_value_generated,
        )

    # ========================================================================
    # Billing
    # ========================================================================

    def run_billing_cycle(
        self,
        tenant_id: str,
        cycle_type: Union[CycleType, str] = CycleType.MONTHLY,
        reference: Optional[datetime] = None,
    ) -> Union[BillingResult, NoOpResult]:
        """
        Flush buffered records, then aggregate the window containing
        reference (default: the last completed window).

        Raises:
            PersistenceError: records for the window are still buffered
                because the store rejected the flush
        """
        self.writer.drain()
        window = self.aggregator.window_for(cycle_type, reference)
        stranded = [
            r for r in self.writer.pending_records()
            if r.tenant_id == tenant_id and window.contains(r.timestamp)
        ]
        if stranded:
            logger.warning(
                "billing_postponed_unflushed_records",
                tenant_id=tenant_id,
                period_start=window.start_iso,
                pending=len(stranded),
            )
            raise PersistenceError(
                "Usage for the billing window could not be flushed; billing postponed",
                tenant_id=tenant_id,
                period_start=window.start_iso,
                pending=len(stranded),
            )
        return self.aggregator.run(tenant_id, cycle_type, reference)

    def get_invoice(self, invoice_id: str) -> Invoice:
        invoice = self.invoice_repo.get(invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice not found: {invoice_id}")
        return invoice

    def verify_invoice(self, invoice: Invoice) -> bool:
        return self.invoices.verify(invoice)

    def mark_invoice_paid(self, invoice_id: str, actor: str = "SYSTEM") -> Invoice:
        """Settle an invoice; its BILLED records move to PAID."""
        now = self.clock()
        with self.db.transaction():
            invoice = self.get_invoice(invoice_id)
            if invoice.status == InvoiceStatus.PAID:
                raise InvalidStatusTransition(
                    f"Invoice {invoice.invoice_number} is already paid",
                    field="status",
                    tenant_id=invoice.tenant_id,
                )

            settled = 0
            for record in self.usage_repo.get_by_invoice(invoice_id):
                if record.billing_status != BillingStatus.BILLED:
                    continue
                self._apply_status(record, BillingStatus.PAID, "PAID", now, actor, invoice.invoice_number)
                settled += 1

            if not self.invoice_repo.mark_paid(invoice_id, utc_iso(now)):
                raise BillingRaceError(
                    "Invoice was settled concurrently",
                    existing_invoice_id=invoice_id,
                    tenant_id=invoice.tenant_id,
                )

        logger.info(
            "invoice_paid",
            invoice_id=invoice_id,
            tenant_id=invoice.tenant_id,
            records_settled=settled,
        )
        return self.get_invoice(invoice_id)

    def dispute_record(self, usage_id: str, reason: str, actor: str = "SYSTEM") -> UsageRecord:
        return self._transition(usage_id, BillingStatus.DISPUTED, "DISPUTED", reason, actor)

    def correct_record(self, usage_id: str, reason: str, actor: str = "SYSTEM") -> UsageRecord:
        """DISPUTED -> PENDING; the record is detached from its invoice."""
        return self._transition(usage_id, BillingStatus.PENDING, "CORRECTED", reason, actor)

    def write_off_record(self, usage_id: str, reason: str, actor: str = "SYSTEM") -> UsageRecord:
        return self._transition(usage_id, BillingStatus.WRITTEN_OFF, "WRITTEN_OFF", reason, actor)

    def _transition(
        self,
        usage_id: str,
        new_status: BillingStatus,
        action: str,
        reason: str,
        actor: str,
    ) -> UsageRecord:
        self.writer.drain()
        now = self.clock()
        with self.db.transaction():
            record = self.get_record(usage_id)
            old_status = record.billing_status
            self._apply_status(record, new_status, action, now, actor, reason)

        logger.info(
            "usage_status_changed",
            usage_id=usage_id,
            tenant_id=record.tenant_id,
            old_status=old_status.value,
            new_status=new_status.value,
            actor=actor,
        )
        return record

    def _apply_status(
        self,
        record: UsageRecord,
        new_status: BillingStatus,
        action: str,
        now: datetime,
        actor: str,
        reason: Optional[str],
    ) -> None:
        old_status = record.billing_status
        check_transition(old_status, new_status, record.usage_id)

        record.billing_status = new_status
        if new_status == BillingStatus.PENDING:
            record.invoice_id = None
        note = record.add_note(action, now, actor=actor, reason=reason)
        self.sealer.append_custody(record, note)

        if not self.usage_repo.transition_status(record, old_status):
            raise BillingRaceError(
                "Record status changed concurrently",
                usage_id=record.usage_id,
                tenant_id=record.tenant_id,
            )

    # ========================================================================
    # Reads
    # ========================================================================

    def get_record(self, usage_id: str) -> UsageRecord:
        record = self.usage_repo.get(usage_id)
        if record is None:
            raise NotFoundError(f"Usage record not found: {usage_id}", usage_id=usage_id)
        return record

    def get_forecast(self, tenant_id: str, window_days: int = 30) -> Forecast:
        self.writer.drain()
        return self.forecaster.forecast(tenant_id, window_days)

    def verify_chain(
        self,
        tenant_id: str,
        from_id: Optional[str] = None,
        to_id: Optional[str] = None,
    ) -> ChainVerification:
        """
        Verify the tenant's stored chain, optionally between two record ids
        (inclusive). A slice is anchored on the seal hash of the record just
        before it, so a deleted predecessor is detected too.
        """
        self.writer.drain()

        from_sequence = self._sequence_of(tenant_id, from_id) if from_id else None
        to_sequence = self._sequence_of(tenant_id, to_id) if to_id else None

        anchor = GENESIS_HASH
        if from_sequence:
            prior = self.usage_repo.get_chain(tenant_id, from_sequence - 1, from_sequence - 1)
            anchor = prior[0].integrity.seal_hash if prior else ""

        records = self.usage_repo.get_chain(tenant_id, from_sequence, to_sequence)
        result = self.sealer.verify_chain(records, anchor_hash=anchor, tenant_id=tenant_id)

        logger.info(
            "chain_verified",
            tenant_id=tenant_id,
            valid=result.valid,
            checked=result.checked,
            broken_at=result.broken_at,
        )
        return result

    def _sequence_of(self, tenant_id: str, usage_id: str) -> int:
        record = self.get_record(usage_id)
        if record.tenant_id != tenant_id:
            raise NotFoundError(f"Usage record not found: {usage_id}", usage_id=usage_id, tenant_id=tenant_id)
        return record.integrity.chain_sequence

    def export_records(self, tenant_id: str, limit: int = 1000, offset: int = 0) -> List[Dict[str, Any]]:
        """Tenant-facing export: signatures and key ids are redacted."""
        self.writer.drain()
        records = self.usage_repo.get_by_tenant(tenant_id, limit=limit, offset=offset)
        return [r.to_dict(redact=True) for r in records]

    def usage_summary(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        start_iso = utc_iso(start) if start else ""
        end_iso = utc_iso(end) if end else "9999"
        summary = self.usage_repo.tenant_summary(tenant_id, start_iso, end_iso)
        summary["buffered"] = sum(1 for r in self.writer.pending_records() if r.tenant_id == tenant_id)
        return summary

    def dashboard(self) -> Dict[str, Any]:
        return {
            "metrics": self.metrics.snapshot(),
            "batch_writer": self.writer.stats(),
        }

    def is_overdue(self, invoice: Invoice, at: Optional[datetime] = None) -> bool:
        cycle = CycleType(invoice.cycle_type)
        return self.invoices.is_overdue(invoice, at or self.clock(), grace_days=cycle.grace_days)


def parse_reference(value: Optional[str]) -> Optional[datetime]:
    """Parse an optional ISO reference instant from CLI or HTTP input."""
    if not value:
        return None
    try:
        return parse_iso(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Invalid reference instant: {value}", field="reference")
