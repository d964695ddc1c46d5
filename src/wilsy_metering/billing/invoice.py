"""
Invoice Generator

Builds signed invoices from a window's usage records. Totals are exact sums
of the records' already-quantized Decimal amounts, so an invoice total always
equals the sum of its records' total charges.
"""

import json
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, List, Optional

import structlog

from ..core.usage import UsageRecord, parse_iso, utc_iso
from ..crypto.keys import SigningKeyring
from ..persistence.models import Invoice, InvoiceLineItem, InvoiceStatus

if TYPE_CHECKING:
    from .cycles import BillingCycleWindow

logger = structlog.get_logger()

PAYMENT_TERMS_DAYS = 30

_ZERO = Decimal("0.00")


def _service_label(service_type: str) -> str:
    return "AI " + service_type.replace("_", " ").title()


class InvoiceGenerator:
    """Assembles, signs and verifies invoices."""

    def __init__(self, keyring: SigningKeyring, clock: Optional[Callable[[], datetime]] = None):
        self.keyring = keyring
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def build(
        self,
        tenant_id: str,
        window: "BillingCycleWindow",
        records: List[UsageRecord],
        sequence: int,
    ) -> Invoice:
        if not records:
            raise ValueError("An invoice needs at least one usage record")

        currencies = {r.cost.billing_currency for r in records}
        if len(currencies) != 1:
            raise ValueError(f"Records span several billing currencies: {sorted(currencies)}")

        now = self.clock()
        invoice_number = f"INV-{tenant_id}-{window.start:%Y%m%d}-{sequence:04d}"

        subtotal = sum((r.cost.cost_billing for r in records), _ZERO)
        tax_total = sum((r.cost.tax_amount for r in records), _ZERO)
        total = sum((r.cost.total_charge for r in records), _ZERO)

        invoice = Invoice(
            invoice_id=f"inv_{uuid.uuid4().hex}",
            invoice_number=invoice_number,
            tenant_id=tenant_id,
            cycle_type=window.cycle_type.value,
            period_start=window.start_iso,
            period_end=window.end_iso,
            issued_at=utc_iso(now),
            due_date=utc_iso(now + timedelta(days=PAYMENT_TERMS_DAYS)),
            currency=currencies.pop(),
            subtotal=subtotal,
            tax_total=tax_total,
            total=total,
            record_count=len(records),
            total_tokens=sum(r.tokens.total_tokens for r in records),
            payment_reference=f"WILSY-{invoice_number}",
            line_items=self._line_items(records, tax_total),
            status=InvoiceStatus.ISSUED,
        )
        self.sign(invoice)
        return invoice

    @staticmethod
    def _line_items(records: List[UsageRecord], tax_total: Decimal) -> List[InvoiceLineItem]:
        by_service: "OrderedDict[str, List[UsageRecord]]" = OrderedDict()
        for record in sorted(records, key=lambda r: r.service_type.value):
            by_service.setdefault(record.service_type.value, []).append(record)

        items = [
            InvoiceLineItem(
                description=_service_label(service),
                quantity=len(group),
                unit="requests",
                amount=sum((r.cost.cost_billing for r in group), _ZERO),
                service_type=service,
            )
            for service, group in by_service.items()
        ]

        rates = {r.cost.tax_rate for r in records}
        label = "Value Added Tax"
        if len(rates) == 1:
            label += f" ({(rates.pop() * 100).normalize():f}%)"
        items.append(InvoiceLineItem(description=label, quantity=1, unit="tax", amount=tax_total))
        return items

    def _payload(self, invoice: Invoice) -> bytes:
        return json.dumps(invoice.signing_fields(), sort_keys=True, separators=(',', ':')).encode('utf-8')

    def sign(self, invoice: Invoice) -> Invoice:
        invoice.signature, invoice.key_id = self.keyring.sign(self._payload(invoice))
        return invoice

    def verify(self, invoice: Invoice) -> bool:
        return self.keyring.verify(self._payload(invoice), invoice.signature, invoice.key_id)

    def is_overdue(self, invoice: Invoice, at: Optional[datetime] = None, grace_days: int = 0) -> bool:
        """Unpaid past the due date plus the cycle's grace period."""
        if invoice.status == InvoiceStatus.PAID:
            return False
        at = at or self.clock()
        return at > parse_iso(invoice.due_date) + timedelta(days=grace_days)
