"""
Wilsy Metering CLI

Commands:
  serve     - Run the metering server
  bill      - Close a tenant's billing window into an invoice
  pay       - Mark an invoice as paid
  verify    - Verify a tenant's usage chain
  forecast  - Show a tenant's revenue forecast
  summary   - Show a tenant's usage summary
  flush-info - Show batch writer settings and stored record counts
  config    - Show the effective configuration (no secrets)
"""

import argparse
import json
import sys

from .config import MeteringConfig
from .core.errors import MeteringError


def _service():
    from .service import MeteringService
    return MeteringService(MeteringConfig.from_env())


def _print(data):
    print(json.dumps(data, indent=2, default=str))


def cmd_serve(args):
    """Run the metering server."""
    import uvicorn

    config = MeteringConfig.from_env()
    port = args.port or config.port
    host = args.host or "0.0.0.0"

    print(f"Starting Wilsy Metering on {host}:{port}")

    uvicorn.run(
        "wilsy_metering.api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_bill(args):
    """Run a billing cycle for one tenant."""
    from .service import parse_reference

    service = _service()
    result = service.run_billing_cycle(args.tenant, args.cycle, parse_reference(args.reference))
    data = result.to_dict()

    if data["status"] == "NO_OP":
        print(f"Nothing to bill for {args.tenant} ({data['window']['start']} .. {data['window']['end']})")
        return

    invoice = data["invoice"]
    supplementary = data["supplementary_invoice"]
    if supplementary:
        print(f"Window already closed as {invoice['invoice_number']}; "
              f"{supplementary['record_count']} corrected record(s) billed separately")
        invoice = supplementary
    elif result.already_closed:
        print("Window already closed")
    print(f"Invoice {invoice['invoice_number']}")
    print(f"  Records: {invoice['record_count']}")
    print(f"  Subtotal: {invoice['currency']} {invoice['subtotal']}")
    print(f"  Tax: {invoice['currency']} {invoice['tax_total']}")
    print(f"  Total: {invoice['currency']} {invoice['total']}")
    print(f"  Due: {invoice['due_date'][:10]}")
    print(f"  Reference: {invoice['payment_reference']}")


def cmd_pay(args):
    """Mark an invoice as paid."""
    service = _service()
    invoice = service.mark_invoice_paid(args.invoice_id, actor=args.actor)
    print(f"Invoice {invoice.invoice_number} paid at {invoice.paid_at}")


def cmd_verify(args):
    """Verify a tenant's chain."""
    service = _service()
    result = service.verify_chain(args.tenant, args.from_id, args.to_id)
    if result.valid:
        print(f"Chain valid ({result.checked} records)")
        print(f"  Merkle root: {result.root}")
    else:
        print(f"Chain BROKEN at {result.broken_at}: {result.reason}")
        sys.exit(1)


def cmd_forecast(args):
    """Show a revenue forecast."""
    service = _service()
    _print(service.get_forecast(args.tenant, args.days).to_dict())


def cmd_summary(args):
    """Show a usage summary."""
    service = _service()
    _print(service.usage_summary(args.tenant))


def cmd_flush_info(args):
    """Show batch writer settings and what the durable store holds."""
    service = _service()
    config = service.config
    print(f"Batch size: {config.batch_size}")
    print(f"Flush interval: {config.batch_flush_interval}s")
    print(f"Max backoff: {config.batch_max_backoff}s")
    print(f"Stored records: {service.usage_repo.count(args.tenant)}")
    if args.tenant:
        head = service.usage_repo.chain_head(args.tenant)
        print(f"Chain head: {head[0] if head else 'none'}")


def cmd_config(args):
    """Show configuration without secrets."""
    _print(MeteringConfig.from_env().to_dict())


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Wilsy Metering - AI usage metering and billing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # bill
    bill_parser = subparsers.add_parser("bill", help="Run a billing cycle")
    bill_parser.add_argument("tenant", help="Tenant ID")
    bill_parser.add_argument("--cycle", default="MONTHLY", help="MONTHLY, QUARTERLY or ANNUAL")
    bill_parser.add_argument("--reference", help="ISO-8601 instant inside the window (default: last completed window)")

    # pay
    pay_parser = subparsers.add_parser("pay", help="Mark an invoice as paid")
    pay_parser.add_argument("invoice_id", help="Invoice ID")
    pay_parser.add_argument("--actor", default="CLI")

    # verify
    verify_parser = subparsers.add_parser("verify", help="Verify a tenant's usage chain")
    verify_parser.add_argument("tenant", help="Tenant ID")
    verify_parser.add_argument("--from-id", dest="from_id", help="First usage id (inclusive)")
    verify_parser.add_argument("--to-id", dest="to_id", help="Last usage id (inclusive)")

    # forecast
    forecast_parser = subparsers.add_parser("forecast", help="Show a revenue forecast")
    forecast_parser.add_argument("tenant", help="Tenant ID")
    forecast_parser.add_argument("--days", type=int, default=30, help="Look-back window in days")

    # summary
    summary_parser = subparsers.add_parser("summary", help="Show a usage summary")
    summary_parser.add_argument("tenant", help="Tenant ID")

    # flush-info
    flush_parser = subparsers.add_parser("flush-info", help="Show batch writer settings and stored counts")
    flush_parser.add_argument("--tenant", help="Restrict counts to one tenant")

    # config
    subparsers.add_parser("config", help="Show configuration")

    args = parser.parse_args(argv)

    commands = {
        "serve": cmd_serve,
        "bill": cmd_bill,
        "pay": cmd_pay,
        "verify": cmd_verify,
        "forecast": cmd_forecast,
        "summary": cmd_summary,
        "flush-info": cmd_flush_info,
        "config": cmd_config,
    }

    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return

    try:
        command(args)
    except MeteringError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
