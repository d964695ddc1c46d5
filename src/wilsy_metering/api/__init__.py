"""
WILSY METERING - API Module

FastAPI server exposing:
- Usage recording
- Billing cycle runs and invoices
- Revenue forecasts
- Chain verification and redacted export
- Real-time dashboard metrics
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
