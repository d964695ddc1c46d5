"""
WILSY METERING

Usage metering and tiered billing for AI-powered legal services: every AI
call is priced, valued, sealed into a per-tenant hash chain and batched to
durable storage; billing windows close into signed invoices.
"""

from .config import MeteringConfig
from .service import MeteringService, RecordUsageResult

__version__ = "1.0.0"

__all__ = ["MeteringConfig", "MeteringService", "RecordUsageResult", "__version__"]
