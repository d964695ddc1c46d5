"""
WILSY METERING - FastAPI Server

Thin HTTP surface over MeteringService.

Endpoints:
- POST /usage - Record a usage event
- POST /billing/{tenant_id}/run - Close a billing window into an invoice
- GET /invoices/{invoice_id} - Fetch an invoice
- POST /invoices/{invoice_id}/paid - Settle an invoice
- GET /forecast/{tenant_id} - Revenue forecast
- GET /chain/{tenant_id}/verify - Verify a tenant's hash chain
- GET /records/{tenant_id} - Redacted record export
- GET /metrics - Real-time dashboard counters
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..billing.cycles import parse_cycle_type
from ..config import MeteringConfig
from ..core.errors import (
    BillingRaceError,
    MeteringError,
    NotFoundError,
    PersistenceError,
    UnknownPricingModel,
    ValidationError,
)
from ..service import MeteringService, parse_reference

logger = structlog.get_logger()

VERSION = "1.0.0"


# ============================================================================
# Pydantic Models
# ============================================================================

class UsageRequest(BaseModel):
    """A usage event. Field rules are enforced by the ingestion gate."""
    tenant_id: Optional[str] = Field(None, description="Tenant identifier")
    user_id: Optional[str] = Field(None, description="User within the tenant")
    service_type: Optional[str] = Field(None, description="DOCUMENT_ANALYSIS, RISK_ASSESSMENT, ...")
    model: Optional[str] = Field(None, description="GPT4_TURBO, CLAUDE_3_OPUS, WILSY_LEGAL_SPECIALIZED")
    # Counts stay untyped so "100" and true reach the gate uncoerced
    input_tokens: Any = None
    output_tokens: Any = None
    total_tokens: Any = None
    character_count: Any = None
    document_pages: Any = None
    document_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BillingRunRequest(BaseModel):
    cycle_type: str = Field(default="MONTHLY", description="MONTHLY, QUARTERLY or ANNUAL")
    reference: Optional[str] = Field(None, description="ISO-8601 instant inside the window (default: last completed window)")


class StatusChangeRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    actor: str = Field(default="API")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime_seconds: float
    pending_records: int


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(self, service: Optional[MeteringService] = None, config: Optional[MeteringConfig] = None):
        self.config = config or (service.config if service else MeteringConfig.from_env())
        self.service = service or MeteringService(self.config)
        self.start_time = datetime.now(timezone.utc)


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

ERROR_STATUS = (
    (UnknownPricingModel, 422),
    (ValidationError, 400),
    (BillingRaceError, 409),
    (NotFoundError, 404),
    (PersistenceError, 503),
)


def _status_for(error: MeteringError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


def create_app(service: Optional[MeteringService] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    A prebuilt service (tests, embedding) is used as-is and its writer is
    left to the caller; otherwise one is built from the environment and its
    background writer runs for the app's lifetime.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        global app_state
        logger.info("wilsy_metering_starting", version=VERSION)
        app_state = AppState(service)
        owns_writer = service is None
        if owns_writer:
            app_state.service.start()
        yield
        if owns_writer:
            app_state.service.stop(drain=True)
        logger.info("wilsy_metering_stopping")

    application = FastAPI(
        title="Wilsy Metering",
        description="Usage metering and tiered billing for AI legal services.",
        version=VERSION,
        lifespan=lifespan,
    )

    config = service.config if service else MeteringConfig.from_env()
    application.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(MeteringError)
    async def metering_error_handler(request: Request, exc: MeteringError):
        status = _status_for(exc)
        if status >= 500:
            logger.error("request_failed", path=request.url.path, **exc.to_dict())
        return JSONResponse(status_code=status, content=exc.to_dict())

    @application.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "ValidationError", "message": "Malformed request", "details": jsonable_encoder(exc.errors())},
        )

    application.include_router(router)
    return application


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def verify_api_key(
    x_api_key: str = Header(..., alias="X-API-Key"),
    state: AppState = Depends(get_state),
) -> str:
    """Verify API key."""
    if x_api_key != state.config.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


# ============================================================================
# Endpoints
# ============================================================================

router = APIRouter()


@router.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        uptime_seconds=uptime,
        pending_records=state.service.writer.pending_count,
    )


@router.post("/usage", status_code=201, tags=["Metering"])
def record_usage(
    request: UsageRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Record one AI usage event.

    The event is validated, priced, sealed into the tenant chain and buffered
    for persistence. A 400 means nothing was recorded.
    """
    result = state.service.record_usage(request.model_dump())
    return result.to_dict()


@router.post("/usage/{usage_id}/dispute", tags=["Metering"])
def dispute_usage(
    usage_id: str,
    request: StatusChangeRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    record = state.service.dispute_record(usage_id, request.reason, actor=request.actor)
    return record.to_dict(redact=True)


@router.post("/usage/{usage_id}/correct", tags=["Metering"])
def correct_usage(
    usage_id: str,
    request: StatusChangeRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    record = state.service.correct_record(usage_id, request.reason, actor=request.actor)
    return record.to_dict(redact=True)


@router.post("/usage/{usage_id}/write-off", tags=["Metering"])
def write_off_usage(
    usage_id: str,
    request: StatusChangeRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    record = state.service.write_off_record(usage_id, request.reason, actor=request.actor)
    return record.to_dict(redact=True)


@router.post("/billing/{tenant_id}/run", tags=["Billing"])
def run_billing(
    tenant_id: str,
    request: Optional[BillingRunRequest] = None,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Aggregate a tenant's billing window into an invoice.

    Re-running a closed window returns the existing invoice. 409 means
    another run holds the window.
    """
    request = request or BillingRunRequest()
    result = state.service.run_billing_cycle(
        tenant_id,
        parse_cycle_type(request.cycle_type),
        parse_reference(request.reference),
    )
    return result.to_dict(redact=True)


@router.get("/invoices/{invoice_id}", tags=["Billing"])
def get_invoice(
    invoice_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    invoice = state.service.get_invoice(invoice_id)
    data = invoice.to_dict(redact=True)
    data["signature_valid"] = state.service.verify_invoice(invoice)
    data["overdue"] = state.service.is_overdue(invoice)
    return data


@router.post("/invoices/{invoice_id}/paid", tags=["Billing"])
def mark_invoice_paid(
    invoice_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    invoice = state.service.mark_invoice_paid(invoice_id, actor="API")
    return invoice.to_dict(redact=True)


@router.get("/forecast/{tenant_id}", tags=["Analytics"])
def get_forecast(
    tenant_id: str,
    window_days: int = Query(default=30, ge=1, le=3650),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.service.get_forecast(tenant_id, window_days).to_dict()


@router.get("/tenants/{tenant_id}/summary", tags=["Analytics"])
def tenant_summary(
    tenant_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.service.usage_summary(tenant_id)


@router.get("/chain/{tenant_id}/verify", tags=["Audit"])
def verify_chain(
    tenant_id: str,
    from_id: Optional[str] = None,
    to_id: Optional[str] = None,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Verify the integrity of a tenant's usage chain.

    Checks hashes, links, signatures and custody digests.
    """
    return state.service.verify_chain(tenant_id, from_id, to_id).to_dict()


@router.get("/records/{tenant_id}", tags=["Audit"])
def export_records(
    tenant_id: str,
    limit: int = Query(default=1000, ge=1, le=10000),
    offset: int = Query(default=0, ge=0),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    records = state.service.export_records(tenant_id, limit=limit, offset=offset)
    return {"tenant_id": tenant_id, "total": len(records), "records": records}


@router.get("/metrics", tags=["Monitoring"])
def get_metrics(
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Real-time counters. Per process and best effort; never used for billing."""
    return state.service.dashboard()


app = create_app()


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    config = MeteringConfig.from_env()
    uvicorn.run(
        "wilsy_metering.api.server:app",
        host="0.0.0.0",
        port=config.port,
    )


if __name__ == "__main__":
    run()
