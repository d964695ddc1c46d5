"""
Error Taxonomy for the Metering Engine

Every error carries enough context (usage id, tenant id, timestamp) to
reconstruct the failure without re-deriving secret material.
"""

from typing import Any, Dict, Optional


class MeteringError(Exception):
    """Base class for all metering and billing errors."""

    def __init__(
        self,
        message: str,
        usage_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        timestamp: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.message = message
        self.usage_id = usage_id
        self.tenant_id = tenant_id
        self.timestamp = timestamp
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "usage_id": self.usage_id,
            "tenant_id": self.tenant_id,
            "timestamp": self.timestamp,
            **self.context,
        }


class ValidationError(MeteringError):
    """Raised when an incoming event is missing or has an invalid field."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any):
        super().__init__(message, field=field, **kwargs)
        self.field = field


class InvalidStatusTransition(ValidationError):
    """Raised when a billing status change is not allowed."""


class UnknownPricingModel(MeteringError):
    """Raised when a model id has no pricing entry in the catalog."""

    def __init__(self, model: str, **kwargs: Any):
        super().__init__(f"No pricing entry for model: {model}", model=model, **kwargs)
        self.model = model


class PersistenceError(MeteringError):
    """Raised when the durable store rejects a write."""


class IntegrityViolation(MeteringError):
    """Raised or reported when hash chain verification fails."""

    def __init__(self, message: str, reason: str = "", **kwargs: Any):
        super().__init__(message, reason=reason, **kwargs)
        self.reason = reason


class BillingRaceError(MeteringError):
    """Raised when a concurrent aggregation run already owns the window."""

    def __init__(self, message: str, existing_invoice_id: Optional[str] = None, **kwargs: Any):
        super().__init__(message, existing_invoice_id=existing_invoice_id, **kwargs)
        self.existing_invoice_id = existing_invoice_id


class NotFoundError(MeteringError):
    """Raised when a record or invoice does not exist."""
