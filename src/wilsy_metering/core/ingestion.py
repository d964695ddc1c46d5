"""
Ingestion / Validation Gate

Validates and enriches a raw usage event before it is priced. This is the
only failure that is synchronous and visible to the caller: a rejected event
never reaches the cost calculator.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import structlog

from .errors import ValidationError
from .pricing import AIModel, PricingCatalog
from .usage import ServiceType, TokenUsage

logger = structlog.get_logger()

CHARS_PER_TOKEN = 4
CHARS_PER_PAGE = 2500


@dataclass
class UsageEvent:
    """Raw consumption event as reported by an AI service."""
    tenant_id: Optional[str]
    user_id: Optional[str]
    service_type: Any
    model: Any
    input_tokens: Any
    output_tokens: Any
    total_tokens: Any = None
    character_count: Optional[int] = None
    document_pages: Optional[int] = None
    document_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageEvent":
        tokens = data.get("token_usage") or {}
        return cls(
            tenant_id=data.get("tenant_id"),
            user_id=data.get("user_id"),
            service_type=data.get("service_type"),
            model=data.get("model"),
            input_tokens=data.get("input_tokens", tokens.get("input_tokens")),
            output_tokens=data.get("output_tokens", tokens.get("output_tokens")),
            total_tokens=data.get("total_tokens", tokens.get("total_tokens")),
            character_count=data.get("character_count", tokens.get("character_count")),
            document_pages=data.get("document_pages", tokens.get("document_pages")),
            document_id=data.get("document_id"),
            metadata=data.get("metadata") or {},
        )


@dataclass(frozen=True)
class TenantProfile:
    """Snapshot of the tenant attributes metering needs."""
    tenant_id: str
    tier: str = "PROFESSIONAL"
    jurisdiction: str = "RSA"
    billing_cycle: str = "MONTHLY"


class TenantDirectory(ABC):
    """External collaborator resolving tenants and users."""

    @abstractmethod
    def resolve_tenant(self, tenant_id: str) -> Optional[TenantProfile]:
        """Return the tenant's current profile, or None if unknown."""

    @abstractmethod
    def resolve_user(self, tenant_id: str, user_id: str) -> bool:
        """Return True if the user belongs to the tenant."""


class StaticTenantDirectory(TenantDirectory):
    """
    In-memory directory.

    With allow_unknown=True every tenant/user resolves with default profile values,
    which is what the development server uses.
    """

    def __init__(self, allow_unknown: bool = False, default_tier: str = "PROFESSIONAL"):
        self.allow_unknown = allow_unknown
        self.default_tier = default_tier
        self._tenants: Dict[str, TenantProfile] = {}
        self._users: Dict[str, set] = {}

    def add_tenant(self, profile: TenantProfile, users=()) -> None:
        self._tenants[profile.tenant_id] = profile
        self._users.setdefault(profile.tenant_id, set()).update(users)

    def add_user(self, tenant_id: str, user_id: str) -> None:
        self._users.setdefault(tenant_id, set()).add(user_id)

    def set_tier(self, tenant_id: str, tier: str) -> None:
        profile = self._tenants[tenant_id]
        self._tenants[tenant_id] = TenantProfile(
            tenant_id=tenant_id,
            tier=tier,
            jurisdiction=profile.jurisdiction,
            billing_cycle=profile.billing_cycle,
        )

    def resolve_tenant(self, tenant_id: str) -> Optional[TenantProfile]:
        profile = self._tenants.get(tenant_id)
        if profile is None and self.allow_unknown:
            return TenantProfile(tenant_id=tenant_id, tier=self.default_tier)
        return profile

    def resolve_user(self, tenant_id: str, user_id: str) -> bool:
        if self.allow_unknown:
            return True
        return user_id in self._users.get(tenant_id, set())


@dataclass(frozen=True)
class AdmittedEvent:
    """A validated, enriched event ready for pricing."""
    tenant_id: str
    user_id: str
    service_type: ServiceType
    model: AIModel
    tokens: TokenUsage
    tier: str
    jurisdiction: str
    document_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class IngestionGate:
    """Validation and enrichment in front of the cost calculator."""

    REQUIRED_FIELDS = ("tenant_id", "user_id", "service_type", "model", "input_tokens", "output_tokens")

    def __init__(self, catalog: PricingCatalog, directory: TenantDirectory):
        self.catalog = catalog
        self.directory = directory

    def admit(self, event: UsageEvent) -> AdmittedEvent:
        """
        Validate and enrich an event.

        Raises:
            ValidationError: missing or invalid field, unknown tenant or user
        """
        for name in self.REQUIRED_FIELDS:
            value = getattr(event, name)
            if value is None or value == "":
                raise ValidationError(f"Missing required field: {name}", field=name, tenant_id=event.tenant_id)

        input_tokens = self._token_count(event.input_tokens, "input_tokens", event)
        output_tokens = self._token_count(event.output_tokens, "output_tokens", event)
        total = input_tokens + output_tokens

        if event.total_tokens is not None:
            supplied = self._token_count(event.total_tokens, "total_tokens", event)
            if supplied != total:
                raise ValidationError(
                    "Total tokens must equal input_tokens + output_tokens",
                    field="total_tokens",
                    tenant_id=event.tenant_id,
                )

        service_type = self._service_type(event)
        model = self._model(event)

        tenant = self.directory.resolve_tenant(event.tenant_id)
        if tenant is None:
            raise ValidationError(f"Unknown tenant: {event.tenant_id}", field="tenant_id", tenant_id=event.tenant_id)
        if not self.directory.resolve_user(event.tenant_id, event.user_id):
            raise ValidationError(
                f"User {event.user_id} does not belong to tenant",
                field="user_id",
                tenant_id=event.tenant_id,
            )

        character_count = event.character_count
        if character_count is None:
            character_count = total * CHARS_PER_TOKEN
        else:
            character_count = self._token_count(character_count, "character_count", event)

        pages = event.document_pages
        if pages is None:
            pages = math.ceil(character_count / CHARS_PER_PAGE)
        else:
            pages = self._token_count(pages, "document_pages", event)

        admitted = AdmittedEvent(
            tenant_id=event.tenant_id,
            user_id=event.user_id,
            service_type=service_type,
            model=model,
            tokens=TokenUsage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=total,
                character_count=character_count,
                document_pages=pages,
            ),
            tier=tenant.tier.upper(),
            jurisdiction=tenant.jurisdiction,
            document_id=event.document_id,
            metadata=dict(event.metadata or {}),
        )

        logger.debug(
            "usage_event_admitted",
            tenant_id=admitted.tenant_id,
            service_type=service_type.value,
            model=model.value,
            total_tokens=total,
        )
        return admitted

    @staticmethod
    def _token_count(value: Any, name: str, event: UsageEvent) -> int:
        # bool is an int subclass; True is not a token count
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{name} must be an integer", field=name, tenant_id=event.tenant_id)
        if value < 0:
            raise ValidationError(f"{name} must be non-negative", field=name, tenant_id=event.tenant_id)
        return value

    @staticmethod
    def _service_type(event: UsageEvent) -> ServiceType:
        if isinstance(event.service_type, ServiceType):
            return event.service_type
        try:
            return ServiceType(str(event.service_type).upper())
        except ValueError:
            raise ValidationError(
                f"Invalid service type: {event.service_type}",
                field="service_type",
                tenant_id=event.tenant_id,
            )

    @staticmethod
    def _model(event: UsageEvent) -> AIModel:
        if isinstance(event.model, AIModel):
            return event.model
        try:
            return AIModel(str(event.model).upper())
        except ValueError:
            raise ValidationError(
                f"Invalid model: {event.model}",
                field="model",
                tenant_id=event.tenant_id,
            )
