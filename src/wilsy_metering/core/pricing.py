"""
Pricing Catalog

Static configuration mapping model identifiers to unit costs, markup,
currency, exchange rate and minimum charge, plus service tiers.

Catalogs are versioned: a new price list is added as a new CatalogVersion with
an effective-from instant, so historical records remain reproducible.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .errors import UnknownPricingModel, ValidationError


class AIModel(Enum):
    """Priced model identifiers."""
    GPT4_TURBO = "GPT4_TURBO"
    CLAUDE_3_OPUS = "CLAUDE_3_OPUS"
    WILSY_LEGAL_SPECIALIZED = "WILSY_LEGAL_SPECIALIZED"


@dataclass(frozen=True)
class PricingEntry:
    """Per-model pricing. Unit costs are per 1K tokens in the source currency."""
    model: AIModel
    provider_model: str
    input_cost_per_1k: Decimal
    output_cost_per_1k: Decimal
    source_currency: str
    exchange_rate: Decimal  # source -> billing currency
    markup_multiplier: Decimal
    minimum_charge: Decimal  # billing currency


@dataclass(frozen=True)
class ServiceTier:
    """Monthly token quota and overage terms for a subscription tier."""
    name: str
    monthly_token_quota: int
    overage_multiplier: Decimal
    included_services: Tuple[str, ...] = ()
    support: str = "EMAIL_ONLY"


@dataclass(frozen=True)
class CatalogVersion:
    """One immutable price list."""
    version: str
    effective_from: datetime
    entries: Dict[AIModel, PricingEntry]
    tiers: Dict[str, ServiceTier]
    tax_rate: Decimal = Decimal("0.15")
    billing_currency: str = "ZAR"


@dataclass
class PricingCatalog:
    """
    Ordered collection of catalog versions.

    Lookups resolve the version in force at a given instant.
    """
    versions: List[CatalogVersion] = field(default_factory=list)

    def __post_init__(self):
        self.versions = sorted(self.versions, key=lambda v: v.effective_from)

    def add_version(self, version: CatalogVersion) -> None:
        if any(v.version == version.version for v in self.versions):
            raise ValidationError(f"Catalog version already exists: {version.version}", field="version")
        self.versions.append(version)
        self.versions.sort(key=lambda v: v.effective_from)

    def version_at(self, at: Optional[datetime] = None) -> CatalogVersion:
        """Get the catalog version in force at an instant (default: latest)."""
        if not self.versions:
            raise ValidationError("Pricing catalog is empty", field="catalog")
        if at is None:
            return self.versions[-1]

        current = None
        for version in self.versions:
            if version.effective_from <= at:
                current = version
            else:
                break
        # Instants before the first version price with the first version
        return current or self.versions[0]

    def get_version(self, version: str) -> CatalogVersion:
        for v in self.versions:
            if v.version == version:
                return v
        raise ValidationError(f"Unknown catalog version: {version}", field="catalog_version")

    def entry_for(self, model, at: Optional[datetime] = None) -> PricingEntry:
        """
        Get pricing for a model.

        Raises:
            UnknownPricingModel: model is not a member of the catalog
        """
        key = _coerce_model(model)
        version = self.version_at(at)
        if key is None or key not in version.entries:
            raise UnknownPricingModel(str(getattr(model, "value", model)))
        return version.entries[key]

    def tier(self, name: str, at: Optional[datetime] = None) -> ServiceTier:
        version = self.version_at(at)
        tier = version.tiers.get(name.upper()) if name else None
        if tier is None:
            raise ValidationError(f"Unknown service tier: {name}", field="tier")
        return tier

    def knows_model(self, model, at: Optional[datetime] = None) -> bool:
        key = _coerce_model(model)
        return key is not None and key in self.version_at(at).entries


def _coerce_model(model) -> Optional[AIModel]:
    if isinstance(model, AIModel):
        return model
    try:
        return AIModel(str(model).upper())
    except ValueError:
        return None


DEFAULT_TIERS = {
    "STARTER": ServiceTier(
        name="STARTER",
        monthly_token_quota=100_000,
        overage_multiplier=Decimal("1.5"),
        included_services=("BASIC_ANALYSIS", "PII_DETECTION"),
        support="EMAIL_ONLY",
    ),
    "PROFESSIONAL": ServiceTier(
        name="PROFESSIONAL",
        monthly_token_quota=1_000_000,
        overage_multiplier=Decimal("1.25"),
        included_services=("ALL_ANALYSIS", "PII_REDACTION", "COMPLIANCE_CHECK"),
        support="PRIORITY_24_7",
    ),
    "ENTERPRISE": ServiceTier(
        name="ENTERPRISE",
        monthly_token_quota=10_000_000,
        overage_multiplier=Decimal("1.1"),
        included_services=("ALL_SERVICES", "BATCH_PROCESSING", "CUSTOM_MODELS"),
        support="DEDICATED_ACCOUNT_MANAGER",
    ),
}

DEFAULT_ENTRIES = {
    AIModel.GPT4_TURBO: PricingEntry(
        model=AIModel.GPT4_TURBO,
        provider_model="gpt-4-turbo-preview",
        input_cost_per_1k=Decimal("0.0015"),
        output_cost_per_1k=Decimal("0.0030"),
        source_currency="USD",
        exchange_rate=Decimal("18.5"),
        markup_multiplier=Decimal("3.5"),
        minimum_charge=Decimal("67"),
    ),
    AIModel.CLAUDE_3_OPUS: PricingEntry(
        model=AIModel.CLAUDE_3_OPUS,
        provider_model="claude-3-opus-20240229",
        input_cost_per_1k=Decimal("0.0075"),
        output_cost_per_1k=Decimal("0.0150"),
        source_currency="USD",
        exchange_rate=Decimal("18.5"),
        markup_multiplier=Decimal("3.0"),
        minimum_charge=Decimal("125"),
    ),
    AIModel.WILSY_LEGAL_SPECIALIZED: PricingEntry(
        model=AIModel.WILSY_LEGAL_SPECIALIZED,
        provider_model="wilsy-legal-africa-v2.0",
        input_cost_per_1k=Decimal("0.0025"),
        output_cost_per_1k=Decimal("0.0050"),
        source_currency="USD",
        exchange_rate=Decimal("18.5"),
        markup_multiplier=Decimal("4.0"),
        minimum_charge=Decimal("250"),
    ),
}


def default_catalog() -> PricingCatalog:
    """The launch price list (v1)."""
    return PricingCatalog(versions=[
        CatalogVersion(
            version="v1",
            effective_from=datetime(2024, 1, 1, tzinfo=timezone.utc),
            entries=dict(DEFAULT_ENTRIES),
            tiers=dict(DEFAULT_TIERS),
            tax_rate=Decimal("0.15"),
            billing_currency="ZAR",
        )
    ])
