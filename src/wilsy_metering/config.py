"""
Runtime configuration, read from environment variables with development
defaults.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

import structlog

logger = structlog.get_logger()

DEV_API_KEY = "dev-key-change-in-production"


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class MeteringConfig:
    database_url: str = "sqlite:///wilsy_metering.db"
    signing_secret: str = ""
    signing_key_id: str = "usage-k1"
    batch_flush_interval: float = 60.0
    batch_size: int = 1000
    batch_max_backoff: float = 300.0
    metrics_ttl_seconds: int = 300
    billing_lock_timeout: int = 900
    api_key: str = DEV_API_KEY
    cors_origins: Tuple[str, ...] = field(default_factory=lambda: ("*",))
    port: int = 8000
    allow_unknown_tenants: bool = True

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError("BATCH_SIZE must be at least 1")
        if self.batch_flush_interval <= 0:
            raise ValueError("BATCH_FLUSH_INTERVAL must be positive")
        if self.batch_max_backoff < 0:
            raise ValueError("BATCH_MAX_BACKOFF must not be negative")
        if self.metrics_ttl_seconds < 1:
            raise ValueError("METRICS_TTL_SECONDS must be at least 1")
        if not self.signing_key_id:
            raise ValueError("USAGE_SIGNING_KEY_ID must not be empty")
        if not (0 < self.port < 65536):
            raise ValueError("PORT must be a valid TCP port")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "MeteringConfig":
        env = os.environ if env is None else env
        defaults = cls()

        config = cls(
            database_url=env.get("DATABASE_URL", defaults.database_url),
            signing_secret=env.get("USAGE_SIGNING_SECRET", ""),
            signing_key_id=env.get("USAGE_SIGNING_KEY_ID", defaults.signing_key_id),
            batch_flush_interval=float(env.get("BATCH_FLUSH_INTERVAL", defaults.batch_flush_interval)),
            batch_size=int(env.get("BATCH_SIZE", defaults.batch_size)),
            batch_max_backoff=float(env.get("BATCH_MAX_BACKOFF", defaults.batch_max_backoff)),
            metrics_ttl_seconds=int(env.get("METRICS_TTL_SECONDS", defaults.metrics_ttl_seconds)),
            billing_lock_timeout=int(env.get("BILLING_LOCK_TIMEOUT", defaults.billing_lock_timeout)),
            api_key=env.get("API_KEY", DEV_API_KEY),
            cors_origins=tuple(o.strip() for o in env.get("CORS_ORIGINS", "*").split(",") if o.strip()),
            port=int(env.get("PORT", defaults.port)),
            allow_unknown_tenants=_env_bool(env.get("ALLOW_UNKNOWN_TENANTS", "true")),
        )

        if config.api_key == DEV_API_KEY:
            logger.warning("api_key_default", message="API_KEY not set. Using development key.")
        return config

    def to_dict(self) -> Dict[str, Any]:
        """Configuration without secrets."""
        return {
            "database_url": self.database_url.split("@")[-1],
            "signing_key_id": self.signing_key_id,
            "batch_flush_interval": self.batch_flush_interval,
            "batch_size": self.batch_size,
            "batch_max_backoff": self.batch_max_backoff,
            "metrics_ttl_seconds": self.metrics_ttl_seconds,
            "billing_lock_timeout": self.billing_lock_timeout,
            "cors_origins": list(self.cors_origins),
            "port": self.port,
            "allow_unknown_tenants": self.allow_unknown_tenants,
        }
