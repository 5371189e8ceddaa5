"""Application configuration loaded from environment variables.

All settings are read once at import time.  ``validate_settings()`` is called
from the FastAPI lifespan and refuses to start with a clear error message so
that container logs show exactly what is wrong.

Optional variables produce a warning but do not block startup.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Credit packages: amount_sar → credits (seed for the pricing_rules table)
# ---------------------------------------------------------------------------

CREDIT_PACKAGES: Dict[int, int] = {
    10: 10,   # copper: 1 research
    30: 40,   # silver: 4 researches + 1 bonus
    50: 70,   # gold: 7 researches + 2 bonus
}

PRICING_FALLBACK_REJECT = "reject"
PRICING_FALLBACK_ONE_TO_ONE = "one_to_one"
PRICING_FALLBACKS = (PRICING_FALLBACK_REJECT, PRICING_FALLBACK_ONE_TO_ONE)

# ---------------------------------------------------------------------------
# Ledger defaults
# ---------------------------------------------------------------------------

DEFAULT_MIN_CREDIT_UNIT: int = 100     # transfers / gifts must be multiples
DEFAULT_LEDGER_MAX_RETRIES: int = 3    # attempts for transient store errors
DEFAULT_LEDGER_RETRY_BACKOFF: float = 0.05  # seconds, multiplied by attempt
DEFAULT_RESEARCH_COST: int = 10
DEFAULT_ENTRIES_PAGE_SIZE: int = 20
DEFAULT_MAX_PAGE_SIZE: int = 100

# Reconciliation of pending payments (missed webhooks)
DEFAULT_RECONCILE_INTERVAL: int = 300      # seconds
DEFAULT_RECONCILE_OLDER_THAN: int = 600    # seconds


@dataclass(frozen=True)
class Config:
    """Immutable application configuration."""

    # Database
    DATABASE_URL: str = ""
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5

    # Redis (realtime credit notifications)
    REDIS_URL: str = "redis://localhost:6379"
    REDIS_SSL: bool = False
    CREDITS_PUSH_ENABLED: bool = True

    # Moyasar
    MOYASAR_SECRET_KEY: str = ""
    MOYASAR_WEBHOOK_SECRET: str = ""
    MOYASAR_API_URL: str = "https://api.moyasar.com/v1"

    # Auth gateway
    GATEWAY_SECRET: str = ""
    ADMIN_IDS: List[str] = field(default_factory=list)

    # Ledger policy
    MIN_CREDIT_UNIT: int = DEFAULT_MIN_CREDIT_UNIT
    PRICING_FALLBACK: str = PRICING_FALLBACK_REJECT
    LEDGER_MAX_RETRIES: int = DEFAULT_LEDGER_MAX_RETRIES
    LEDGER_RETRY_BACKOFF: float = DEFAULT_LEDGER_RETRY_BACKOFF
    RESEARCH_COST: int = DEFAULT_RESEARCH_COST
    ENTRIES_PAGE_SIZE: int = DEFAULT_ENTRIES_PAGE_SIZE
    MAX_PAGE_SIZE: int = DEFAULT_MAX_PAGE_SIZE

    # Reconciler
    RECONCILE_INTERVAL: int = DEFAULT_RECONCILE_INTERVAL
    RECONCILE_OLDER_THAN: int = DEFAULT_RECONCILE_OLDER_THAN

    # Server
    PORT: int = 8080

    # --------------- derived properties ---------------

    @property
    def async_database_url(self) -> str:
        """Convert DATABASE_URL to an async-driver URL."""
        url = self.DATABASE_URL
        if url.startswith("sqlite"):
            if not url.startswith("sqlite+aiosqlite://"):
                url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
            return url
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql+asyncpg://", 1)
        elif url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif not url.startswith("postgresql+asyncpg://"):
            url = f"postgresql+asyncpg://{url}"
        return url

    @property
    def redis_ssl_enabled(self) -> bool:
        """Whether Redis connection should use SSL/TLS."""
        return self.REDIS_SSL or self.REDIS_URL.startswith("rediss://")

    @property
    def moyasar_enabled(self) -> bool:
        return bool(self.MOYASAR_SECRET_KEY)


# ---------------------------------------------------------------------------
# ENV validation
# ---------------------------------------------------------------------------

# Managed Postgres / Redis add-ons expose slightly different variable names.
_ENV_ALIASES = {
    "DATABASE_URL": ["DATABASE_URL", "POSTGRES_URL", "POSTGRESQL_URL", "PGDATABASE_URL"],
    "REDIS_URL": ["REDIS_URL", "REDIS_PRIVATE_URL", "REDIS_PUBLIC_URL"],
}

_OPTIONAL_VARS: List[Tuple[str, str]] = [
    ("MOYASAR_SECRET_KEY", "Moyasar secret key: only the webhook settles payments, no API verification"),
    ("GATEWAY_SECRET", "Auth gateway secret: X-User-Id is trusted from any caller"),
    ("ADMIN_IDS", "Admin user ids: admin endpoints will reject everyone"),
]


def _env_first(*names: str, default: str = "") -> str:
    """Return first non-empty env var among names."""
    for n in names:
        v = os.getenv(n, "").strip()
        if v:
            return v
    return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("true", "1", "yes", "on")


def _check_config(cfg: Config) -> None:
    """Validate loaded settings, warn about optional ones."""
    missing: List[str] = []

    if not cfg.DATABASE_URL:
        missing.append("  • DATABASE_URL: PostgreSQL connection string (or POSTGRES_URL / POSTGRESQL_URL)")

    if cfg.CREDITS_PUSH_ENABLED and not cfg.REDIS_URL:
        missing.append("  • REDIS_URL: required while CREDITS_PUSH_ENABLED is on")

    # Paid checkouts must reach the ledger: the webhook needs its secret.
    if cfg.MOYASAR_SECRET_KEY and not cfg.MOYASAR_WEBHOOK_SECRET:
        missing.append("  • MOYASAR_WEBHOOK_SECRET: required when MOYASAR_SECRET_KEY is set")

    if cfg.MIN_CREDIT_UNIT <= 0:
        missing.append("  • MIN_CREDIT_UNIT: must be a positive integer")

    if cfg.PRICING_FALLBACK not in PRICING_FALLBACKS:
        missing.append(
            "  • PRICING_FALLBACK: must be one of: " + ", ".join(PRICING_FALLBACKS)
        )

    if cfg.LEDGER_MAX_RETRIES < 1:
        missing.append("  • LEDGER_MAX_RETRIES: must be at least 1")

    if cfg.RESEARCH_COST < 0:
        missing.append("  • RESEARCH_COST: must not be negative")

    if missing:
        msg = (
            "FATAL: missing/invalid environment variables:\n"
            + "\n".join(missing)
            + "\nSet them and restart."
        )
        logger.critical(msg)
        print(msg, file=sys.stderr)
        raise RuntimeError(msg)

    for var, desc in _OPTIONAL_VARS:
        if not os.getenv(var, "").strip():
            logger.warning("Optional ENV not set: %s: %s", var, desc)


def load_config(*, validate: bool = True) -> Config:
    """Load configuration from environment variables."""
    admin_ids = [
        part.strip()
        for part in os.getenv("ADMIN_IDS", "").split(",")
        if part.strip()
    ]

    cfg = Config(
        DATABASE_URL=_env_first(*_ENV_ALIASES["DATABASE_URL"]),
        DB_POOL_SIZE=int(os.getenv("DB_POOL_SIZE", "5")),
        DB_MAX_OVERFLOW=int(os.getenv("DB_MAX_OVERFLOW", "5")),
        REDIS_URL=_env_first(*_ENV_ALIASES["REDIS_URL"], default="redis://localhost:6379"),
        REDIS_SSL=_env_bool("REDIS_SSL", False),
        CREDITS_PUSH_ENABLED=_env_bool("CREDITS_PUSH_ENABLED", True),
        MOYASAR_SECRET_KEY=os.getenv("MOYASAR_SECRET_KEY", "").strip(),
        MOYASAR_WEBHOOK_SECRET=os.getenv("MOYASAR_WEBHOOK_SECRET", "").strip(),
        MOYASAR_API_URL=os.getenv("MOYASAR_API_URL", "https://api.moyasar.com/v1").strip().rstrip("/"),
        GATEWAY_SECRET=os.getenv("GATEWAY_SECRET", "").strip(),
        ADMIN_IDS=admin_ids,
        MIN_CREDIT_UNIT=int(os.getenv("MIN_CREDIT_UNIT", str(DEFAULT_MIN_CREDIT_UNIT))),
        PRICING_FALLBACK=os.getenv("PRICING_FALLBACK", PRICING_FALLBACK_REJECT).strip().lower(),
        LEDGER_MAX_RETRIES=int(os.getenv("LEDGER_MAX_RETRIES", str(DEFAULT_LEDGER_MAX_RETRIES))),
        LEDGER_RETRY_BACKOFF=float(os.getenv("LEDGER_RETRY_BACKOFF", str(DEFAULT_LEDGER_RETRY_BACKOFF))),
        RESEARCH_COST=int(os.getenv("RESEARCH_COST", str(DEFAULT_RESEARCH_COST))),
        ENTRIES_PAGE_SIZE=int(os.getenv("ENTRIES_PAGE_SIZE", str(DEFAULT_ENTRIES_PAGE_SIZE))),
        MAX_PAGE_SIZE=int(os.getenv("MAX_PAGE_SIZE", str(DEFAULT_MAX_PAGE_SIZE))),
        RECONCILE_INTERVAL=int(os.getenv("RECONCILE_INTERVAL", str(DEFAULT_RECONCILE_INTERVAL))),
        RECONCILE_OLDER_THAN=int(os.getenv("RECONCILE_OLDER_THAN", str(DEFAULT_RECONCILE_OLDER_THAN))),
        PORT=int(os.getenv("PORT", "8080")),
    )
    if validate:
        _check_config(cfg)
    return cfg


# Singleton instance (loaded without validation to avoid import-time crashes)
settings = load_config(validate=False)


def validate_settings() -> None:
    """Validate ENV and loaded settings at application startup.

    Call this once from the FastAPI lifespan before initializing external services.
    """
    _check_config(settings)
