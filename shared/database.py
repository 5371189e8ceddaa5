"""SQLAlchemy async engine, session factory, and ORM models."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Integer,
    String,
    Text,
    Index,
    UniqueConstraint,
    event,
    func,
    text,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from shared.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine & session
# ---------------------------------------------------------------------------

def _build_db_engine_url_and_args(raw_url: str) -> tuple[str, dict]:
    """Build DB URL + connect_args for the async drivers.

    Notes:
    - The SQLAlchemy asyncpg dialect forwards URL query params as kwargs to
      ``asyncpg.connect()``, which does **not** accept ``sslmode``.  We strip
      ``sslmode`` / ``ssl`` from the URL and translate them into a boolean
      ``ssl`` connect arg.
    - SQLite gets a generous busy timeout: writers queue on the database lock
      instead of failing immediately.
    """
    parts = urlsplit(raw_url)
    if parts.scheme.startswith("sqlite"):
        return raw_url, {"timeout": 30}

    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    connect_args: dict = {}

    sslmode = query.pop("sslmode", None)
    if sslmode:
        sslmode_l = str(sslmode).strip().lower()
        if sslmode_l in {"disable", "allow", "prefer"}:
            connect_args["ssl"] = False
        elif sslmode_l == "require":
            connect_args["ssl"] = True

    ssl_q = query.pop("ssl", None)
    if ssl_q is not None and "ssl" not in connect_args:
        ssl_q_l = str(ssl_q).strip().lower()
        if ssl_q_l in {"0", "false", "no", "off", "disable"}:
            connect_args["ssl"] = False
        elif ssl_q_l in {"1", "true", "yes", "on", "require"}:
            connect_args["ssl"] = True

    cleaned = urlunsplit(
        (
            parts.scheme,
            parts.netloc,
            parts.path,
            urlencode(query),
            parts.fragment,
        )
    )
    return cleaned, connect_args


def build_engine(raw_url: str) -> AsyncEngine:
    """Create the async engine for ``raw_url``."""
    url, connect_args = _build_db_engine_url_and_args(raw_url)
    kwargs: dict[str, Any] = {
        "echo": False,
        "pool_pre_ping": True,
        "connect_args": connect_args,
    }
    is_sqlite = url.startswith("sqlite")
    if not is_sqlite:
        kwargs["pool_size"] = settings.DB_POOL_SIZE
        kwargs["max_overflow"] = settings.DB_MAX_OVERFLOW

    new_engine = create_async_engine(url, **kwargs)

    if is_sqlite:
        # pysqlite/aiosqlite defer BEGIN until the first DML statement and
        # break SAVEPOINT handling.  Take over transaction control and start
        # every transaction with BEGIN IMMEDIATE so writers serialise on the
        # database lock.
        @event.listens_for(new_engine.sync_engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(new_engine.sync_engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return new_engine


engine = build_engine(settings.async_database_url)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# SQLite only auto-increments INTEGER PRIMARY KEY columns.
_BigIntId = BigInteger().with_variant(Integer, "sqlite")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ENTRY_TRANSFER = "transfer"
ENTRY_PAYMENT_CREDIT = "payment_credit"
ENTRY_ADMIN_GIFT = "admin_gift"
ENTRY_SPEND = "spend"
ENTRY_REFUND = "refund"
ENTRY_KINDS = (
    ENTRY_TRANSFER,
    ENTRY_PAYMENT_CREDIT,
    ENTRY_ADMIN_GIFT,
    ENTRY_SPEND,
    ENTRY_REFUND,
)

PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"

RECORD_PENDING = "pending"
RECORD_COMPLETED = "completed"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Account(Base):
    """Spendable credit balance of one user (id comes from the auth provider)."""
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
    )


class LedgerEntry(Base):
    """Immutable journal of every credit change for audit / dispute resolution."""
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(_BigIntId, primary_key=True, autoincrement=True)
    from_account: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    to_account: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    external_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    memo: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_ledger_entries_amount_positive"),
        # One payment credit per payment id, one refund per spend, ...
        UniqueConstraint("kind", "external_ref", name="uq_ledger_entries_kind_ref"),
        Index("ix_ledger_entries_created", "created_at", "id"),
    )


class IdempotencyRecord(Base):
    """Result snapshot of an externally keyed operation (payment id, operation id)."""
    __tablename__ = "idempotency_records"

    scope: Mapped[str] = mapped_column(String(32), primary_key=True)
    external_ref: Mapped[str] = mapped_column(String(255), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=RECORD_PENDING)
    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class Payment(Base):
    """Gateway checkout as seen by this service (pending → paid / failed)."""
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(_BigIntId, primary_key=True, autoincrement=True)
    payment_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # SAR
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="SAR", server_default="SAR")
    credits: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=PAYMENT_PENDING, server_default=PAYMENT_PENDING)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class PricingRule(Base):
    """Checkout amount (SAR) → credits granted."""
    __tablename__ = "pricing_rules"

    amount: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    credits: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_pricing_rules_amount_positive"),
        CheckConstraint("credits > 0", name="ck_pricing_rules_credits_positive"),
    )


class AppSetting(Base):
    """Admin-editable key/value settings (research cost, ...)."""
    __tablename__ = "app_settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[dict] = mapped_column(JSON, nullable=False)
    updated_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )


# ---------------------------------------------------------------------------
# Table creation helper
# ---------------------------------------------------------------------------

async def create_tables() -> None:
    """Create all tables if they don't exist.

    On PostgreSQL a non-blocking advisory lock prevents two instances from
    racing; if another instance holds it this one skips gracefully.
    """
    async with engine.begin() as conn:
        if conn.dialect.name != "postgresql":
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables created")
            return

        result = await conn.execute(text("SELECT pg_try_advisory_lock(48151623)"))
        acquired = result.scalar()

        if not acquired:
            logger.info("Another instance is creating tables, skipping...")
            return

        try:
            logger.info("Creating database tables...")
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables created")
        finally:
            await conn.execute(text("SELECT pg_advisory_unlock(48151623)"))


async def drop_tables() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
