"""Credit Ledger store: every credit change is recorded here.

Balances live in ``accounts`` and are only ever changed together with one
immutable ``ledger_entries`` row, inside a single transaction.  Nothing else
in the code base writes ``accounts.balance``.

Entry kinds: transfer, payment_credit, admin_gift, spend, refund
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional, Sequence, TypeVar

from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services import idempotency
from services.notification_service import schedule_credits_changed
from shared.config import settings
from shared.database import (
    Account,
    ENTRY_KINDS,
    ENTRY_REFUND,
    ENTRY_SPEND,
    LedgerEntry,
    async_session_factory,
)
from shared.errors import (
    ALREADY_PROCESSED,
    AccountNotFound,
    ConcurrencyConflict,
    EntryNotFound,
    InsufficientFunds,
    InvalidAmount,
    InvalidPageToken,
    SelfTransfer,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATUS_APPLIED = "applied"

DIRECTION_IN = "in"
DIRECTION_OUT = "out"
DIRECTION_ANY = "any"

# serialization_failure, deadlock_detected, lock_not_available
_TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "55P03"})


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class LedgerUnit:
    """One open transaction plus the balances it changed."""

    session: AsyncSession
    changes: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class AppliedEntry:
    entry: LedgerEntry
    from_balance: Optional[int]
    to_balance: Optional[int]

    @property
    def balance(self) -> int:
        return self.entry.balance_after


@dataclass(slots=True)
class LedgerResult:
    """Outcome of a single-account operation (spend, refund, gift)."""

    account_id: str
    amount: int
    balance: int
    status: str
    entry_id: Optional[int] = None
    operation_id: Optional[str] = None


@dataclass(slots=True)
class EntryFilter:
    kinds: Optional[Sequence[str]] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    direction: str = DIRECTION_ANY


@dataclass(slots=True)
class EntryPage:
    entries: list[LedgerEntry]
    next_page_token: Optional[str]


# ---------------------------------------------------------------------------
# Atomic unit runner
# ---------------------------------------------------------------------------

def _is_transient(exc: DBAPIError) -> bool:
    if isinstance(exc, IntegrityError):
        return False
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in _TRANSIENT_SQLSTATES:
        return True
    return "database is locked" in str(orig).lower()


async def run_atomic(
    operation: Callable[[LedgerUnit], Awaitable[T]],
    *,
    context: str,
) -> T:
    """Run ``operation`` in one transaction, retrying transient conflicts.

    The whole unit is re-executed from scratch on retry, so ``operation`` must
    not keep state between attempts.  Change notifications go out only after
    the commit succeeded.
    """
    attempts = settings.LEDGER_MAX_RETRIES
    for attempt in range(1, attempts + 1):
        try:
            async with async_session_factory() as session:
                unit = LedgerUnit(session=session)
                async with session.begin():
                    result = await operation(unit)
        except ConcurrencyConflict as exc:
            logger.warning(
                "Ledger: %s conflicted (attempt %d/%d): %s",
                context, attempt, attempts, exc.detail,
            )
        except DBAPIError as exc:
            if not _is_transient(exc):
                raise
            logger.warning(
                "Ledger: %s hit transient store error (attempt %d/%d): %s",
                context, attempt, attempts, exc.orig,
            )
        else:
            schedule_credits_changed(unit.changes)
            return result

        if attempt < attempts:
            await asyncio.sleep(settings.LEDGER_RETRY_BACKOFF * attempt)

    raise ConcurrencyConflict(f"{context}: gave up after {attempts} attempts")


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def validate_amount(amount: object, *, unit: Optional[int] = None) -> int:
    """Return ``amount`` if it is a positive integer (multiple of ``unit``)."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"amount must be an integer, got {amount!r}")
    if amount <= 0:
        raise InvalidAmount(f"amount must be positive, got {amount}")
    if unit is not None and amount % unit != 0:
        raise InvalidAmount(
            f"amount {amount} is not a multiple of {unit}",
            user_message=f"يجب أن يكون المبلغ من مضاعفات {unit}",
        )
    return amount


# ---------------------------------------------------------------------------
# Row-level primitives (inside an open transaction)
# ---------------------------------------------------------------------------

async def ensure_account(session: AsyncSession, account_id: str) -> None:
    """Create ``account_id`` with a zero balance unless it already exists."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(Account)
    elif dialect == "sqlite":
        stmt = sqlite.insert(Account)
    else:  # pragma: no cover
        raise RuntimeError(f"Unsupported database dialect: {dialect}")
    now = datetime.now(timezone.utc)
    stmt = stmt.values(id=account_id, balance=0, created_at=now, updated_at=now)
    await session.execute(stmt.on_conflict_do_nothing(index_elements=["id"]))


async def lock_accounts(session: AsyncSession, account_ids: Iterable[str]) -> dict[str, int]:
    """Lock existing account rows in id order; return their balances."""
    ids = sorted({a for a in account_ids if a})
    if not ids:
        return {}
    stmt = (
        select(Account.id, Account.balance)
        .where(Account.id.in_(ids))
        .order_by(Account.id)
        .with_for_update()
    )
    result = await session.execute(stmt)
    return {row.id: row.balance for row in result}


async def _debit(session: AsyncSession, account_id: str, amount: int) -> int:
    stmt = (
        update(Account)
        .where(Account.id == account_id, Account.balance >= amount)
        .values(balance=Account.balance - amount, updated_at=datetime.now(timezone.utc))
        .returning(Account.balance)
        .execution_options(synchronize_session=False)
    )
    new_balance = (await session.execute(stmt)).scalar_one_or_none()
    if new_balance is not None:
        return new_balance

    current = (
        await session.execute(select(Account.balance).where(Account.id == account_id))
    ).scalar_one_or_none()
    if current is None:
        raise AccountNotFound(f"account {account_id} does not exist")
    raise InsufficientFunds(f"account {account_id} has {current}, needs {amount}")


async def _credit(session: AsyncSession, account_id: str, amount: int) -> int:
    stmt = (
        update(Account)
        .where(Account.id == account_id)
        .values(balance=Account.balance + amount, updated_at=datetime.now(timezone.utc))
        .returning(Account.balance)
        .execution_options(synchronize_session=False)
    )
    return (await session.execute(stmt)).scalar_one()


async def apply_entry(
    unit: LedgerUnit,
    *,
    kind: str,
    amount: int,
    from_account: Optional[str] = None,
    to_account: Optional[str] = None,
    external_ref: Optional[str] = None,
    actor_id: Optional[str] = None,
    memo: Optional[str] = None,
) -> AppliedEntry:
    """Apply one balance-affecting event and append its ledger entry.

    ``from_account`` is debited (it must exist and cover ``amount``),
    ``to_account`` is credited (created at zero if absent).  Must be called
    inside ``run_atomic``; nothing is visible until the unit commits.
    """
    validate_amount(amount)
    if kind not in ENTRY_KINDS:
        raise ValueError(f"unknown ledger entry kind: {kind}")
    if from_account is None and to_account is None:
        raise ValueError("a ledger entry needs at least one account")
    if from_account is not None and from_account == to_account:
        raise SelfTransfer(f"account {from_account} cannot pay itself")

    session = unit.session
    if to_account is not None:
        await ensure_account(session, to_account)
    await lock_accounts(session, (from_account, to_account))

    from_balance = await _debit(session, from_account, amount) if from_account else None
    to_balance = await _credit(session, to_account, amount) if to_account else None
    balance_after = to_balance if to_balance is not None else from_balance

    entry = LedgerEntry(
        from_account=from_account,
        to_account=to_account,
        amount=amount,
        kind=kind,
        external_ref=external_ref,
        actor_id=actor_id,
        memo=memo,
        balance_after=balance_after,
    )
    session.add(entry)
    await session.flush()

    if from_balance is not None:
        unit.changes[from_account] = from_balance
    if to_balance is not None:
        unit.changes[to_account] = to_balance

    logger.info(
        "Ledger: kind=%s amount=%d from=%s(%s) to=%s(%s) ref=%s",
        kind, amount, from_account, from_balance, to_account, to_balance, external_ref,
    )
    return AppliedEntry(entry=entry, from_balance=from_balance, to_balance=to_balance)


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------

async def get_balance(account_id: str) -> int:
    """Current balance; 0 for an account that was never credited."""
    async with async_session_factory() as session:
        result = await session.execute(select(Account.balance).where(Account.id == account_id))
        balance = result.scalar_one_or_none()
    return balance or 0


async def apply_entry_atomic(
    *,
    kind: str,
    amount: int,
    from_account: Optional[str] = None,
    to_account: Optional[str] = None,
    external_ref: Optional[str] = None,
    actor_id: Optional[str] = None,
    memo: Optional[str] = None,
) -> int:
    """Apply a single entry in its own unit; returns the resulting balance."""

    async def _op(unit: LedgerUnit) -> int:
        applied = await apply_entry(
            unit,
            kind=kind,
            amount=amount,
            from_account=from_account,
            to_account=to_account,
            external_ref=external_ref,
            actor_id=actor_id,
            memo=memo,
        )
        return applied.balance

    return await run_atomic(_op, context=f"apply_entry:{kind}")


def _replayed(account_id: str, operation_id: str, prior: dict) -> LedgerResult:
    return LedgerResult(
        account_id=account_id,
        amount=prior.get("amount", 0),
        balance=prior.get("balance", 0),
        status=ALREADY_PROCESSED,
        entry_id=prior.get("entry_id"),
        operation_id=operation_id,
    )


async def deduct_credits(
    account_id: str,
    amount: int,
    *,
    operation_id: str,
    memo: Optional[str] = None,
) -> LedgerResult:
    """Spend ``amount`` credits, at most once per ``operation_id``."""
    validate_amount(amount)
    ref = idempotency.scoped_ref(account_id, operation_id)

    async def _op(unit: LedgerUnit) -> LedgerResult:
        reservation = await idempotency.check_and_reserve(
            unit.session, idempotency.SCOPE_SPEND, ref, account_id
        )
        if not reservation.fresh:
            return _replayed(account_id, operation_id, reservation.prior_result)

        applied = await apply_entry(
            unit,
            kind=ENTRY_SPEND,
            amount=amount,
            from_account=account_id,
            external_ref=ref,
            memo=memo,
        )
        result = LedgerResult(
            account_id=account_id,
            amount=amount,
            balance=applied.balance,
            status=STATUS_APPLIED,
            entry_id=applied.entry.id,
            operation_id=operation_id,
        )
        await idempotency.complete(
            unit.session,
            reservation,
            {"amount": amount, "balance": result.balance, "entry_id": result.entry_id},
        )
        return result

    return await run_atomic(_op, context="deduct")


async def refund_credits(
    account_id: str,
    *,
    operation_id: str,
    memo: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> LedgerResult:
    """Give back the credits spent under ``operation_id``, at most once."""
    ref = idempotency.scoped_ref(account_id, operation_id)

    async def _op(unit: LedgerUnit) -> LedgerResult:
        reservation = await idempotency.check_and_reserve(
            unit.session, idempotency.SCOPE_REFUND, ref, account_id
        )
        if not reservation.fresh:
            return _replayed(account_id, operation_id, reservation.prior_result)

        spend = await _find_entry(unit.session, ENTRY_SPEND, ref)
        if spend is None or spend.from_account != account_id:
            raise EntryNotFound(f"no spend {operation_id} for account {account_id}")

        applied = await apply_entry(
            unit,
            kind=ENTRY_REFUND,
            amount=spend.amount,
            to_account=account_id,
            external_ref=ref,
            actor_id=actor_id,
            memo=memo,
        )
        result = LedgerResult(
            account_id=account_id,
            amount=spend.amount,
            balance=applied.balance,
            status=STATUS_APPLIED,
            entry_id=applied.entry.id,
            operation_id=operation_id,
        )
        await idempotency.complete(
            unit.session,
            reservation,
            {"amount": spend.amount, "balance": result.balance, "entry_id": result.entry_id},
        )
        return result

    return await run_atomic(_op, context="refund")


# ---------------------------------------------------------------------------
# Read path
# ---------------------------------------------------------------------------

async def _find_entry(session: AsyncSession, kind: str, external_ref: str) -> Optional[LedgerEntry]:
    result = await session.execute(
        select(LedgerEntry).where(
            LedgerEntry.kind == kind,
            LedgerEntry.external_ref == external_ref,
        )
    )
    return result.scalar_one_or_none()


async def get_entry_by_ref(kind: str, external_ref: str) -> Optional[LedgerEntry]:
    """Find the entry an operation produced (e.g. after a client timeout)."""
    async with async_session_factory() as session:
        return await _find_entry(session, kind, external_ref)


def encode_page_token(entry: LedgerEntry) -> str:
    raw = f"{entry.created_at.isoformat()}|{entry.id}".encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_page_token(token: str) -> tuple[datetime, int]:
    try:
        padded = token + "=" * (-len(token) % 4)
        raw = base64.urlsafe_b64decode(padded.encode()).decode()
        created_raw, id_raw = raw.rsplit("|", 1)
        return datetime.fromisoformat(created_raw), int(id_raw)
    except (ValueError, UnicodeDecodeError, binascii.Error) as exc:
        raise InvalidPageToken(f"malformed page token: {token!r}") from exc


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc)
    return value


async def list_entries(
    account_id: Optional[str],
    entry_filter: Optional[EntryFilter] = None,
    page_token: Optional[str] = None,
    *,
    limit: Optional[int] = None,
) -> EntryPage:
    """One page of entries, newest first.  ``account_id=None`` lists all accounts."""
    flt = entry_filter or EntryFilter()
    size = min(limit or settings.ENTRIES_PAGE_SIZE, settings.MAX_PAGE_SIZE)
    if size <= 0:
        raise ValueError("limit must be positive")

    stmt = select(LedgerEntry)
    if account_id is not None:
        if flt.direction == DIRECTION_IN:
            stmt = stmt.where(LedgerEntry.to_account == account_id)
        elif flt.direction == DIRECTION_OUT:
            stmt = stmt.where(LedgerEntry.from_account == account_id)
        elif flt.direction == DIRECTION_ANY:
            stmt = stmt.where(
                or_(LedgerEntry.to_account == account_id, LedgerEntry.from_account == account_id)
            )
        else:
            raise ValueError(f"unknown direction: {flt.direction}")
    if flt.kinds:
        unknown = set(flt.kinds) - set(ENTRY_KINDS)
        if unknown:
            raise ValueError(f"unknown entry kinds: {sorted(unknown)}")
        stmt = stmt.where(LedgerEntry.kind.in_(list(flt.kinds)))
    if flt.since is not None:
        stmt = stmt.where(LedgerEntry.created_at >= _as_utc(flt.since))
    if flt.until is not None:
        stmt = stmt.where(LedgerEntry.created_at < _as_utc(flt.until))
    if page_token:
        created_at, last_id = decode_page_token(page_token)
        stmt = stmt.where(
            or_(
                LedgerEntry.created_at < created_at,
                and_(LedgerEntry.created_at == created_at, LedgerEntry.id < last_id),
            )
        )

    stmt = stmt.order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc()).limit(size + 1)

    async with async_session_factory() as session:
        rows = list((await session.execute(stmt)).scalars().all())

    next_token = encode_page_token(rows[size - 1]) if len(rows) > size else None
    return EntryPage(entries=rows[:size], next_page_token=next_token)


async def iter_entries(
    account_id: Optional[str],
    entry_filter: Optional[EntryFilter] = None,
    *,
    page_token: Optional[str] = None,
    page_size: Optional[int] = None,
) -> AsyncIterator[LedgerEntry]:
    """Lazily walk every matching entry, fetching one page at a time."""
    token = page_token
    while True:
        page = await list_entries(account_id, entry_filter, token, limit=page_size)
        for entry in page.entries:
            yield entry
        if page.next_page_token is None:
            return
        token = page.next_page_token
