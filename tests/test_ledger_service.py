from __future__ import annotations

import asyncio
import dataclasses

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from services import notification_service
from services.ledger_service import (
    apply_entry,
    apply_entry_atomic,
    deduct_credits,
    get_balance,
    get_entry_by_ref,
    refund_credits,
    run_atomic,
)
from shared.config import settings
from shared.database import (
    ENTRY_ADMIN_GIFT,
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
)


async def _entry_count() -> int:
    async with async_session_factory() as session:
        return (await session.execute(select(func.count(LedgerEntry.id)))).scalar()


@pytest.mark.asyncio
async def test_balance_of_unknown_account_is_zero(db):
    assert await get_balance("nobody") == 0


@pytest.mark.asyncio
async def test_credit_creates_account_and_entry(db):
    balance = await apply_entry_atomic(kind=ENTRY_ADMIN_GIFT, amount=250, to_account="u1", actor_id="a")
    assert balance == 250
    assert await get_balance("u1") == 250

    async with async_session_factory() as session:
        entry = (await session.execute(select(LedgerEntry))).scalar_one()
    assert entry.from_account is None
    assert entry.to_account == "u1"
    assert entry.amount == 250
    assert entry.balance_after == 250
    assert entry.actor_id == "a"


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, True, 2.5])
async def test_invalid_amount_has_no_effect(fund, amount):
    await fund("u1", 100)
    with pytest.raises(InvalidAmount):
        await apply_entry_atomic(kind=ENTRY_SPEND, amount=amount, from_account="u1")
    assert await get_balance("u1") == 100
    assert await _entry_count() == 1


@pytest.mark.asyncio
async def test_debit_beyond_balance_fails(fund):
    await fund("u1", 100)
    with pytest.raises(InsufficientFunds):
        await apply_entry_atomic(kind=ENTRY_SPEND, amount=101, from_account="u1")
    assert await get_balance("u1") == 100
    assert await _entry_count() == 1


@pytest.mark.asyncio
async def test_debit_from_unknown_account(db):
    with pytest.raises(AccountNotFound):
        await apply_entry_atomic(kind=ENTRY_SPEND, amount=1, from_account="ghost")
    assert await get_balance("ghost") == 0


@pytest.mark.asyncio
async def test_deduct_is_idempotent_per_operation(fund):
    await fund("u1", 50)

    first = await deduct_credits("u1", 10, operation_id="op-1")
    second = await deduct_credits("u1", 10, operation_id="op-1")

    assert first.balance == 40
    assert second.status == ALREADY_PROCESSED
    assert second.balance == 40
    assert await get_balance("u1") == 40

    # Same operation id from another account is a different operation.
    await fund("u2", 50)
    other = await deduct_credits("u2", 10, operation_id="op-1")
    assert other.status != ALREADY_PROCESSED
    assert await get_balance("u2") == 40


@pytest.mark.asyncio
async def test_refund_returns_spent_amount_once(fund):
    await fund("u1", 30)
    await deduct_credits("u1", 20, operation_id="gen-1")

    refund = await refund_credits("u1", operation_id="gen-1")
    again = await refund_credits("u1", operation_id="gen-1")

    assert refund.amount == 20
    assert refund.balance == 30
    assert again.status == ALREADY_PROCESSED
    assert await get_balance("u1") == 30

    entry = await get_entry_by_ref(ENTRY_REFUND, "u1:gen-1")
    assert entry is not None and entry.amount == 20


@pytest.mark.asyncio
async def test_refund_without_spend(fund):
    await fund("u1", 30)
    with pytest.raises(EntryNotFound):
        await refund_credits("u1", operation_id="never-charged")
    assert await get_balance("u1") == 30


@pytest.mark.asyncio
async def test_refund_of_another_accounts_spend(fund):
    await fund("u1", 30)
    await deduct_credits("u1", 10, operation_id="gen-1")
    with pytest.raises(EntryNotFound):
        await refund_credits("u2", operation_id="gen-1")
    assert await get_balance("u2") == 0


@pytest.mark.asyncio
async def test_run_atomic_retries_transient_errors(fund):
    await fund("u1", 10)
    attempts = []

    async def flaky(unit):
        attempts.append(1)
        applied = await apply_entry(unit, kind=ENTRY_SPEND, amount=3, from_account="u1")
        if len(attempts) == 1:
            raise OperationalError("UPDATE accounts", {}, Exception("database is locked"))
        return applied.balance

    assert await run_atomic(flaky, context="test") == 7
    assert len(attempts) == 2
    # The failed attempt was rolled back entirely.
    assert await get_balance("u1") == 7
    assert await _entry_count() == 2


@pytest.mark.asyncio
async def test_run_atomic_gives_up(db):
    async def always_locked(unit):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    with pytest.raises(ConcurrencyConflict):
        await run_atomic(always_locked, context="test")


@pytest.mark.asyncio
async def test_run_atomic_does_not_retry_integrity_errors(db):
    calls = []

    async def broken(unit):
        calls.append(1)
        raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

    with pytest.raises(IntegrityError):
        await run_atomic(broken, context="test")
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_notifications_only_after_commit(fund, monkeypatch):
    published = []

    async def record(account_id, balance):
        published.append((account_id, balance))
        return True

    monkeypatch.setattr(notification_service, "settings", dataclasses.replace(settings, CREDITS_PUSH_ENABLED=True))
    monkeypatch.setattr(notification_service, "publish_credits_changed", record)

    await fund("u1", 100)
    await notification_service.drain_notifications()
    assert published == [("u1", 100)]

    with pytest.raises(InsufficientFunds):
        await apply_entry_atomic(kind=ENTRY_SPEND, amount=500, from_account="u1")
    await notification_service.drain_notifications()
    assert published == [("u1", 100)]


@pytest.mark.asyncio
async def test_unreachable_redis_does_not_delay_mutations(fund, monkeypatch):
    async def hang():
        await asyncio.Event().wait()

    monkeypatch.setattr(notification_service, "settings", dataclasses.replace(settings, CREDITS_PUSH_ENABLED=True))
    monkeypatch.setattr(notification_service, "get_redis", hang)

    await asyncio.wait_for(fund("u1", 100), timeout=2)
    await asyncio.wait_for(deduct_credits("u1", 40, operation_id="gen-9"), timeout=2)
    assert await get_balance("u1") == 60

    await notification_service.drain_notifications(timeout=0.1)
    assert not notification_service._pending
