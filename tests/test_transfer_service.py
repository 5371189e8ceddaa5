from __future__ import annotations

import asyncio
import random

import pytest
from sqlalchemy import func, select

from services.ledger_service import get_balance
from services.transfer_service import transfer
from shared.database import ENTRY_TRANSFER, LedgerEntry, async_session_factory
from shared.errors import (
    ALREADY_PROCESSED,
    AccountNotFound,
    InsufficientFunds,
    InvalidAmount,
    SelfTransfer,
)


async def _transfer_entries() -> int:
    async with async_session_factory() as session:
        stmt = select(func.count(LedgerEntry.id)).where(LedgerEntry.kind == ENTRY_TRANSFER)
        return (await session.execute(stmt)).scalar()


@pytest.mark.asyncio
async def test_transfer_moves_credits(fund):
    await fund("A", 500)

    result = await transfer("A", "B", 200)

    assert (result.from_balance, result.to_balance) == (300, 200)
    assert await get_balance("A") == 300
    assert await get_balance("B") == 200
    assert await _transfer_entries() == 1
    assert result.operation_id


@pytest.mark.asyncio
async def test_insufficient_funds_leaves_balances(fund):
    await fund("A", 100)
    await fund("B", 700)

    with pytest.raises(InsufficientFunds):
        await transfer("A", "B", 200)

    assert await get_balance("A") == 100
    assert await get_balance("B") == 700
    assert await _transfer_entries() == 0


@pytest.mark.asyncio
async def test_self_transfer_rejected(fund):
    await fund("A", 500)
    with pytest.raises(SelfTransfer):
        await transfer("A", "A", 100)
    assert await get_balance("A") == 500
    assert await _transfer_entries() == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -100, 150, 99])
async def test_amount_must_be_positive_multiple_of_unit(fund, amount):
    await fund("A", 500)
    with pytest.raises(InvalidAmount):
        await transfer("A", "B", amount)
    assert await get_balance("A") == 500
    assert await get_balance("B") == 0


@pytest.mark.asyncio
async def test_sender_must_exist(db):
    with pytest.raises(AccountNotFound):
        await transfer("ghost", "B", 100)
    # The recipient row created inside the failed unit was rolled back.
    assert await get_balance("B") == 0


@pytest.mark.asyncio
async def test_concurrent_transfers_cannot_overspend(fund):
    await fund("A", 300)

    results = await asyncio.gather(
        transfer("A", "B", 300),
        transfer("A", "B", 300),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1 and isinstance(failures[0], InsufficientFunds)
    assert await get_balance("A") == 0
    assert await get_balance("B") == 300


@pytest.mark.asyncio
async def test_replayed_operation_id_is_applied_once(fund):
    await fund("A", 500)

    first = await transfer("A", "B", 200, operation_id="client-op-1")
    second = await transfer("A", "B", 200, operation_id="client-op-1")

    assert second.status == ALREADY_PROCESSED
    assert (second.from_balance, second.to_balance) == (first.from_balance, first.to_balance)
    assert await get_balance("A") == 300
    assert await _transfer_entries() == 1


@pytest.mark.asyncio
async def test_opposite_transfers_run_concurrently(fund):
    await fund("A", 1000)
    await fund("B", 1000)

    await asyncio.gather(*[
        transfer("A", "B", 100) if i % 2 else transfer("B", "A", 100)
        for i in range(6)
    ])

    assert await get_balance("A") == 1000
    assert await get_balance("B") == 1000


@pytest.mark.asyncio
async def test_transfers_conserve_total(fund):
    accounts = ["A", "B", "C", "D"]
    for acct in accounts:
        await fund(acct, 1000)

    rng = random.Random(7)
    for _ in range(30):
        src, dst = rng.sample(accounts, 2)
        try:
            await transfer(src, dst, rng.choice([100, 200, 500]))
        except InsufficientFunds:
            pass

    balances = [await get_balance(a) for a in accounts]
    assert sum(balances) == 4000
    assert all(b >= 0 for b in balances)
