"""Account lookups and admin statistics (read-only)."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func, select

from shared.database import PAYMENT_PAID, Account, LedgerEntry, Payment, async_session_factory

logger = logging.getLogger(__name__)


async def get_account(account_id: str) -> Optional[Account]:
    async with async_session_factory() as session:
        return await session.get(Account, account_id)


async def list_accounts(limit: int = 50, offset: int = 0) -> list[Account]:
    """Accounts with balances, richest first."""
    async with async_session_factory() as session:
        stmt = (
            select(Account)
            .order_by(Account.balance.desc(), Account.id)
            .limit(limit)
            .offset(offset)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())


async def get_stats() -> dict:
    """Return aggregate statistics."""
    async with async_session_factory() as session:
        total_accounts = (await session.execute(select(func.count(Account.id)))).scalar() or 0
        outstanding = (
            await session.execute(select(func.coalesce(func.sum(Account.balance), 0)))
        ).scalar() or 0
        paid = (
            await session.execute(
                select(func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0)).where(
                    Payment.status == PAYMENT_PAID
                )
            )
        ).one()
        by_kind = await session.execute(
            select(LedgerEntry.kind, func.count(LedgerEntry.id), func.sum(LedgerEntry.amount))
            .group_by(LedgerEntry.kind)
        )

        entries = {}
        credits = {}
        for kind, count, total in by_kind:
            entries[kind] = count
            credits[kind] = total or 0

        return {
            "total_accounts": total_accounts,
            "outstanding_credits": outstanding,
            "paid_payments": paid[0] or 0,
            "total_revenue": paid[1] or 0,
            "entries_by_kind": entries,
            "credits_by_kind": credits,
        }
