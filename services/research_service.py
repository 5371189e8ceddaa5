"""Research billing: per-generation cost, charge and refund."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from services.ledger_service import STATUS_APPLIED, deduct_credits, get_balance, refund_credits
from shared.config import settings
from shared.database import AppSetting, async_session_factory
from shared.errors import InvalidAmount

logger = logging.getLogger(__name__)

RESEARCH_COST_KEY = "research_cost"

STATUS_CHARGED = "charged"
STATUS_FREE = "free"
STATUS_REFUNDED = "refunded"


@dataclass(slots=True)
class ResearchCharge:
    request_id: str
    account_id: str
    cost: int
    balance: int
    status: str


def new_request_id() -> str:
    """Generate a unique request_id for a research generation."""
    return uuid.uuid4().hex


def _parse_cost(value: object) -> Optional[int]:
    cost = value.get("cost") if isinstance(value, dict) else None
    if isinstance(cost, bool) or not isinstance(cost, int) or cost < 0:
        return None
    return cost


async def get_research_cost() -> int:
    """Current price of one research, in credits (0 = free)."""
    async with async_session_factory() as session:
        row = await session.get(AppSetting, RESEARCH_COST_KEY)
    if row is None:
        return settings.RESEARCH_COST
    cost = _parse_cost(row.value)
    if cost is None:
        logger.warning("Invalid %s setting %r, using default", RESEARCH_COST_KEY, row.value)
        return settings.RESEARCH_COST
    return cost


async def set_research_cost(cost: int, admin_id: Optional[str] = None) -> int:
    if isinstance(cost, bool) or not isinstance(cost, int) or cost < 0:
        raise InvalidAmount(f"research cost must be an integer >= 0, got {cost!r}")

    async with async_session_factory() as session:
        async with session.begin():
            row = await session.get(AppSetting, RESEARCH_COST_KEY, with_for_update=True)
            if row is None:
                row = AppSetting(key=RESEARCH_COST_KEY, value={"cost": cost})
                session.add(row)
            row.value = {"cost": cost}
            row.updated_by = admin_id
            row.updated_at = datetime.now(timezone.utc)

    logger.info("Research cost set to %d (by %s)", cost, admin_id)
    return cost


async def charge_for_research(
    account_id: str,
    request_id: str,
    topic: Optional[str] = None,
) -> ResearchCharge:
    """Charge the current research cost once per ``request_id``.

    Raises InsufficientFunds / AccountNotFound with no effect.
    """
    cost = await get_research_cost()
    if cost == 0:
        return ResearchCharge(
            request_id=request_id,
            account_id=account_id,
            cost=0,
            balance=await get_balance(account_id),
            status=STATUS_FREE,
        )

    result = await deduct_credits(account_id, cost, operation_id=request_id, memo=topic)
    return ResearchCharge(
        request_id=request_id,
        account_id=account_id,
        cost=result.amount,
        balance=result.balance,
        status=STATUS_CHARGED if result.status == STATUS_APPLIED else result.status,
    )


async def refund_research(account_id: str, request_id: str, *, admin_id: str) -> ResearchCharge:
    """Admin reversal of a failed generation (EntryNotFound if it was never charged).

    Callers must have checked ``admin_id``; the account owner cannot refund
    their own charge.
    """
    result = await refund_credits(
        account_id, operation_id=request_id, memo="research generation failed", actor_id=admin_id
    )
    logger.info(
        "Research refund: account=%s request=%s amount=%d status=%s admin=%s",
        account_id, request_id, result.amount, result.status, admin_id,
    )
    return ResearchCharge(
        request_id=request_id,
        account_id=account_id,
        cost=result.amount,
        balance=result.balance,
        status=STATUS_REFUNDED if result.status == STATUS_APPLIED else result.status,
    )
