"""Checkout pricing: paid amount (SAR) -> credits granted."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Mapping, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import CREDIT_PACKAGES, PRICING_FALLBACK_ONE_TO_ONE, settings
from shared.database import PricingRule, async_session_factory
from shared.errors import InvalidAmount, UnknownPricing

logger = logging.getLogger(__name__)


def credits_for_amount(amount: int, rules: Mapping[int, int], fallback: str) -> int:
    """Resolve ``amount`` through ``rules``; unknown amounts follow ``fallback``."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(f"paid amount must be a positive integer, got {amount!r}")
    credits = rules.get(amount)
    if credits is not None:
        return credits
    if fallback == PRICING_FALLBACK_ONE_TO_ONE:
        return amount
    raise UnknownPricing(f"no pricing rule for {amount} SAR")


async def load_rules(session: AsyncSession) -> dict[int, int]:
    rows = await session.execute(select(PricingRule.amount, PricingRule.credits))
    return {row.amount: row.credits for row in rows}


async def resolve_credits(session: AsyncSession, amount: int) -> int:
    """Credits for ``amount`` as of the caller's transaction."""
    return credits_for_amount(amount, await load_rules(session), settings.PRICING_FALLBACK)


async def list_rules() -> list[PricingRule]:
    async with async_session_factory() as session:
        result = await session.execute(select(PricingRule).order_by(PricingRule.amount))
        return list(result.scalars().all())


async def set_rule(amount: int, credits: int, admin_id: Optional[str] = None) -> PricingRule:
    """Create or replace the rule for ``amount``.  Applies to later settlements only."""
    for name, value in (("amount", amount), ("credits", credits)):
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise InvalidAmount(f"{name} must be a positive integer, got {value!r}")

    async with async_session_factory() as session:
        async with session.begin():
            rule = await session.get(PricingRule, amount, with_for_update=True)
            if rule is None:
                rule = PricingRule(amount=amount, credits=credits)
                session.add(rule)
            rule.credits = credits
            rule.updated_by = admin_id
            rule.updated_at = datetime.now(timezone.utc)

    logger.info("Pricing rule set: %d SAR -> %d credits (by %s)", amount, credits, admin_id)
    return rule


async def remove_rule(amount: int) -> bool:
    """Delete the rule for ``amount``.  Returns False if there was none."""
    async with async_session_factory() as session:
        async with session.begin():
            result = await session.execute(delete(PricingRule).where(PricingRule.amount == amount))
    removed = bool(result.rowcount)
    if removed:
        logger.info("Pricing rule removed: %d SAR", amount)
    return removed


async def seed_default_rules() -> int:
    """Insert CREDIT_PACKAGES when the pricing table is empty."""
    async with async_session_factory() as session:
        async with session.begin():
            count = (await session.execute(select(func.count()).select_from(PricingRule))).scalar() or 0
            if count:
                return 0
            for amount, credits in CREDIT_PACKAGES.items():
                session.add(PricingRule(amount=amount, credits=credits, updated_by="system"))
    logger.info("Seeded %d default pricing rules", len(CREDIT_PACKAGES))
    return len(CREDIT_PACKAGES)
