from __future__ import annotations

import pytest

from services import pricing_service
from services.pricing_service import credits_for_amount
from shared.config import CREDIT_PACKAGES, PRICING_FALLBACK_ONE_TO_ONE, PRICING_FALLBACK_REJECT
from shared.errors import InvalidAmount, UnknownPricing


def test_packages_resolve_to_bonus_credits():
    assert credits_for_amount(10, CREDIT_PACKAGES, PRICING_FALLBACK_REJECT) == 10
    assert credits_for_amount(30, CREDIT_PACKAGES, PRICING_FALLBACK_REJECT) == 40
    assert credits_for_amount(50, CREDIT_PACKAGES, PRICING_FALLBACK_REJECT) == 70


def test_unknown_amount_follows_fallback():
    with pytest.raises(UnknownPricing):
        credits_for_amount(25, CREDIT_PACKAGES, PRICING_FALLBACK_REJECT)
    assert credits_for_amount(25, CREDIT_PACKAGES, PRICING_FALLBACK_ONE_TO_ONE) == 25


@pytest.mark.parametrize("amount", [0, -10, True, "30"])
def test_invalid_paid_amount(amount):
    with pytest.raises(InvalidAmount):
        credits_for_amount(amount, CREDIT_PACKAGES, PRICING_FALLBACK_ONE_TO_ONE)


@pytest.mark.asyncio
async def test_default_rules_are_seeded_once(db):
    rules = await pricing_service.list_rules()
    assert {r.amount: r.credits for r in rules} == CREDIT_PACKAGES
    assert await pricing_service.seed_default_rules() == 0


@pytest.mark.asyncio
async def test_admin_edits_rules(db):
    await pricing_service.set_rule(100, 160, "admin-1")
    await pricing_service.set_rule(30, 45, "admin-1")

    rules = {r.amount: r for r in await pricing_service.list_rules()}
    assert rules[100].credits == 160
    assert rules[30].credits == 45
    assert rules[30].updated_by == "admin-1"

    assert await pricing_service.remove_rule(10) is True
    assert await pricing_service.remove_rule(10) is False
    assert 10 not in {r.amount for r in await pricing_service.list_rules()}


@pytest.mark.asyncio
async def test_rule_values_must_be_positive(db):
    with pytest.raises(InvalidAmount):
        await pricing_service.set_rule(30, 0, "admin-1")
    with pytest.raises(InvalidAmount):
        await pricing_service.set_rule(-1, 10, "admin-1")
