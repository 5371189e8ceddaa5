"""Checkout endpoints: pricing, pending payment registration, confirmation."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from services.payment_service import confirm_payment, register_payment
from services.pricing_service import list_rules
from web_api.deps import current_account_id
from web_api.schemas import PaymentIn, PaymentOut, PricingRuleOut, SettlementOut

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


@router.get("/api/pricing", response_model=list[PricingRuleOut])
async def read_pricing() -> list[PricingRuleOut]:
    return [PricingRuleOut.model_validate(rule) for rule in await list_rules()]


@router.post("/api/payments", response_model=PaymentOut, status_code=201)
async def create_payment(
    body: PaymentIn,
    account_id: str = Depends(current_account_id),
) -> PaymentOut:
    """Called by the hosted form once Moyasar has created the payment."""
    payment = await register_payment(account_id, body.payment_id, body.amount)
    return PaymentOut.model_validate(payment)


@router.post("/api/payments/confirm", response_model=SettlementOut)
async def confirm(
    body: PaymentIn,
    account_id: str = Depends(current_account_id),
) -> SettlementOut:
    """Checkout redirect landed on the success page: settle once the payment is verified."""
    result = await confirm_payment(account_id, body.payment_id, body.amount)
    return SettlementOut.model_validate(result)
