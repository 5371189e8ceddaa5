"""Admin endpoints: gifts, pricing, research cost and refunds, accounts and stats.

Every route requires the caller to be listed in ADMIN_IDS.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from services import account_service, grant_service, pricing_service, research_service
from services.ledger_service import EntryFilter, list_entries
from shared.errors import AccountNotFound
from web_api.deps import admin_account_id
from web_api.handlers.credits import entry_page
from web_api.schemas import (
    AccountOut,
    Direction,
    EntryKind,
    EntryPageOut,
    GrantIn,
    GrantOut,
    PricingRuleIn,
    PricingRuleOut,
    ResearchChargeOut,
    ResearchCostIn,
    ResearchCostOut,
    ResearchRefundIn,
    StatsOut,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Gifts
# ---------------------------------------------------------------------------

@router.post("/grants", response_model=GrantOut)
async def create_grant(body: GrantIn, admin_id: str = Depends(admin_account_id)) -> GrantOut:
    result = await grant_service.grant(
        admin_id,
        body.recipient_id.strip(),
        body.amount,
        note=body.note,
        operation_id=body.operation_id,
    )
    return GrantOut.model_validate(result)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

@router.get("/stats", response_model=StatsOut)
async def read_stats(admin_id: str = Depends(admin_account_id)) -> StatsOut:
    return StatsOut(**await account_service.get_stats())


@router.get("/accounts", response_model=list[AccountOut])
async def read_accounts(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin_id: str = Depends(admin_account_id),
) -> list[AccountOut]:
    accounts = await account_service.list_accounts(limit=limit, offset=offset)
    return [AccountOut.model_validate(a) for a in accounts]


@router.get("/accounts/{account_id}", response_model=AccountOut)
async def read_account(account_id: str, admin_id: str = Depends(admin_account_id)) -> AccountOut:
    account = await account_service.get_account(account_id)
    if account is None:
        raise AccountNotFound(f"account {account_id} does not exist")
    return AccountOut.model_validate(account)


@router.get("/entries", response_model=EntryPageOut)
async def read_all_entries(
    account_id: Optional[str] = None,
    kind: Optional[list[EntryKind]] = Query(None),
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    direction: Direction = "any",
    page_token: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1),
    admin_id: str = Depends(admin_account_id),
) -> EntryPageOut:
    flt = EntryFilter(kinds=kind, since=since, until=until, direction=direction)
    page = await list_entries(account_id, flt, page_token, limit=limit)
    return entry_page(page)


# ---------------------------------------------------------------------------
# Pricing & research cost
# ---------------------------------------------------------------------------

@router.put("/pricing/{amount}", response_model=PricingRuleOut)
async def put_pricing_rule(
    amount: int,
    body: PricingRuleIn,
    admin_id: str = Depends(admin_account_id),
) -> PricingRuleOut:
    rule = await pricing_service.set_rule(amount, body.credits, admin_id)
    return PricingRuleOut.model_validate(rule)


@router.delete("/pricing/{amount}", status_code=204)
async def delete_pricing_rule(amount: int, admin_id: str = Depends(admin_account_id)) -> Response:
    if not await pricing_service.remove_rule(amount):
        raise HTTPException(status_code=404, detail=f"no pricing rule for {amount}")
    logger.info("Pricing rule %d removed by admin %s", amount, admin_id)
    return Response(status_code=204)


@router.put("/research-cost", response_model=ResearchCostOut)
async def put_research_cost(
    body: ResearchCostIn,
    admin_id: str = Depends(admin_account_id),
) -> ResearchCostOut:
    return ResearchCostOut(cost=await research_service.set_research_cost(body.cost, admin_id))


@router.post("/research/refunds", response_model=ResearchChargeOut)
async def refund_research_charge(
    body: ResearchRefundIn,
    admin_id: str = Depends(admin_account_id),
) -> ResearchChargeOut:
    """Reverse a research charge whose generation failed."""
    result = await research_service.refund_research(
        body.account_id.strip(), body.request_id, admin_id=admin_id
    )
    return ResearchChargeOut.model_validate(result)
