"""Research billing endpoints, called by the research form.

Refunds are not exposed here: only an admin can reverse a charge
(``POST /api/admin/research/refunds``).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from services.research_service import charge_for_research, get_research_cost, new_request_id
from web_api.deps import current_account_id
from web_api.schemas import ResearchChargeIn, ResearchChargeOut, ResearchCostOut

router = APIRouter(prefix="/api/research", tags=["research"])


@router.get("/cost", response_model=ResearchCostOut)
async def read_cost() -> ResearchCostOut:
    return ResearchCostOut(cost=await get_research_cost())


@router.post("/charge", response_model=ResearchChargeOut)
async def charge(
    body: ResearchChargeIn,
    account_id: str = Depends(current_account_id),
) -> ResearchChargeOut:
    request_id = body.request_id or new_request_id()
    result = await charge_for_research(account_id, request_id, body.topic)
    return ResearchChargeOut.model_validate(result)
