"""Wallet endpoints: balance, history and peer transfers."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from services import idempotency
from services.ledger_service import EntryFilter, get_balance, get_entry_by_ref, list_entries
from services.transfer_service import transfer
from shared.database import ENTRY_TRANSFER
from shared.errors import EntryNotFound
from web_api.deps import current_account_id
from web_api.schemas import (
    BalanceOut,
    Direction,
    EntryKind,
    EntryOut,
    EntryPageOut,
    TransferIn,
    TransferOut,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/credits", tags=["credits"])


def entry_page(page) -> EntryPageOut:
    return EntryPageOut(
        entries=[EntryOut.model_validate(e) for e in page.entries],
        next_page_token=page.next_page_token,
    )


@router.get("/balance", response_model=BalanceOut)
async def read_balance(account_id: str = Depends(current_account_id)) -> BalanceOut:
    return BalanceOut(account_id=account_id, balance=await get_balance(account_id))


@router.get("/entries", response_model=EntryPageOut)
async def read_entries(
    kind: Optional[list[EntryKind]] = Query(None),
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    direction: Direction = "any",
    page_token: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1),
    account_id: str = Depends(current_account_id),
) -> EntryPageOut:
    flt = EntryFilter(kinds=kind, since=since, until=until, direction=direction)
    page = await list_entries(account_id, flt, page_token, limit=limit)
    return entry_page(page)


@router.post("/transfer", response_model=TransferOut)
async def create_transfer(
    body: TransferIn,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", max_length=128),
    account_id: str = Depends(current_account_id),
) -> TransferOut:
    result = await transfer(
        account_id,
        body.to_account.strip(),
        body.amount,
        operation_id=idempotency_key or body.operation_id,
    )
    return TransferOut.model_validate(result)


@router.get("/transfers/{operation_id}", response_model=EntryOut)
async def read_transfer(
    operation_id: str,
    account_id: str = Depends(current_account_id),
) -> EntryOut:
    """Find out whether a transfer that timed out was committed."""
    entry = await get_entry_by_ref(ENTRY_TRANSFER, idempotency.scoped_ref(account_id, operation_id))
    if entry is None:
        raise EntryNotFound(f"no transfer {operation_id} from {account_id}")
    return EntryOut.model_validate(entry)
