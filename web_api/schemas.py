"""Request / response bodies of the HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

EntryKind = Literal["transfer", "payment_credit", "admin_gift", "spend", "refund"]
Direction = Literal["in", "out", "any"]

AccountId = Annotated[str, Field(min_length=1, max_length=64)]
OperationId = Annotated[str, Field(min_length=1, max_length=128)]


class _FromAttributes(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# --------------- credits ---------------

class BalanceOut(BaseModel):
    account_id: str
    balance: int


class EntryOut(_FromAttributes):
    id: int
    from_account: Optional[str]
    to_account: Optional[str]
    amount: int
    kind: str
    external_ref: Optional[str]
    actor_id: Optional[str]
    memo: Optional[str]
    balance_after: int
    created_at: datetime


class EntryPageOut(BaseModel):
    entries: list[EntryOut]
    next_page_token: Optional[str] = None


class TransferIn(BaseModel):
    to_account: AccountId
    amount: int
    operation_id: Optional[OperationId] = None


class TransferOut(_FromAttributes):
    operation_id: str
    from_account: str
    to_account: str
    amount: int
    from_balance: int
    to_balance: int
    status: str


# --------------- payments ---------------

class PricingRuleOut(_FromAttributes):
    amount: int
    credits: int
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None


class PricingRuleIn(BaseModel):
    credits: int


class PaymentIn(BaseModel):
    payment_id: str = Field(min_length=1, max_length=255)
    amount: int


class PaymentOut(_FromAttributes):
    payment_id: str
    account_id: str
    amount: int
    currency: str
    credits: Optional[int]
    status: str
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None


class SettlementOut(_FromAttributes):
    payment_id: str
    account_id: str
    amount: int
    credits_granted: int
    balance: int
    status: str


# --------------- research ---------------

class ResearchCostOut(BaseModel):
    cost: int


class ResearchCostIn(BaseModel):
    cost: int


class ResearchChargeIn(BaseModel):
    request_id: Optional[OperationId] = None
    topic: Optional[str] = Field(default=None, max_length=500)


class ResearchRefundIn(BaseModel):
    account_id: AccountId
    request_id: OperationId


class ResearchChargeOut(_FromAttributes):
    request_id: str
    account_id: str
    cost: int
    balance: int
    status: str


# --------------- admin ---------------

class GrantIn(BaseModel):
    recipient_id: AccountId
    amount: int
    note: Optional[str] = Field(default=None, max_length=500)
    operation_id: Optional[OperationId] = None


class GrantOut(_FromAttributes):
    admin_id: str
    recipient_id: str
    amount: int
    balance: int
    status: str
    operation_id: Optional[str] = None


class AccountOut(_FromAttributes):
    id: str
    balance: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class StatsOut(BaseModel):
    total_accounts: int
    outstanding_credits: int
    paid_payments: int
    total_revenue: int
    entries_by_kind: dict[str, int]
    credits_by_kind: dict[str, int]
