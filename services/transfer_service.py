"""Peer-to-peer credit transfers.

A transfer is one ledger unit: sender debit, recipient credit and the
``transfer`` entry commit together, so there is never a half-done transfer
to compensate.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from services import idempotency
from services.ledger_service import LedgerUnit, apply_entry, run_atomic, validate_amount
from shared.config import settings
from shared.database import ENTRY_TRANSFER
from shared.errors import ALREADY_PROCESSED, ConcurrencyConflict, SelfTransfer, TransferFailed

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"


@dataclass(slots=True)
class TransferResult:
    operation_id: str
    from_account: str
    to_account: str
    amount: int
    from_balance: int
    to_balance: int
    status: str
    entry_id: Optional[int] = None

    def snapshot(self) -> dict:
        return {
            "from_account": self.from_account,
            "to_account": self.to_account,
            "amount": self.amount,
            "from_balance": self.from_balance,
            "to_balance": self.to_balance,
            "entry_id": self.entry_id,
        }


def _from_snapshot(operation_id: str, prior: dict) -> TransferResult:
    return TransferResult(
        operation_id=operation_id,
        from_account=prior["from_account"],
        to_account=prior["to_account"],
        amount=prior["amount"],
        from_balance=prior["from_balance"],
        to_balance=prior["to_balance"],
        status=ALREADY_PROCESSED,
        entry_id=prior.get("entry_id"),
    )


async def transfer(
    from_id: str,
    to_id: str,
    amount: int,
    *,
    operation_id: Optional[str] = None,
) -> TransferResult:
    """Move ``amount`` credits from ``from_id`` to ``to_id``.

    Raises SelfTransfer, InvalidAmount, AccountNotFound (sender) or
    InsufficientFunds with no effect.  Store failures, including exhausted
    conflict retries, surface as TransferFailed.  Replaying an
    ``operation_id`` returns the first outcome with status already_processed.
    """
    if from_id == to_id:
        raise SelfTransfer(f"account {from_id} cannot transfer to itself")
    validate_amount(amount, unit=settings.MIN_CREDIT_UNIT)

    op_id = operation_id or uuid.uuid4().hex
    ref = idempotency.scoped_ref(from_id, op_id)

    async def _op(unit: LedgerUnit) -> TransferResult:
        reservation = await idempotency.check_and_reserve(
            unit.session, idempotency.SCOPE_TRANSFER, ref, from_id
        )
        if not reservation.fresh:
            prior = reservation.prior_result
            if prior.get("to_account") != to_id or prior.get("amount") != amount:
                logger.warning(
                    "Transfer %s replayed with different arguments: to=%s amount=%s (stored to=%s amount=%s)",
                    op_id, to_id, amount, prior.get("to_account"), prior.get("amount"),
                )
            return _from_snapshot(op_id, prior)

        applied = await apply_entry(
            unit,
            kind=ENTRY_TRANSFER,
            amount=amount,
            from_account=from_id,
            to_account=to_id,
            external_ref=ref,
        )
        result = TransferResult(
            operation_id=op_id,
            from_account=from_id,
            to_account=to_id,
            amount=amount,
            from_balance=applied.from_balance,
            to_balance=applied.to_balance,
            status=STATUS_COMPLETED,
            entry_id=applied.entry.id,
        )
        await idempotency.complete(unit.session, reservation, result.snapshot())
        return result

    try:
        result = await run_atomic(_op, context="transfer")
    except ConcurrencyConflict as exc:
        raise TransferFailed(f"transfer {op_id}: {exc.detail}") from exc
    except SQLAlchemyError as exc:
        logger.exception("Transfer %s failed in the ledger store", op_id)
        raise TransferFailed(f"transfer {op_id}: {exc}") from exc

    logger.info(
        "Transfer %s: %s -> %s amount=%d status=%s",
        op_id, from_id, to_id, amount, result.status,
    )
    return result
