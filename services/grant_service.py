"""Admin credit gifts.

Authorization happens at the HTTP layer; this module only records who
issued the gift (``actor_id``) on the ``admin_gift`` entry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from services import idempotency
from services.ledger_service import LedgerUnit, apply_entry, run_atomic, validate_amount
from shared.config import settings
from shared.database import ENTRY_ADMIN_GIFT
from shared.errors import ALREADY_PROCESSED, ConcurrencyConflict, GrantFailed

logger = logging.getLogger(__name__)

STATUS_GRANTED = "granted"


@dataclass(slots=True)
class GrantResult:
    admin_id: str
    recipient_id: str
    amount: int
    balance: int
    status: str
    operation_id: Optional[str] = None
    entry_id: Optional[int] = None


async def grant(
    admin_id: str,
    recipient_id: str,
    amount: int,
    *,
    note: Optional[str] = None,
    operation_id: Optional[str] = None,
) -> GrantResult:
    """Credit ``recipient_id`` with ``amount`` (multiple of MIN_CREDIT_UNIT)."""
    validate_amount(amount, unit=settings.MIN_CREDIT_UNIT)
    ref = idempotency.scoped_ref(admin_id, operation_id) if operation_id else None

    async def _op(unit: LedgerUnit) -> GrantResult:
        reservation = None
        if ref is not None:
            reservation = await idempotency.check_and_reserve(
                unit.session, idempotency.SCOPE_GRANT, ref, recipient_id
            )
            if not reservation.fresh:
                prior = reservation.prior_result
                return GrantResult(
                    admin_id=admin_id,
                    recipient_id=prior.get("recipient_id", recipient_id),
                    amount=prior.get("amount", amount),
                    balance=prior.get("balance", 0),
                    status=ALREADY_PROCESSED,
                    operation_id=operation_id,
                    entry_id=prior.get("entry_id"),
                )

        applied = await apply_entry(
            unit,
            kind=ENTRY_ADMIN_GIFT,
            amount=amount,
            to_account=recipient_id,
            external_ref=ref,
            actor_id=admin_id,
            memo=note,
        )
        result = GrantResult(
            admin_id=admin_id,
            recipient_id=recipient_id,
            amount=amount,
            balance=applied.balance,
            status=STATUS_GRANTED,
            operation_id=operation_id,
            entry_id=applied.entry.id,
        )
        if reservation is not None:
            await idempotency.complete(
                unit.session,
                reservation,
                {
                    "recipient_id": recipient_id,
                    "amount": amount,
                    "balance": result.balance,
                    "entry_id": result.entry_id,
                },
            )
        return result

    try:
        result = await run_atomic(_op, context="grant")
    except ConcurrencyConflict as exc:
        raise GrantFailed(f"grant to {recipient_id}: {exc.detail}") from exc
    except SQLAlchemyError as exc:
        logger.exception("Grant by %s to %s failed in the ledger store", admin_id, recipient_id)
        raise GrantFailed(f"grant to {recipient_id}: {exc}") from exc

    logger.info(
        "Admin gift: admin=%s recipient=%s amount=%d balance=%d status=%s",
        admin_id, recipient_id, amount, result.balance, result.status,
    )
    return result
