"""Payment settlement with Moyasar: paid checkout -> credits.

Key properties:
- One settlement path (``settle_payment``) for the client confirmation, the
  webhook and the reconciler.
- Idempotent per Moyasar payment id: the guard record, the payment_credit
  entry and the ``payments`` row update commit together.
- When MOYASAR_SECRET_KEY is set, confirmations and webhooks are *fail-closed*:
  credits are only granted after the payment is verified via the Moyasar API.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from services import idempotency, moyasar_client, pricing_service
from services.ledger_service import LedgerUnit, apply_entry, run_atomic
from services.moyasar_client import MoyasarError, MoyasarPayment
from shared.config import settings
from shared.database import (
    ENTRY_PAYMENT_CREDIT,
    PAYMENT_FAILED,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    Payment,
    async_session_factory,
)
from shared.errors import (
    ALREADY_PROCESSED,
    ConcurrencyConflict,
    InvalidAmount,
    PaymentMismatch,
    PaymentNotConfirmed,
    SettlementFailed,
)

logger = logging.getLogger(__name__)

STATUS_SETTLED = "settled"
CURRENCY = "SAR"


class WebhookOutcome(str, Enum):
    SETTLED = "settled"
    ALREADY_PROCESSED = "already_processed"
    FAILED_RECORDED = "failed_recorded"
    IGNORED = "ignored"


@dataclass(slots=True)
class SettlementResult:
    payment_id: str
    account_id: str
    amount: int
    credits_granted: int
    balance: int
    status: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_PAID_EVENTS = {"payment_paid", "payment.paid", "PAYMENT_PAID"}
_FAILED_EVENTS = {"payment_failed", "payment.failed", "PAYMENT_FAILED"}

_STATUS_MAP = {
    "paid": PAYMENT_PAID,
    "captured": PAYMENT_PAID,
    "failed": PAYMENT_FAILED,
    "canceled": PAYMENT_FAILED,
    "cancelled": PAYMENT_FAILED,
}


def _validate_paid_amount(amount: object) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(f"paid amount must be a positive integer, got {amount!r}")
    return amount


def _map_status(raw: Optional[str]) -> str:
    return _STATUS_MAP.get(str(raw or "").strip().lower(), PAYMENT_PENDING)


def _amount_from_gateway(data: dict) -> Optional[int]:
    """Whole SAR amount of a gateway payment object (metadata first, then halalas).

    Fractional amounts are not priced and yield None rather than being rounded.
    """
    metadata = data.get("metadata") or {}
    original = metadata.get("original_amount")
    try:
        if original not in (None, ""):
            sar = Decimal(str(original))
        else:
            halalas = data.get("amount")
            if halalas in (None, ""):
                return None
            sar = Decimal(int(halalas)) / 100
        if not sar.is_finite() or sar != sar.to_integral_value():
            logger.warning("Non-integer SAR amount on payment %s: %s", data.get("id"), sar)
            return None
        return int(sar)
    except (TypeError, ValueError, InvalidOperation):
        return None


def _verify_remote(remote: MoyasarPayment, amount: int) -> Optional[str]:
    """Return a mismatch description, or None if ``remote`` is a paid ``amount`` SAR."""
    if not remote.is_paid:
        return f"status={remote.status}"
    if remote.currency != CURRENCY:
        return f"currency={remote.currency}"
    if remote.amount != amount * 100:
        return f"amount={remote.amount} halalas, expected {amount * 100}"
    return None


async def _lock_payment(session: AsyncSession, payment_id: str) -> Optional[Payment]:
    result = await session.execute(
        select(Payment).where(Payment.payment_id == payment_id).with_for_update()
    )
    return result.scalar_one_or_none()


async def _mark_paid(
    session: AsyncSession,
    payment_id: str,
    account_id: str,
    amount: int,
    credits: int,
) -> None:
    payment = await _lock_payment(session, payment_id)
    now = datetime.now(timezone.utc)
    if payment is None:
        session.add(
            Payment(
                payment_id=payment_id,
                account_id=account_id,
                amount=amount,
                currency=CURRENCY,
                credits=credits,
                status=PAYMENT_PAID,
                paid_at=now,
            )
        )
    else:
        payment.status = PAYMENT_PAID
        payment.credits = credits
        payment.paid_at = payment.paid_at or now
    await session.flush()


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------

async def settle_payment(payment_id: str, account_id: str, paid_amount: int) -> SettlementResult:
    """Convert one confirmed payment into exactly one credit grant.

    Replays return the first result with status already_processed.  Raises
    UnknownPricing for an amount no rule covers, SettlementFailed for any
    store-level failure (no partial credit is left behind).
    """
    if not payment_id:
        raise PaymentMismatch("payment id is required")
    _validate_paid_amount(paid_amount)

    async def _op(unit: LedgerUnit) -> SettlementResult:
        session = unit.session
        reservation = await idempotency.check_and_reserve(
            session, idempotency.SCOPE_PAYMENT, payment_id, account_id
        )
        if not reservation.fresh:
            prior = reservation.prior_result
            if prior.get("account_id") != account_id or prior.get("amount") != paid_amount:
                logger.warning(
                    "Payment %s replayed with account=%s amount=%s (settled for account=%s amount=%s)",
                    payment_id, account_id, paid_amount, prior.get("account_id"), prior.get("amount"),
                )
            return SettlementResult(
                payment_id=payment_id,
                account_id=prior.get("account_id", account_id),
                amount=prior.get("amount", paid_amount),
                credits_granted=prior.get("credits_granted", 0),
                balance=prior.get("balance", 0),
                status=ALREADY_PROCESSED,
            )

        credits = await pricing_service.resolve_credits(session, paid_amount)
        applied = await apply_entry(
            unit,
            kind=ENTRY_PAYMENT_CREDIT,
            amount=credits,
            to_account=account_id,
            external_ref=payment_id,
            memo=f"{paid_amount} {CURRENCY}",
        )
        await _mark_paid(session, payment_id, account_id, paid_amount, credits)

        result = SettlementResult(
            payment_id=payment_id,
            account_id=account_id,
            amount=paid_amount,
            credits_granted=credits,
            balance=applied.balance,
            status=STATUS_SETTLED,
        )
        await idempotency.complete(
            session,
            reservation,
            {
                "account_id": account_id,
                "amount": paid_amount,
                "credits_granted": credits,
                "balance": applied.balance,
            },
        )
        return result

    try:
        result = await run_atomic(_op, context=f"settle:{payment_id}")
    except ConcurrencyConflict as exc:
        raise SettlementFailed(f"payment {payment_id}: {exc.detail}") from exc
    except SQLAlchemyError as exc:
        logger.exception("Payment %s settlement failed in the ledger store", payment_id)
        raise SettlementFailed(f"payment {payment_id}: {exc}") from exc

    logger.info(
        "Payment %s %s: account=%s amount=%d SAR credits=%d balance=%d",
        payment_id, result.status, result.account_id, result.amount,
        result.credits_granted, result.balance,
    )
    return result


# ---------------------------------------------------------------------------
# Payment records
# ---------------------------------------------------------------------------

async def get_payment(payment_id: str) -> Optional[Payment]:
    async with async_session_factory() as session:
        result = await session.execute(select(Payment).where(Payment.payment_id == payment_id))
        return result.scalar_one_or_none()


async def _insert_pending(payment_id: str, account_id: str, amount: int, credits: Optional[int]) -> Payment:
    try:
        async with async_session_factory() as session:
            async with session.begin():
                payment = Payment(
                    payment_id=payment_id,
                    account_id=account_id,
                    amount=amount,
                    currency=CURRENCY,
                    credits=credits,
                    status=PAYMENT_PENDING,
                )
                session.add(payment)
        return payment
    except IntegrityError:
        existing = await get_payment(payment_id)
        if existing is None:
            raise
        return existing


async def register_payment(account_id: str, payment_id: str, amount: int) -> Payment:
    """Record a pending checkout created by the hosted payment form.

    Registering the same payment twice for the same account and amount is a
    no-op; anything else is a PaymentMismatch.
    """
    if not payment_id:
        raise PaymentMismatch("payment id is required")
    _validate_paid_amount(amount)

    async with async_session_factory() as session:
        quoted = await pricing_service.resolve_credits(session, amount)

    payment = await get_payment(payment_id)
    if payment is None:
        payment = await _insert_pending(payment_id, account_id, amount, quoted)
        logger.info("Payment %s registered: account=%s amount=%d SAR", payment_id, account_id, amount)
    if payment.account_id != account_id or payment.amount != amount:
        raise PaymentMismatch(
            f"payment {payment_id} is registered for account={payment.account_id} amount={payment.amount}"
        )
    return payment


async def confirm_payment(account_id: str, payment_id: str, amount: int) -> SettlementResult:
    """Client-side confirmation after the checkout redirect.

    Without MOYASAR_SECRET_KEY the client's word is not enough: only a payment
    already settled by the authenticated webhook is reported back, anything
    else raises PaymentNotConfirmed.
    """
    _validate_paid_amount(amount)

    payment = await get_payment(payment_id)
    if payment is not None and (payment.account_id != account_id or payment.amount != amount):
        raise PaymentMismatch(
            f"payment {payment_id} belongs to account={payment.account_id} amount={payment.amount}"
        )

    if not settings.moyasar_enabled:
        if payment is None or payment.status != PAYMENT_PAID:
            logger.info("Payment %s confirmation deferred to the webhook", payment_id)
            raise PaymentNotConfirmed(f"payment {payment_id} is not settled yet")
    else:
        try:
            remote = await moyasar_client.fetch_payment(payment_id)
        except MoyasarError as exc:
            raise SettlementFailed(f"could not verify payment {payment_id}: {exc}") from exc

        problem = _verify_remote(remote, amount)
        owner = remote.metadata.get("user_id")
        if problem is None and owner and str(owner) != account_id:
            problem = f"metadata.user_id={owner}"
        if problem is not None:
            logger.warning("Payment %s not confirmed via API: %s", payment_id, problem)
            raise PaymentMismatch(f"payment {payment_id}: {problem}")

    return await settle_payment(payment_id, account_id, amount)


async def mark_payment_failed(payment_id: str) -> bool:
    """Record a failed payment.  A paid payment is never downgraded."""
    async with async_session_factory() as session:
        async with session.begin():
            result = await session.execute(
                update(Payment)
                .where(Payment.payment_id == payment_id, Payment.status != PAYMENT_PAID)
                .values(status=PAYMENT_FAILED)
            )
    changed = bool(result.rowcount)
    if changed:
        logger.info("Payment %s marked failed", payment_id)
    return changed


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------

def _unwrap_event(payload: dict) -> tuple[dict, Optional[str]]:
    """Return (payment object, status hint) for the event and legacy formats."""
    event_type = payload.get("type")
    if event_type is None:
        return payload, None
    data = payload.get("data") or {}
    if event_type in _PAID_EVENTS:
        return data, PAYMENT_PAID
    if event_type in _FAILED_EVENTS:
        return data, PAYMENT_FAILED
    return data, ""


async def process_moyasar_webhook(payload: dict[str, Any]) -> WebhookOutcome:
    """Process an authenticated Moyasar webhook delivery.

    Business failures (UnknownPricing, SettlementFailed, ...) propagate; the
    HTTP layer logs them and still acknowledges the delivery.
    """
    data, hint = _unwrap_event(payload)
    if hint == "":
        logger.info("Ignoring Moyasar event type: %s", payload.get("type"))
        return WebhookOutcome.IGNORED

    payment_id = str(data.get("id") or "")
    status = _map_status(data.get("status") or hint)
    if not payment_id:
        logger.warning("Moyasar webhook without payment id")
        return WebhookOutcome.IGNORED

    if status == PAYMENT_FAILED:
        if await mark_payment_failed(payment_id):
            return WebhookOutcome.FAILED_RECORDED
        return WebhookOutcome.IGNORED

    if status != PAYMENT_PAID:
        logger.info("Ignoring Moyasar payment %s with status=%s", payment_id, data.get("status"))
        return WebhookOutcome.IGNORED

    if settings.moyasar_enabled:
        try:
            remote = await moyasar_client.fetch_payment(payment_id)
        except MoyasarError:
            logger.exception("Failed to verify payment %s via API", payment_id)
            return WebhookOutcome.IGNORED
        if not remote.is_paid:
            logger.warning("Payment %s not confirmed via API (status=%s)", payment_id, remote.status)
            return WebhookOutcome.IGNORED
        # Prefer the verified object over the delivered one.
        data = {"id": remote.id, "amount": remote.amount, "metadata": remote.metadata}
    else:
        remote = None

    payment = await get_payment(payment_id)
    metadata = data.get("metadata") or {}
    account_id = payment.account_id if payment else str(metadata.get("user_id") or "")
    amount = payment.amount if payment else _amount_from_gateway(data)
    if not account_id or not amount or amount <= 0:
        logger.warning(
            "Payment %s cannot be attributed: account=%r amount=%r", payment_id, account_id, amount
        )
        return WebhookOutcome.IGNORED

    if remote is not None:
        problem = _verify_remote(remote, amount)
        if problem is not None:
            logger.warning("Payment %s amount/currency mismatch: %s", payment_id, problem)
            return WebhookOutcome.IGNORED

    if payment is None:
        # Unregistered checkout: keep a pending row so the reconciler can
        # retry if the settlement below fails.
        await _insert_pending(payment_id, account_id, amount, None)

    result = await settle_payment(payment_id, account_id, amount)
    if result.status == ALREADY_PROCESSED:
        return WebhookOutcome.ALREADY_PROCESSED
    return WebhookOutcome.SETTLED


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

async def reconcile_pending_payments(
    *,
    older_than_seconds: Optional[int] = None,
    limit: int = 50,
) -> int:
    """Best-effort: verify old pending payments via the API and settle paid ones.

    Returns number of payments settled.
    """
    if not settings.moyasar_enabled:
        return 0

    age = settings.RECONCILE_OLDER_THAN if older_than_seconds is None else older_than_seconds
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=age)

    async with async_session_factory() as session:
        rows = await session.execute(
            select(Payment)
            .where(Payment.status == PAYMENT_PENDING, Payment.created_at <= cutoff)
            .order_by(Payment.created_at.asc())
            .limit(limit)
        )
        pending = rows.scalars().all()

    settled = 0
    for pay in pending:
        try:
            remote = await moyasar_client.fetch_payment(pay.payment_id)
            if remote.is_failed:
                await mark_payment_failed(pay.payment_id)
                continue
            problem = _verify_remote(remote, pay.amount)
            if problem is not None:
                logger.info("Reconcile: payment %s not settled (%s)", pay.payment_id, problem)
                continue
            result = await settle_payment(pay.payment_id, pay.account_id, pay.amount)
            if result.status == STATUS_SETTLED:
                settled += 1
        except Exception:
            logger.exception("Reconcile failed for payment_id=%s", pay.payment_id)
            continue

    return settled
