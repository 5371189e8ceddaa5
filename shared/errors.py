"""Unified error handling utilities.

Every user-facing error is short and safe (no stack traces, no keys).
Full details go to the application log with a ``trace_id`` for correlation.

Ledger business failures are typed exceptions carrying a machine ``code``,
an HTTP status and an Arabic message that the UI can show as-is.
"""

from __future__ import annotations

import logging
import traceback
import uuid
from typing import Optional

try:
    import sentry_sdk  # type: ignore
except Exception:  # pragma: no cover
    sentry_sdk = None

logger = logging.getLogger(__name__)

USER_FACING_ERROR = "حدث خطأ، يرجى المحاولة لاحقاً."

# Terminal success replay of an idempotent operation (not an error).
ALREADY_PROCESSED = "already_processed"


def generate_trace_id() -> str:
    """Return a short unique trace identifier."""
    return uuid.uuid4().hex[:12]


def log_exception(
    exc: BaseException,
    *,
    trace_id: Optional[str] = None,
    context: str = "",
) -> str:
    """Log full traceback with trace_id.  Returns the trace_id used."""
    if trace_id is None:
        trace_id = generate_trace_id()
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error(
        "trace_id=%s | %s | %s\n%s",
        trace_id,
        context,
        str(exc),
        "".join(tb),
    )

    if sentry_sdk is not None:
        try:
            sentry_sdk.capture_exception(exc)
        except Exception:
            logger.warning("trace_id=%s | Sentry capture failed", trace_id)

    return trace_id


def safe_user_message(trace_id: Optional[str] = None) -> str:
    """Return a user-safe error message.

    trace_id is logged but not shown to user to avoid confusion.
    """
    return USER_FACING_ERROR


# ---------------------------------------------------------------------------
# Ledger error taxonomy
# ---------------------------------------------------------------------------

class LedgerError(Exception):
    """Base class for every failure surfaced by the credit ledger."""

    code = "ledger_error"
    http_status = 400
    user_message = USER_FACING_ERROR

    def __init__(self, detail: str = "", *, user_message: Optional[str] = None) -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        if user_message is not None:
            self.user_message = user_message


class InvalidAmount(LedgerError):
    code = "invalid_amount"
    user_message = "يرجى إدخال مبلغ صحيح"


class InsufficientFunds(LedgerError):
    code = "insufficient_funds"
    http_status = 409
    user_message = "رصيدك غير كافٍ لإجراء هذه العملية"


class SelfTransfer(LedgerError):
    code = "self_transfer"
    user_message = "لا يمكن تحويل الرصيد إلى حسابك نفسه"


class AccountNotFound(LedgerError):
    code = "account_not_found"
    http_status = 404
    user_message = "لم يتم العثور على حساب الرصيد"


class UnknownPricing(LedgerError):
    code = "unknown_pricing"
    http_status = 422
    user_message = "لا توجد باقة مطابقة لهذا المبلغ"


class PaymentMismatch(LedgerError):
    code = "payment_mismatch"
    http_status = 409
    user_message = "بيانات الدفع غير مطابقة"


class PaymentNotConfirmed(LedgerError):
    code = "payment_not_confirmed"
    http_status = 409
    user_message = "لم يتم تأكيد الدفع بعد، سيُضاف الرصيد تلقائياً عند تأكيده"


class EntryNotFound(LedgerError):
    code = "entry_not_found"
    http_status = 404
    user_message = "لم يتم العثور على العملية المطلوبة"


class InvalidPageToken(LedgerError):
    code = "invalid_page_token"


class NotAuthenticated(LedgerError):
    code = "not_authenticated"
    http_status = 401
    user_message = "يرجى تسجيل الدخول أولاً"


class AdminRequired(LedgerError):
    code = "admin_required"
    http_status = 403
    user_message = "هذه العملية متاحة للمشرفين فقط"


class ConcurrencyConflict(LedgerError):
    """Transient: retry the whole operation, do not assume a partial effect."""

    code = "concurrency_conflict"
    http_status = 503
    user_message = "النظام مشغول حالياً، يرجى المحاولة مرة أخرى"


class LedgerStoreError(LedgerError):
    """Store-level failure; the operation left no effect."""

    code = "ledger_store_error"
    http_status = 500


class SettlementFailed(LedgerStoreError):
    code = "settlement_failed"
    user_message = "تعذر إضافة الرصيد إلى حسابك، يرجى المحاولة لاحقاً"


class TransferFailed(LedgerStoreError):
    code = "transfer_failed"
    user_message = "فشل التحويل، لم يتغير رصيدك"


class GrantFailed(LedgerStoreError):
    code = "grant_failed"
    user_message = "تعذر إضافة الرصيد، لم يتغير أي حساب"
