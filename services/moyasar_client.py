"""Moyasar REST client (payment verification only).

Moyasar authenticates with HTTP basic auth: the secret key is the username
and the password is empty.  Amounts are in halalas (1 SAR = 100 halalas).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from shared.config import settings

logger = logging.getLogger(__name__)

_TIMEOUT = httpx.Timeout(15.0, connect=5.0)

MOYASAR_STATUS_PAID = "paid"
MOYASAR_STATUS_FAILED = "failed"
MOYASAR_FAILED_STATUSES = frozenset({MOYASAR_STATUS_FAILED, "canceled", "cancelled"})


class MoyasarError(Exception):
    """Gateway returned an unusable answer."""


class MoyasarConnectionError(MoyasarError):
    """Gateway is unreachable or timed out."""


@dataclass(slots=True)
class MoyasarPayment:
    id: str
    status: str
    amount: int  # halalas
    currency: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.status == MOYASAR_STATUS_PAID

    @property
    def is_failed(self) -> bool:
        return self.status in MOYASAR_FAILED_STATUSES


def parse_payment(data: Dict[str, Any]) -> MoyasarPayment:
    try:
        return MoyasarPayment(
            id=str(data["id"]),
            status=str(data.get("status", "")).lower(),
            amount=int(data.get("amount") or 0),
            currency=str(data.get("currency") or "SAR").upper(),
            metadata=dict(data.get("metadata") or {}),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise MoyasarError(f"Malformed Moyasar payment object: {data!r}") from exc


async def fetch_payment(payment_id: str, *, secret_key: Optional[str] = None) -> MoyasarPayment:
    """GET /payments/{id}.

    Raises:
        MoyasarConnectionError: gateway unreachable
        MoyasarError: non-2xx answer or malformed body
    """
    key = secret_key or settings.MOYASAR_SECRET_KEY
    if not key:
        raise MoyasarError("MOYASAR_SECRET_KEY is not configured")

    url = f"{settings.MOYASAR_API_URL}/payments/{payment_id}"
    try:
        async with httpx.AsyncClient(timeout=_TIMEOUT, auth=(key, "")) as client:
            response = await client.get(url)
            response.raise_for_status()
            payment = parse_payment(response.json())
    except httpx.TimeoutException as exc:
        logger.error("Moyasar timeout fetching payment %s: %s", payment_id, exc)
        raise MoyasarConnectionError("Moyasar is not responding") from exc
    except httpx.HTTPStatusError as exc:
        logger.error(
            "Moyasar HTTP error for payment %s: %s - %s",
            payment_id, exc.response.status_code, exc.response.text,
        )
        raise MoyasarError(f"Moyasar returned {exc.response.status_code}") from exc
    except httpx.HTTPError as exc:
        logger.error("Failed to reach Moyasar for payment %s: %s", payment_id, exc)
        raise MoyasarConnectionError(f"Failed to connect to Moyasar: {exc}") from exc
    except ValueError as exc:
        raise MoyasarError(f"Moyasar returned non-JSON body for {payment_id}") from exc

    logger.info("Moyasar payment %s: status=%s amount=%d", payment.id, payment.status, payment.amount)
    return payment
