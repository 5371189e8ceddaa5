"""Moyasar webhook endpoint for payment notifications.

The delivery is authenticated with MOYASAR_WEBHOOK_SECRET, which Moyasar
sends as ``secret_token`` in the payload (some dashboards forward it in the
``X-Moyasar-Signature`` header instead).  Returns 401 if neither matches.
Always returns 200 on authenticated requests to acknowledge receipt; missed
credits are picked up by the reconciler.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from services.payment_service import process_moyasar_webhook
from shared.config import settings
from shared.errors import generate_trace_id, log_exception

logger = logging.getLogger(__name__)

router = APIRouter()


def _secret_matches(request: Request, data: dict) -> bool:
    secret = settings.MOYASAR_WEBHOOK_SECRET
    if not secret:
        return True
    candidates = (data.get("secret_token"), request.headers.get("X-Moyasar-Signature"))
    return any(
        isinstance(value, str) and hmac.compare_digest(value.encode(), secret.encode())
        for value in candidates
    )


@router.post("/moyasar/webhook")
async def moyasar_webhook(request: Request) -> Response:
    """Receive Moyasar payment notifications."""
    trace_id = generate_trace_id()

    try:
        data = await request.json()
    except ValueError:
        logger.warning("trace_id=%s | Moyasar webhook: malformed JSON", trace_id)
        return Response(status_code=400)
    if not isinstance(data, dict):
        logger.warning("trace_id=%s | Moyasar webhook: payload is not an object", trace_id)
        return Response(status_code=400)

    if not _secret_matches(request, data):
        logger.warning("trace_id=%s | Moyasar webhook: invalid secret", trace_id)
        return Response(status_code=401)

    if not settings.MOYASAR_WEBHOOK_SECRET:
        logger.warning("trace_id=%s | Moyasar webhook accepted without secret check", trace_id)

    try:
        logger.info(
            "trace_id=%s | Moyasar webhook received: type=%s id=%s",
            trace_id, data.get("type"), (data.get("data") or data).get("id"),
        )
        outcome = await process_moyasar_webhook(data)
        logger.info("trace_id=%s | Moyasar webhook outcome: %s", trace_id, outcome.value)
        return JSONResponse({"success": True, "outcome": outcome.value})

    except Exception as exc:
        log_exception(exc, trace_id=trace_id, context="moyasar_webhook")
        return Response(status_code=200)
