"""Background reconciliation for pending Moyasar payments.

Purpose: if a webhook is missed/delayed, periodically verify old pending payments
via the Moyasar API and settle them through the normal settlement path.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from services.payment_service import reconcile_pending_payments
from shared.config import settings

logger = logging.getLogger(__name__)

_task: Optional[asyncio.Task] = None
_stop = asyncio.Event()


async def start_reconciler(interval_seconds: Optional[int] = None) -> bool:
    """Start the loop.  Returns False when Moyasar is not configured."""
    global _task
    if not settings.moyasar_enabled:
        logger.info("Payment reconciler disabled (MOYASAR_SECRET_KEY not set)")
        return False
    if _task is not None and not _task.done():
        return True

    interval = interval_seconds or settings.RECONCILE_INTERVAL
    _stop.clear()
    _task = asyncio.create_task(_loop(interval))
    logger.info("Payment reconciler started (interval=%ss)", interval)
    return True


async def stop_reconciler() -> None:
    global _task
    _stop.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
        _task = None
        logger.info("Payment reconciler stopped")


async def run_once() -> int:
    settled = await reconcile_pending_payments()
    if settled:
        logger.info("Reconciled %d pending payments", settled)
    return settled


async def _loop(interval_seconds: int) -> None:
    while not _stop.is_set():
        try:
            await run_once()
        except asyncio.CancelledError:
            break
        except Exception:
            logger.exception("Payment reconcile loop error")
        try:
            await asyncio.wait_for(_stop.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
