"""Best-effort ``creditsChanged`` push over Redis pub/sub.

Notifications are a UI refresh hint, never part of the consistency contract:
a failure here is logged and swallowed, and clients always reconcile against
the balance endpoint.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator

from shared.config import settings
from shared.redis_client import credits_channel, get_redis

logger = logging.getLogger(__name__)

EVENT_CREDITS_CHANGED = "creditsChanged"

_pending: set[asyncio.Task] = set()


def _event(account_id: str, balance: int) -> dict:
    return {"event": EVENT_CREDITS_CHANGED, "account_id": account_id, "balance": balance}


async def publish_credits_changed(account_id: str, balance: int) -> bool:
    """Publish the new balance of ``account_id``.  Returns True if sent."""
    if not settings.CREDITS_PUSH_ENABLED:
        return False
    try:
        r = await get_redis()
        await r.publish(credits_channel(account_id), json.dumps(_event(account_id, balance)))
        return True
    except Exception:
        logger.warning("creditsChanged push failed for account=%s", account_id, exc_info=True)
        return False


async def _publish_all(changes: dict[str, int]) -> None:
    for account_id, balance in changes.items():
        await publish_credits_changed(account_id, balance)


def schedule_credits_changed(changes: dict[str, int]) -> None:
    """Publish committed balance changes from a background task.

    The caller never waits on Redis; a slow or unreachable broker only delays
    the push itself.
    """
    if not changes or not settings.CREDITS_PUSH_ENABLED:
        return
    task = asyncio.create_task(_publish_all(dict(changes)))
    _pending.add(task)
    task.add_done_callback(_pending.discard)


async def drain_notifications(timeout: float = 5.0) -> None:
    """Wait for in-flight pushes, cancelling whatever is still stuck after ``timeout``."""
    if not _pending:
        return
    _, stuck = await asyncio.wait(set(_pending), timeout=timeout)
    for task in stuck:
        task.cancel()
    if stuck:
        logger.warning("Dropped %d creditsChanged pushes on drain", len(stuck))
        await asyncio.gather(*stuck, return_exceptions=True)


async def subscribe_credits_changed(account_id: str) -> AsyncIterator[dict]:
    """Yield ``creditsChanged`` events for one account until cancelled."""
    r = await get_redis()
    pubsub = r.pubsub()
    await pubsub.subscribe(credits_channel(account_id))
    try:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                yield json.loads(message["data"])
            except (TypeError, ValueError):
                logger.warning("Dropping malformed credits event: %r", message.get("data"))
    finally:
        await pubsub.unsubscribe(credits_channel(account_id))
        await pubsub.aclose()
