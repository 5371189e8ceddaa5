"""Async Redis client for realtime credit notifications.

Supports ``rediss://`` URLs and ``REDIS_SSL=true`` ENV for TLS connections.
"""

from __future__ import annotations

import logging
import ssl
from typing import Any, Optional

import redis.asyncio as aioredis

from shared.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

_redis: Optional[aioredis.Redis] = None


async def get_redis() -> aioredis.Redis:
    """Return (and lazily create) the global Redis connection."""
    global _redis
    if _redis is None:
        url = settings.REDIS_URL
        use_ssl = settings.redis_ssl_enabled

        kwargs: dict[str, Any] = {
            "decode_responses": True,
            "socket_connect_timeout": 5,
        }

        if use_ssl:
            # Accept self-signed certs on managed Redis
            ssl_ctx = ssl.create_default_context()
            ssl_ctx.check_hostname = False
            ssl_ctx.verify_mode = ssl.CERT_NONE
            kwargs["ssl"] = ssl_ctx
            logger.info("Redis: connecting with TLS enabled")
        else:
            logger.info("Redis: connecting without TLS")

        try:
            client = aioredis.from_url(url, **kwargs)
            await client.ping()
            _redis = client
            logger.info("Redis: connection established")
        except Exception:
            logger.exception("Redis: failed to connect")
            raise

    return _redis


async def close_redis() -> None:
    """Gracefully close the Redis connection."""
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


# ---------------------------------------------------------------------------
# Credit change channels
# ---------------------------------------------------------------------------

_CREDITS_CHANNEL_PREFIX = "credits:"


def credits_channel(account_id: str) -> str:
    return f"{_CREDITS_CHANNEL_PREFIX}{account_id}"
