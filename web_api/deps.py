"""Request authentication.

The upstream auth gateway authenticates users and forwards their stable id
in ``X-User-Id``.  When GATEWAY_SECRET is configured the gateway must also
send it in ``X-Gateway-Secret``, so the header cannot be forged by callers
that bypass the gateway.
"""

from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Depends, Header

from shared.admin_guard import require_admin_id
from shared.config import settings
from shared.errors import NotAuthenticated

MAX_ACCOUNT_ID_LENGTH = 64


def authenticate(user_id: Optional[str], gateway_secret: Optional[str]) -> str:
    """Return the caller's account id or raise NotAuthenticated."""
    if settings.GATEWAY_SECRET and not hmac.compare_digest(
        (gateway_secret or "").encode(), settings.GATEWAY_SECRET.encode()
    ):
        raise NotAuthenticated("gateway secret missing or wrong")
    account_id = (user_id or "").strip()
    if not account_id or len(account_id) > MAX_ACCOUNT_ID_LENGTH:
        raise NotAuthenticated("X-User-Id missing or invalid")
    return account_id


async def current_account_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_gateway_secret: Optional[str] = Header(None, alias="X-Gateway-Secret"),
) -> str:
    return authenticate(x_user_id, x_gateway_secret)


async def admin_account_id(account_id: str = Depends(current_account_id)) -> str:
    return require_admin_id(account_id)
