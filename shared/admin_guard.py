"""Centralised admin check.

Usage in handlers:

    from shared.admin_guard import is_admin_id, require_admin_id

    if not is_admin_id(account_id):
        ...

    require_admin_id(account_id)   # raises AdminRequired
"""

from __future__ import annotations

import logging
from typing import Optional

from shared.config import settings
from shared.errors import AdminRequired

logger = logging.getLogger(__name__)


def is_admin_id(account_id: Optional[str]) -> bool:
    """Check if an account id belongs to an admin (config-level check)."""
    return bool(account_id) and account_id in settings.ADMIN_IDS


def require_admin_id(account_id: Optional[str]) -> str:
    if not is_admin_id(account_id):
        logger.warning("Admin action denied for account=%s", account_id)
        raise AdminRequired(f"account {account_id} is not an admin")
    return account_id
