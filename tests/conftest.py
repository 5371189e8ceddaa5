from __future__ import annotations

import os
import tempfile

# Settings and the engine are created at import time: configure them first.
_DB_DIR = tempfile.mkdtemp(prefix="ledger-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/ledger.db"
os.environ["CREDITS_PUSH_ENABLED"] = "false"
os.environ["ADMIN_IDS"] = "admin-1"
os.environ["MOYASAR_WEBHOOK_SECRET"] = "whsec_test"
os.environ["LEDGER_RETRY_BACKOFF"] = "0.01"
for _var in ("MOYASAR_SECRET_KEY", "GATEWAY_SECRET", "PRICING_FALLBACK", "MIN_CREDIT_UNIT"):
    os.environ.pop(_var, None)

import pytest_asyncio

from services.ledger_service import apply_entry_atomic
from services.pricing_service import seed_default_rules
from shared.database import ENTRY_ADMIN_GIFT, create_tables, drop_tables, engine


@pytest_asyncio.fixture
async def db():
    """Fresh schema with the default pricing rules."""
    await create_tables()
    await seed_default_rules()
    yield
    await drop_tables()
    await engine.dispose()


@pytest_asyncio.fixture
async def fund(db):
    """Give an account an arbitrary starting balance."""

    async def _fund(account_id: str, amount: int) -> int:
        return await apply_entry_atomic(
            kind=ENTRY_ADMIN_GIFT,
            amount=amount,
            to_account=account_id,
            actor_id="test-setup",
        )

    return _fund
