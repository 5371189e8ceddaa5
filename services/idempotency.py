"""Idempotency guard for externally keyed operations.

A reference (payment id, client operation id) is reserved by inserting its
``idempotency_records`` row inside the caller's transaction.  The primary key
is the concurrency primitive: a racing duplicate either blocks on the
winner's uncommitted key and then fails the insert, or sees the committed row
on the fast path.  Either way it gets the winner's stored result back instead
of repeating the balance effect.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import IdempotencyRecord, RECORD_COMPLETED, RECORD_PENDING
from shared.errors import ConcurrencyConflict

logger = logging.getLogger(__name__)

SCOPE_PAYMENT = "payment"
SCOPE_TRANSFER = "transfer"
SCOPE_GRANT = "grant"
SCOPE_SPEND = "spend"
SCOPE_REFUND = "refund"


def scoped_ref(account_id: str, operation_id: str) -> str:
    """Key for a client-chosen operation id (unique per account only)."""
    return f"{account_id}:{operation_id}"


@dataclass(slots=True)
class Reservation:
    record: IdempotencyRecord
    fresh: bool

    @property
    def prior_result(self) -> dict:
        return dict(self.record.result or {})


async def _get_record(
    session: AsyncSession, scope: str, external_ref: str
) -> Optional[IdempotencyRecord]:
    stmt = (
        select(IdempotencyRecord)
        .where(
            IdempotencyRecord.scope == scope,
            IdempotencyRecord.external_ref == external_ref,
        )
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


def _replay(record: IdempotencyRecord) -> Reservation:
    if record.status != RECORD_COMPLETED:
        # Reservation and effect share one transaction, so a visible pending
        # record belongs to an operation that has not committed yet.
        raise ConcurrencyConflict(f"{record.scope}:{record.external_ref} is in flight")
    logger.info("Idempotent replay: scope=%s ref=%s", record.scope, record.external_ref)
    return Reservation(record=record, fresh=False)


async def check_and_reserve(
    session: AsyncSession,
    scope: str,
    external_ref: str,
    account_id: str,
) -> Reservation:
    """Reserve ``external_ref`` in ``scope`` or return the prior outcome.

    Must be called inside an active transaction; the reservation commits or
    rolls back together with the balance effect it guards.
    """
    if not external_ref:
        raise ValueError("external_ref is required")

    existing = await _get_record(session, scope, external_ref)
    if existing is not None:
        return _replay(existing)

    record = IdempotencyRecord(
        scope=scope,
        external_ref=external_ref,
        account_id=account_id,
        status=RECORD_PENDING,
    )
    try:
        async with session.begin_nested():
            session.add(record)
    except IntegrityError:
        existing = await _get_record(session, scope, external_ref)
        if existing is None:
            # The competing reservation rolled back; start over.
            raise ConcurrencyConflict(f"{scope}:{external_ref} reservation lost")
        return _replay(existing)

    return Reservation(record=record, fresh=True)


async def complete(session: AsyncSession, reservation: Reservation, result: dict) -> None:
    """Store the result snapshot returned to later replays."""
    record = reservation.record
    record.status = RECORD_COMPLETED
    record.result = result
    record.completed_at = datetime.now(timezone.utc)
    await session.flush()
