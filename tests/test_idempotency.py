from __future__ import annotations

import pytest

from services import idempotency
from shared.database import async_session_factory


@pytest.mark.asyncio
async def test_reserve_then_replay_returns_stored_result(db):
    async with async_session_factory() as session:
        async with session.begin():
            reservation = await idempotency.check_and_reserve(
                session, idempotency.SCOPE_PAYMENT, "pay_1", "u1"
            )
            assert reservation.fresh
            await idempotency.complete(session, reservation, {"credits_granted": 40, "balance": 40})

    async with async_session_factory() as session:
        async with session.begin():
            replay = await idempotency.check_and_reserve(
                session, idempotency.SCOPE_PAYMENT, "pay_1", "u1"
            )
    assert not replay.fresh
    assert replay.prior_result == {"credits_granted": 40, "balance": 40}


class _Abort(Exception):
    pass


@pytest.mark.asyncio
async def test_rolled_back_reservation_is_forgotten(db):
    async with async_session_factory() as session:
        with pytest.raises(_Abort):
            async with session.begin():
                reservation = await idempotency.check_and_reserve(
                    session, idempotency.SCOPE_PAYMENT, "pay_2", "u1"
                )
                assert reservation.fresh
                raise _Abort()

    async with async_session_factory() as session:
        async with session.begin():
            again = await idempotency.check_and_reserve(
                session, idempotency.SCOPE_PAYMENT, "pay_2", "u1"
            )
            assert again.fresh


@pytest.mark.asyncio
async def test_scopes_are_independent(db):
    async with async_session_factory() as session:
        async with session.begin():
            first = await idempotency.check_and_reserve(session, idempotency.SCOPE_SPEND, "x", "u1")
            await idempotency.complete(session, first, {})
            second = await idempotency.check_and_reserve(session, idempotency.SCOPE_REFUND, "x", "u1")
    assert first.fresh and second.fresh


def test_scoped_ref():
    assert idempotency.scoped_ref("u1", "op") == "u1:op"


@pytest.mark.asyncio
async def test_empty_reference_rejected(db):
    async with async_session_factory() as session:
        with pytest.raises(ValueError):
            await idempotency.check_and_reserve(session, idempotency.SCOPE_PAYMENT, "", "u1")
