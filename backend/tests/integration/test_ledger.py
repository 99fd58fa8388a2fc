"""Integration tests for the credit ledger."""
import asyncio

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditflow.errors import ValidationError
from creditflow.models.credit import CreditAccount, CreditLogEntry, CreditOperation
from creditflow.services.ledger_service import LedgerService
from utils.factories import user_id


async def _entries(db: AsyncSession, user: str) -> list[CreditLogEntry]:
    result = await db.execute(select(CreditLogEntry).where(CreditLogEntry.user_id == user).order_by(CreditLogEntry.id))
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_new_account_gets_welcome_grant_once(db_session: AsyncSession) -> None:
    """First use creates the account with one credit, logged as a grant."""
    ledger = LedgerService(db_session)
    user = user_id()

    assert await ledger.get_balance(user) == 0
    assert await ledger.ensure_account(user) == 1
    assert await ledger.ensure_account(user) == 1
    await db_session.commit()

    entries = await _entries(db_session, user)
    assert [e.operation for e in entries] == [CreditOperation.GRANT]
    assert (entries[0].old_value, entries[0].delta, entries[0].new_value) == (0, 1, 1)


@pytest.mark.asyncio
async def test_deduct_logs_old_and_new_values(db_session: AsyncSession) -> None:
    ledger = LedgerService(db_session)
    user = user_id()
    await ledger.recharge(user, "ORD-1", 5)

    assert await ledger.deduct(user, "task-1", 2) is True
    await db_session.commit()

    assert await ledger.get_balance(user) == 3
    deduct = (await _entries(db_session, user))[-1]
    assert deduct.operation == CreditOperation.DEDUCT
    assert deduct.reference == "task-1"
    assert (deduct.old_value, deduct.delta, deduct.new_value) == (5, -2, 3)


@pytest.mark.asyncio
async def test_deduct_with_insufficient_balance_returns_false(db_session: AsyncSession) -> None:
    """A low balance is an answer, not an error, and leaves no trace."""
    ledger = LedgerService(db_session)
    user = user_id()
    await ledger.recharge(user, "ORD-2", 1)

    assert await ledger.deduct(user, "task-2", 2) is False
    assert await ledger.deduct(user_id(), "task-3", 1) is False
    await db_session.commit()

    assert await ledger.get_balance(user) == 1
    assert [e.operation for e in await _entries(db_session, user)] == [CreditOperation.RECHARGE]


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -1, 1.5, True])
async def test_amounts_must_be_positive_integers(db_session: AsyncSession, amount) -> None:
    ledger = LedgerService(db_session)

    with pytest.raises(ValidationError):
        await ledger.deduct("u", "t", amount)
    with pytest.raises(ValidationError):
        await ledger.refund("u", "t", amount)
    with pytest.raises(ValidationError):
        await ledger.recharge("u", "o", amount)


@pytest.mark.asyncio
async def test_second_refund_for_same_task_is_rejected_by_database(db_session: AsyncSession) -> None:
    ledger = LedgerService(db_session)
    user = user_id()
    await ledger.recharge(user, "ORD-3", 1)
    assert await ledger.deduct(user, "task-4", 1)
    await ledger.refund(user, "task-4", 1)
    await db_session.commit()

    with pytest.raises(IntegrityError):
        await ledger.refund(user, "task-4", 1)
    await db_session.rollback()

    assert await ledger.get_balance(user) == 1


@pytest.mark.asyncio
async def test_second_recharge_for_same_order_is_rejected_by_database(db_session: AsyncSession) -> None:
    ledger = LedgerService(db_session)
    user = user_id()
    assert await ledger.recharge(user, "ORD-4", 10) == 10
    await db_session.commit()

    with pytest.raises(IntegrityError):
        await ledger.recharge(user, "ORD-4", 10)
    await db_session.rollback()

    assert await ledger.get_balance(user) == 10
    assert await ledger.has_entry("ORD-4", CreditOperation.RECHARGE)
    assert not await ledger.has_entry("ORD-4", CreditOperation.REFUND)


@pytest.mark.asyncio
async def test_balance_cannot_go_negative(db_session: AsyncSession) -> None:
    ledger = LedgerService(db_session)
    user = user_id()
    await ledger.recharge(user, "ORD-5", 1)
    await db_session.commit()

    with pytest.raises(IntegrityError):
        await db_session.execute(
            update(CreditAccount).where(CreditAccount.user_id == user).values(balance=-1)
        )
    await db_session.rollback()


@pytest.mark.asyncio
async def test_history_is_newest_first(db_session: AsyncSession) -> None:
    ledger = LedgerService(db_session)
    user = user_id()
    await ledger.ensure_account(user)
    await ledger.recharge(user, "ORD-6", 3)
    await ledger.deduct(user, "task-5", 1)
    await db_session.commit()

    history = await ledger.history(user, limit=2)

    assert [e.operation for e in history] == [CreditOperation.DEDUCT, CreditOperation.RECHARGE]


@pytest.mark.asyncio
async def test_concurrent_deductions_never_overdraw(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Two workers racing for the last credit: exactly one wins."""
    user = user_id()
    async with session_factory() as db:
        await LedgerService(db).recharge(user, "ORD-7", 1)
        await db.commit()

    async def deduct(reference: str) -> bool:
        async with session_factory() as db:
            ok = await LedgerService(db).deduct(user, reference, 1)
            await db.commit()
            return ok

    results = await asyncio.gather(deduct("task-a"), deduct("task-b"))

    assert sorted(results) == [False, True]
    async with session_factory() as db:
        assert await LedgerService(db).get_balance(user) == 0
