"""Integration tests for idempotent payment reconciliation."""
import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditflow.adapters.payment_gateway import sign_params
from creditflow.config import settings
from creditflow.models.credit import CreditLogEntry, CreditOperation
from creditflow.models.payment import PaymentOrder, PaymentOrderStatus
from creditflow.services.ledger_service import LedgerService
from creditflow.services.lock_service import DatabaseLockManager
from creditflow.services.payment_service import PaymentService
from creditflow.services.reconcile_service import PaymentReconciler, ReconcileOutcome, lock_key
from conftest import AlwaysGrantLockManager, FakeGateway, UnavailableGateway
from utils.factories import PaymentOrderFactory, user_id

MERCHANT_KEY = "test-merchant-key"


@pytest_asyncio.fixture
async def order(db_session: AsyncSession) -> PaymentOrder:
    """Pending order ORD1 for 10 credits."""
    data = PaymentOrderFactory.create({"order_no": "ORD1", "credits": 10, "amount": Decimal("9.90")})
    created = await PaymentService(db_session).create_order(**data)
    await db_session.commit()
    return created


async def _recharge_count(db: AsyncSession, order_no: str) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(CreditLogEntry)
        .where(CreditLogEntry.reference == order_no, CreditLogEntry.operation == CreditOperation.RECHARGE)
    )
    return result.scalar_one()


def _notification(order_no: str, money: str = "9.90", trade_status: str = "TRADE_SUCCESS") -> dict[str, str]:
    params = {
        "pid": "1001",
        "trade_no": "2025120112000001",
        "out_trade_no": order_no,
        "type": "alipay",
        "name": "10 credits",
        "money": money,
        "trade_status": trade_status,
    }
    params["sign"] = sign_params(params, MERCHANT_KEY)
    params["sign_type"] = "MD5"
    return params


@pytest.mark.asyncio
async def test_confirmed_order_is_credited(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession], lock_manager, order
) -> None:
    gateway = FakeGateway()
    reconciler = PaymentReconciler(session_factory, gateway, lock_manager)

    outcome = await reconciler.reconcile("ORD1")

    assert outcome == ReconcileOutcome.SETTLED_NOW
    current = await PaymentService(db_session).get_order("ORD1")
    assert current.status == PaymentOrderStatus.SUCCESS
    assert current.trade_no == "TORD1"
    assert current.paid_at is not None
    assert await LedgerService(db_session).get_balance(order.user_id) == 10
    assert await _recharge_count(db_session, "ORD1") == 1
    assert gateway.calls == ["ORD1"]


@pytest.mark.asyncio
async def test_replay_is_a_no_op(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession], lock_manager, order
) -> None:
    """Reconciling a settled order neither calls the gateway nor writes anything."""
    gateway = FakeGateway()
    reconciler = PaymentReconciler(session_factory, gateway, lock_manager)
    assert await reconciler.reconcile("ORD1") == ReconcileOutcome.SETTLED_NOW
    settled = await PaymentService(db_session).get_order("ORD1")
    updated_at = settled.updated_at
    gateway.calls.clear()

    for _ in range(3):
        assert await reconciler.reconcile("ORD1") == ReconcileOutcome.ALREADY_SETTLED

    assert gateway.calls == []
    assert (await PaymentService(db_session).get_order("ORD1")).updated_at == updated_at
    assert await LedgerService(db_session).get_balance(order.user_id) == 10
    assert await _recharge_count(db_session, "ORD1") == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("use_database_lock", [True, False])
async def test_concurrent_reconciles_credit_exactly_once(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    order,
    use_database_lock: bool,
) -> None:
    """Without the lock the conditional status write alone still prevents a double credit."""
    lock_manager = DatabaseLockManager(session_factory) if use_database_lock else AlwaysGrantLockManager()
    reconciler = PaymentReconciler(session_factory, FakeGateway(delay=0.05), lock_manager)

    outcomes = await asyncio.gather(*(reconciler.reconcile("ORD1") for _ in range(5)))

    assert outcomes.count(ReconcileOutcome.SETTLED_NOW) == 1
    assert set(outcomes) <= {
        ReconcileOutcome.SETTLED_NOW,
        ReconcileOutcome.ALREADY_SETTLED,
        ReconcileOutcome.PENDING_UPSTREAM,
    }
    assert await LedgerService(db_session).get_balance(order.user_id) == 10
    assert await _recharge_count(db_session, "ORD1") == 1


@pytest.mark.asyncio
async def test_lost_status_write_is_repaired(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession], lock_manager, order
) -> None:
    """A recharge entry with a pending order means the status write was lost: repair, do not credit again."""
    await LedgerService(db_session).recharge(order.user_id, "ORD1", 10)
    await db_session.commit()
    gateway = FakeGateway()

    outcome = await PaymentReconciler(session_factory, gateway, lock_manager).reconcile("ORD1")

    assert outcome == ReconcileOutcome.ALREADY_SETTLED
    assert (await PaymentService(db_session).get_order("ORD1")).status == PaymentOrderStatus.SUCCESS
    assert await LedgerService(db_session).get_balance(order.user_id) == 10
    assert gateway.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("gateway", [FakeGateway(confirmed=False), UnavailableGateway()], ids=["unpaid", "unreachable"])
async def test_unconfirmed_order_stays_pending(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession], lock_manager, order, gateway
) -> None:
    outcome = await PaymentReconciler(session_factory, gateway, lock_manager).reconcile("ORD1")

    assert outcome == ReconcileOutcome.PENDING_UPSTREAM
    assert (await PaymentService(db_session).get_order("ORD1")).status == PaymentOrderStatus.PENDING
    assert await LedgerService(db_session).get_balance(order.user_id) == 0


@pytest.mark.asyncio
async def test_held_lock_reports_pending_without_gateway_call(
    session_factory: async_sessionmaker[AsyncSession], lock_manager, order
) -> None:
    lease = await lock_manager.try_acquire(lock_key("ORD1"), 30)
    gateway = FakeGateway()

    outcome = await PaymentReconciler(session_factory, gateway, lock_manager).reconcile("ORD1")

    assert outcome == ReconcileOutcome.PENDING_UPSTREAM
    assert gateway.calls == []
    await lock_manager.release(lease)


@pytest.mark.asyncio
async def test_unknown_order_is_an_error(session_factory: async_sessionmaker[AsyncSession]) -> None:
    gateway = FakeGateway()
    lock_manager = AlwaysGrantLockManager()

    outcome = await PaymentReconciler(session_factory, gateway, lock_manager).reconcile("ORD-missing")

    assert outcome == ReconcileOutcome.ERROR
    assert gateway.calls == []
    assert lock_manager.acquired == lock_manager.released == 1


@pytest.mark.asyncio
async def test_signed_notification_settles_without_gateway_query(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession], lock_manager, order, monkeypatch
) -> None:
    monkeypatch.setattr(settings, "payment_merchant_key", MERCHANT_KEY)
    gateway = FakeGateway()
    reconciler = PaymentReconciler(session_factory, gateway, lock_manager)

    assert await reconciler.settle_from_notification(_notification("ORD1")) is True
    # Gateways resend notifications until answered; a resend is still acknowledged
    assert await reconciler.settle_from_notification(_notification("ORD1")) is True

    current = await PaymentService(db_session).get_order("ORD1")
    assert current.status == PaymentOrderStatus.SUCCESS
    assert current.trade_no == "2025120112000001"
    assert current.raw_callback_data["out_trade_no"] == "ORD1"
    assert await LedgerService(db_session).get_balance(order.user_id) == 10
    assert await _recharge_count(db_session, "ORD1") == 1
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_unpaid_notification_is_acknowledged_without_credit(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession], lock_manager, order, monkeypatch
) -> None:
    monkeypatch.setattr(settings, "payment_merchant_key", MERCHANT_KEY)
    reconciler = PaymentReconciler(session_factory, FakeGateway(), lock_manager)

    assert await reconciler.settle_from_notification(_notification("ORD1", trade_status="WAIT_BUYER_PAY")) is True

    assert (await PaymentService(db_session).get_order("ORD1")).status == PaymentOrderStatus.PENDING
    assert await LedgerService(db_session).get_balance(order.user_id) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "tamper",
    [
        lambda p: p.update(sign="0" * 32),
        lambda p: p.update(money="0.01", sign=sign_params({**p, "money": "0.01"}, MERCHANT_KEY)),
        lambda p: p.update(out_trade_no="ORD-missing", sign=sign_params({**p, "out_trade_no": "ORD-missing"}, MERCHANT_KEY)),
    ],
    ids=["bad-signature", "amount-mismatch", "unknown-order"],
)
async def test_rejected_notifications_do_not_credit(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession], lock_manager, order, monkeypatch, tamper
) -> None:
    monkeypatch.setattr(settings, "payment_merchant_key", MERCHANT_KEY)
    params = _notification("ORD1")
    tamper(params)

    assert await PaymentReconciler(session_factory, FakeGateway(), lock_manager).settle_from_notification(params) is False

    assert (await PaymentService(db_session).get_order("ORD1")).status == PaymentOrderStatus.PENDING
    assert await LedgerService(db_session).get_balance(order.user_id) == 0
