"""Idempotent payment reconciliation.

Reconcile(order_no) may run any number of times, concurrently, from the
client poller, the gateway notification and manual retries. An order is
credited exactly once:

- the per-order lock only avoids duplicate gateway calls;
- the recharge log entry is the idempotency witness, checked before the
  gateway call and enforced by a partial unique index;
- the pending -> success write is conditional and runs in the same
  transaction as the recharge.

No transaction is held open across the gateway call.
"""
import enum
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditflow.adapters.payment_gateway import GatewayVerification, PaymentGateway, is_trade_success, verify_signature
from creditflow.config import settings
from creditflow.errors import TransportError
from creditflow.metrics import payment_notifications_total, reconcile_outcomes_total
from creditflow.models.credit import CreditOperation
from creditflow.models.payment import PaymentOrderStatus
from creditflow.services.ledger_service import LedgerService
from creditflow.services.lock_service import LockManager
from creditflow.services.payment_service import PaymentService

logger = structlog.get_logger(__name__)


class ReconcileOutcome(str, enum.Enum):
    """Result of one reconcile call."""

    ALREADY_SETTLED = "already_settled"
    SETTLED_NOW = "settled_now"
    PENDING_UPSTREAM = "pending_upstream"
    ERROR = "error"

    @property
    def is_settled(self) -> bool:
        return self in (ReconcileOutcome.ALREADY_SETTLED, ReconcileOutcome.SETTLED_NOW)


def lock_key(order_no: str) -> str:
    return f"reconcile:{order_no}"


class PaymentReconciler:
    """Verifies orders with the gateway and credits them exactly once."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        lock_manager: LockManager,
        lock_ttl_seconds: Optional[float] = None,
    ):
        """
        Initialize reconciler.

        Args:
            session_factory: Factory for the short per-step transactions
            gateway: Payment gateway adapter
            lock_manager: Lease manager serializing work per order
            lock_ttl_seconds: Lease TTL, defaults to the configured value
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.lock_manager = lock_manager
        self.lock_ttl_seconds = lock_ttl_seconds or settings.reconcile_lock_ttl_seconds

    async def reconcile(
        self,
        order_no: str,
        verification: Optional[GatewayVerification] = None,
    ) -> ReconcileOutcome:
        """
        Settle an order if the gateway confirms it.

        Args:
            order_no: Merchant order number
            verification: Pre-confirmed gateway answer (from a signed
                notification); skips the gateway query

        Returns:
            ReconcileOutcome
        """
        lease = await self.lock_manager.try_acquire(lock_key(order_no), self.lock_ttl_seconds)
        if lease is None:
            outcome = ReconcileOutcome.PENDING_UPSTREAM
            logger.info("reconcile_lock_held", order_no=order_no)
        else:
            try:
                outcome = await self._reconcile_locked(order_no, verification)
            finally:
                await self.lock_manager.release(lease)

        reconcile_outcomes_total.labels(outcome=outcome.value).inc()
        logger.info("reconcile_finished", order_no=order_no, outcome=outcome.value)
        return outcome

    async def _reconcile_locked(
        self,
        order_no: str,
        verification: Optional[GatewayVerification],
    ) -> ReconcileOutcome:
        async with self.session_factory() as db:
            payments = PaymentService(db)
            order = await payments.get_order(order_no)
            if order is None:
                logger.warning("reconcile_order_not_found", order_no=order_no)
                return ReconcileOutcome.ERROR
            if order.status == PaymentOrderStatus.SUCCESS:
                return ReconcileOutcome.ALREADY_SETTLED

            if await LedgerService(db).has_entry(order_no, CreditOperation.RECHARGE):
                # Credited earlier but the status write was lost; repair it
                await payments.mark_success(order_no)
                await db.commit()
                logger.warning("reconcile_repaired_order_status", order_no=order_no)
                return ReconcileOutcome.ALREADY_SETTLED

            user_id, credits = order.user_id, order.credits

        if verification is None:
            try:
                verification = await self.gateway.verify_payment(order_no)
            except TransportError as e:
                logger.warning("reconcile_gateway_unavailable", order_no=order_no, error=e.message)
                return ReconcileOutcome.PENDING_UPSTREAM

        if not verification.confirmed:
            return ReconcileOutcome.PENDING_UPSTREAM

        async with self.session_factory() as db:
            try:
                if not await PaymentService(db).mark_success(order_no, trade_no=verification.trade_no):
                    await db.rollback()
                    return ReconcileOutcome.ALREADY_SETTLED
                await LedgerService(db).recharge(user_id, order_no, credits, note="payment order settled")
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info("reconcile_recharge_already_recorded", order_no=order_no)
                return ReconcileOutcome.ALREADY_SETTLED

        logger.info("payment_order_settled", order_no=order_no, user_id=user_id, credits=credits)
        return ReconcileOutcome.SETTLED_NOW

    async def settle_from_notification(self, params: Mapping[str, Any]) -> bool:
        """
        Handle the gateway's signed asynchronous notification.

        Verifies the signature and the paid amount, stores the raw
        notification on the order, then settles it without querying the
        gateway again.

        Args:
            params: Notification parameters (query string or form body)

        Returns:
            True when the gateway should be answered ``success``; False makes
            it retry the notification later
        """
        raw = {str(k): str(v) for k, v in params.items()}
        order_no = raw.get("out_trade_no", "")
        log = logger.bind(order_no=order_no)

        if not verify_signature(raw, settings.payment_merchant_key):
            log.warning("payment_notification_bad_signature")
            payment_notifications_total.labels(result="fail").inc()
            return False

        async with self.session_factory() as db:
            payments = PaymentService(db)
            order = await payments.get_order(order_no)
            if order is None:
                log.warning("payment_notification_unknown_order")
                payment_notifications_total.labels(result="fail").inc()
                return False

            try:
                paid = Decimal(raw.get("money", ""))
            except InvalidOperation:
                paid = None
            if paid is None or paid != order.amount:
                log.warning("payment_notification_amount_mismatch", paid=raw.get("money"), expected=str(order.amount))
                payment_notifications_total.labels(result="fail").inc()
                return False

            await payments.record_notification(order_no, raw.get("trade_no"), raw)
            await db.commit()

        if not is_trade_success(raw):
            log.info("payment_notification_not_paid", trade_status=raw.get("trade_status"))
            payment_notifications_total.labels(result="success").inc()
            return True

        outcome = await self.reconcile(
            order_no,
            verification=GatewayVerification(confirmed=True, trade_no=raw.get("trade_no"), raw=raw),
        )
        acknowledged = outcome.is_settled
        payment_notifications_total.labels(result="success" if acknowledged else "fail").inc()
        return acknowledged
