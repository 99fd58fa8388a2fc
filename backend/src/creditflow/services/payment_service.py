"""Payment order persistence."""
import secrets
from decimal import Decimal
from typing import Any, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from creditflow.errors import NotFoundError, ValidationError
from creditflow.models.base import utcnow
from creditflow.models.payment import PaymentOrder, PaymentOrderStatus

logger = structlog.get_logger(__name__)


def generate_order_no() -> str:
    """Merchant order number: ORD + UTC timestamp + random suffix."""
    return f"ORD{utcnow():%Y%m%d%H%M%S}{secrets.token_hex(3).upper()}"


class PaymentService:
    """Service layer for payment orders."""

    def __init__(self, db: AsyncSession):
        """Initialize payment service with database session."""
        self.db = db

    async def create_order(
        self,
        user_id: str,
        credits: int,
        amount: Decimal,
        order_no: Optional[str] = None,
    ) -> PaymentOrder:
        """
        Create a pending payment order.

        Orders are normally created by the checkout flow before the user is
        sent to the gateway.

        Args:
            user_id: Buyer
            credits: Credits granted once paid
            amount: Price the gateway will charge
            order_no: Merchant order number, generated when omitted

        Returns:
            Created order

        Raises:
            ValidationError: If credits or amount are not positive
        """
        if credits <= 0:
            raise ValidationError("Order credits must be positive")
        if Decimal(amount) <= 0:
            raise ValidationError("Order amount must be positive")

        order = PaymentOrder(
            order_no=order_no or generate_order_no(),
            user_id=user_id,
            credits=credits,
            amount=Decimal(amount),
            status=PaymentOrderStatus.PENDING,
        )
        self.db.add(order)
        await self.db.flush()

        logger.info("payment_order_created", order_no=order.order_no, user_id=user_id, credits=credits)
        return order

    async def get_order(self, order_no: str) -> Optional[PaymentOrder]:
        """Load an order, bypassing any stale copy in the identity map."""
        result = await self.db.execute(
            select(PaymentOrder)
            .where(PaymentOrder.order_no == order_no)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_order_for_user(self, order_no: str, user_id: str) -> PaymentOrder:
        """
        Load an order owned by user_id.

        Raises:
            NotFoundError: If the order does not exist or belongs to someone else
        """
        order = await self.get_order(order_no)
        if order is None or order.user_id != user_id:
            raise NotFoundError(f"Order {order_no} not found")
        return order

    async def mark_success(self, order_no: str, trade_no: Optional[str] = None) -> bool:
        """
        Conditional pending -> success write.

        Returns:
            True when this call moved the order; False when it was already
            successful (or does not exist)
        """
        now = utcnow()
        values: dict[str, Any] = {"status": PaymentOrderStatus.SUCCESS, "paid_at": now, "updated_at": now}
        if trade_no:
            values["trade_no"] = trade_no

        result = await self.db.execute(
            update(PaymentOrder)
            .where(PaymentOrder.order_no == order_no, PaymentOrder.status == PaymentOrderStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_notification(self, order_no: str, trade_no: Optional[str], raw: dict[str, Any]) -> None:
        """Store the gateway's raw notification and transaction id on the order."""
        values: dict[str, Any] = {"raw_callback_data": raw, "updated_at": utcnow()}
        if trade_no:
            values["trade_no"] = trade_no

        await self.db.execute(
            update(PaymentOrder)
            .where(PaymentOrder.order_no == order_no)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
