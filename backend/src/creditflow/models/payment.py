"""Payment order model."""
import enum

from sqlalchemy import JSON, Column, DateTime, Integer, Numeric, String
from sqlalchemy import Enum as SQLEnum

from creditflow.models.base import Base


class PaymentOrderStatus(enum.Enum):
    """Payment order status. Only pending -> success, never reversed."""

    PENDING = "pending"
    SUCCESS = "success"


class PaymentOrder(Base):
    """External payment order that tops up a user's credits once paid."""

    __tablename__ = "payment_orders"

    order_no = Column(String(64), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    credits = Column(Integer, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)  # Price charged by the gateway
    status = Column(
        SQLEnum(PaymentOrderStatus, name="payment_order_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=PaymentOrderStatus.PENDING,
        index=True,
    )
    trade_no = Column(String(128), nullable=True)  # Gateway transaction id
    paid_at = Column(DateTime, nullable=True)
    raw_callback_data = Column(JSON, nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<PaymentOrder(order_no={self.order_no}, status={self.status.value}, credits={self.credits})>"
