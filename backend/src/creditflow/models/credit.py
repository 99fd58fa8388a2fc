"""Credit account and credit audit log models."""
import enum

from sqlalchemy import CheckConstraint, Column, Index, Integer, String, Text, text
from sqlalchemy import Enum as SQLEnum

from creditflow.models.base import Base


class CreditOperation(enum.Enum):
    """Kind of balance mutation recorded in the audit log."""

    DEDUCT = "deduct"
    REFUND = "refund"
    RECHARGE = "recharge"
    GRANT = "grant"


class CreditAccount(Base):
    """Per-user credit balance. Never negative."""

    __tablename__ = "credit_accounts"

    user_id = Column(String(255), primary_key=True)
    balance = Column(Integer, nullable=False, default=0)

    __table_args__ = (CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),)

    def __repr__(self) -> str:
        """String representation."""
        return f"<CreditAccount(user_id={self.user_id}, balance={self.balance})>"


class CreditLogEntry(Base):
    """
    Append-only audit record of one balance mutation.

    The partial unique indexes on reference make a recharge per order and a
    refund per task enforceable by the database.
    """

    __tablename__ = "credit_log_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, index=True)
    reference = Column(String(255), nullable=False, index=True)  # task_id or order_no
    operation = Column(
        SQLEnum(CreditOperation, name="credit_operation", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    old_value = Column(Integer, nullable=False)
    delta = Column(Integer, nullable=False)
    new_value = Column(Integer, nullable=False)
    note = Column(Text, nullable=True)

    __table_args__ = (
        Index(
            "uq_credit_log_recharge_reference",
            "reference",
            unique=True,
            postgresql_where=text("operation = 'recharge'"),
            sqlite_where=text("operation = 'recharge'"),
        ),
        Index(
            "uq_credit_log_refund_reference",
            "reference",
            unique=True,
            postgresql_where=text("operation = 'refund'"),
            sqlite_where=text("operation = 'refund'"),
        ),
        Index("ix_credit_log_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<CreditLogEntry(id={self.id}, user_id={self.user_id}, operation={self.operation.value}, "
            f"reference={self.reference}, delta={self.delta})>"
        )
