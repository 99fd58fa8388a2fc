"""Generation task model."""
import enum

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Index, Integer, String, Text
from sqlalchemy import Enum as SQLEnum

from creditflow.models.base import Base


class TaskStatus(enum.Enum):
    """Generation task lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.PROCESSING})


class GenerationTask(Base):
    """
    One externally executed generation job.

    Created pending, mutated only through conditional status updates and
    never deleted. credits_refunded implies credits_deducted.
    """

    __tablename__ = "generation_tasks"

    task_id = Column(String(64), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    status = Column(
        SQLEnum(TaskStatus, name="task_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=TaskStatus.PENDING,
        index=True,
    )
    prompt = Column(Text, nullable=False, default="")
    input_image_ref = Column(Text, nullable=True)
    style = Column(String(64), nullable=True)
    result_ref = Column(Text, nullable=True)  # Set only on completion
    credits_cost = Column(Integer, nullable=False, default=1)
    credits_deducted = Column(Boolean, nullable=False, default=False)
    credits_refunded = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("NOT credits_refunded OR credits_deducted", name="ck_generation_tasks_refund_requires_deduct"),
        Index("ix_generation_tasks_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation."""
        return f"<GenerationTask(task_id={self.task_id}, user_id={self.user_id}, status={self.status.value})>"
