"""SQLAlchemy ORM models for the credit and generation platform."""
# Import all models here to ensure they are registered with Alembic

from creditflow.models.base import Base
from creditflow.models.task import GenerationTask, TaskStatus
from creditflow.models.credit import CreditAccount, CreditLogEntry, CreditOperation
from creditflow.models.payment import PaymentOrder, PaymentOrderStatus
from creditflow.models.lock import Lock

__all__ = [
    "Base",
    "GenerationTask",
    "TaskStatus",
    "CreditAccount",
    "CreditLogEntry",
    "CreditOperation",
    "PaymentOrder",
    "PaymentOrderStatus",
    "Lock",
]
