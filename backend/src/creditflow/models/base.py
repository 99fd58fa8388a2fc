"""Base model with common timestamp fields for all entities."""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime

from creditflow.database import Base as DeclarativeBase


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base model class with common fields.

    Primary keys are natural keys (task id, user id, order number, lock key)
    and are declared by each model.
    """

    __abstract__ = True

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
