"""Named lock lease model."""
from sqlalchemy import Column, DateTime, String

from creditflow.models.base import Base


class Lock(Base):
    """
    Short-lived named lease.

    The holder is whoever inserted a non-expired row. Released by deletion
    (by its owner only) or by expiry.
    """

    __tablename__ = "locks"

    key = Column(String(255), primary_key=True)  # e.g. reconcile:{order_no}
    owner = Column(String(64), nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<Lock(key={self.key}, owner={self.owner}, expires_at={self.expires_at})>"
