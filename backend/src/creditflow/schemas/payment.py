"""Pydantic schemas for payment reconciliation."""
from pydantic import BaseModel, Field

from creditflow.models.payment import PaymentOrderStatus
from creditflow.services.reconcile_service import ReconcileOutcome


class ReconcileResult(BaseModel):
    """Outcome of a reconcile call, as polled by clients."""

    order_no: str
    outcome: ReconcileOutcome
    status: PaymentOrderStatus | None = Field(default=None, description="Order status after the call")
