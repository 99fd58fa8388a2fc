"""Pydantic schemas for credit balances and the credit log."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from creditflow.models.credit import CreditOperation


class CreditBalance(BaseModel):
    """Schema for a user's credit balance."""

    user_id: str
    balance: int


class CreditLogEntry(BaseModel):
    """Schema for one credit log entry."""

    id: int
    reference: str
    operation: CreditOperation
    old_value: int
    delta: int
    new_value: int
    note: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CreditHistory(BaseModel):
    """Schema for a user's credit history, newest first."""

    items: list[CreditLogEntry]
