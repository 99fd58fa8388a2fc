"""Pydantic schemas for API request/response validation."""

from creditflow.schemas.credit import CreditBalance, CreditHistory, CreditLogEntry
from creditflow.schemas.error import REMEDIATION_HINTS, ErrorCode, ErrorDetail, ErrorResponse
from creditflow.schemas.payment import ReconcileResult
from creditflow.schemas.task import Task, TaskCancelResult, TaskCreate, TaskCreated, TaskList

__all__ = [
    "CreditBalance",
    "CreditHistory",
    "CreditLogEntry",
    "ErrorCode",
    "ErrorDetail",
    "ErrorResponse",
    "REMEDIATION_HINTS",
    "ReconcileResult",
    "Task",
    "TaskCancelResult",
    "TaskCreate",
    "TaskCreated",
    "TaskList",
]
