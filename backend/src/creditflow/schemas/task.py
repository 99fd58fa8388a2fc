"""Pydantic schemas for generation tasks."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from creditflow.models.task import TaskStatus


class TaskCreate(BaseModel):
    """Schema for creating a generation task."""

    prompt: str | None = Field(default=None, max_length=4000, description="Free text prompt")
    image: str | None = Field(
        default=None,
        description="Source image as URL, data URL or base64; requires a style when no prompt is given",
    )
    style: str | None = Field(default=None, max_length=64, description="Style name, e.g. ghibli")


class TaskCreated(BaseModel):
    """Response for a newly created task."""

    task_id: str
    status: TaskStatus


class Task(BaseModel):
    """Schema for returning a task's state."""

    task_id: str
    status: TaskStatus
    prompt: str
    style: str | None
    result_ref: str | None
    error_message: str | None
    credits_deducted: bool
    credits_refunded: bool
    attempt_count: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class TaskList(BaseModel):
    """Schema for a user's recent tasks."""

    items: list[Task]


class TaskCancelResult(BaseModel):
    """Outcome of a cancel request. Never an error for already resolved tasks."""

    cancelled: bool
    status: TaskStatus | None = None
    reason: str | None = Field(default=None, description="Set to already_resolved when nothing was cancelled")
