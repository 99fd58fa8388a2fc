"""Structured error response schemas."""
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


class ErrorDetail(BaseModel):
    """Detailed error information."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    field: str | None = Field(default=None, description="Field that caused the error (for validation errors)")
    value: Any | None = Field(default=None, description="Invalid value (for validation errors)")


class ErrorResponse(BaseModel):
    """Standard error response structure used by every exception handler."""

    error: str = Field(..., description="Error type (e.g., 'ValidationError', 'NotFound')")
    message: str = Field(..., description="Primary error message")
    details: list[ErrorDetail] | None = Field(
        default=None, description="Detailed error information (for validation errors)"
    )
    remediation: str | None = Field(default=None, description="Suggestion for fixing the error")
    request_id: str | None = Field(default=None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Error timestamp")

    model_config = {
        "json_schema_extra": {
            "example": {
                "error": "InsufficientCredits",
                "message": "Not enough credits to start a generation task",
                "details": [{"code": "insufficient_credits", "message": "balance=0 required=1"}],
                "remediation": "Top up credits and try again",
                "request_id": "5f0c8d0e-8d1b-4b7e-9a53-9f3f4a6d2c11",
                "timestamp": "2025-01-15T10:30:00Z",
            }
        }
    }


class ErrorCode:
    """Standard error codes used across the API."""

    # Validation errors (400/422)
    VALIDATION_ERROR = "validation_error"
    MISSING_REQUIRED_FIELD = "missing_required_field"

    # Business logic errors
    INSUFFICIENT_CREDITS = "insufficient_credits"
    INVALID_STATE_TRANSITION = "invalid_state_transition"

    # Not found errors (404)
    NOT_FOUND = "not_found"

    # Authentication errors (401)
    UNAUTHENTICATED = "unauthenticated"

    # External service errors (502, 503)
    DATABASE_ERROR = "database_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"

    # Internal errors (500)
    INTERNAL_ERROR = "internal_error"


REMEDIATION_HINTS = {
    ErrorCode.VALIDATION_ERROR: "Provide a prompt, or an image together with a supported style",
    ErrorCode.INSUFFICIENT_CREDITS: "Top up credits and try again",
    ErrorCode.INVALID_STATE_TRANSITION: "The task or order is already resolved; fetch its current state",
    ErrorCode.NOT_FOUND: "Verify the identifier is correct and belongs to the current user",
    ErrorCode.UNAUTHENTICATED: "Sign in again to obtain a fresh token",
    ErrorCode.EXTERNAL_SERVICE_ERROR: "An upstream service is temporarily unavailable. Please try again later.",
    ErrorCode.DATABASE_ERROR: "Database temporarily unavailable. Please try again in a few moments.",
}
