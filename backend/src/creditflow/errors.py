"""Domain error taxonomy for tasks, the ledger and payment reconciliation."""
from typing import Any, Optional


class CreditflowError(Exception):
    """Base class for all domain errors.

    Each subclass carries a machine-readable ``code`` used by the API
    exception handlers.
    """

    code = "creditflow_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(CreditflowError):
    """Bad input; never retried."""

    code = "validation_error"


class InsufficientCreditsError(CreditflowError):
    """The user has no credits left; terminal and user-actionable."""

    code = "insufficient_credits"


class NotFoundError(CreditflowError):
    """Task or order does not exist (or is not visible to the caller)."""

    code = "not_found"


class InvalidStateError(CreditflowError):
    """Operation is not legal for the current task/order state.

    Callers treat this as a benign no-op wherever possible.
    """

    code = "invalid_state_transition"

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message, {"current_status": current_status} if current_status else None)
        self.current_status = current_status


class TransportError(CreditflowError):
    """An external call failed at the transport level (timeout, 5xx, 429)."""

    code = "external_service_error"


class GenerationRejectedError(CreditflowError):
    """The generation service answered, but the answer is a refusal or unusable.

    Terminal for the task: refunded immediately, never retried.
    """

    code = "generation_rejected"


class LockContention(CreditflowError):
    """A lock lease is held by someone else. Means "try again later"."""

    code = "lock_contention"
