"""Custom exception hierarchy for the Ribbit Reserve package."""

from __future__ import annotations


class RibbitError(Exception):
    """Base class for all Ribbit Reserve specific errors."""


class NotFoundError(RibbitError, LookupError):
    """Raised when a task, child, ledger or reward entry lookup fails."""


class InvalidStateTransitionError(RibbitError):
    """Raised when a task or reward entry is not in the state an operation requires."""


class InsufficientBalanceError(RibbitError):
    """Raised when a dispense would leave a money or points balance negative."""


class PermissionDeniedError(RibbitError, PermissionError):
    """Raised when the acting parent or child may not perform an operation."""


class ValidationError(RibbitError, ValueError):
    """Raised for malformed rewards, non-positive amounts or unknown recurrences."""


class ConcurrencyConflictError(RibbitError):
    """Raised when a versioned write loses against a concurrent writer.

    The settlement and lifecycle layers retry this internally; it only reaches
    callers once the retry budget is spent, in which case the operation may be
    retried as a whole.
    """

    def __init__(self, message: str, *, attempts: int = 1) -> None:
        super().__init__(message)
        self.attempts = attempts
