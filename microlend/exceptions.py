"""Error taxonomy for the lending core."""


class LendingError(Exception):
    """Base exception for all lending errors."""


class ValidationError(LendingError, ValueError):
    """Raised when input is malformed or missing, before any state change."""


class NotFoundError(LendingError, LookupError):
    """Raised when a referenced loan, payment, schedule or borrower is absent."""


class InvalidStateTransition(LendingError):
    """Raised when a loan is not in a state that allows the operation."""


class ConcurrencyConflict(LendingError):
    """Raised when a loan-scoped mutation lost a race. Callers should retry."""


class PersistenceFailure(LendingError):
    """Raised when the storage layer fails. The unit of work is rolled back."""
