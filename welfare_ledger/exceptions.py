from typing import Optional


class LedgerServiceError(Exception):
    pass


class ReferenceNotFoundError(LedgerServiceError):
    pass


class InvalidStateError(LedgerServiceError):
    pass


class ProductUnavailableError(InvalidStateError):
    pass


class AlreadyReversedError(InvalidStateError):
    pass


class ReversalWindowExpiredError(InvalidStateError):
    pass


class ResidentArchivedError(InvalidStateError):
    pass


class InsufficientBalanceError(LedgerServiceError):
    def __init__(self, resident_id: int, required: int, available: int):
        self.resident_id = resident_id
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient points for resident {resident_id}. "
            f"Required: {required}, Available: {available}"
        )


class ValidationFailedError(LedgerServiceError):
    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class DuplicateDetailError(ValidationFailedError):
    pass


class StorageContentionError(LedgerServiceError):
    """Raised when a resident row could not be locked in time. Safe to retry."""
