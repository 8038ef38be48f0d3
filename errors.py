from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    validation_error = "validation_error"
    not_found = "not_found"
    state_conflict = "state_conflict"
    insufficient_funds = "insufficient_funds"
    store_timeout = "store_timeout"
    rollback_failure = "rollback_failure"
    store_error = "store_error"


class TransferError(Exception):
    """Base class for every failure raised by the transfer protocol.

    ``retryable`` separates conflicts a caller may retry (another caller
    advanced the transaction first, a store call timed out) from terminal
    failures such as bad input or missing funds.
    """

    kind: ErrorKind
    retryable: bool = False

    def __init__(self, message: str, transaction_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.transaction_id = transaction_id

    @property
    def error_code(self) -> str:
        return self.kind.value.upper()


class ValidationError(TransferError):
    """Malformed transfer input. Raised before any record is created."""

    kind = ErrorKind.validation_error


class NotFound(TransferError):
    kind = ErrorKind.not_found


class StateConflict(TransferError):
    """The record was not in the expected predecessor state."""

    kind = ErrorKind.state_conflict
    retryable = True


class InsufficientFunds(TransferError):
    kind = ErrorKind.insufficient_funds


class StoreTimeout(TransferError):
    kind = ErrorKind.store_timeout
    retryable = True


class RollbackFailure(TransferError):
    """Cancel failed after an earlier failure. Logged, never raised to callers."""

    kind = ErrorKind.rollback_failure

    def __init__(self, message: str, transaction_id: Optional[str] = None,
                 original: Optional[BaseException] = None):
        super().__init__(message, transaction_id)
        self.original = original


class TransferFailed(TransferError):
    """A transfer that did not complete and has been compensated.

    Takes its kind and retryability from the underlying cause.
    """

    def __init__(self, message: str, cause: BaseException,
                 transaction_id: Optional[str] = None,
                 rollback_error: Optional[RollbackFailure] = None):
        super().__init__(message, transaction_id)
        self.cause = cause
        self.rollback_error = rollback_error

    @property
    def kind(self) -> ErrorKind:
        if isinstance(self.cause, TransferError):
            return self.cause.kind
        return ErrorKind.store_error

    @property
    def retryable(self) -> bool:
        return isinstance(self.cause, TransferError) and self.cause.retryable

    @property
    def error_code(self) -> str:
        return f"TRANSFER_FAILED:{self.kind.value.upper()}"
