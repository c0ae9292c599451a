"""Exception hierarchy for field lending operations."""


class FieldLendingError(Exception):
    """Base exception for all field lending errors."""


class InvalidScheduleError(FieldLendingError, ValueError):
    """Raised when loan dates or amounts cannot produce a repayment schedule."""


class ValidationError(FieldLendingError, ValueError):
    """Raised when a collection payload is malformed.

    Always raised before anything is written, locally or remotely.
    """

    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.errors = errors or []


class LoanNotFoundError(FieldLendingError, LookupError):
    """Raised when a referenced loan does not exist."""


class RemoteStoreError(FieldLendingError):
    """Base class for failures talking to the remote store."""


class RemoteApplyError(RemoteStoreError):
    """Raised when the remote store rejects or fails a mutation."""

    def __init__(self, message: str, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class ConnectivityError(RemoteStoreError):
    """Raised when the remote store cannot be reached at all."""


class LocalStoreError(FieldLendingError):
    """Raised when the durable local store fails to read or write."""
