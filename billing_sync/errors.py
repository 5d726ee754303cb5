"""Exception types shared across components.

Transient errors are retried with backoff by the event worker; everything
else is treated as permanent by whoever catches it.
"""


class BillingError(Exception):
    """Base exception for the billing service."""

    pass


class TransientError(BillingError):
    """Failure expected to clear on retry."""

    pass


class StorageUnavailableError(TransientError):
    """Raised when the repository cannot be read or written."""

    pass


class LockTimeoutError(TransientError):
    """Raised when a serialization key could not be acquired in time."""

    pass


class ProviderUnavailableError(TransientError):
    """Raised when the payment provider API times out or fails server-side."""

    pass


class ProviderRequestError(BillingError):
    """Raised when the payment provider rejects a request (4xx)."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code
