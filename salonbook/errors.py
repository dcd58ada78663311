"""
Booking outcome conditions.
"""


class BookingError(Exception):
    """Base class for booking failures; the transaction was rolled back."""


class NotFound(BookingError):
    """Tenant, service, staff or client reference does not resolve."""


class OverlapConflict(BookingError):
    """Requested window collides with an existing appointment item."""


class SerializationConflict(BookingError):
    """The store aborted the transaction; retry the whole attempt."""

    retryable = True


class InvalidInput(BookingError):
    """Malformed request values that slipped past request validation."""


class DuplicateRequest(Exception):
    """Idempotency token already consumed.

    Not a BookingError: the original request already succeeded.
    """

    def __init__(self, key_hash: str):
        super().__init__("Idempotency key already used")
        self.key_hash = key_hash
