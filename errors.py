"""Exceptions raised by the storefront engines.

Each class carries the HTTP status it is reported with; ``main.py`` installs a
single handler that turns them into ``{"detail": ...}`` responses.
"""
from typing import Optional


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    status_code = 500

    def __init__(self, message: str = "Internal server error"):
        self.message = message
        super().__init__(message)


class Unauthorized(StorefrontError):
    """Raised when the bearer credential is missing or invalid."""

    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class Forbidden(StorefrontError):
    """Raised when a valid caller acts on something it does not own."""

    status_code = 403

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message)


class NotFound(StorefrontError):
    """Raised when an entity is absent, or not owned by the caller."""

    status_code = 404

    def __init__(self, entity: str, ref: Optional[str] = None):
        self.entity = entity
        self.ref = ref
        super().__init__(f"{entity} not found")


class InvalidInput(StorefrontError):
    """Raised for malformed fields or unusable request data."""

    status_code = 400


class InvalidState(StorefrontError):
    """Raised when an operation is illegal for the current lifecycle state."""

    status_code = 400


class Conflict(StorefrontError):
    """Raised on identity mismatches and exhausted write retries."""

    status_code = 409


class UpstreamFailure(StorefrontError):
    """Raised when the payment gateway or the store cannot be reached."""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        self.status_code = 503 if retryable else 502
        super().__init__(message)


class Internal(StorefrontError):
    """Raised for misconfiguration and other unexpected server-side faults."""

    status_code = 500
