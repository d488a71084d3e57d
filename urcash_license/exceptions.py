"""
Exception hierarchy for the URCash license client.

All custom exceptions inherit from LicenseError. Each carries a
human-readable message and an opaque error code the UI can map to
guidance text.
"""

from typing import Optional


class LicenseError(Exception):
    """Base exception for all license client errors."""

    default_code = "LICENSE_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code


# Local errors
class LocalValidationError(LicenseError):
    """Raised when input is rejected before any network call."""

    default_code = "VALIDATION_ERROR"


# Remote errors
class RemoteError(LicenseError):
    """Base exception for failures reported by or on the way to the server."""

    default_code = "REMOTE_ERROR"


class LicenseNetworkError(RemoteError):
    """Raised when the license server cannot be reached."""

    default_code = "NETWORK_ERROR"


class LicenseTimeoutError(LicenseNetworkError):
    """Raised when a request times out. The outcome on the server is unknown."""

    default_code = "TIMEOUT"


class BusinessRejectionError(RemoteError):
    """Raised when the server explicitly rejects the request."""

    default_code = "REJECTED"


class LicenseServerError(RemoteError):
    """Raised when the server fails with a 5xx response."""

    default_code = "SERVER_ERROR"


class InconsistentResponseError(LicenseError):
    """Raised when the server reports success without a usable license payload."""

    default_code = "INCONSISTENT_RESPONSE"
