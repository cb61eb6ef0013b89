"""
Custom exceptions for the shift sync core.

Stores, the sync engine and the lifecycle manager raise these
exceptions so callers can handle failures consistently across backends.
"""


class NightguardError(Exception):
    """Base exception for all nightguard core errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SessionNotFoundError(NightguardError):
    """Raised when a shift session document does not exist."""

    def __init__(self, shift_date: str, venue_id: str | None = None):
        details = {"shift_date": shift_date}
        if venue_id:
            details["venue_id"] = venue_id
        super().__init__(f"Session not found: {shift_date}", details)
        self.shift_date = shift_date
        self.venue_id = venue_id


class StorageIOError(NightguardError):
    """Raised when a storage I/O operation fails."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class StorageConnectionError(NightguardError):
    """Raised when the remote store cannot be reached.

    Note: Named StorageConnectionError to avoid shadowing the builtin ConnectionError.
    """

    def __init__(self, endpoint: str, cause: Exception | None = None):
        details = {"endpoint": endpoint}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Connection failed to {endpoint}", details)
        self.endpoint = endpoint
        self.cause = cause


class AuthenticationError(NightguardError):
    """Raised when authentication to remote storage fails."""

    def __init__(self, endpoint: str, reason: str | None = None):
        details = {"endpoint": endpoint}
        if reason:
            details["reason"] = reason
        super().__init__(f"Authentication failed for {endpoint}", details)
        self.endpoint = endpoint
        self.reason = reason


class VenueNotReadyError(NightguardError):
    """Raised when an operation needs venue identifiers that are not available yet."""

    def __init__(self, missing: list[str]):
        super().__init__(
            f"Venue context not ready, missing: {', '.join(missing)}",
            {"missing": missing},
        )
        self.missing = missing


class SyncTornDownError(NightguardError):
    """Raised when a mutation is attempted on a torn-down sync engine."""

    def __init__(self, shift_date: str):
        super().__init__(
            f"Sync engine for shift {shift_date} has been torn down",
            {"shift_date": shift_date},
        )
        self.shift_date = shift_date


class ValidationError(NightguardError):
    """Raised when caller-supplied data is invalid."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Validation failed for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value
