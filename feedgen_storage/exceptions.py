"""
Custom exceptions for feed storage.

All backends raise these exceptions so callers can handle failures
the same way regardless of which storage engine is configured.
"""


class FeedStorageError(Exception):
    """Base exception for all feed storage errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(FeedStorageError):
    """Raised when backend settings are missing or invalid."""

    def __init__(self, field: str, reason: str = "required field is missing"):
        super().__init__(
            f"Invalid configuration for {field}: {reason}",
            {"field": field, "reason": reason},
        )
        self.field = field
        self.reason = reason


class UnsupportedBackendError(FeedStorageError):
    """Raised when the configured backend type is not known."""

    def __init__(self, backend_type: str):
        super().__init__(
            f"Unsupported database type: {backend_type}",
            {"backend_type": backend_type},
        )
        self.backend_type = backend_type


class StorageConnectionError(FeedStorageError):
    """Raised when the storage backend cannot be reached.

    Note: Named StorageConnectionError to avoid shadowing the builtin ConnectionError.
    """

    def __init__(self, endpoint: str, cause: Exception | None = None):
        details = {"endpoint": endpoint}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Connection failed to {endpoint}", details)
        self.endpoint = endpoint
        self.cause = cause


class StorageIOError(FeedStorageError):
    """Raised when a storage operation fails for a reason other than a lost connection."""

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


class AuthenticationError(StorageConnectionError):
    """Raised when the backend rejects the configured credentials."""

    def __init__(self, endpoint: str, reason: str | None = None):
        details = {"endpoint": endpoint}
        if reason:
            details["reason"] = reason
        FeedStorageError.__init__(self, f"Authentication failed for {endpoint}", details)
        self.endpoint = endpoint
        self.cause = None
        self.reason = reason


class NotConnectedError(FeedStorageError):
    """Raised when an operation runs before connect() or after disconnect()."""

    def __init__(self, operation: str, reason: str = "backend is not connected"):
        super().__init__(
            f"Cannot {operation}: {reason}",
            {"operation": operation, "reason": reason},
        )
        self.operation = operation
        self.reason = reason


class MigrationError(FeedStorageError):
    """Raised when a schema migration step fails."""

    def __init__(self, step: str, cause: Exception | None = None):
        details = {"step": step}
        if cause:
            details["cause"] = str(cause)
        message = f"Migration {step} failed"
        if cause:
            message += f": {cause}"
        super().__init__(message, details)
        self.step = step
        self.cause = cause


class DuplicateKeyError(FeedStorageError):
    """Raised when creating a post whose uri is already stored."""

    def __init__(self, uri: str):
        super().__init__(f"Post already exists: {uri}", {"uri": uri})
        self.uri = uri


class ValidationError(FeedStorageError):
    """Raised when an input value is malformed."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Validation failed for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value
