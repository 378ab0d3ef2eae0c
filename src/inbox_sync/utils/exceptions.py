"""Custom exception classes for the inbox sync client.

Errors raised at the REST, storage and realtime boundaries are converted
into user-facing messages by the component that owns the operation. The
hierarchy below lets those components catch exactly what they handle.
"""

from typing import Any, Dict, Optional


class InboxSyncError(Exception):
    """Base exception for all inbox sync errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(InboxSyncError):
    """Raised when there's a configuration issue."""
    pass


class MissingConfigError(ConfigurationError):
    """Raised when a required configuration value is missing."""

    def __init__(self, config_key: str):
        super().__init__(
            f"Missing required configuration: {config_key}",
            {"config_key": config_key}
        )


# =============================================================================
# External API Errors
# =============================================================================

class ExternalAPIError(InboxSyncError):
    """Base exception for external API errors."""

    def __init__(
        self,
        service: str,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None
    ):
        self.service = service
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(
            f"[{service}] {message}",
            {
                "service": service,
                "status_code": status_code,
                "response_body": response_body
            }
        )

    @property
    def user_message(self) -> str:
        """The server-provided message without the service prefix."""
        return self.message.split("] ", 1)[-1]


class InboxAPIError(ExternalAPIError):
    """Raised when an inbox REST API request fails."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None
    ):
        super().__init__("InboxAPI", message, status_code, response_body)


class UnauthorizedError(InboxAPIError):
    """Raised on HTTP 401; the session must be logged out."""

    def __init__(self, response_body: Optional[str] = None):
        super().__init__("Session expired or token rejected", 401, response_body)


class FacebookOAuthError(InboxSyncError):
    """Raised when the Facebook OAuth callback cannot be completed."""

    def __init__(self, reason: str, error_code: Optional[str] = None):
        super().__init__(reason, {"error_code": error_code} if error_code else None)


# =============================================================================
# Storage Errors
# =============================================================================

class StorageError(InboxSyncError):
    """Base exception for storage-related errors."""
    pass


class CacheError(StorageError):
    """Raised when a cache store operation fails."""

    def __init__(self, operation: str, message: str, key: Optional[str] = None):
        super().__init__(
            f"Cache {operation} failed: {message}",
            {"operation": operation, "key": key}
        )


# =============================================================================
# Realtime / state machine Errors
# =============================================================================

class RealtimeError(InboxSyncError):
    """Raised when the realtime channel cannot be set up."""
    pass


class InvalidTransitionError(InboxSyncError):
    """Raised when an operation is invoked from a state that does not allow it."""

    def __init__(self, operation: str, state: str):
        super().__init__(
            f"Cannot {operation} while {state}",
            {"operation": operation, "state": state}
        )


class PermissionDeniedError(InboxSyncError):
    """Raised when the current user lacks the role an operation needs."""

    def __init__(self, operation: str, required_role: str = "admin"):
        super().__init__(
            f"Only {required_role} users can {operation}",
            {"operation": operation, "required_role": required_role}
        )


# =============================================================================
# Retry-related
# =============================================================================

class RetryExhaustedError(InboxSyncError):
    """Raised when all retry attempts have been exhausted."""

    def __init__(self, operation: str, attempts: int, last_error: Optional[Exception] = None):
        self.last_error = last_error
        super().__init__(
            f"All {attempts} retry attempts exhausted for {operation}",
            {
                "operation": operation,
                "attempts": attempts,
                "last_error": str(last_error) if last_error else None
            }
        )
