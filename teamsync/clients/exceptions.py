"""Exception classes for API clients and the sync engine."""

from typing import Any, Optional


class APIError(Exception):
    """Base exception for API-related errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_text: Optional[str] = None,
    ) -> None:
        """Initialize API error.

        Args:
            message: Error message
            status_code: HTTP status code if available
            response_text: Response body text if available
        """
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_text = response_text

    def __str__(self) -> str:
        """String representation of the error."""
        parts = [self.message]
        if self.status_code:
            parts.append(f"Status: {self.status_code}")
        if self.response_text:
            # Truncate response text for readability
            response_preview = self.response_text[:200]
            if len(self.response_text) > 200:
                response_preview += "..."
            parts.append(f"Response: {response_preview}")
        return " | ".join(parts)


class AuthenticationError(APIError):
    """Raised when authentication fails (401)."""
    pass


class AuthorizationError(APIError):
    """Raised when authorization fails (403)."""
    pass


class RateLimitError(APIError):
    """Raised when rate limit is exceeded (429)."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_text: Optional[str] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        super().__init__(message, status_code, response_text)
        self.retry_after = retry_after


class ClientError(APIError):
    """Raised for 4xx client errors."""
    pass


class ServerError(APIError):
    """Raised for 5xx server errors."""
    pass


class NetworkError(APIError):
    """Raised for network-related errors (connect failures, timeouts)."""
    pass


class ResourceNotFoundError(ClientError):
    """Raised when a requested resource is not found (404)."""
    pass


class ConflictError(ClientError):
    """Raised when the resource already exists or is already a member (409)."""
    pass


class PolicyRestrictedError(ClientError):
    """Raised when the platform refuses a change because another system owns it.

    Grafana reports this for org role changes on users whose membership is
    synced from an external auth provider.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_text: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> None:
        super().__init__(message, status_code, response_text)
        self.message_id = message_id


class EntraError(APIError):
    """Microsoft Entra / Graph specific error."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
        response_text: Optional[str] = None,
    ) -> None:
        """Initialize Entra error.

        Args:
            message: Error message
            error_code: Graph error code (e.g. ``Request_ResourceNotFound``)
            status_code: HTTP status code
            response_text: Response body text
        """
        super().__init__(message, status_code, response_text)
        self.error_code = error_code


class GrafanaError(APIError):
    """Grafana-specific error."""
    pass


class ConfigurationError(Exception):
    """Raised when client configuration is invalid."""
    pass


class StoreError(Exception):
    """Raised when the mapping store fails to read or write."""
    pass


class SyncError(Exception):
    """Base exception for sync engine errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SyncInProgressError(SyncError):
    """Raised when a build/apply cycle is already running."""

    def __init__(self, message: str, holder: Optional[str] = None) -> None:
        super().__init__(message)
        self.holder = holder


class NoPlanError(SyncError):
    """Raised when an apply is requested but no plan is stored."""
    pass


class NoActionsSelectedError(SyncError):
    """Raised when a selective apply resolves to zero executable actions."""
    pass


class PlanExecutionError(SyncError):
    """Raised when an action fails and the remaining batch is abandoned."""

    def __init__(
        self,
        message: str,
        action: Optional[Any] = None,
        applied_count: int = 0,
    ) -> None:
        """Initialize plan execution error.

        Args:
            message: Error message
            action: The plan action that failed
            applied_count: Number of actions applied before the failure
        """
        super().__init__(message)
        self.action = action
        self.applied_count = applied_count
