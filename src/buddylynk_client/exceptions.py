"""
Exception hierarchy for the Buddylynk client library.

HTTP errors map to status codes and keep the ``error_code`` returned by the
API. Realtime problems (session misuse, media acquisition) have their own
classes.
"""

from typing import Any, Dict, Optional


class BuddylynkClientError(Exception):
    """
    Base exception for all Buddylynk client errors.

    Attributes:
        message: Human-readable error message
        status_code: HTTP status code (if applicable)
        error_code: Buddylynk error code (e.g., "AUTH_001")
        details: Additional error details from the response
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}

    def __str__(self) -> str:
        parts = [self.message]
        if self.error_code:
            parts.insert(0, f"[{self.error_code}]")
        if self.status_code:
            parts.append(f"(HTTP {self.status_code})")
        return " ".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"status_code={self.status_code}, "
            f"error_code={self.error_code!r})"
        )


# =============================================================================
# HTTP errors
# =============================================================================


class AuthenticationError(BuddylynkClientError):
    """Missing, invalid or expired bearer token."""

    def __init__(
        self,
        message: str = "Authentication required",
        *,
        status_code: int = 401,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, status_code=status_code, error_code=error_code, details=details)


class AuthorizationError(BuddylynkClientError):
    """Access denied due to insufficient permissions."""

    def __init__(
        self,
        message: str = "Access denied",
        *,
        status_code: int = 403,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, status_code=status_code, error_code=error_code, details=details)


class ValidationError(BuddylynkClientError):
    """Request validation failed."""

    def __init__(
        self,
        message: str = "Validation error",
        *,
        status_code: int = 400,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, status_code=status_code, error_code=error_code, details=details)


class NotFoundError(BuddylynkClientError):
    """Requested resource was not found."""

    def __init__(
        self,
        message: str = "Resource not found",
        *,
        status_code: int = 404,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, status_code=status_code, error_code=error_code, details=details)


class ConflictError(BuddylynkClientError):
    """Request conflicts with current state of the resource."""

    def __init__(
        self,
        message: str = "Resource conflict",
        *,
        status_code: int = 409,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, status_code=status_code, error_code=error_code, details=details)


class RateLimitError(BuddylynkClientError):
    """
    Rate limit exceeded.

    The ``retry_after`` attribute indicates how many seconds to wait.
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        status_code: int = 429,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[int] = None,
    ):
        super().__init__(message, status_code=status_code, error_code=error_code, details=details)
        self.retry_after = retry_after


class ServerError(BuddylynkClientError):
    """Server-side error occurred (5xx)."""

    def __init__(
        self,
        message: str = "Server error",
        *,
        status_code: int = 500,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, status_code=status_code, error_code=error_code, details=details)


class NetworkError(BuddylynkClientError):
    """Connection problem, DNS failure or request timeout."""

    def __init__(
        self,
        message: str = "Network error",
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, status_code=None, error_code=None, details=details)


# =============================================================================
# Realtime errors
# =============================================================================


class SessionError(BuddylynkClientError):
    """The socket session was used in a way its state does not allow."""

    def __init__(self, message: str = "Socket session error", *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)


class MediaAccessError(BuddylynkClientError):
    """
    Camera or microphone could not be acquired.

    Fatal to the call attempt: the call is aborted and the peer is told.
    """

    def __init__(
        self,
        message: str = "Could not access camera or microphone",
        *,
        call_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        if call_type:
            details = details or {}
            details["call_type"] = call_type
        super().__init__(message, details=details)
        self.call_type = call_type


# Map HTTP status codes to exception classes
STATUS_CODE_EXCEPTIONS = {
    400: ValidationError,
    401: AuthenticationError,
    403: AuthorizationError,
    404: NotFoundError,
    409: ConflictError,
    422: ValidationError,
    429: RateLimitError,
}


def exception_from_response(
    status_code: int,
    message: str,
    error_code: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> BuddylynkClientError:
    """Create the matching exception for an HTTP error response."""
    if 500 <= status_code < 600:
        exception_class = ServerError
    else:
        exception_class = STATUS_CODE_EXCEPTIONS.get(status_code, BuddylynkClientError)
    return exception_class(
        message,
        status_code=status_code,
        error_code=error_code,
        details=details,
    )
