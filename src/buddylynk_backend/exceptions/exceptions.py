"""
HTTP exceptions carrying registry error codes.

Raise these from endpoints and business logic; the handlers in
``error_handlers`` turn them into ``{"error_code", "message"}`` responses.
"""

from typing import Any, Dict, Optional
from fastapi import HTTPException, status
import inspect
from datetime import datetime, timezone

from buddylynk_types.errors import ErrorResponse, ErrorDebugInfo


class BuddylynkException(HTTPException):
    """
    Base exception class for all Buddylynk server exceptions.

    Subclasses fix the HTTP status; the error code selects the registry
    entry that supplies the default message, category and severity.
    """

    default_status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        error_code: str,
        detail: Any = None,
        headers: Optional[Dict[str, str]] = None,
        context: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ):
        """
        Args:
            error_code: Error code from error registry (e.g., "AUTH_001")
            detail: Overrides the registry message if provided
            headers: HTTP response headers
            context: Additional context for debugging
            user_id: User ID if available
        """
        self.error_code = error_code
        self.context = context or {}
        self.user_id = user_id
        # HTTPException swaps a missing detail for the status phrase
        self.detail_override = detail

        # Caller information for debugging; skip this __init__ and the subclass __init__
        self.function_name = None
        self.file_name = None
        self.line_number = None
        frame = inspect.currentframe()
        caller_frame = frame.f_back.f_back if frame and frame.f_back else None
        if caller_frame:
            self.function_name = caller_frame.f_code.co_name
            self.file_name = caller_frame.f_code.co_filename
            self.line_number = caller_frame.f_lineno

        super().__init__(status_code=self.default_status_code, detail=detail, headers=headers)

    def to_error_response(self, include_debug: bool = False) -> ErrorResponse:
        """
        Convert exception to structured ErrorResponse.

        Args:
            include_debug: Whether to include debug information (dev mode only)
        """
        from buddylynk_backend.exceptions.error_registry import get_error_definition

        error_def = get_error_definition(self.error_code)

        debug_info = None
        if include_debug:
            debug_info = ErrorDebugInfo(
                timestamp=datetime.now(timezone.utc).isoformat(),
                function=self.function_name,
                file=self.file_name,
                line=self.line_number,
                user_id=self.user_id,
                additional_context=self.context,
            )

        message = error_def.message
        details = self.context if self.context else None

        override = self.detail_override
        if override:
            if isinstance(override, str):
                message = override
            elif isinstance(override, dict):
                details = override
                if isinstance(override.get("message"), str):
                    message = override["message"]

        return ErrorResponse(
            error_code=self.error_code,
            message=message,
            details=details,
            severity=error_def.severity,
            category=error_def.category,
            retry_after=error_def.retry_after,
            debug=debug_info,
        )


# ============================================================================
# AUTHENTICATION / AUTHORIZATION (401, 403)
# ============================================================================


class UnauthorizedException(BuddylynkException):
    """Authentication required - 401"""

    default_status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, error_code: str = "AUTH_001", detail: Any = None, **kwargs):
        kwargs.setdefault("headers", {"WWW-Authenticate": "Bearer"})
        super().__init__(error_code=error_code, detail=detail, **kwargs)


class ForbiddenException(BuddylynkException):
    """Insufficient permissions - 403"""

    default_status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, error_code: str = "AUTHZ_001", detail: Any = None, **kwargs):
        super().__init__(error_code=error_code, detail=detail, **kwargs)


# ============================================================================
# CLIENT ERRORS (400, 404, 409)
# ============================================================================


class BadRequestException(BuddylynkException):
    """Invalid request - 400"""

    default_status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, error_code: str = "VAL_001", detail: Any = None, **kwargs):
        super().__init__(error_code=error_code, detail=detail, **kwargs)


class NotFoundException(BuddylynkException):
    """Resource not found - 404"""

    default_status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, error_code: str = "NF_001", detail: Any = None, **kwargs):
        super().__init__(error_code=error_code, detail=detail, **kwargs)


class ConflictException(BuddylynkException):
    """Resource state conflict - 409"""

    default_status_code = status.HTTP_409_CONFLICT

    def __init__(self, error_code: str = "CONFLICT_001", detail: Any = None, **kwargs):
        super().__init__(error_code=error_code, detail=detail, **kwargs)


# ============================================================================
# SERVER ERRORS (500, 503)
# ============================================================================


class InternalServerException(BuddylynkException):
    """Unexpected server error - 500"""

    default_status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, error_code: str = "INT_001", detail: Any = None, **kwargs):
        super().__init__(error_code=error_code, detail=detail, **kwargs)


class ServiceUnavailableException(BuddylynkException):
    """Dependency temporarily unavailable - 503"""

    default_status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, error_code: str = "EXT_001", detail: Any = None, **kwargs):
        super().__init__(error_code=error_code, detail=detail, **kwargs)


class PresenceUnavailableException(ServiceUnavailableException):
    """Presence store unreachable - 503"""

    def __init__(self, error_code: str = "RT_001", detail: Any = None, **kwargs):
        super().__init__(error_code=error_code, detail=detail, **kwargs)
