"""
Error models shared by the server and the client.

Every server-side exception carries a registry error code (e.g. ``RT_001``);
the registry entry supplies status, category and the default message.
"""

from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Error categories for classification."""
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    REALTIME = "realtime"
    EXTERNAL_SERVICE = "external_service"
    DATABASE = "database"
    INTERNAL = "internal"


class ErrorDefinition(BaseModel):
    """Error definition loaded from the registry."""
    model_config = ConfigDict(use_enum_values=True)

    code: str = Field(..., description="Unique error code (e.g., AUTH_001)")
    http_status: int = Field(..., description="HTTP status code")
    category: ErrorCategory
    severity: ErrorSeverity
    title: str
    message: str = Field(..., description="Default user-facing message")
    retry_after: Optional[int] = Field(None, description="Seconds to wait before retry")
    internal_description: str = Field("", description="Notes for developers")


class ErrorDebugInfo(BaseModel):
    """Debug information included in development mode."""
    timestamp: str = Field(..., description="ISO 8601 timestamp")
    function: Optional[str] = None
    file: Optional[str] = None
    line: Optional[int] = None
    user_id: Optional[str] = None
    additional_context: Optional[dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Standard error response structure."""
    model_config = ConfigDict(use_enum_values=True)

    error_code: str
    message: str
    details: Optional[Any] = None
    severity: ErrorSeverity
    category: ErrorCategory
    retry_after: Optional[int] = None
    debug: Optional[ErrorDebugInfo] = Field(None, description="Debug information (dev mode only)")
