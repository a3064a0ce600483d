"""
Structured exception handling for the Buddylynk server.

Example:
    >>> from buddylynk_backend.exceptions import NotFoundException
    >>> raise NotFoundException(error_code="NF_002", context={"message_id": message_id})
"""

from buddylynk_backend.exceptions.exceptions import (
    BuddylynkException,
    UnauthorizedException,
    ForbiddenException,
    BadRequestException,
    NotFoundException,
    ConflictException,
    InternalServerException,
    ServiceUnavailableException,
    PresenceUnavailableException,
)
from buddylynk_backend.exceptions.error_handlers import register_exception_handlers
from buddylynk_backend.exceptions.error_registry import (
    get_error_definition,
    get_all_error_codes,
    load_error_registry,
)

__all__ = [
    "BuddylynkException",
    "UnauthorizedException",
    "ForbiddenException",
    "BadRequestException",
    "NotFoundException",
    "ConflictException",
    "InternalServerException",
    "ServiceUnavailableException",
    "PresenceUnavailableException",
    "register_exception_handlers",
    "get_error_definition",
    "get_all_error_codes",
    "load_error_registry",
]
