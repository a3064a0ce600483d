"""
FastAPI exception handlers for structured error responses.

Clients only ever see ``error_code`` and ``message`` (plus validation details
and, in development mode, debug information).
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import traceback
import logging

from buddylynk_backend.exceptions.exceptions import (
    BuddylynkException,
    BadRequestException,
    ConflictException,
    ForbiddenException,
    InternalServerException,
    NotFoundException,
    ServiceUnavailableException,
    UnauthorizedException,
)
from buddylynk_backend.settings import settings


logger = logging.getLogger(__name__)


def _response_body(error_response, include_debug: bool) -> dict:
    response_data = {
        "error_code": error_response.error_code,
        "message": error_response.message,
    }
    if include_debug and error_response.debug:
        response_data["debug"] = error_response.debug.model_dump(exclude_none=True)
    return response_data


async def buddylynk_exception_handler(request: Request, exc: BuddylynkException) -> JSONResponse:
    """
    Handle BuddylynkException instances.

    Debug information (file paths, function names, line numbers) is only
    included when DEBUG_MODE is 'dev', 'development' or 'local'.
    """
    include_debug = settings.include_debug_info

    error_response = exc.to_error_response(include_debug=include_debug)

    log_error(request, exc)

    return JSONResponse(
        status_code=exc.status_code,
        content=_response_body(error_response, include_debug),
        headers=exc.headers or {},
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle pydantic validation errors as VAL_001 with per-field details."""
    errors = []
    for error in exc.errors():
        field = " -> ".join(str(x) for x in error["loc"][1:])  # Skip 'body' prefix
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })

    exception = BadRequestException(
        error_code="VAL_001",
        detail="Request validation failed",
        context={"validation_errors": errors}
    )

    include_debug = settings.include_debug_info
    error_response = exception.to_error_response(include_debug=include_debug)

    logger.warning(f"Validation error on {request.method} {request.url.path}: {len(errors)} error(s)")

    response_data = _response_body(error_response, include_debug)
    if errors:
        response_data["details"] = {"validation_errors": errors}

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=response_data,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Map plain HTTPExceptions onto the BuddylynkException hierarchy by status code."""
    exception_map = {
        status.HTTP_400_BAD_REQUEST: BadRequestException,
        status.HTTP_401_UNAUTHORIZED: UnauthorizedException,
        status.HTTP_403_FORBIDDEN: ForbiddenException,
        status.HTTP_404_NOT_FOUND: NotFoundException,
        status.HTTP_409_CONFLICT: ConflictException,
        status.HTTP_503_SERVICE_UNAVAILABLE: ServiceUnavailableException,
    }

    exception_class = exception_map.get(exc.status_code, InternalServerException)

    mapped = exception_class(
        detail=exc.detail,
        headers=getattr(exc, "headers", None),
    )

    return await buddylynk_exception_handler(request, mapped)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log the full traceback and return a generic INT_001."""
    logger.error(
        f"Unhandled exception on {request.method} {request.url.path}",
        exc_info=exc,
    )

    exception = InternalServerException(
        error_code="INT_001",
        detail="An unexpected error occurred",
        context={
            "exception_type": type(exc).__name__,
            "exception_message": str(exc),
        }
    )

    include_debug = settings.include_debug_info
    if include_debug:
        exception.context["traceback"] = "".join(traceback.format_exception(exc))

    error_response = exception.to_error_response(include_debug=include_debug)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_response_body(error_response, include_debug),
    )


def log_error(request: Request, exception: BuddylynkException) -> None:
    """Log an error at a level matching its status code."""
    summary = (
        f"{exception.error_code} {request.method} {request.url.path} "
        f"status={exception.status_code} user={exception.user_id}"
    )

    if exception.status_code >= 500:
        logger.error(f"Server error: {summary}", exc_info=True)
    elif exception.status_code >= 400:
        logger.warning(f"Client error: {summary}")
    else:
        logger.info(f"Error: {summary}")


def register_exception_handlers(app) -> None:
    """
    Register all exception handlers with the FastAPI app.

    Args:
        app: FastAPI application instance
    """
    app.add_exception_handler(BuddylynkException, buddylynk_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    logger.info("Registered custom exception handlers")
