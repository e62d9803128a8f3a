"""
Standardized error handling for API

Provides consistent error responses and maps launcher errors to HTTP status codes.
"""

import logging
from enum import Enum
from functools import wraps
from typing import Any, Callable

from fastapi import HTTPException
from pydantic import BaseModel

from trh_launcher.core.exceptions import (
    ConfigurationError,
    ConflictError,
    EnvironmentError,
    InvalidStateError,
    LauncherError,
    OperationInProgressError,
    TransientInfraError,
    VerificationError,
)

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    OPERATION_IN_PROGRESS = "operation_in_progress"
    INVALID_STATE = "invalid_state"
    PORT_CONFLICT = "port_conflict"
    VALIDATION_ERROR = "validation_error"
    ENVIRONMENT_ERROR = "environment_error"
    RUNTIME_ERROR = "runtime_error"
    VERIFICATION_ERROR = "verification_error"
    INTERNAL_ERROR = "internal_error"


class ErrorResponse(BaseModel):
    """Standard error response format"""

    error: ErrorCode
    message: str
    recovery_hint: str | None = None
    details: dict[str, Any] | None = None


def create_error_response(
    code: ErrorCode,
    message: str,
    status_code: int = 400,
    details: dict | None = None,
    recovery_hint: str | None = None,
) -> HTTPException:
    """
    Create standardized HTTPException

    Args:
        code: Error code enum value
        message: Human-readable error message
        status_code: HTTP status code
        details: Optional additional error details
        recovery_hint: Optional hint for how to resolve the error

    Returns:
        HTTPException with standardized error response

    Example:
        raise create_error_response(
            ErrorCode.INVALID_STATE,
            "No failed setup run to retry",
            409,
            recovery_hint="Start a new setup instead",
        )
    """
    return HTTPException(
        status_code=status_code,
        detail=ErrorResponse(
            error=code,
            message=message,
            recovery_hint=recovery_hint,
            details=details,
        ).model_dump(mode="json"),
    )


# Checked in order; subclasses must come before their bases
_ERROR_MAP: list[tuple[type[LauncherError], ErrorCode, int]] = [
    (OperationInProgressError, ErrorCode.OPERATION_IN_PROGRESS, 409),
    (InvalidStateError, ErrorCode.INVALID_STATE, 409),
    (ConflictError, ErrorCode.PORT_CONFLICT, 409),
    (ConfigurationError, ErrorCode.VALIDATION_ERROR, 422),
    (EnvironmentError, ErrorCode.ENVIRONMENT_ERROR, 503),
    (TransientInfraError, ErrorCode.RUNTIME_ERROR, 500),
    (VerificationError, ErrorCode.VERIFICATION_ERROR, 500),
]


def launcher_error_response(error: LauncherError) -> HTTPException:
    """Convert a LauncherError into the matching standardized HTTPException"""
    code, status_code = ErrorCode.INTERNAL_ERROR, 500
    for error_type, mapped_code, mapped_status in _ERROR_MAP:
        if isinstance(error, error_type):
            code, status_code = mapped_code, mapped_status
            break

    details: dict[str, Any] = {"kind": type(error).__name__, "retryable": error.retryable}
    if isinstance(error, ConflictError) and error.ports:
        details["ports"] = error.ports
    if isinstance(error, VerificationError):
        details["missing"] = error.missing

    return create_error_response(
        code,
        error.message,
        status_code,
        details=details,
        recovery_hint=error.recovery_hint or None,
    )


def api_exception_handler(operation: str):
    """
    Decorator for consistent error handling in API routes

    Logs exceptions and converts them to standardized error responses.
    Re-raises HTTPExceptions as-is.

    Example:
        @router.post("/stop")
        @api_exception_handler("stop_stack")
        async def stop_stack(request: Request):
            ...
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except HTTPException:
                raise
            except LauncherError as e:
                logger.warning(f"{operation} - {type(e).__name__}: {e.message}")
                raise launcher_error_response(e)
            except Exception as e:
                logger.exception(f"{operation} failed: {e}")
                raise create_error_response(
                    ErrorCode.INTERNAL_ERROR,
                    f"{operation} failed: {str(e)}",
                    500,
                    recovery_hint="Check the launcher logs for more details",
                )

        return wrapper

    return decorator
