"""Shared error models and utilities for consistent error handling across APIs"""

from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # Client errors (4xx)
    BAD_REQUEST = "bad_request"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    VALIDATION_ERROR = "validation_error"

    # Server errors (5xx)
    INTERNAL_ERROR = "internal_error"


class ErrorDetail(BaseModel):
    """Structured error detail for API responses"""

    code: ErrorCode
    message: str
    detail: Optional[str] = None
    field: Optional[str] = None  # For validation errors
    metadata: Optional[Dict[str, Any]] = None

    class Config:
        use_enum_values = True


class RbacError(Exception):
    """
    Base class for every expected failure raised by the RBAC services.

    Each subclass pins an ErrorCode so transports can map it to a status
    code without inspecting the message.
    """

    code: ErrorCode = ErrorCode.BAD_REQUEST

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.field = field


class NotFoundError(RbacError):
    """Referenced user, role, permission or menu does not exist."""

    code = ErrorCode.NOT_FOUND


class ConflictError(RbacError):
    """Duplicate name on create, or a rename colliding with an existing name."""

    code = ErrorCode.CONFLICT


class RbacValidationError(RbacError):
    """Malformed input or a structural rule the request would break."""

    code = ErrorCode.VALIDATION_ERROR


class ForbiddenError(RbacError):
    """Protected entity (system role, in-use role or permission)."""

    code = ErrorCode.FORBIDDEN


class StoreError(Exception):
    """Unexpected storage failure. Aborts the enclosing transaction."""

    code = ErrorCode.INTERNAL_ERROR


def create_error_response(
    code: ErrorCode,
    message: str,
    detail: Optional[str] = None,
    status_code: int = 500,
    metadata: Optional[Dict[str, Any]] = None
) -> dict:
    """
    Create a standardized error response dictionary.

    Args:
        code: Error code from ErrorCode enum
        message: User-friendly error message
        detail: Optional technical detail for debugging
        status_code: HTTP status code
        metadata: Optional additional error context

    Returns:
        Dictionary suitable for HTTPException detail
    """
    error = ErrorDetail(
        code=code,
        message=message,
        detail=detail,
        metadata=metadata
    )

    return {
        "error": error.model_dump(exclude_none=True),
        "status_code": status_code
    }


_CODE_TO_STATUS = {
    ErrorCode.BAD_REQUEST: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.INTERNAL_ERROR: 500,
}


def error_code_to_http_status(code: ErrorCode) -> int:
    """Map ErrorCode enum values back to HTTP status codes"""
    return _CODE_TO_STATUS.get(ErrorCode(code), 500)


def rbac_error_response(error: RbacError) -> dict:
    """Build the error response for an RbacError."""
    return create_error_response(
        code=error.code,
        message=error.message,
        status_code=error_code_to_http_status(error.code),
        metadata=error.details or None,
    )
