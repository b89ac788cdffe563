"""Translation of RBAC service errors into HTTP errors."""

import logging

from fastapi import HTTPException

from rolegate.shared.errors import RbacError, error_code_to_http_status, rbac_error_response

logger = logging.getLogger(__name__)


def to_http_exception(error: RbacError) -> HTTPException:
    """Build the HTTPException for a service error, keeping its code and details."""
    status_code = error_code_to_http_status(error.code)
    if status_code >= 500:
        logger.error(f"RBAC operation failed: {error.message}")
    else:
        logger.warning(f"RBAC operation rejected ({status_code}): {error.message}")
    return HTTPException(status_code=status_code, detail=rbac_error_response(error))
