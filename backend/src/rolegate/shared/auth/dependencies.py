"""FastAPI dependencies for caller identity."""

import logging

from fastapi import Depends, HTTPException, Request, status

from rolegate.shared.config import RbacSettings, get_settings

from .models import AuthenticatedUser

logger = logging.getLogger(__name__)

ANONYMOUS_USER_ID = "anonymous"


async def get_current_user(
    request: Request,
    settings: RbacSettings = Depends(get_settings),
) -> AuthenticatedUser:
    """
    FastAPI dependency to get the current caller.

    Credentials are verified by the gateway in front of this service, which
    forwards the authenticated user id in the identity header
    (RBAC_IDENTITY_HEADER, default X-User-Id).

    When ENABLE_AUTHENTICATION=false, returns an anonymous user instead.
    This should only be used in development/testing.

    Args:
        request: Incoming request
        settings: Runtime settings (injected)

    Returns:
        AuthenticatedUser for the caller (or anonymous user if auth disabled)

    Raises:
        HTTPException: 401 if the identity header is missing (when auth enabled)
    """
    if not settings.enable_authentication:
        logger.warning("⚠️ Authentication is DISABLED via ENABLE_AUTHENTICATION=false - returning anonymous user")
        return AuthenticatedUser(user_id=ANONYMOUS_USER_ID, is_anonymous=True)

    user_id = (request.headers.get(settings.identity_header) or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Authentication required. Missing {settings.identity_header} header.",
        )

    return AuthenticatedUser(user_id=user_id)
