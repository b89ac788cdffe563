"""FastAPI access-control dependencies backed by the permission resolver."""

import logging
from typing import Callable, Iterable

from fastapi import Depends, HTTPException, status

from rolegate.shared.auth.dependencies import get_current_user
from rolegate.shared.auth.models import AuthenticatedUser
from rolegate.shared.config import RbacSettings, get_settings
from rolegate.shared.errors import NotFoundError

from .seeder import ensure_user
from .service import PermissionResolverService, get_permission_resolver_service
from .store import RbacStore, get_rbac_store

logger = logging.getLogger(__name__)


def _forbidden(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


async def get_registered_user(
    user: AuthenticatedUser = Depends(get_current_user),
    settings: RbacSettings = Depends(get_settings),
    store: RbacStore = Depends(get_rbac_store),
) -> AuthenticatedUser:
    """
    FastAPI dependency for the caller, registering first-time callers.

    The identity provider in front of this service owns user accounts, so a
    caller seen for the first time gets a User record with no roles. Set
    RBAC_AUTO_REGISTER_USERS=false to require users to be created through
    the admin API instead.
    """
    if user.is_anonymous or not settings.auto_register_users:
        return user

    await ensure_user(store, user.user_id)
    return user


async def require_superuser(
    user: AuthenticatedUser = Depends(get_registered_user),
    resolver: PermissionResolverService = Depends(get_permission_resolver_service),
) -> AuthenticatedUser:
    """
    Require a superuser caller.

    Usage:
        @router.post("/admin/maintenance")
        async def run(admin: AuthenticatedUser = Depends(require_superuser)):
            pass

    Raises:
        HTTPException: 403 if the caller is unknown, inactive or not a superuser
    """
    if user.is_anonymous:
        return user

    try:
        is_superuser = await resolver.is_superuser(user.user_id)
    except NotFoundError:
        is_superuser = False

    if not is_superuser:
        logger.warning(f"User {user.user_id} denied superuser access")
        raise _forbidden("Superuser access required")

    logger.debug(f"User {user.user_id} authorized as superuser")
    return user


def require_permission(name: str) -> Callable:
    """
    FastAPI dependency that checks a single permission.

    Usage:
        @router.post("/admin/roles")
        async def create_role(user: AuthenticatedUser = Depends(require_permission("role:create"))):
            pass
    """

    async def checker(
        user: AuthenticatedUser = Depends(get_registered_user),
        resolver: PermissionResolverService = Depends(get_permission_resolver_service),
    ) -> AuthenticatedUser:
        if user.is_anonymous:
            return user
        try:
            result = await resolver.check_permission(user.user_id, name)
        except NotFoundError:
            logger.warning(f"Unknown user {user.user_id} requested {name}")
            raise _forbidden(f"Permission required: {name}")

        if not result.granted:
            raise _forbidden(f"Permission required: {name}")
        return user

    return checker


def require_any_permission(names: Iterable[str]) -> Callable:
    """
    FastAPI dependency that passes when any one of the permissions is held.

    Usage:
        @router.get("/admin/menus/matrix")
        async def matrix(user: AuthenticatedUser = Depends(require_any_permission(["menu:read", "role:read"]))):
            pass
    """
    names = list(names)

    async def checker(
        user: AuthenticatedUser = Depends(get_registered_user),
        resolver: PermissionResolverService = Depends(get_permission_resolver_service),
    ) -> AuthenticatedUser:
        if user.is_anonymous:
            return user
        try:
            result = await resolver.check_permissions(user.user_id, names, require_all=False)
        except NotFoundError:
            raise _forbidden(f"One of these permissions is required: {', '.join(names)}")

        if not result.granted:
            raise _forbidden(f"One of these permissions is required: {', '.join(names)}")
        return user

    return checker
