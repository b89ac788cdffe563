"""Routes that answer authorization questions about the calling user."""

import logging

from fastapi import APIRouter, Depends, Query

from rolegate.app_api.errors import to_http_exception
from rolegate.shared.auth import AuthenticatedUser
from rolegate.shared.errors import RbacError
from rolegate.shared.rbac.menu_access import MenuPermissionService, get_menu_permission_service
from rolegate.shared.rbac.models import (
    EffectivePermissions,
    MenuAccessResult,
    PermissionCheckResult,
    UserMenuTree,
    parse_permission_name,
)
from rolegate.shared.rbac.service import (
    PermissionResolverService,
    get_permission_resolver_service,
)
from rolegate.shared.rbac.system_admin import get_registered_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/me", tags=["me"])


@router.get("/permissions", response_model=EffectivePermissions)
async def get_my_permissions(
    user: AuthenticatedUser = Depends(get_registered_user),
    resolver: PermissionResolverService = Depends(get_permission_resolver_service),
):
    """Effective permission set of the caller."""
    try:
        return await resolver.resolve_user_permissions(user.user_id)
    except RbacError as e:
        raise to_http_exception(e)


@router.get("/permissions/check", response_model=PermissionCheckResult)
async def check_my_permission(
    name: str = Query(..., description="Permission name (resource:action)"),
    user: AuthenticatedUser = Depends(get_registered_user),
    resolver: PermissionResolverService = Depends(get_permission_resolver_service),
):
    """
    Check one permission for the caller.

    Raises:
        HTTPException: 422 if the name is not resource:action
    """
    try:
        parse_permission_name(name)
        return await resolver.check_permission(user.user_id, name)
    except RbacError as e:
        raise to_http_exception(e)


@router.get("/menus", response_model=UserMenuTree)
async def get_my_menus(
    user: AuthenticatedUser = Depends(get_registered_user),
    service: MenuPermissionService = Depends(get_menu_permission_service),
):
    """Menu tree visible to the caller with merged capability flags."""
    try:
        return await service.build_user_menu_tree(user.user_id)
    except RbacError as e:
        raise to_http_exception(e)


@router.get("/menus/{menu_id}/access", response_model=MenuAccessResult)
async def check_my_menu_access(
    menu_id: str,
    capability: str = Query("view", description="view, edit, delete or export"),
    user: AuthenticatedUser = Depends(get_registered_user),
    service: MenuPermissionService = Depends(get_menu_permission_service),
):
    """Check one capability of the caller on a menu."""
    try:
        return await service.check_menu_access(user.user_id, menu_id, capability)
    except RbacError as e:
        raise to_http_exception(e)
