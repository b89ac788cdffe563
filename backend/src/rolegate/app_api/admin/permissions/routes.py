"""Admin API routes for permission definitions."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from rolegate.app_api.errors import to_http_exception
from rolegate.shared.auth import AuthenticatedUser
from rolegate.shared.errors import RbacError
from rolegate.shared.rbac.models import (
    PermissionCreate,
    PermissionDetailResponse,
    PermissionFilter,
    PermissionListResponse,
    PermissionResponse,
    PermissionUpdate,
)
from rolegate.shared.rbac.permission_admin import (
    PermissionAdminService,
    get_permission_admin_service,
)
from rolegate.shared.rbac.system_admin import require_permission

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/permissions", tags=["admin-permissions"])


@router.get("/", response_model=PermissionListResponse)
async def list_permissions(
    resource: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    admin: AuthenticatedUser = Depends(require_permission("permission:read")),
    service: PermissionAdminService = Depends(get_permission_admin_service),
):
    """List permissions ordered by name. Requires permission:read."""
    permissions, pagination = await service.list_permissions(
        PermissionFilter(resource=resource, action=action, search=search),
        page=page,
        limit=limit,
    )
    return PermissionListResponse(
        permissions=[PermissionResponse.from_permission(p) for p in permissions],
        pagination=pagination,
    )


@router.get("/{permission_id}", response_model=PermissionDetailResponse)
async def get_permission(
    permission_id: str,
    admin: AuthenticatedUser = Depends(require_permission("permission:read")),
    service: PermissionAdminService = Depends(get_permission_admin_service),
):
    """Get a permission with the roles that grant it. Requires permission:read."""
    try:
        return await service.get_permission_details(permission_id)
    except RbacError as e:
        raise to_http_exception(e)


@router.post("/", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    body: PermissionCreate,
    admin: AuthenticatedUser = Depends(require_permission("permission:create")),
    service: PermissionAdminService = Depends(get_permission_admin_service),
):
    """
    Create a permission.

    Requires permission:create.

    Raises:
        HTTPException:
            - 409 if the name already exists
            - 422 if the name is not resource:action
    """
    logger.info(f"Admin {admin.user_id} creating permission: {body.name or (body.resource, body.action)}")

    try:
        return PermissionResponse.from_permission(
            await service.create_permission(body, admin.user_id)
        )
    except RbacError as e:
        raise to_http_exception(e)


@router.patch("/{permission_id}", response_model=PermissionResponse)
async def update_permission(
    permission_id: str,
    body: PermissionUpdate,
    admin: AuthenticatedUser = Depends(require_permission("permission:update")),
    service: PermissionAdminService = Depends(get_permission_admin_service),
):
    """Rename a permission or change its description. Requires permission:update."""
    try:
        return PermissionResponse.from_permission(
            await service.update_permission(permission_id, body, admin.user_id)
        )
    except RbacError as e:
        raise to_http_exception(e)


@router.delete("/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_permission(
    permission_id: str,
    admin: AuthenticatedUser = Depends(require_permission("permission:delete")),
    service: PermissionAdminService = Depends(get_permission_admin_service),
):
    """
    Delete a permission.

    Requires permission:delete.

    Raises:
        HTTPException: 403 while any role still grants the permission
    """
    logger.info(f"Admin {admin.user_id} deleting permission: {permission_id}")

    try:
        await service.delete_permission(permission_id, admin.user_id)
    except RbacError as e:
        raise to_http_exception(e)
