"""Admin API routes for role management."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from rolegate.app_api.errors import to_http_exception
from rolegate.shared.auth import AuthenticatedUser
from rolegate.shared.errors import RbacError
from rolegate.shared.rbac.admin_service import RoleAdminService, get_role_admin_service
from rolegate.shared.rbac.models import (
    BulkOperationResult,
    PermissionCheckResult,
    RoleClone,
    RoleCreate,
    RoleFilter,
    RoleIdsRequest,
    RoleListResponse,
    RoleMenuPermissions,
    RolePermissionUpdate,
    RoleResponse,
    RoleStatistics,
    RoleSummary,
    RoleUpdate,
    RoleUsersResponse,
    UserIdsRequest,
    UserSummary,
)
from rolegate.shared.rbac.system_admin import require_permission

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/roles", tags=["admin-roles"])


@router.get("/", response_model=RoleListResponse)
async def list_roles(
    search: Optional[str] = Query(None, description="Match on name or description"),
    is_system: Optional[bool] = Query(None, alias="isSystem"),
    has_users: Optional[bool] = Query(None, alias="hasUsers"),
    sort_by: str = Query("name", alias="sortBy", pattern=r"^(name|createdAt|updatedAt)$"),
    sort_order: str = Query("asc", alias="sortOrder", pattern=r"^(asc|desc)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: AuthenticatedUser = Depends(require_permission("role:read")),
    service: RoleAdminService = Depends(get_role_admin_service),
):
    """
    List roles with filtering and pagination.

    Requires role:read.

    Returns:
        RoleListResponse with the requested page and pagination metadata
    """
    logger.info(f"Admin {admin.user_id} listing roles")

    role_filter = RoleFilter(
        search=search,
        is_system=is_system,
        has_users=has_users,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    roles, pagination = await service.list_roles(role_filter, page=page, limit=limit)
    return RoleListResponse(
        roles=[RoleResponse.from_details(r) for r in roles],
        pagination=pagination,
    )


@router.get("/statistics", response_model=RoleStatistics)
async def get_role_statistics(
    admin: AuthenticatedUser = Depends(require_permission("role:read")),
    service: RoleAdminService = Depends(get_role_admin_service),
):
    """Aggregate role counts. Requires role:read."""
    return await service.get_role_statistics()


@router.get("/hierarchy", response_model=List[RoleSummary])
async def get_role_hierarchy(
    admin: AuthenticatedUser = Depends(require_permission("role:read")),
    service: RoleAdminService = Depends(get_role_admin_service),
):
    """Roles with counts, system roles first. Requires role:read."""
    return await service.get_role_hierarchy()


@router.post("/bulk-delete", response_model=BulkOperationResult)
async def bulk_delete_roles(
    body: RoleIdsRequest,
    admin: AuthenticatedUser = Depends(require_permission("role:delete")),
    service: RoleAdminService = Depends(get_role_admin_service),
):
    """
    Delete several roles; each succeeds or fails on its own.

    Requires role:delete.
    """
    logger.info(f"Admin {admin.user_id} bulk deleting {len(body.role_ids)} role(s)")
    return await service.bulk_delete_roles(body.role_ids, admin.user_id)


@router.get("/{role_id}", response_model=RoleResponse)
async def get_role(
    role_id: str,
    admin: AuthenticatedUser = Depends(require_permission("role:read")),
    service: RoleAdminService = Depends(get_role_admin_service),
):
    """
    Get a role by ID.

    Requires role:read.

    Raises:
        HTTPException: 404 if role not found
    """
    try:
        return RoleResponse.from_details(await service.get_role(role_id))
    except RbacError as e:
        raise to_http_exception(e)


@router.post("/", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    role_data: RoleCreate,
    admin: AuthenticatedUser = Depends(require_permission("role:create")),
    service: RoleAdminService = Depends(get_role_admin_service),
):
    """
    Create a new role.

    Requires role:create.

    Raises:
        HTTPException:
            - 409 if the name is taken
            - 422 if a permission id is unknown
    """
    logger.info(f"Admin {admin.user_id} creating role: {role_data.name}")

    try:
        return RoleResponse.from_details(await service.create_role(role_data, admin.user_id))
    except RbacError as e:
        raise to_http_exception(e)


@router.patch("/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: str,
    updates: RoleUpdate,
    admin: AuthenticatedUser = Depends(require_permission("role:update")),
    service: RoleAdminService = Depends(get_role_admin_service),
):
    """
    Update a role's name, description or permission set.

    Requires role:update.

    Raises:
        HTTPException:
            - 404 if role not found
            - 409 if the new name is taken
            - 422 if a permission id is unknown
    """
    logger.info(f"Admin {admin.user_id} updating role: {role_id}")

    try:
        return RoleResponse.from_details(await service.update_role(role_id, updates, admin.user_id))
    except RbacError as e:
        raise to_http_exception(e)


@router.delete("/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    admin: AuthenticatedUser = Depends(require_permission("role:delete")),
    service: RoleAdminService = Depends(get_role_admin_service),
):
    """
    Delete a role.

    Requires role:delete. System roles and roles with users cannot be deleted.

    Raises:
        HTTPException:
            - 403 if the role is a system role or still has users
            - 404 if role not found
    """
    logger.info(f"Admin {admin.user_id} deleting role: {role_id}")

    try:
        await service.delete_role(role_id, admin.user_id)
    except RbacError as e:
        raise to_http_exception(e)


@router.post("/{role_id}/clone", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def clone_role(
    role_id: str,
    body: RoleClone,
    admin: AuthenticatedUser = Depends(require_permission("role:create")),
    service: RoleAdminService = Depends(get_role_admin_service),
):
    """Clone a role, optionally with its permissions and menu grants. Requires role:create."""
    logger.info(f"Admin {admin.user_id} cloning role {role_id} as {body.new_role_name}")

    try:
        return RoleResponse.from_details(await service.clone_role(role_id, body, admin.user_id))
    except RbacError as e:
        raise to_http_exception(e)


@router.patch("/{role_id}/permissions", response_model=RoleResponse)
async def update_role_permissions(
    role_id: str,
    body: RolePermissionUpdate,
    admin: AuthenticatedUser = Depends(require_permission("role:update")),
    service: RoleAdminService = Depends(get_role_admin_service),
):
    """Add and remove permissions on a role. Requires role:update."""
    try:
        details = await service.update_role_permissions(
            role_id, body.add, body.remove, admin.user_id
        )
        return RoleResponse.from_details(details)
    except RbacError as e:
        raise to_http_exception(e)


@router.get("/{role_id}/has-permission", response_model=PermissionCheckResult)
async def role_has_permission(
    role_id: str,
    name: str = Query(..., description="Permission name (resource:action)"),
    admin: AuthenticatedUser = Depends(require_permission("role:read")),
    service: RoleAdminService = Depends(get_role_admin_service),
):
    """Whether a role grants a permission, wildcards included. Requires role:read."""
    try:
        return await service.check_role_permission(role_id, name)
    except RbacError as e:
        raise to_http_exception(e)


@router.get("/{role_id}/users", response_model=RoleUsersResponse)
async def get_role_users(
    role_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: AuthenticatedUser = Depends(require_permission("role:read")),
    service: RoleAdminService = Depends(get_role_admin_service),
):
    """Users assigned to a role. Requires role:read."""
    try:
        users, pagination = await service.get_role_users(role_id, page=page, limit=limit)
    except RbacError as e:
        raise to_http_exception(e)
    return RoleUsersResponse(
        users=[UserSummary.from_user(u) for u in users],
        total=pagination.total,
    )


@router.post("/{role_id}/users", response_model=BulkOperationResult)
async def assign_users_to_role(
    role_id: str,
    body: UserIdsRequest,
    admin: AuthenticatedUser = Depends(require_permission("role:update")),
    service: RoleAdminService = Depends(get_role_admin_service),
):
    """
    Assign users to a role.

    Requires role:update. Unknown or already-assigned users are reported in
    the failed list; the rest are assigned.
    """
    try:
        return await service.assign_users_to_role(role_id, body.user_ids, admin.user_id)
    except RbacError as e:
        raise to_http_exception(e)


@router.post("/{role_id}/users/remove", response_model=BulkOperationResult)
async def remove_users_from_role(
    role_id: str,
    body: UserIdsRequest,
    admin: AuthenticatedUser = Depends(require_permission("role:update")),
    service: RoleAdminService = Depends(get_role_admin_service),
):
    """Remove users from a role. Requires role:update."""
    try:
        return await service.remove_users_from_role(role_id, body.user_ids, admin.user_id)
    except RbacError as e:
        raise to_http_exception(e)


@router.get("/{role_id}/menu-permissions", response_model=RoleMenuPermissions)
async def get_role_menu_permissions(
    role_id: str,
    admin: AuthenticatedUser = Depends(require_permission("role:read")),
    service: RoleAdminService = Depends(get_role_admin_service),
):
    """Menu grants held by a role. Requires role:read."""
    try:
        return await service.get_role_menu_permissions(role_id)
    except RbacError as e:
        raise to_http_exception(e)
