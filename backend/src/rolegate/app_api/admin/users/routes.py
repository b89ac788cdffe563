"""Admin API routes for user management."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from rolegate.app_api.errors import to_http_exception
from rolegate.shared.auth import AuthenticatedUser
from rolegate.shared.errors import RbacError
from rolegate.shared.rbac.models import (
    BulkOperationResult,
    UserCreate,
    UserFilter,
    UserListResponse,
    UserResponse,
    UserRoleCheck,
    UserRolesUpdate,
    UserStatistics,
    UserStatusUpdate,
    UserUpdate,
)
from rolegate.shared.rbac.system_admin import require_permission
from rolegate.shared.rbac.user_admin import UserAdminService, get_user_admin_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["admin-users"])


@router.get("/", response_model=UserListResponse)
async def list_users(
    search: Optional[str] = Query(None, description="Match on id, email or username"),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    is_superuser: Optional[bool] = Query(None, alias="isSuperuser"),
    role_id: Optional[str] = Query(None, alias="roleId"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: AuthenticatedUser = Depends(require_permission("user:read")),
    service: UserAdminService = Depends(get_user_admin_service),
):
    """
    List users with filtering and pagination.

    Requires user:read.
    """
    user_filter = UserFilter(
        search=search,
        is_active=is_active,
        is_superuser=is_superuser,
        role_id=role_id,
    )
    users, pagination = await service.list_users(user_filter, page=page, limit=limit)
    return UserListResponse(
        users=[UserResponse.from_snapshot(u) for u in users],
        pagination=pagination,
    )


@router.get("/statistics", response_model=UserStatistics)
async def get_user_statistics(
    admin: AuthenticatedUser = Depends(require_permission("user:read")),
    service: UserAdminService = Depends(get_user_admin_service),
):
    """Counts by status, superusers and role. Requires user:read."""
    return await service.get_user_statistics()


@router.post("/status", response_model=BulkOperationResult)
async def bulk_update_status(
    body: UserStatusUpdate,
    admin: AuthenticatedUser = Depends(require_permission("user:update")),
    service: UserAdminService = Depends(get_user_admin_service),
):
    """
    Activate or deactivate several users; each succeeds or fails on its own.

    Requires user:update. Superusers cannot be deactivated.
    """
    logger.info(
        f"Admin {admin.user_id} setting isActive={body.is_active} on {len(body.user_ids)} user(s)"
    )
    return await service.bulk_update_status(body.user_ids, body.is_active, admin.user_id)


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: str,
    admin: AuthenticatedUser = Depends(require_permission("user:read")),
    service: UserAdminService = Depends(get_user_admin_service),
):
    """
    Get a user with its roles.

    Requires user:read.

    Raises:
        HTTPException: 404 if user not found
    """
    try:
        return UserResponse.from_snapshot(await service.get_user(user_id))
    except RbacError as e:
        raise to_http_exception(e)


@router.post("/", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    user_data: UserCreate,
    admin: AuthenticatedUser = Depends(require_permission("user:create")),
    service: UserAdminService = Depends(get_user_admin_service),
):
    """
    Register a user with an initial set of roles.

    Requires user:create.

    Raises:
        HTTPException:
            - 409 if the id, email or username is taken
            - 422 if a role id is unknown
    """
    logger.info(f"Admin {admin.user_id} creating user: {user_data.user_id}")

    try:
        return UserResponse.from_snapshot(await service.create_user(user_data, admin.user_id))
    except RbacError as e:
        raise to_http_exception(e)


@router.patch("/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: str,
    updates: UserUpdate,
    admin: AuthenticatedUser = Depends(require_permission("user:update")),
    service: UserAdminService = Depends(get_user_admin_service),
):
    """
    Update a user's profile, superuser and active flags, or roles.

    Requires user:update.

    Raises:
        HTTPException:
            - 404 if user not found
            - 409 if the new email or username is taken
            - 422 if a role id is unknown
    """
    logger.info(f"Admin {admin.user_id} updating user: {user_id}")

    try:
        return UserResponse.from_snapshot(await service.update_user(user_id, updates, admin.user_id))
    except RbacError as e:
        raise to_http_exception(e)


@router.put("/{user_id}/roles", response_model=UserResponse)
async def set_user_roles(
    user_id: str,
    body: UserRolesUpdate,
    admin: AuthenticatedUser = Depends(require_permission("user:update")),
    service: UserAdminService = Depends(get_user_admin_service),
):
    """Replace every role assignment of a user in one transaction. Requires user:update."""
    try:
        snapshot = await service.update_user_roles(user_id, body.role_ids, admin.user_id)
        return UserResponse.from_snapshot(snapshot)
    except RbacError as e:
        raise to_http_exception(e)


@router.get("/{user_id}/has-role", response_model=UserRoleCheck)
async def user_has_role(
    user_id: str,
    name: str = Query(..., description="Role name"),
    admin: AuthenticatedUser = Depends(require_permission("user:read")),
    service: UserAdminService = Depends(get_user_admin_service),
):
    """Whether a user holds a role by name. Requires user:read."""
    return UserRoleCheck(
        user_id=user_id,
        role_name=name,
        has_role=await service.user_has_role(user_id, name),
    )
