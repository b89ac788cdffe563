"""Admin API routes for the menu tree and menu permissions."""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, status

from rolegate.app_api.errors import to_http_exception
from rolegate.shared.auth import AuthenticatedUser
from rolegate.shared.errors import RbacError
from rolegate.shared.rbac.menu_access import MenuPermissionService, get_menu_permission_service
from rolegate.shared.rbac.menu_tree import MenuTreeService, get_menu_tree_service
from rolegate.shared.rbac.models import (
    BatchMenuPermissionUpdate,
    BulkOperationResult,
    MenuCreate,
    MenuDetailResponse,
    MenuFilter,
    MenuMove,
    MenuNode,
    MenuPermissionEntry,
    MenuPermissionMatrixRow,
    MenuPermissionSet,
    MenuReorderItem,
    MenuResponse,
    MenuTreeStatistics,
    MenuUpdate,
)
from rolegate.shared.rbac.system_admin import require_any_permission, require_permission

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/menus", tags=["admin-menus"])


# =============================================================================
# Tree-wide views
# =============================================================================


@router.get("/tree", response_model=List[MenuNode])
async def get_complete_menu_tree(
    request: Request,
    search: Optional[str] = Query(None, description="Match on title or href"),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    admin: AuthenticatedUser = Depends(require_permission("menu:read")),
    service: MenuPermissionService = Depends(get_menu_permission_service),
):
    """
    The whole menu tree, optionally filtered.

    Passing parentId scopes the result to that parent's children; an empty
    parentId selects top-level menus. Requires menu:read.
    """
    scope = {}
    if "parentId" in request.query_params:
        scope["parent_id"] = request.query_params["parentId"] or None

    menu_filter = MenuFilter(search=search, is_active=is_active, **scope)
    return await service.build_complete_menu_tree(menu_filter)


@router.get("/statistics", response_model=MenuTreeStatistics)
async def get_menu_tree_statistics(
    admin: AuthenticatedUser = Depends(require_permission("menu:read")),
    service: MenuPermissionService = Depends(get_menu_permission_service),
):
    """Menu counts, depth and branching. Requires menu:read."""
    return await service.get_menu_tree_statistics()


@router.get("/matrix", response_model=List[MenuPermissionMatrixRow])
async def get_menu_permission_matrix(
    admin: AuthenticatedUser = Depends(require_any_permission(["menu:read", "role:read"])),
    service: MenuPermissionService = Depends(get_menu_permission_service),
):
    """Every role with its flags per menu. Requires menu:read or role:read."""
    return await service.get_menu_permission_matrix()


@router.post("/reorder", response_model=List[MenuResponse])
async def reorder_menus(
    items: List[MenuReorderItem],
    admin: AuthenticatedUser = Depends(require_permission("menu:update")),
    service: MenuTreeService = Depends(get_menu_tree_service),
):
    """
    Set order_index on several menus at once.

    Requires menu:update.

    Raises:
        HTTPException: 404 if any menu id is unknown (nothing is changed)
    """
    try:
        menus = await service.reorder_menus(items, admin.user_id)
    except RbacError as e:
        raise to_http_exception(e)
    return [MenuResponse.from_menu(m) for m in menus]


# =============================================================================
# Role grants
# =============================================================================


@router.put("/roles/{role_id}/permissions", response_model=BulkOperationResult)
async def update_role_menu_permissions(
    role_id: str,
    body: BatchMenuPermissionUpdate,
    admin: AuthenticatedUser = Depends(require_permission("menu:update")),
    service: MenuPermissionService = Depends(get_menu_permission_service),
):
    """
    Batch-update a role's menu grants, optionally cascading to children.

    Requires menu:update. Unknown menus are reported in the failed list.

    Raises:
        HTTPException: 404 if role not found
    """
    logger.info(
        f"Admin {admin.user_id} updating {len(body.permissions)} menu grant(s) for role {role_id}"
    )

    try:
        return await service.update_role_menu_permissions(
            role_id, body.permissions, body.apply_to_children, admin.user_id
        )
    except RbacError as e:
        raise to_http_exception(e)


@router.delete("/roles/{role_id}/permissions", response_model=Dict[str, int])
async def remove_all_role_menu_permissions(
    role_id: str,
    admin: AuthenticatedUser = Depends(require_permission("menu:delete")),
    service: MenuPermissionService = Depends(get_menu_permission_service),
):
    """Remove every menu grant of a role. Requires menu:delete."""
    try:
        removed = await service.remove_all_role_menu_permissions(role_id, admin.user_id)
    except RbacError as e:
        raise to_http_exception(e)
    return {"removed": removed}


# =============================================================================
# Single menu
# =============================================================================


@router.post("/", response_model=MenuResponse, status_code=status.HTTP_201_CREATED)
async def create_menu(
    body: MenuCreate,
    admin: AuthenticatedUser = Depends(require_permission("menu:create")),
    service: MenuTreeService = Depends(get_menu_tree_service),
):
    """
    Create a menu node.

    Requires menu:create.

    Raises:
        HTTPException:
            - 404 if the parent does not exist
            - 409 if the id is taken
    """
    logger.info(f"Admin {admin.user_id} creating menu: {body.menu_id}")

    try:
        return MenuResponse.from_menu(await service.create_menu(body, admin.user_id))
    except RbacError as e:
        raise to_http_exception(e)


@router.get("/{menu_id}", response_model=MenuDetailResponse)
async def get_menu(
    menu_id: str,
    admin: AuthenticatedUser = Depends(require_permission("menu:read")),
    service: MenuTreeService = Depends(get_menu_tree_service),
):
    """Menu with its parent and direct children. Requires menu:read."""
    try:
        return await service.get_menu(menu_id)
    except RbacError as e:
        raise to_http_exception(e)


@router.get("/{menu_id}/path", response_model=Dict[str, str])
async def get_menu_path(
    menu_id: str,
    admin: AuthenticatedUser = Depends(require_permission("menu:read")),
    service: MenuTreeService = Depends(get_menu_tree_service),
):
    """Breadcrumb of titles from the root to the menu. Requires menu:read."""
    try:
        return {"menuId": menu_id, "path": await service.get_menu_path(menu_id)}
    except RbacError as e:
        raise to_http_exception(e)


@router.get("/{menu_id}/descendants", response_model=List[MenuResponse])
async def get_menu_descendants(
    menu_id: str,
    admin: AuthenticatedUser = Depends(require_permission("menu:read")),
    service: MenuTreeService = Depends(get_menu_tree_service),
):
    """Every menu below this one, breadth first. Requires menu:read."""
    try:
        return [MenuResponse.from_menu(m) for m in await service.get_descendants(menu_id)]
    except RbacError as e:
        raise to_http_exception(e)


@router.patch("/{menu_id}", response_model=MenuResponse)
async def update_menu(
    menu_id: str,
    body: MenuUpdate,
    admin: AuthenticatedUser = Depends(require_permission("menu:update")),
    service: MenuTreeService = Depends(get_menu_tree_service),
):
    """
    Update menu fields.

    Requires menu:update. A parentId change follows the same rules as move.
    """
    try:
        return MenuResponse.from_menu(await service.update_menu(menu_id, body, admin.user_id))
    except RbacError as e:
        raise to_http_exception(e)


@router.post("/{menu_id}/move", response_model=MenuResponse)
async def move_menu(
    menu_id: str,
    body: MenuMove,
    admin: AuthenticatedUser = Depends(require_permission("menu:update")),
    service: MenuTreeService = Depends(get_menu_tree_service),
):
    """
    Move a menu under a new parent (null for the root).

    Requires menu:update.

    Raises:
        HTTPException:
            - 404 if the menu or new parent does not exist
            - 422 if the new parent is inside the menu's own subtree
    """
    logger.info(f"Admin {admin.user_id} moving menu {menu_id} under {body.new_parent_id}")

    try:
        return MenuResponse.from_menu(
            await service.move_menu(menu_id, body.new_parent_id, admin.user_id)
        )
    except RbacError as e:
        raise to_http_exception(e)


@router.delete("/{menu_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_menu(
    menu_id: str,
    admin: AuthenticatedUser = Depends(require_permission("menu:delete")),
    service: MenuTreeService = Depends(get_menu_tree_service),
):
    """
    Delete a leaf menu and its grants.

    Requires menu:delete.

    Raises:
        HTTPException: 422 if the menu has children
    """
    logger.info(f"Admin {admin.user_id} deleting menu: {menu_id}")

    try:
        await service.delete_menu(menu_id, admin.user_id)
    except RbacError as e:
        raise to_http_exception(e)


@router.get("/{menu_id}/permissions", response_model=List[MenuPermissionEntry])
async def get_menu_permissions(
    menu_id: str,
    admin: AuthenticatedUser = Depends(require_permission("menu:read")),
    service: MenuPermissionService = Depends(get_menu_permission_service),
):
    """Role grants on one menu. Requires menu:read."""
    try:
        return await service.get_menu_permissions(menu_id)
    except RbacError as e:
        raise to_http_exception(e)


@router.put("/{menu_id}/permissions/{role_id}", response_model=MenuPermissionEntry)
async def set_menu_permission(
    menu_id: str,
    role_id: str,
    body: MenuPermissionSet,
    admin: AuthenticatedUser = Depends(require_permission("menu:update")),
    service: MenuPermissionService = Depends(get_menu_permission_service),
):
    """
    Replace one role's flags on a menu.

    Requires menu:update. At least one flag must be true.
    """
    try:
        return await service.set_menu_permission(role_id, menu_id, body, admin.user_id)
    except RbacError as e:
        raise to_http_exception(e)
