"""Admin service for permission definitions."""

import logging
import uuid
from typing import List, Optional, Tuple

from rolegate.shared.audit import AuditAction, AuditLogger, get_audit_logger, record_audit
from rolegate.shared.errors import ConflictError, ForbiddenError, NotFoundError

from .cache import PermissionCache, get_permission_cache
from .models import (
    Pagination,
    Permission,
    PermissionCreate,
    PermissionDetailResponse,
    PermissionFilter,
    PermissionUpdate,
    RoleRef,
    parse_permission_name,
    utc_now_iso,
)
from .store import RbacStore, get_rbac_store

logger = logging.getLogger(__name__)


class PermissionAdminService:
    """Create, list, rename and delete `resource:action` permissions."""

    def __init__(
        self,
        store: Optional[RbacStore] = None,
        cache: Optional[PermissionCache] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.store = store or get_rbac_store()
        self.cache = cache or get_permission_cache()
        self.audit = audit or get_audit_logger()

    async def get_permission(self, permission_id: str) -> Permission:
        permission = await self.store.get_permission(permission_id)
        if not permission:
            raise NotFoundError(
                f"Permission '{permission_id}' not found",
                details={"permissionId": permission_id},
            )
        return permission

    async def get_permission_details(self, permission_id: str) -> PermissionDetailResponse:
        """Permission with the roles that grant it."""
        permission = await self.get_permission(permission_id)

        roles = []
        for role_id in await self.store.list_permission_role_ids(permission_id):
            role = await self.store.get_role(role_id)
            if role:
                roles.append(RoleRef(role_id=role.role_id, name=role.name))
        roles.sort(key=lambda r: r.name)

        response = PermissionDetailResponse.from_permission(permission)
        response.roles = roles
        return response

    async def list_permissions(
        self,
        permission_filter: Optional[PermissionFilter] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[Permission], Pagination]:
        """List permissions ordered by name, filtered by resource, action or search text."""
        permissions = await self.store.list_permissions()

        if permission_filter:
            if permission_filter.resource:
                permissions = [p for p in permissions if p.resource == permission_filter.resource]
            if permission_filter.action:
                permissions = [p for p in permissions if p.action == permission_filter.action]
            if permission_filter.search:
                needle = permission_filter.search.lower()
                permissions = [
                    p for p in permissions
                    if needle in p.name.lower() or needle in (p.description or "").lower()
                ]

        start = (page - 1) * limit
        return permissions[start:start + limit], Pagination.build(page, limit, len(permissions))

    async def create_permission(
        self, data: PermissionCreate, actor_id: Optional[str]
    ) -> Permission:
        """
        Create a permission from a name or a resource/action pair.

        Raises:
            RbacValidationError: If the name is malformed or disagrees with resource/action
            ConflictError: If the name already exists
        """
        now = utc_now_iso()
        permission = Permission(
            permission_id=str(uuid.uuid4()),
            name=(data.name or "").strip(),
            resource=(data.resource or "").strip(),
            action=(data.action or "").strip(),
            description=data.description,
            created_at=now,
            updated_at=now,
        )
        await self._ensure_name_available(permission.name)

        async with self.store.transaction() as uow:
            uow.put_permission(permission)

        logger.info(
            f"Admin {actor_id} created permission: {permission.name}",
            extra={
                "event": "permission_created",
                "permission_id": permission.permission_id,
                "admin_user_id": actor_id,
            },
        )
        record_audit(
            self.audit, actor_id, AuditAction.PERMISSION_CREATED, "permission",
            permission.permission_id, {"name": permission.name},
        )
        return permission

    async def update_permission(
        self, permission_id: str, data: PermissionUpdate, actor_id: Optional[str]
    ) -> Permission:
        """
        Update a permission's description or rename it.

        A rename re-derives resource and action from the new name.
        """
        permission = await self.get_permission(permission_id)
        changes = data.model_dump(exclude_unset=True)

        if data.name is not None and data.name.strip() != permission.name:
            name = data.name.strip()
            resource, action = parse_permission_name(name)
            await self._ensure_name_available(name)
            permission.name, permission.resource, permission.action = name, resource, action
        if data.description is not None:
            permission.description = data.description
        permission.updated_at = utc_now_iso()

        async with self.store.transaction() as uow:
            uow.put_permission(permission)

        if "name" in changes:
            await self.cache.invalidate_all()

        logger.info(
            f"Admin {actor_id} updated permission: {permission_id}",
            extra={
                "event": "permission_updated",
                "permission_id": permission_id,
                "admin_user_id": actor_id,
                "changes": list(changes.keys()),
            },
        )
        record_audit(
            self.audit, actor_id, AuditAction.PERMISSION_UPDATED, "permission",
            permission_id, {"changes": list(changes.keys())},
        )
        return permission

    async def delete_permission(self, permission_id: str, actor_id: Optional[str]) -> None:
        """
        Delete a permission that no role grants.

        Raises:
            NotFoundError: If the permission does not exist
            ForbiddenError: If any role still grants it
        """
        permission = await self.get_permission(permission_id)

        role_count = await self.store.count_permission_roles(permission_id)
        if role_count > 0:
            raise ForbiddenError(
                f"Cannot delete permission '{permission.name}': "
                f"it is assigned to {role_count} role(s)",
                details={"permissionId": permission_id, "roleCount": role_count},
            )

        async with self.store.transaction() as uow:
            uow.delete_permission(permission_id)

        logger.info(
            f"Admin {actor_id} deleted permission: {permission.name}",
            extra={
                "event": "permission_deleted",
                "permission_id": permission_id,
                "admin_user_id": actor_id,
            },
        )
        record_audit(
            self.audit, actor_id, AuditAction.PERMISSION_DELETED, "permission",
            permission_id, {"name": permission.name},
        )

    async def _ensure_name_available(self, name: str) -> None:
        if await self.store.get_permission_by_name(name):
            raise ConflictError(
                f"Permission '{name}' already exists", details={"name": name}, field="name"
            )


# Global service instance
_permission_admin_instance: Optional[PermissionAdminService] = None


def get_permission_admin_service() -> PermissionAdminService:
    """Get or create the global PermissionAdminService instance."""
    global _permission_admin_instance
    if _permission_admin_instance is None:
        _permission_admin_instance = PermissionAdminService()
    return _permission_admin_instance
