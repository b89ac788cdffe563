"""Admin service for role management operations."""

import logging
import uuid
from typing import Iterable, List, Optional, Tuple

from rolegate.shared.audit import AuditAction, AuditLogger, get_audit_logger, record_audit
from rolegate.shared.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RbacError,
    RbacValidationError,
    StoreError,
)

from .cache import PermissionCache, get_permission_cache
from .models import (
    BulkOperationResult,
    MenuPermissionEntry,
    Pagination,
    PermissionCheckResult,
    Role,
    RoleClone,
    RoleCreate,
    RoleDetails,
    RoleFilter,
    RoleMenuPermissions,
    RolePermission,
    RoleStatistics,
    RoleSummary,
    RoleUpdate,
    RoleUsage,
    User,
    UserRole,
    utc_now_iso,
)
from .service import check_roles
from .store import RbacStore, UnitOfWork, get_rbac_store

logger = logging.getLogger(__name__)

_SORT_FIELDS = {"name": "name", "createdAt": "created_at", "updatedAt": "updated_at"}


class RoleAdminService:
    """
    Service for administrative operations on roles.

    Handles:
    - CRUD operations for roles and their permission sets
    - Cloning and bulk deletion
    - User assignment
    - System role protection
    - Cache invalidation on updates
    """

    def __init__(
        self,
        store: Optional[RbacStore] = None,
        cache: Optional[PermissionCache] = None,
        audit: Optional[AuditLogger] = None,
    ):
        """Initialize admin service with store, cache and audit sink."""
        self.store = store or get_rbac_store()
        self.cache = cache or get_permission_cache()
        self.audit = audit or get_audit_logger()

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_role(self, role_id: str) -> RoleDetails:
        """Get a role with its permissions and user count."""
        details = await self.store.find_role_with_permissions(role_id)
        if not details:
            raise NotFoundError(f"Role '{role_id}' not found", details={"roleId": role_id})
        return details

    async def list_roles(
        self,
        role_filter: Optional[RoleFilter] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[RoleDetails], Pagination]:
        """
        List roles with filtering, sorting and pagination.

        Args:
            role_filter: Optional search / is_system / has_users filter and sort
            page: 1-based page number
            limit: Page size

        Returns:
            Tuple of (roles on the requested page, pagination metadata)
        """
        role_filter = role_filter or RoleFilter()
        all_details = await self._all_role_details()

        if role_filter.search:
            needle = role_filter.search.lower()
            all_details = [
                d for d in all_details
                if needle in d.role.name.lower() or needle in d.role.description.lower()
            ]
        if role_filter.is_system is not None:
            all_details = [d for d in all_details if d.role.is_system == role_filter.is_system]
        if role_filter.has_users is not None:
            all_details = [
                d for d in all_details if (d.user_count > 0) == role_filter.has_users
            ]

        sort_attr = _SORT_FIELDS[role_filter.sort_by]
        all_details.sort(
            key=lambda d: getattr(d.role, sort_attr),
            reverse=role_filter.sort_order == "desc",
        )

        start = (page - 1) * limit
        return all_details[start:start + limit], Pagination.build(page, limit, len(all_details))

    async def get_role_users(
        self, role_id: str, page: int = 1, limit: int = 20
    ) -> Tuple[List[User], Pagination]:
        """Users assigned to a role, ordered by username."""
        await self._require_role(role_id)

        users = []
        for user_id in await self.store.list_role_user_ids(role_id):
            user = await self.store.get_user(user_id)
            if user:
                users.append(user)
        users.sort(key=lambda u: (u.username, u.user_id))

        start = (page - 1) * limit
        return users[start:start + limit], Pagination.build(page, limit, len(users))

    async def get_role_statistics(self) -> RoleStatistics:
        """Aggregate counts over all roles."""
        all_details = await self._all_role_details()
        total = len(all_details)
        system = sum(1 for d in all_details if d.role.is_system)
        with_users = sum(1 for d in all_details if d.user_count > 0)
        permission_total = sum(len(d.permissions) for d in all_details)

        most_used = sorted(all_details, key=lambda d: (-d.user_count, d.role.name))[:5]

        return RoleStatistics(
            total=total,
            system=system,
            custom=total - system,
            with_users=with_users,
            without_users=total - with_users,
            avg_permissions_per_role=round(permission_total / total, 1) if total else 0.0,
            most_used_roles=[
                RoleUsage(role_id=d.role.role_id, name=d.role.name, user_count=d.user_count)
                for d in most_used
            ],
        )

    async def get_role_hierarchy(self) -> List[RoleSummary]:
        """All roles with counts, system roles first, then by name."""
        summaries = [
            RoleSummary(
                role_id=d.role.role_id,
                name=d.role.name,
                description=d.role.description,
                is_system=d.role.is_system,
                permission_count=len(d.permissions),
                user_count=d.user_count,
            )
            for d in await self._all_role_details()
        ]
        summaries.sort(key=lambda s: (not s.is_system, s.name))
        return summaries

    async def check_role_permission(self, role_id: str, name: str) -> PermissionCheckResult:
        """
        Check one permission against a single role, wildcards included.

        The reason is `role:<name>` or `role:<name>(wildcard)` when granted.
        """
        details = await self.get_role(role_id)
        return check_roles(False, [details], name)

    async def role_has_permission(self, role_id: str, name: str) -> bool:
        """Check whether a role grants a permission, wildcards included."""
        return (await self.check_role_permission(role_id, name)).granted

    async def get_role_menu_permissions(self, role_id: str) -> RoleMenuPermissions:
        role = await self._require_role(role_id)
        records = await self.store.find_menu_permissions(role_ids=[role_id])
        records.sort(key=lambda r: r.menu_id)
        return RoleMenuPermissions(
            role_id=role_id,
            menu_permissions=[MenuPermissionEntry.from_record(r, role.name) for r in records],
        )

    # =========================================================================
    # CRUD Operations
    # =========================================================================

    async def create_role(self, data: RoleCreate, actor_id: Optional[str]) -> RoleDetails:
        """
        Create a new role with an initial permission set.

        Args:
            data: Role creation data
            actor_id: User performing the action

        Returns:
            Created role details

        Raises:
            ConflictError: If a role with the same name exists
            RbacValidationError: If any permission id is unknown
        """
        name = data.name.strip()
        await self._ensure_name_available(name)
        permission_ids = await self._validate_permission_ids(data.permission_ids)

        now = utc_now_iso()
        role = Role(
            role_id=str(uuid.uuid4()),
            name=name,
            description=data.description,
            is_system=data.is_system,
            created_at=now,
            updated_at=now,
            created_by=actor_id,
        )

        async with self.store.transaction() as uow:
            uow.put_role(role)
            for permission_id in permission_ids:
                uow.put_role_permission(
                    RolePermission(role.role_id, permission_id, granted_by=actor_id, granted_at=now)
                )

        logger.info(
            f"Admin {actor_id} created role: {role.name}",
            extra={
                "event": "role_created",
                "role_id": role.role_id,
                "admin_user_id": actor_id,
                "permission_count": len(permission_ids),
            },
        )
        record_audit(
            self.audit, actor_id, AuditAction.ROLE_CREATED, "role", role.role_id,
            {"name": role.name, "permissionIds": permission_ids},
        )

        return await self.get_role(role.role_id)

    async def update_role(
        self, role_id: str, data: RoleUpdate, actor_id: Optional[str]
    ) -> RoleDetails:
        """
        Update a role's name, description and/or permission set.

        System roles may be renamed and have their permissions edited; only
        deletion is refused for them.

        Raises:
            NotFoundError: If the role does not exist
            ConflictError: If the new name collides with another role
            RbacValidationError: If any permission id is unknown
        """
        role = await self._require_role(role_id)
        changes = data.model_dump(exclude_unset=True)

        if data.name is not None:
            name = data.name.strip()
            if name != role.name:
                await self._ensure_name_available(name)
                role.name = name
        if data.description is not None:
            role.description = data.description

        permission_ids = None
        if data.permission_ids is not None:
            permission_ids = await self._validate_permission_ids(data.permission_ids)

        role.updated_at = utc_now_iso()

        async with self.store.transaction() as uow:
            uow.put_role(role)
            if permission_ids is not None:
                await self._replace_permissions(uow, role_id, permission_ids, actor_id)

        await self._invalidate_role_users(role_id)

        logger.info(
            f"Admin {actor_id} updated role: {role_id}",
            extra={
                "event": "role_updated",
                "role_id": role_id,
                "admin_user_id": actor_id,
                "changes": list(changes.keys()),
            },
        )
        record_audit(
            self.audit, actor_id, AuditAction.ROLE_UPDATED, "role", role_id,
            {"changes": list(changes.keys())},
        )

        return await self.get_role(role_id)

    async def update_role_permissions(
        self,
        role_id: str,
        add: Iterable[str],
        remove: Iterable[str],
        actor_id: Optional[str],
    ) -> RoleDetails:
        """Add and remove permissions, then replace the set atomically."""
        await self._require_role(role_id)
        add, remove = list(add), set(remove)

        current = [link.permission_id for link in await self.store.list_role_permission_links(role_id)]
        desired = [pid for pid in dict.fromkeys(current + add) if pid not in remove]
        permission_ids = await self._validate_permission_ids(desired)

        async with self.store.transaction() as uow:
            await self._replace_permissions(uow, role_id, permission_ids, actor_id)

        await self._invalidate_role_users(role_id)

        logger.info(
            f"Admin {actor_id} updated permissions of role: {role_id}",
            extra={
                "event": "role_permissions_updated",
                "role_id": role_id,
                "admin_user_id": actor_id,
                "added": add,
                "removed": sorted(remove),
            },
        )
        record_audit(
            self.audit, actor_id, AuditAction.ROLE_PERMISSIONS_UPDATED, "role", role_id,
            {"added": add, "removed": sorted(remove)},
        )

        return await self.get_role(role_id)

    async def delete_role(self, role_id: str, actor_id: Optional[str]) -> None:
        """
        Delete a role with its permission links and menu permissions.

        Raises:
            NotFoundError: If the role does not exist
            ForbiddenError: If the role is a system role or still has users
        """
        role = await self._require_role(role_id)

        if role.is_system:
            raise ForbiddenError(
                f"Cannot delete system role '{role.name}'", details={"roleId": role_id}
            )

        user_count = await self.store.count_role_users(role_id)
        if user_count > 0:
            raise ForbiddenError(
                f"Cannot delete role '{role.name}': it is assigned to {user_count} user(s)",
                details={"roleId": role_id, "userCount": user_count},
            )

        links = await self.store.list_role_permission_links(role_id)
        menu_records = await self.store.find_menu_permissions(role_ids=[role_id])

        async with self.store.transaction() as uow:
            for link in links:
                uow.delete_role_permission(role_id, link.permission_id)
            for record in menu_records:
                uow.delete_menu_permission(record.menu_id, role_id)
            uow.delete_role(role_id)

        logger.info(
            f"Admin {actor_id} deleted role: {role_id}",
            extra={
                "event": "role_deleted",
                "role_id": role_id,
                "admin_user_id": actor_id,
            },
        )
        record_audit(
            self.audit, actor_id, AuditAction.ROLE_DELETED, "role", role_id,
            {"name": role.name},
        )

    async def clone_role(
        self, source_role_id: str, data: RoleClone, actor_id: Optional[str]
    ) -> RoleDetails:
        """
        Create a new non-system role from an existing one.

        Args:
            source_role_id: Role to copy from
            data: New name and which grants to copy
            actor_id: User performing the action

        Raises:
            NotFoundError: If the source role does not exist
            ConflictError: If the new name is taken
        """
        source = await self._require_role(source_role_id)
        name = data.new_role_name.strip()
        await self._ensure_name_available(name)

        links = await self.store.list_role_permission_links(source_role_id) if data.include_permissions else []
        menu_records = (
            await self.store.find_menu_permissions(role_ids=[source_role_id])
            if data.include_menu_permissions else []
        )

        now = utc_now_iso()
        role = Role(
            role_id=str(uuid.uuid4()),
            name=name,
            description=data.description if data.description is not None else f"Cloned from {source.name}",
            is_system=False,
            created_at=now,
            updated_at=now,
            created_by=actor_id,
        )

        async with self.store.transaction() as uow:
            uow.put_role(role)
            for link in links:
                uow.put_role_permission(
                    RolePermission(role.role_id, link.permission_id, granted_by=actor_id, granted_at=now)
                )
            for record in menu_records:
                record.role_id = role.role_id
                uow.put_menu_permission(record)

        logger.info(
            f"Admin {actor_id} cloned role {source_role_id} as {role.name}",
            extra={
                "event": "role_cloned",
                "role_id": role.role_id,
                "source_role_id": source_role_id,
                "admin_user_id": actor_id,
            },
        )
        record_audit(
            self.audit, actor_id, AuditAction.ROLE_CLONED, "role", role.role_id,
            {
                "sourceRoleId": source_role_id,
                "includePermissions": data.include_permissions,
                "includeMenuPermissions": data.include_menu_permissions,
            },
        )

        return await self.get_role(role.role_id)

    async def bulk_delete_roles(
        self, role_ids: Iterable[str], actor_id: Optional[str]
    ) -> BulkOperationResult:
        """Delete each role independently; one failure never blocks the rest."""
        result = BulkOperationResult()
        for role_id in dict.fromkeys(role_ids):
            try:
                await self.delete_role(role_id, actor_id)
                result.success.append(role_id)
            except RbacError as e:
                logger.warning(f"Bulk delete skipped role {role_id}: {e.message}")
                result.add_failure(role_id, e.message)
            except StoreError as e:
                logger.error(f"Bulk delete failed for role {role_id}: {e}")
                result.add_failure(role_id, str(e))
        return result

    # =========================================================================
    # User Assignment
    # =========================================================================

    async def assign_users_to_role(
        self, role_id: str, user_ids: Iterable[str], actor_id: Optional[str]
    ) -> BulkOperationResult:
        """
        Assign users to a role, one transaction per user.

        Raises:
            NotFoundError: If the role does not exist
        """
        await self._require_role(role_id)
        assigned = set(await self.store.list_role_user_ids(role_id))
        result = BulkOperationResult()

        for user_id in dict.fromkeys(user_ids):
            if user_id in assigned:
                result.add_failure(user_id, "User already has this role")
                continue
            if not await self.store.get_user(user_id):
                result.add_failure(user_id, "User not found")
                continue
            try:
                async with self.store.transaction() as uow:
                    uow.put_user_role(
                        UserRole(user_id, role_id, assigned_by=actor_id, assigned_at=utc_now_iso())
                    )
                result.success.append(user_id)
                assigned.add(user_id)
            except StoreError as e:
                logger.error(f"Failed to assign user {user_id} to role {role_id}: {e}")
                result.add_failure(user_id, str(e))

        await self.cache.invalidate_users(result.success)

        logger.info(
            f"Admin {actor_id} assigned {len(result.success)} user(s) to role {role_id}",
            extra={
                "event": "role_users_assigned",
                "role_id": role_id,
                "admin_user_id": actor_id,
                "assigned": len(result.success),
                "failed": len(result.failed),
            },
        )
        record_audit(
            self.audit, actor_id, AuditAction.USERS_ASSIGNED_TO_ROLE, "role", role_id,
            {"userIds": result.success, "failed": result.failed_ids},
        )
        return result

    async def remove_users_from_role(
        self, role_id: str, user_ids: Iterable[str], actor_id: Optional[str]
    ) -> BulkOperationResult:
        """
        Remove users from a role, one transaction per user.

        Raises:
            NotFoundError: If the role does not exist
        """
        await self._require_role(role_id)
        assigned = set(await self.store.list_role_user_ids(role_id))
        result = BulkOperationResult()

        for user_id in dict.fromkeys(user_ids):
            if user_id not in assigned:
                result.add_failure(user_id, "User does not have this role")
                continue
            try:
                async with self.store.transaction() as uow:
                    uow.delete_user_role(user_id, role_id)
                result.success.append(user_id)
                assigned.discard(user_id)
            except StoreError as e:
                logger.error(f"Failed to remove user {user_id} from role {role_id}: {e}")
                result.add_failure(user_id, str(e))

        await self.cache.invalidate_users(result.success)

        logger.info(
            f"Admin {actor_id} removed {len(result.success)} user(s) from role {role_id}",
            extra={
                "event": "role_users_removed",
                "role_id": role_id,
                "admin_user_id": actor_id,
                "removed": len(result.success),
                "failed": len(result.failed),
            },
        )
        record_audit(
            self.audit, actor_id, AuditAction.USERS_REMOVED_FROM_ROLE, "role", role_id,
            {"userIds": result.success, "failed": result.failed_ids},
        )
        return result

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _require_role(self, role_id: str) -> Role:
        role = await self.store.get_role(role_id)
        if not role:
            raise NotFoundError(f"Role '{role_id}' not found", details={"roleId": role_id})
        return role

    async def _all_role_details(self) -> List[RoleDetails]:
        all_details = []
        for role in await self.store.list_roles():
            details = await self.store.find_role_with_permissions(role.role_id)
            if details:
                all_details.append(details)
        return all_details

    async def _ensure_name_available(self, name: str) -> None:
        if not name:
            raise RbacValidationError("Role name is required", field="name")
        if await self.store.get_role_by_name(name):
            raise ConflictError(
                f"Role with name '{name}' already exists", details={"name": name}, field="name"
            )

    async def _validate_permission_ids(self, permission_ids: Iterable[str]) -> List[str]:
        """Deduplicate ids and fail if any is unknown."""
        ids = list(dict.fromkeys(permission_ids))
        found = {p.permission_id for p in await self.store.find_permissions_by_ids(ids)}
        invalid = [pid for pid in ids if pid not in found]
        if invalid:
            raise RbacValidationError(
                f"Invalid permission IDs: {', '.join(invalid)}",
                details={"invalidIds": invalid},
                field="permissionIds",
            )
        return ids

    async def _replace_permissions(
        self,
        uow: UnitOfWork,
        role_id: str,
        permission_ids: List[str],
        actor_id: Optional[str],
    ) -> None:
        """Stage the writes that make the role's permission set exactly permission_ids."""
        current = {
            link.permission_id for link in await self.store.list_role_permission_links(role_id)
        }
        desired = set(permission_ids)
        now = utc_now_iso()

        for permission_id in current - desired:
            uow.delete_role_permission(role_id, permission_id)
        for permission_id in permission_ids:
            if permission_id not in current:
                uow.put_role_permission(
                    RolePermission(role_id, permission_id, granted_by=actor_id, granted_at=now)
                )

    async def _invalidate_role_users(self, role_id: str) -> None:
        await self.cache.invalidate_users(await self.store.list_role_user_ids(role_id))


# Global service instance
_admin_service_instance: Optional[RoleAdminService] = None


def get_role_admin_service() -> RoleAdminService:
    """Get or create the global RoleAdminService instance."""
    global _admin_service_instance
    if _admin_service_instance is None:
        _admin_service_instance = RoleAdminService()
    return _admin_service_instance
