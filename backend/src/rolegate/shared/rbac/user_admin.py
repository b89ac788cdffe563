"""Admin service for user management operations."""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from rolegate.shared.audit import AuditAction, AuditLogger, get_audit_logger, record_audit
from rolegate.shared.errors import ConflictError, NotFoundError, RbacValidationError, StoreError

from .cache import PermissionCache, get_permission_cache
from .models import (
    BulkOperationResult,
    Pagination,
    User,
    UserCreate,
    UserFilter,
    UserRole,
    UserStatistics,
    UserUpdate,
    UserWithRoles,
    utc_now_iso,
)
from .store import RbacStore, UnitOfWork, get_rbac_store

logger = logging.getLogger(__name__)


class UserAdminService:
    """
    Service for administrative operations on users.

    Users are created by the identity provider or through this service; it
    owns their superuser and active flags and their role assignments.
    """

    def __init__(
        self,
        store: Optional[RbacStore] = None,
        cache: Optional[PermissionCache] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.store = store or get_rbac_store()
        self.cache = cache or get_permission_cache()
        self.audit = audit or get_audit_logger()

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_user(self, user_id: str) -> UserWithRoles:
        """Get a user with its roles in assignment order."""
        snapshot = await self.store.find_user_with_roles(user_id)
        if not snapshot:
            raise NotFoundError(f"User '{user_id}' not found", details={"userId": user_id})
        return snapshot

    async def list_users(
        self,
        user_filter: Optional[UserFilter] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[UserWithRoles], Pagination]:
        """
        List users with filtering and pagination, ordered by username.

        Args:
            user_filter: Optional search / is_active / is_superuser / role_id filter
            page: 1-based page number
            limit: Page size

        Returns:
            Tuple of (users on the requested page, pagination metadata)
        """
        user_filter = user_filter or UserFilter()
        users = await self.store.list_users()

        if user_filter.search:
            needle = user_filter.search.lower()
            users = [
                u for u in users
                if needle in u.email.lower()
                or needle in u.username.lower()
                or needle in u.user_id.lower()
            ]
        if user_filter.is_active is not None:
            users = [u for u in users if u.is_active == user_filter.is_active]
        if user_filter.is_superuser is not None:
            users = [u for u in users if u.is_superuser == user_filter.is_superuser]
        if user_filter.role_id:
            holders = set(await self.store.list_role_user_ids(user_filter.role_id))
            users = [u for u in users if u.user_id in holders]

        users.sort(key=lambda u: (u.username, u.user_id))
        start = (page - 1) * limit

        snapshots = []
        for user in users[start:start + limit]:
            snapshot = await self.store.find_user_with_roles(user.user_id)
            if snapshot:
                snapshots.append(snapshot)
        return snapshots, Pagination.build(page, limit, len(users))

    async def user_has_role(self, user_id: str, role_name: str) -> bool:
        """True when the user holds a role with this exact name. Unknown users hold none."""
        snapshot = await self.store.find_user_with_roles(user_id)
        if not snapshot:
            return False
        return any(r.role.name == role_name for r in snapshot.roles)

    async def get_user_statistics(self) -> UserStatistics:
        """Counts over all users plus the number of holders per role name."""
        users = await self.store.list_users()
        active = sum(1 for u in users if u.is_active)

        by_role: Dict[str, int] = {}
        for role in await self.store.list_roles():
            count = await self.store.count_role_users(role.role_id)
            if count:
                by_role[role.name] = count

        return UserStatistics(
            total=len(users),
            active=active,
            inactive=len(users) - active,
            superusers=sum(1 for u in users if u.is_superuser),
            by_role=by_role,
        )

    # =========================================================================
    # Mutations
    # =========================================================================

    async def create_user(self, data: UserCreate, actor_id: Optional[str]) -> UserWithRoles:
        """
        Register a user with an initial role set in one transaction.

        Raises:
            ConflictError: If the id, email or username is already in use
            RbacValidationError: If any role id is unknown
        """
        user_id = data.user_id.strip()
        if await self.store.get_user(user_id):
            raise ConflictError(
                f"User '{user_id}' already exists", details={"userId": user_id}, field="userId"
            )

        username = data.username.strip() or user_id
        await self._ensure_identity_available(data.email, username)
        role_ids = await self._validate_role_ids(data.role_ids)

        now = utc_now_iso()
        user = User(
            user_id=user_id,
            email=data.email,
            username=username,
            is_superuser=data.is_superuser,
            is_active=data.is_active,
            created_at=now,
            updated_at=now,
        )

        async with self.store.transaction() as uow:
            uow.put_user(user)
            for role_id in role_ids:
                uow.put_user_role(UserRole(user_id, role_id, assigned_by=actor_id, assigned_at=now))

        logger.info(
            f"Admin {actor_id} created user: {user_id}",
            extra={
                "event": "user_created",
                "user_id": user_id,
                "admin_user_id": actor_id,
                "role_count": len(role_ids),
            },
        )
        record_audit(
            self.audit, actor_id, AuditAction.USER_CREATED, "user", user_id,
            {"username": username, "roleIds": role_ids, "isSuperuser": data.is_superuser},
        )

        return await self.get_user(user_id)

    async def update_user(
        self, user_id: str, data: UserUpdate, actor_id: Optional[str]
    ) -> UserWithRoles:
        """
        Update profile fields, flags and optionally the whole role set.

        Raises:
            NotFoundError: If the user does not exist
            ConflictError: If the new email or username belongs to another user
            RbacValidationError: If any role id is unknown
        """
        user = await self._require_user(user_id)
        changes = data.model_dump(exclude_unset=True)

        email = data.email if data.email is not None and data.email != user.email else None
        username = (
            data.username.strip()
            if data.username is not None and data.username.strip() != user.username
            else None
        )
        await self._ensure_identity_available(email, username, exclude_user_id=user_id)

        if email is not None:
            user.email = email
        if username is not None:
            user.username = username
        if data.is_superuser is not None:
            user.is_superuser = data.is_superuser
        if data.is_active is not None:
            user.is_active = data.is_active

        role_ids = None
        if data.role_ids is not None:
            role_ids = await self._validate_role_ids(data.role_ids)

        user.updated_at = utc_now_iso()

        async with self.store.transaction() as uow:
            uow.put_user(user)
            if role_ids is not None:
                await self._replace_roles(uow, user_id, role_ids, actor_id)

        await self.cache.invalidate_users([user_id])

        logger.info(
            f"Admin {actor_id} updated user: {user_id}",
            extra={
                "event": "user_updated",
                "user_id": user_id,
                "admin_user_id": actor_id,
                "changes": list(changes.keys()),
            },
        )
        record_audit(
            self.audit, actor_id, AuditAction.USER_UPDATED, "user", user_id,
            {"changes": list(changes.keys())},
        )

        return await self.get_user(user_id)

    async def update_user_roles(
        self, user_id: str, role_ids: Iterable[str], actor_id: Optional[str]
    ) -> UserWithRoles:
        """
        Replace every role assignment of a user atomically.

        Assignments the user keeps retain their original assignment metadata.

        Raises:
            NotFoundError: If the user does not exist
            RbacValidationError: If any role id is unknown
        """
        await self._require_user(user_id)
        role_ids = await self._validate_role_ids(role_ids)
        previous = await self.store.list_user_role_ids(user_id)

        async with self.store.transaction() as uow:
            await self._replace_roles(uow, user_id, role_ids, actor_id)

        await self.cache.invalidate_users([user_id])

        logger.info(
            f"Admin {actor_id} set roles of user {user_id}",
            extra={
                "event": "user_roles_updated",
                "user_id": user_id,
                "admin_user_id": actor_id,
                "role_ids": role_ids,
            },
        )
        record_audit(
            self.audit, actor_id, AuditAction.USER_ROLES_UPDATED, "user", user_id,
            {"oldRoleIds": previous, "newRoleIds": role_ids},
        )

        return await self.get_user(user_id)

    async def bulk_update_status(
        self, user_ids: Iterable[str], is_active: bool, actor_id: Optional[str]
    ) -> BulkOperationResult:
        """
        Activate or deactivate users, one transaction per user.

        Superusers cannot be deactivated; demote them first.
        """
        result = BulkOperationResult()

        for user_id in dict.fromkeys(user_ids):
            user = await self.store.get_user(user_id)
            if not user:
                result.add_failure(user_id, "User not found")
                continue
            if user.is_superuser and not is_active:
                result.add_failure(user_id, "Cannot deactivate superuser")
                continue
            user.is_active = is_active
            user.updated_at = utc_now_iso()
            try:
                async with self.store.transaction() as uow:
                    uow.put_user(user)
                result.success.append(user_id)
            except StoreError as e:
                logger.error(f"Failed to update status of user {user_id}: {e}")
                result.add_failure(user_id, str(e))

        await self.cache.invalidate_users(result.success)

        action = AuditAction.USERS_ACTIVATED if is_active else AuditAction.USERS_DEACTIVATED
        logger.info(
            f"Admin {actor_id} set isActive={is_active} on {len(result.success)} user(s)",
            extra={
                "event": "users_status_updated",
                "admin_user_id": actor_id,
                "is_active": is_active,
                "updated": len(result.success),
                "failed": len(result.failed),
            },
        )
        record_audit(
            self.audit, actor_id, action, "user", ",".join(result.success),
            {"userIds": result.success, "failed": result.failed_ids},
        )
        return result

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _require_user(self, user_id: str) -> User:
        user = await self.store.get_user(user_id)
        if not user:
            raise NotFoundError(f"User '{user_id}' not found", details={"userId": user_id})
        return user

    async def _ensure_identity_available(
        self,
        email: Optional[str],
        username: Optional[str],
        exclude_user_id: Optional[str] = None,
    ) -> None:
        if not email and not username:
            return
        for other in await self.store.list_users():
            if other.user_id == exclude_user_id:
                continue
            if email and other.email.lower() == email.lower():
                raise ConflictError(
                    "Email is already in use", details={"email": email}, field="email"
                )
            if username and other.username == username:
                raise ConflictError(
                    "Username is already taken", details={"username": username}, field="username"
                )

    async def _validate_role_ids(self, role_ids: Iterable[str]) -> List[str]:
        """Deduplicate ids and fail if any is unknown."""
        ids = list(dict.fromkeys(role_ids))
        invalid = [rid for rid in ids if not await self.store.get_role(rid)]
        if invalid:
            raise RbacValidationError(
                f"Invalid role IDs: {', '.join(invalid)}",
                details={"invalidIds": invalid},
                field="roleIds",
            )
        return ids

    async def _replace_roles(
        self,
        uow: UnitOfWork,
        user_id: str,
        role_ids: List[str],
        actor_id: Optional[str],
    ) -> None:
        """Stage the writes that make the user's role set exactly role_ids."""
        current = set(await self.store.list_user_role_ids(user_id))
        desired = set(role_ids)
        now = utc_now_iso()

        for role_id in current - desired:
            uow.delete_user_role(user_id, role_id)
        for role_id in role_ids:
            if role_id not in current:
                uow.put_user_role(UserRole(user_id, role_id, assigned_by=actor_id, assigned_at=now))


# Global service instance
_user_admin_instance: Optional[UserAdminService] = None


def get_user_admin_service() -> UserAdminService:
    """Get or create the global UserAdminService instance."""
    global _user_admin_instance
    if _user_admin_instance is None:
        _user_admin_instance = UserAdminService()
    return _user_admin_instance
