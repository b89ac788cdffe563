"""Permission resolution: effective permission sets and permission checks."""

import logging
from typing import Iterable, Optional, Sequence, Tuple

from rolegate.shared.errors import NotFoundError

from .cache import PermissionCache, get_permission_cache
from .models import (
    PERMISSION_NAME_PATTERN,
    WILDCARD,
    EffectivePermissions,
    PermissionCheckResult,
    RoleDetails,
    UserWithRoles,
    utc_now_iso,
)
from .store import RbacStore, get_rbac_store

logger = logging.getLogger(__name__)

REASON_SUPERUSER = "superuser"
REASON_DENIED = "denied"


def _split(name: str) -> Optional[Tuple[str, str]]:
    match = PERMISSION_NAME_PATTERN.match(name or "")
    if not match:
        return None
    return match.group("resource"), match.group("action")


def permission_matches(granted: str, requested: str) -> bool:
    """
    Check whether a granted permission name covers a requested one.

    `resource:*`, `*:action` and `*:*` match by segment. A malformed name on
    either side can only match exactly.
    """
    if granted == requested:
        return True

    granted_parts = _split(granted)
    requested_parts = _split(requested)
    if granted_parts is None or requested_parts is None:
        return False

    granted_resource, granted_action = granted_parts
    requested_resource, requested_action = requested_parts
    return (
        granted_resource in (WILDCARD, requested_resource)
        and granted_action in (WILDCARD, requested_action)
    )


def check_roles(
    is_superuser: bool, roles: Sequence[RoleDetails], name: str
) -> PermissionCheckResult:
    """
    Decide a permission check against a user's roles.

    Superusers are granted before any role is inspected. Otherwise roles are
    examined in order and the first granting role is the reported source;
    inside a role an exact match wins over a wildcard match.
    """
    if is_superuser:
        return PermissionCheckResult(granted=True, reason=REASON_SUPERUSER)

    for details in roles:
        names = details.permission_names
        if name in names:
            return PermissionCheckResult(granted=True, reason=f"role:{details.role.name}")
        if any(permission_matches(granted, name) for granted in names):
            return PermissionCheckResult(
                granted=True, reason=f"role:{details.role.name}(wildcard)"
            )

    return PermissionCheckResult(granted=False, reason=REASON_DENIED)


def check_user(snapshot: UserWithRoles, name: str) -> PermissionCheckResult:
    """check_roles for a loaded user. A deactivated user is denied everything."""
    if not snapshot.user.is_active:
        return PermissionCheckResult(granted=False, reason=REASON_DENIED)
    return check_roles(snapshot.user.is_superuser, snapshot.roles, name)


class PermissionResolverService:
    """
    Service for resolving and checking user permissions.

    This is the main entry point for authorization checks.
    """

    def __init__(
        self,
        store: Optional[RbacStore] = None,
        cache: Optional[PermissionCache] = None,
    ):
        """Initialize service with store and cache."""
        self.store = store or get_rbac_store()
        self.cache = cache or get_permission_cache()

    async def _load_user(self, user_id: str) -> UserWithRoles:
        cached = await self.cache.get_user(user_id)
        if cached:
            logger.debug(f"Cache hit for user permissions: {user_id}")
            return cached

        snapshot = await self.store.find_user_with_roles(user_id)
        if snapshot is None:
            raise NotFoundError(f"User '{user_id}' not found", details={"userId": user_id})

        await self.cache.set_user(user_id, snapshot)
        return snapshot

    async def resolve_user_permissions(self, user_id: str) -> EffectivePermissions:
        """
        Resolve the effective permission set for a user.

        Args:
            user_id: User identifier

        Returns:
            EffectivePermissions with the sorted union of role permission names
            (empty for a deactivated user)

        Raises:
            NotFoundError: If the user does not exist
        """
        snapshot = await self._load_user(user_id)
        active = snapshot.user.is_active

        names = set()
        if active:
            for details in snapshot.roles:
                names.update(details.permission_names)

        permissions = EffectivePermissions(
            user_id=user_id,
            permissions=sorted(names),
            is_superuser=active and snapshot.user.is_superuser,
            is_active=active,
            roles=[details.role.name for details in snapshot.roles],
            resolved_at=utc_now_iso(),
        )

        logger.debug(
            f"Resolved permissions for {user_id}: "
            f"roles={permissions.roles}, permissions={len(permissions.permissions)}, "
            f"superuser={permissions.is_superuser}"
        )
        return permissions

    async def check_permission(self, user_id: str, name: str) -> PermissionCheckResult:
        """
        Check a single permission for a user.

        Args:
            user_id: User identifier
            name: Permission name in resource:action form

        Returns:
            PermissionCheckResult with the grant source as reason

        Raises:
            NotFoundError: If the user does not exist
        """
        snapshot = await self._load_user(user_id)
        result = check_user(snapshot, name)

        if not result.granted:
            logger.warning(f"Permission {name} denied for user {user_id}")
        return result

    async def check_permissions(
        self, user_id: str, names: Iterable[str], require_all: bool = True
    ) -> PermissionCheckResult:
        """
        Check several permissions at once.

        With require_all every name must be granted; otherwise one is enough.
        The reason is that of the deciding check.
        """
        snapshot = await self._load_user(user_id)
        names = list(names)

        if not names:
            return PermissionCheckResult(granted=True, reason="none_required")

        result = PermissionCheckResult(granted=require_all, reason=REASON_DENIED)
        for name in names:
            result = check_user(snapshot, name)
            if require_all and not result.granted:
                logger.warning(f"Permission {name} denied for user {user_id}")
                return result
            if not require_all and result.granted:
                return result

        if not require_all:
            logger.warning(f"None of {names} granted for user {user_id}")
            return PermissionCheckResult(granted=False, reason=REASON_DENIED)
        return result

    async def has_permission(self, user_id: str, name: str) -> bool:
        """Check if a user holds a permission."""
        return (await self.check_permission(user_id, name)).granted

    async def is_superuser(self, user_id: str) -> bool:
        snapshot = await self._load_user(user_id)
        return snapshot.user.is_active and snapshot.user.is_superuser


# Global service instance (singleton)
_service_instance: Optional[PermissionResolverService] = None


def get_permission_resolver_service() -> PermissionResolverService:
    """Get or create the global PermissionResolverService instance."""
    global _service_instance
    if _service_instance is None:
        _service_instance = PermissionResolverService()
    return _service_instance
