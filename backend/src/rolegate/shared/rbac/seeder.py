"""Idempotent seeding of built-in permissions and system roles."""

import logging
import uuid
from typing import Dict, List, Optional

from .models import Permission, Role, RolePermission, User, utc_now_iso
from .store import RbacStore

logger = logging.getLogger(__name__)

SYSTEM_PERMISSIONS: Dict[str, str] = {
    "*:*": "Full access to every resource",
    "role:*": "Manage roles",
    "menu:*": "Manage menus and menu permissions",
    "permission:*": "Manage permission definitions",
    "user:*": "Manage users",
    "user:read": "View users",
}

SYSTEM_ROLES: Dict[str, Dict] = {
    "super_admin": {
        "description": "Full access to every resource",
        "permissions": ["*:*"],
    },
    "viewer": {
        "description": "Read-only access",
        "permissions": ["user:read"],
    },
}


async def seed_system_roles(store: RbacStore, actor_id: Optional[str] = "system") -> List[str]:
    """
    Create any missing built-in permission or system role.

    Existing entries are left untouched, so this is safe to run on every
    startup.

    Returns:
        Names of the permissions and roles that were created
    """
    created: List[str] = []
    now = utc_now_iso()
    permission_ids: Dict[str, str] = {}

    async with store.transaction() as uow:
        for name, description in SYSTEM_PERMISSIONS.items():
            existing = await store.get_permission_by_name(name)
            if existing:
                permission_ids[name] = existing.permission_id
                continue
            permission = Permission(
                permission_id=str(uuid.uuid4()),
                name=name,
                description=description,
                created_at=now,
                updated_at=now,
            )
            uow.put_permission(permission)
            permission_ids[name] = permission.permission_id
            created.append(name)

        for role_name, definition in SYSTEM_ROLES.items():
            if await store.get_role_by_name(role_name):
                continue
            role = Role(
                role_id=str(uuid.uuid4()),
                name=role_name,
                description=definition["description"],
                is_system=True,
                created_at=now,
                updated_at=now,
                created_by=actor_id,
            )
            uow.put_role(role)
            for permission_name in definition["permissions"]:
                uow.put_role_permission(
                    RolePermission(
                        role.role_id,
                        permission_ids[permission_name],
                        granted_by=actor_id,
                        granted_at=now,
                    )
                )
            created.append(role_name)

    if created:
        logger.info(f"Seeded RBAC system entries: {created}")
    return created


async def ensure_system_roles(store: RbacStore) -> None:
    """Seed system roles when the super_admin role is missing."""
    if await store.get_role_by_name("super_admin"):
        logger.debug("System roles already present")
        return
    await seed_system_roles(store)


async def ensure_user(
    store: RbacStore,
    user_id: str,
    email: str = "",
    username: str = "",
    is_superuser: bool = False,
) -> User:
    """Register a user record if it does not exist yet and return it."""
    existing = await store.get_user(user_id)
    if existing:
        return existing

    now = utc_now_iso()
    user = User(
        user_id=user_id,
        email=email,
        username=username or user_id,
        is_superuser=is_superuser,
        created_at=now,
        updated_at=now,
    )
    async with store.transaction() as uow:
        uow.put_user(user)

    logger.info(f"Registered user {user_id} (superuser={is_superuser})")
    return user


async def bootstrap_admin(store: RbacStore, user_id: str) -> User:
    """
    Make sure the configured first administrator exists as an active superuser.

    An existing record is promoted and reactivated rather than replaced, so
    its role assignments survive.
    """
    user = await store.get_user(user_id)
    if user is None:
        return await ensure_user(store, user_id, is_superuser=True)

    if user.is_superuser and user.is_active:
        logger.debug(f"Bootstrap admin {user_id} already present")
        return user

    user.is_superuser = True
    user.is_active = True
    user.updated_at = utc_now_iso()
    async with store.transaction() as uow:
        uow.put_user(user)

    logger.info(f"Promoted bootstrap admin {user_id} to superuser")
    return user
