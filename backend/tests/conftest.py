"""Pytest configuration for test suite."""

import sys
from pathlib import Path

# Add backend/src to Python path for imports
# This file is in backend/tests/, so we need to go up one level to backend/
BACKEND_DIR = Path(__file__).parent.parent
SRC_DIR = BACKEND_DIR / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

import uuid
from typing import Any, Dict, List, Optional

import pytest

from rolegate.shared.audit import AuditLogger
from rolegate.shared.rbac.admin_service import RoleAdminService
from rolegate.shared.rbac.cache import PermissionCache
from rolegate.shared.rbac.menu_access import MenuPermissionService
from rolegate.shared.rbac.menu_tree import MenuTreeService
from rolegate.shared.rbac.models import (
    Menu,
    MenuPermission,
    Permission,
    Role,
    RolePermission,
    User,
    UserRole,
    utc_now_iso,
)
from rolegate.shared.rbac.permission_admin import PermissionAdminService
from rolegate.shared.rbac.service import PermissionResolverService
from rolegate.shared.rbac.store import InMemoryRbacStore
from rolegate.shared.rbac.user_admin import UserAdminService


class RecordingAuditLogger(AuditLogger):
    """Keeps audit events in memory for assertions."""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    async def log(self, actor_id, action, resource_type, resource_id, details=None):
        self.events.append(
            {
                "actor_id": actor_id,
                "action": action,
                "resource_type": resource_type,
                "resource_id": resource_id,
                "details": details or {},
            }
        )

    def actions(self) -> List[str]:
        return [e["action"] for e in self.events]


class RbacFactory:
    """Writes fixture data straight into a store."""

    def __init__(self, store: InMemoryRbacStore):
        self.store = store

    async def user(self, user_id: str, is_superuser: bool = False, is_active: bool = True) -> User:
        user = User(
            user_id=user_id,
            email=f"{user_id}@example.com",
            username=user_id,
            is_superuser=is_superuser,
            is_active=is_active,
            created_at=utc_now_iso(),
        )
        async with self.store.transaction() as uow:
            uow.put_user(user)
        return user

    async def permission(self, name: str, description: Optional[str] = None) -> Permission:
        existing = await self.store.get_permission_by_name(name)
        if existing:
            return existing
        permission = Permission(permission_id=f"p-{uuid.uuid4().hex[:8]}", name=name, description=description)
        async with self.store.transaction() as uow:
            uow.put_permission(permission)
        return permission

    async def role(self, name: str, permissions: Optional[List[str]] = None, is_system: bool = False) -> Role:
        role = Role(
            role_id=f"r-{name}",
            name=name,
            description=f"{name} role",
            is_system=is_system,
            created_at=utc_now_iso(),
            updated_at=utc_now_iso(),
        )
        granted = [await self.permission(n) for n in permissions or []]
        async with self.store.transaction() as uow:
            uow.put_role(role)
            for permission in granted:
                uow.put_role_permission(RolePermission(role.role_id, permission.permission_id))
        return role

    async def assign(self, user_id: str, *role_ids: str) -> None:
        for role_id in role_ids:
            async with self.store.transaction() as uow:
                uow.put_user_role(UserRole(user_id, role_id, assigned_at=utc_now_iso()))

    async def menu(
        self,
        menu_id: str,
        parent_id: Optional[str] = None,
        order_index: int = 0,
        is_active: bool = True,
        title: Optional[str] = None,
        href: Optional[str] = None,
    ) -> Menu:
        menu = Menu(
            menu_id=menu_id,
            title=title or menu_id,
            parent_id=parent_id,
            href=href,
            order_index=order_index,
            is_active=is_active,
        )
        async with self.store.transaction() as uow:
            uow.put_menu(menu)
        return menu

    async def grant_menu(self, role_id: str, menu_id: str, **flags: bool) -> MenuPermission:
        record = MenuPermission(menu_id=menu_id, role_id=role_id, **flags)
        async with self.store.transaction() as uow:
            uow.put_menu_permission(record)
        return record


@pytest.fixture
def store() -> InMemoryRbacStore:
    return InMemoryRbacStore()


@pytest.fixture
def cache() -> PermissionCache:
    return PermissionCache(ttl_seconds=0)


@pytest.fixture
def audit() -> RecordingAuditLogger:
    return RecordingAuditLogger()


@pytest.fixture
def factory(store) -> RbacFactory:
    return RbacFactory(store)


@pytest.fixture
def resolver(store, cache) -> PermissionResolverService:
    return PermissionResolverService(store=store, cache=cache)


@pytest.fixture
def role_admin(store, cache, audit) -> RoleAdminService:
    return RoleAdminService(store=store, cache=cache, audit=audit)


@pytest.fixture
def permission_admin(store, cache, audit) -> PermissionAdminService:
    return PermissionAdminService(store=store, cache=cache, audit=audit)


@pytest.fixture
def menu_tree(store, audit) -> MenuTreeService:
    return MenuTreeService(store=store, audit=audit)


@pytest.fixture
def menu_access(store, audit) -> MenuPermissionService:
    return MenuPermissionService(store=store, audit=audit)


@pytest.fixture
def user_admin(store, cache, audit) -> UserAdminService:
    return UserAdminService(store=store, cache=cache, audit=audit)
