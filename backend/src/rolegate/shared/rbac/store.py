"""Entity store abstraction for RBAC data."""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

from rolegate.shared.config import RbacSettings, get_settings
from rolegate.shared.errors import StoreError

from .models import (
    Menu,
    MenuFilter,
    MenuPermission,
    Permission,
    Role,
    RoleDetails,
    RolePermission,
    User,
    UserRole,
    UserWithRoles,
)

logger = logging.getLogger(__name__)

# Entity kinds staged by a unit of work
USER = "user"
ROLE = "role"
PERMISSION = "permission"
MENU = "menu"
ROLE_PERMISSION = "role_permission"
USER_ROLE = "user_role"
MENU_PERMISSION = "menu_permission"

ENTITY_KINDS = (USER, ROLE, PERMISSION, MENU, ROLE_PERMISSION, USER_ROLE, MENU_PERMISSION)


@dataclass
class WriteOp:
    """One staged write. value is None for deletes."""

    kind: str
    entity: str
    key: Tuple[str, ...]
    value: Any = None

    @property
    def is_delete(self) -> bool:
        return self.kind == "delete"


class UnitOfWork:
    """
    Buffer of writes that commit together.

    Obtained from RbacStore.transaction(); nothing is visible to readers until
    the enclosing block exits without raising.
    """

    def __init__(self):
        self.operations: List[WriteOp] = []

    def __len__(self) -> int:
        return len(self.operations)

    def _put(self, entity: str, key: Tuple[str, ...], value: Any) -> None:
        self.operations.append(WriteOp("put", entity, key, copy.deepcopy(value)))

    def _delete(self, entity: str, key: Tuple[str, ...]) -> None:
        self.operations.append(WriteOp("delete", entity, key))

    def put_user(self, user: User) -> None:
        self._put(USER, (user.user_id,), user)

    def delete_user(self, user_id: str) -> None:
        self._delete(USER, (user_id,))

    def put_role(self, role: Role) -> None:
        self._put(ROLE, (role.role_id,), role)

    def delete_role(self, role_id: str) -> None:
        self._delete(ROLE, (role_id,))

    def put_permission(self, permission: Permission) -> None:
        self._put(PERMISSION, (permission.permission_id,), permission)

    def delete_permission(self, permission_id: str) -> None:
        self._delete(PERMISSION, (permission_id,))

    def put_menu(self, menu: Menu) -> None:
        self._put(MENU, (menu.menu_id,), menu)

    def delete_menu(self, menu_id: str) -> None:
        self._delete(MENU, (menu_id,))

    def put_role_permission(self, link: RolePermission) -> None:
        self._put(ROLE_PERMISSION, (link.role_id, link.permission_id), link)

    def delete_role_permission(self, role_id: str, permission_id: str) -> None:
        self._delete(ROLE_PERMISSION, (role_id, permission_id))

    def put_user_role(self, link: UserRole) -> None:
        self._put(USER_ROLE, (link.user_id, link.role_id), link)

    def delete_user_role(self, user_id: str, role_id: str) -> None:
        self._delete(USER_ROLE, (user_id, role_id))

    def put_menu_permission(self, record: MenuPermission) -> None:
        self._put(MENU_PERMISSION, (record.menu_id, record.role_id), record)

    def delete_menu_permission(self, menu_id: str, role_id: str) -> None:
        self._delete(MENU_PERMISSION, (menu_id, role_id))


class RbacStore(ABC):
    """
    Abstract interface for RBAC persistence.

    Reads are individual coroutines. Writes are only possible through
    transaction(), which yields a UnitOfWork and commits it atomically.
    """

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[UnitOfWork]:
        """
        Open a unit of work.

        Usage:
            async with store.transaction() as uow:
                uow.put_role(role)
                uow.put_role_permission(link)

        Staged writes are discarded if the block raises.

        Raises:
            StoreError: If the commit fails
        """
        uow = UnitOfWork()
        yield uow
        if uow.operations:
            await self._commit(uow.operations)

    @abstractmethod
    async def _commit(self, operations: List[WriteOp]) -> None:
        """Apply all operations atomically or none of them."""
        pass

    # =========================================================================
    # Users
    # =========================================================================

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    async def list_users(self) -> List[User]:
        """All users ordered by id."""
        pass

    @abstractmethod
    async def list_user_role_links(self, user_id: str) -> List[UserRole]:
        """Role assignments of a user, oldest first."""
        pass

    async def list_user_role_ids(self, user_id: str) -> List[str]:
        return [link.role_id for link in await self.list_user_role_links(user_id)]

    async def find_user_with_roles(self, user_id: str) -> Optional[UserWithRoles]:
        """
        Load a user with each assigned role and that role's permissions.

        Roles come back in assignment order. user_count on the nested
        RoleDetails is not populated.
        """
        user = await self.get_user(user_id)
        if not user:
            return None

        roles: List[RoleDetails] = []
        for role_id in await self.list_user_role_ids(user_id):
            role = await self.get_role(role_id)
            if not role:
                continue
            links = await self.list_role_permission_links(role_id)
            permissions = await self.find_permissions_by_ids(
                [link.permission_id for link in links]
            )
            roles.append(RoleDetails(role=role, permissions=permissions))

        return UserWithRoles(user=user, roles=roles)

    # =========================================================================
    # Roles
    # =========================================================================

    @abstractmethod
    async def get_role(self, role_id: str) -> Optional[Role]:
        pass

    @abstractmethod
    async def get_role_by_name(self, name: str) -> Optional[Role]:
        pass

    @abstractmethod
    async def list_roles(self) -> List[Role]:
        """All roles ordered by name."""
        pass

    @abstractmethod
    async def list_role_user_ids(self, role_id: str) -> List[str]:
        pass

    async def count_role_users(self, role_id: str) -> int:
        return len(await self.list_role_user_ids(role_id))

    @abstractmethod
    async def list_role_permission_links(self, role_id: str) -> List[RolePermission]:
        pass

    async def find_role_with_permissions(self, role_id: str) -> Optional[RoleDetails]:
        """Load a role with its permissions (ordered by name) and user count."""
        role = await self.get_role(role_id)
        if not role:
            return None
        links = await self.list_role_permission_links(role_id)
        permissions = await self.find_permissions_by_ids(
            [link.permission_id for link in links]
        )
        permissions.sort(key=lambda p: p.name)
        return RoleDetails(
            role=role,
            permissions=permissions,
            user_count=await self.count_role_users(role_id),
        )

    # =========================================================================
    # Permissions
    # =========================================================================

    @abstractmethod
    async def get_permission(self, permission_id: str) -> Optional[Permission]:
        pass

    @abstractmethod
    async def get_permission_by_name(self, name: str) -> Optional[Permission]:
        pass

    async def find_permissions_by_ids(self, permission_ids: Iterable[str]) -> List[Permission]:
        """Permissions for the given ids; unknown ids are skipped."""
        found = []
        for permission_id in permission_ids:
            permission = await self.get_permission(permission_id)
            if permission:
                found.append(permission)
        return found

    @abstractmethod
    async def list_permissions(self) -> List[Permission]:
        """All permissions ordered by name."""
        pass

    @abstractmethod
    async def list_permission_role_ids(self, permission_id: str) -> List[str]:
        pass

    async def count_permission_roles(self, permission_id: str) -> int:
        return len(await self.list_permission_role_ids(permission_id))

    # =========================================================================
    # Menus
    # =========================================================================

    @abstractmethod
    async def get_menu(self, menu_id: str) -> Optional[Menu]:
        pass

    @abstractmethod
    async def list_menus(self) -> List[Menu]:
        pass

    async def find_menus_by_filter(self, menu_filter: Optional[MenuFilter] = None) -> List[Menu]:
        """Menus matching search (title or href), is_active and parent scope."""
        menus = await self.list_menus()
        if menu_filter is None:
            return menus

        if menu_filter.search:
            needle = menu_filter.search.lower()
            menus = [
                m for m in menus
                if needle in m.title.lower() or needle in (m.href or "").lower()
            ]
        if menu_filter.is_active is not None:
            menus = [m for m in menus if m.is_active == menu_filter.is_active]
        if menu_filter.scopes_parent:
            menus = [m for m in menus if m.parent_id == menu_filter.parent_id]
        return menus

    @abstractmethod
    async def find_menu_permissions(
        self,
        role_ids: Optional[Iterable[str]] = None,
        menu_ids: Optional[Iterable[str]] = None,
        can_view: Optional[bool] = None,
    ) -> List[MenuPermission]:
        """MenuPermission rows filtered by any combination of role, menu and view flag."""
        pass

    @abstractmethod
    async def get_menu_permission(self, menu_id: str, role_id: str) -> Optional[MenuPermission]:
        pass


class InMemoryRbacStore(RbacStore):
    """
    In-memory store (for single-instance/local development and tests).

    A commit applies the staged operations to copies of the tables and swaps
    them in only after every constraint holds, so a failed commit leaves the
    visible state untouched.
    """

    def __init__(self):
        """Initialize in-memory tables."""
        self._tables: Dict[str, Dict[Tuple[str, ...], Any]] = {
            kind: {} for kind in ENTITY_KINDS
        }
        self._lock = asyncio.Lock()

    def _get(self, entity: str, *key: str) -> Any:
        value = self._tables[entity].get(tuple(key))
        return copy.deepcopy(value) if value is not None else None

    def _values(self, entity: str) -> List[Any]:
        return [copy.deepcopy(v) for v in self._tables[entity].values()]

    async def _commit(self, operations: List[WriteOp]) -> None:
        async with self._lock:
            staged = {kind: dict(rows) for kind, rows in self._tables.items()}
            for op in operations:
                rows = staged[op.entity]
                if op.is_delete:
                    rows.pop(op.key, None)
                else:
                    rows[op.key] = op.value
            self._check_constraints(staged)
            self._tables = staged
            logger.debug(f"Committed {len(operations)} staged operations")

    @staticmethod
    def _check_constraints(tables: Dict[str, Dict[Tuple[str, ...], Any]]) -> None:
        """Enforce uniqueness and reference integrity on the staged tables."""
        for entity in (ROLE, PERMISSION):
            seen = set()
            for row in tables[entity].values():
                if row.name in seen:
                    raise StoreError(f"Duplicate {entity} name: {row.name}")
                seen.add(row.name)

        def require(entity: str, key: str, owner: str) -> None:
            if (key,) not in tables[entity]:
                raise StoreError(f"{owner} references missing {entity} {key}")

        for (role_id, permission_id) in tables[ROLE_PERMISSION]:
            require(ROLE, role_id, "role_permission")
            require(PERMISSION, permission_id, "role_permission")
        for (user_id, role_id) in tables[USER_ROLE]:
            require(USER, user_id, "user_role")
            require(ROLE, role_id, "user_role")
        for (menu_id, role_id), record in tables[MENU_PERMISSION].items():
            require(MENU, menu_id, "menu_permission")
            require(ROLE, role_id, "menu_permission")
            if not record.has_any_permission():
                raise StoreError(f"All-false menu permission for {menu_id}/{role_id}")
        for menu in tables[MENU].values():
            if menu.parent_id is not None:
                require(MENU, menu.parent_id, f"menu {menu.menu_id}")

    # --- Users ---------------------------------------------------------------

    async def get_user(self, user_id: str) -> Optional[User]:
        return self._get(USER, user_id)

    async def list_users(self) -> List[User]:
        return sorted(self._values(USER), key=lambda u: u.user_id)

    async def list_user_role_links(self, user_id: str) -> List[UserRole]:
        links = [link for link in self._values(USER_ROLE) if link.user_id == user_id]
        # Stable sort keeps insertion order for equal timestamps
        links.sort(key=lambda link: link.assigned_at)
        return links

    # --- Roles ---------------------------------------------------------------

    async def get_role(self, role_id: str) -> Optional[Role]:
        return self._get(ROLE, role_id)

    async def get_role_by_name(self, name: str) -> Optional[Role]:
        for role in self._tables[ROLE].values():
            if role.name == name:
                return copy.deepcopy(role)
        return None

    async def list_roles(self) -> List[Role]:
        return sorted(self._values(ROLE), key=lambda r: r.name)

    async def list_role_user_ids(self, role_id: str) -> List[str]:
        return [user_id for (user_id, rid) in self._tables[USER_ROLE] if rid == role_id]

    async def list_role_permission_links(self, role_id: str) -> List[RolePermission]:
        return [link for link in self._values(ROLE_PERMISSION) if link.role_id == role_id]

    # --- Permissions ---------------------------------------------------------

    async def get_permission(self, permission_id: str) -> Optional[Permission]:
        return self._get(PERMISSION, permission_id)

    async def get_permission_by_name(self, name: str) -> Optional[Permission]:
        for permission in self._tables[PERMISSION].values():
            if permission.name == name:
                return copy.deepcopy(permission)
        return None

    async def list_permissions(self) -> List[Permission]:
        return sorted(self._values(PERMISSION), key=lambda p: p.name)

    async def list_permission_role_ids(self, permission_id: str) -> List[str]:
        return [
            role_id for (role_id, pid) in self._tables[ROLE_PERMISSION]
            if pid == permission_id
        ]

    # --- Menus ---------------------------------------------------------------

    async def get_menu(self, menu_id: str) -> Optional[Menu]:
        return self._get(MENU, menu_id)

    async def list_menus(self) -> List[Menu]:
        return self._values(MENU)

    async def find_menu_permissions(
        self,
        role_ids: Optional[Iterable[str]] = None,
        menu_ids: Optional[Iterable[str]] = None,
        can_view: Optional[bool] = None,
    ) -> List[MenuPermission]:
        role_set = set(role_ids) if role_ids is not None else None
        menu_set = set(menu_ids) if menu_ids is not None else None
        return [
            record for record in self._values(MENU_PERMISSION)
            if (role_set is None or record.role_id in role_set)
            and (menu_set is None or record.menu_id in menu_set)
            and (can_view is None or record.can_view == can_view)
        ]

    async def get_menu_permission(self, menu_id: str, role_id: str) -> Optional[MenuPermission]:
        return self._get(MENU_PERMISSION, menu_id, role_id)


def create_rbac_store(settings: Optional[RbacSettings] = None) -> RbacStore:
    """
    Create appropriate store based on configuration.

    Returns:
        RbacStore instance (DynamoDB if configured, otherwise in-memory)
    """
    settings = settings or get_settings()

    if settings.dynamodb_table_name:
        from .repository import DynamoDBRbacStore

        try:
            return DynamoDBRbacStore(
                table_name=settings.dynamodb_table_name,
                region=settings.aws_region,
                profile=settings.aws_profile,
            )
        except Exception as e:
            logger.warning(
                f"Failed to initialize DynamoDB RBAC store: {e}. "
                "Falling back to in-memory storage."
            )
            return InMemoryRbacStore()

    logger.info(
        "DYNAMODB_RBAC_TABLE_NAME not set. Using in-memory RBAC storage. "
        "This will not work in distributed deployments."
    )
    return InMemoryRbacStore()


# Global store instance (singleton)
_store_instance: Optional[RbacStore] = None


def get_rbac_store() -> RbacStore:
    """Get or create the global RbacStore instance."""
    global _store_instance
    if _store_instance is None:
        _store_instance = create_rbac_store()
    return _store_instance
