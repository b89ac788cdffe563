"""RBAC (Role-Based Access Control) module: roles, permissions and menu grants."""

from .models import (
    Menu,
    MenuCapability,
    MenuPermission,
    Permission,
    Role,
    RoleDetails,
    User,
    UserWithRoles,
)
from .cache import PermissionCache
from .store import RbacStore, InMemoryRbacStore, create_rbac_store
from .repository import DynamoDBRbacStore
from .service import PermissionResolverService, check_roles, permission_matches
from .admin_service import RoleAdminService
from .user_admin import UserAdminService
from .permission_admin import PermissionAdminService
from .menu_tree import MenuTreeService
from .menu_access import MenuPermissionService
from .system_admin import get_registered_user, require_superuser, require_permission, require_any_permission
from .seeder import seed_system_roles, ensure_system_roles, ensure_user, bootstrap_admin

__all__ = [
    "Menu",
    "MenuCapability",
    "MenuPermission",
    "Permission",
    "Role",
    "RoleDetails",
    "User",
    "UserWithRoles",
    "PermissionCache",
    "RbacStore",
    "InMemoryRbacStore",
    "create_rbac_store",
    "DynamoDBRbacStore",
    "PermissionResolverService",
    "check_roles",
    "permission_matches",
    "RoleAdminService",
    "UserAdminService",
    "PermissionAdminService",
    "MenuTreeService",
    "MenuPermissionService",
    "require_superuser",
    "require_permission",
    "require_any_permission",
    "get_registered_user",
    "seed_system_roles",
    "ensure_system_roles",
    "ensure_user",
    "bootstrap_admin",
]
