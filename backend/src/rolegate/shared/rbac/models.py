"""RBAC data models: stored entities, composite read shapes and API models."""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from rolegate.shared.errors import RbacValidationError

PERMISSION_SEGMENT = r"(?:[A-Za-z0-9_-]+|\*)"
PERMISSION_NAME_PATTERN = re.compile(
    rf"^(?P<resource>{PERMISSION_SEGMENT}):(?P<action>{PERMISSION_SEGMENT})$"
)
WILDCARD = "*"

MENU_ID_PATTERN = r"^[A-Za-z0-9]{1,10}$"


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with a Z suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_permission_name(name: str) -> Tuple[str, str]:
    """
    Split a `resource:action` permission name.

    Raises:
        RbacValidationError: If the name does not follow the format
    """
    match = PERMISSION_NAME_PATTERN.match(name or "")
    if not match:
        raise RbacValidationError(
            f"Invalid permission name '{name}'. Expected format: resource:action",
            field="name",
        )
    return match.group("resource"), match.group("action")


def format_permission_name(resource: str, action: str) -> str:
    return f"{resource}:{action}"


class MenuCapability(str, Enum):
    """The four independent per-menu capability flags."""

    VIEW = "view"
    EDIT = "edit"
    DELETE = "delete"
    EXPORT = "export"

    @property
    def flag_name(self) -> str:
        return f"can_{self.value}"


CAPABILITY_FLAGS = tuple(c.flag_name for c in MenuCapability)


# =============================================================================
# Stored entities
# =============================================================================


@dataclass
class User:
    """Identity that holds role assignments."""

    user_id: str
    email: str = ""
    username: str = ""
    is_superuser: bool = False
    is_active: bool = True
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict:
        """Convert to dictionary for DynamoDB storage."""
        return {
            "userId": self.user_id,
            "email": self.email,
            "username": self.username,
            "isSuperuser": self.is_superuser,
            "isActive": self.is_active,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "User":
        """Create from dictionary (DynamoDB item)."""
        return cls(
            user_id=data.get("userId", ""),
            email=data.get("email", ""),
            username=data.get("username", ""),
            is_superuser=bool(data.get("isSuperuser", False)),
            is_active=bool(data.get("isActive", True)),
            created_at=data.get("createdAt", ""),
            updated_at=data.get("updatedAt", ""),
        )


@dataclass
class Role:
    """A named bundle of permissions and per-menu capabilities."""

    role_id: str
    name: str
    description: str = ""
    is_system: bool = False

    # Audit fields
    created_at: str = ""
    updated_at: str = ""
    created_by: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for DynamoDB storage."""
        return {
            "roleId": self.role_id,
            "name": self.name,
            "description": self.description,
            "isSystem": self.is_system,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "createdBy": self.created_by,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Role":
        """Create from dictionary (DynamoDB item)."""
        return cls(
            role_id=data.get("roleId", ""),
            name=data.get("name", ""),
            description=data.get("description", "") or "",
            is_system=bool(data.get("isSystem", False)),
            created_at=data.get("createdAt", ""),
            updated_at=data.get("updatedAt", ""),
            created_by=data.get("createdBy"),
        )


@dataclass
class Permission:
    """
    A `resource:action` grant.

    The name and the (resource, action) pair are kept in agreement: either
    side may be supplied and the other is derived from it.
    """

    permission_id: str
    name: str = ""
    resource: str = ""
    action: str = ""
    description: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self):
        if not self.name:
            if not (self.resource and self.action):
                raise RbacValidationError(
                    "Permission requires a name or both resource and action",
                    field="name",
                )
            self.name = format_permission_name(self.resource, self.action)

        resource, action = parse_permission_name(self.name)
        if (self.resource and self.resource != resource) or (
            self.action and self.action != action
        ):
            raise RbacValidationError(
                f"Permission name '{self.name}' does not match "
                f"resource '{self.resource}' and action '{self.action}'",
                field="name",
            )
        self.resource = resource
        self.action = action

    @property
    def is_wildcard(self) -> bool:
        return WILDCARD in (self.resource, self.action)

    def to_dict(self) -> dict:
        """Convert to dictionary for DynamoDB storage."""
        return {
            "permissionId": self.permission_id,
            "name": self.name,
            "resource": self.resource,
            "action": self.action,
            "description": self.description,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Permission":
        """Create from dictionary (DynamoDB item)."""
        return cls(
            permission_id=data.get("permissionId", ""),
            name=data.get("name", ""),
            resource=data.get("resource", ""),
            action=data.get("action", ""),
            description=data.get("description"),
            created_at=data.get("createdAt", ""),
            updated_at=data.get("updatedAt", ""),
        )


@dataclass
class Menu:
    """Navigation tree node. Children are derived from parent_id, never stored."""

    menu_id: str
    title: str
    parent_id: Optional[str] = None
    href: Optional[str] = None
    icon: Optional[str] = None
    order_index: int = 0
    is_active: bool = True
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict:
        """Convert to dictionary for DynamoDB storage."""
        return {
            "menuId": self.menu_id,
            "title": self.title,
            "parentId": self.parent_id,
            "href": self.href,
            "icon": self.icon,
            "orderIndex": self.order_index,
            "isActive": self.is_active,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Menu":
        """Create from dictionary (DynamoDB item)."""
        return cls(
            menu_id=data.get("menuId", ""),
            title=data.get("title", ""),
            parent_id=data.get("parentId"),
            href=data.get("href"),
            icon=data.get("icon"),
            # DynamoDB hands numbers back as Decimal
            order_index=int(data.get("orderIndex", 0)),
            is_active=bool(data.get("isActive", True)),
            created_at=data.get("createdAt", ""),
            updated_at=data.get("updatedAt", ""),
        )


@dataclass
class MenuPermission:
    """Capability flags one role holds on one menu. Never stored all-false."""

    menu_id: str
    role_id: str
    can_view: bool = False
    can_edit: bool = False
    can_delete: bool = False
    can_export: bool = False

    def has_any_permission(self) -> bool:
        return self.can_view or self.can_edit or self.can_delete or self.can_export

    def allows(self, capability: MenuCapability) -> bool:
        return bool(getattr(self, capability.flag_name))

    def flags(self) -> Dict[str, bool]:
        return {name: bool(getattr(self, name)) for name in CAPABILITY_FLAGS}

    def summary(self) -> str:
        return ", ".join(c.value for c in MenuCapability if self.allows(c))

    def to_dict(self) -> dict:
        """Convert to dictionary for DynamoDB storage."""
        return {
            "menuId": self.menu_id,
            "roleId": self.role_id,
            "canView": self.can_view,
            "canEdit": self.can_edit,
            "canDelete": self.can_delete,
            "canExport": self.can_export,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MenuPermission":
        """Create from dictionary (DynamoDB item)."""
        return cls(
            menu_id=data.get("menuId", ""),
            role_id=data.get("roleId", ""),
            can_view=bool(data.get("canView", False)),
            can_edit=bool(data.get("canEdit", False)),
            can_delete=bool(data.get("canDelete", False)),
            can_export=bool(data.get("canExport", False)),
        )


@dataclass
class RolePermission:
    """Join row role -> permission. Grant metadata is informational only."""

    role_id: str
    permission_id: str
    granted_by: Optional[str] = None
    granted_at: str = ""

    def to_dict(self) -> dict:
        return {
            "roleId": self.role_id,
            "permissionId": self.permission_id,
            "grantedBy": self.granted_by,
            "grantedAt": self.granted_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RolePermission":
        return cls(
            role_id=data.get("roleId", ""),
            permission_id=data.get("permissionId", ""),
            granted_by=data.get("grantedBy"),
            granted_at=data.get("grantedAt", ""),
        )


@dataclass
class UserRole:
    """Join row user -> role. Assignment metadata is informational only."""

    user_id: str
    role_id: str
    assigned_by: Optional[str] = None
    assigned_at: str = ""

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "roleId": self.role_id,
            "assignedBy": self.assigned_by,
            "assignedAt": self.assigned_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UserRole":
        return cls(
            user_id=data.get("userId", ""),
            role_id=data.get("roleId", ""),
            assigned_by=data.get("assignedBy"),
            assigned_at=data.get("assignedAt", ""),
        )


# =============================================================================
# Composite read shapes
# =============================================================================


@dataclass
class RoleDetails:
    """A role together with its permissions and current assignment count."""

    role: Role
    permissions: List[Permission] = field(default_factory=list)
    user_count: int = 0

    @property
    def permission_names(self) -> List[str]:
        return [p.name for p in self.permissions]


@dataclass
class UserWithRoles:
    """Read snapshot used by resolution: the user and each role's permissions."""

    user: User
    roles: List[RoleDetails] = field(default_factory=list)

    @property
    def role_ids(self) -> List[str]:
        return [r.role.role_id for r in self.roles]


# =============================================================================
# Pydantic Models for API Request/Response
# =============================================================================


class Pagination(BaseModel):
    """Pagination metadata for list responses."""

    page: int
    limit: int
    total: int
    total_pages: int = Field(..., alias="totalPages")
    has_next: bool = Field(..., alias="hasNext")
    has_prev: bool = Field(..., alias="hasPrev")

    model_config = {"populate_by_name": True}

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        total_pages = (total + limit - 1) // limit if limit > 0 else 0
        return cls(
            page=page,
            limit=limit,
            total=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        )


class BulkOperationFailure(BaseModel):
    id: str
    error: str


class BulkOperationResult(BaseModel):
    """
    Partial-failure result of a bulk operation.

    Every attempted item lands in exactly one of the two lists, so callers can
    retry only the failed subset.
    """

    success: List[str] = Field(default_factory=list)
    failed: List[BulkOperationFailure] = Field(default_factory=list)

    def add_failure(self, item_id: str, error: str) -> None:
        self.failed.append(BulkOperationFailure(id=item_id, error=error))

    @property
    def failed_ids(self) -> List[str]:
        return [f.id for f in self.failed]


# --- Roles -------------------------------------------------------------------


class RoleCreate(BaseModel):
    """Request body for creating a new role."""

    name: str = Field(..., min_length=1, max_length=50)
    description: str = Field("", max_length=500)
    permission_ids: List[str] = Field(default_factory=list, alias="permissionIds")
    is_system: bool = Field(False, alias="isSystem")

    model_config = {"populate_by_name": True}


class RoleUpdate(BaseModel):
    """Request body for updating a role (partial update)."""

    name: Optional[str] = Field(None, min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=500)
    permission_ids: Optional[List[str]] = Field(None, alias="permissionIds")

    model_config = {"populate_by_name": True}


class RoleClone(BaseModel):
    """Request body for cloning a role."""

    new_role_name: str = Field(..., min_length=1, max_length=50, alias="newRoleName")
    description: Optional[str] = Field(None, max_length=500)
    include_permissions: bool = Field(True, alias="includePermissions")
    include_menu_permissions: bool = Field(False, alias="includeMenuPermissions")

    model_config = {"populate_by_name": True}


class RolePermissionUpdate(BaseModel):
    """Incremental permission edit: ids to add and ids to remove."""

    add: List[str] = Field(default_factory=list)
    remove: List[str] = Field(default_factory=list)


class RoleFilter(BaseModel):
    search: Optional[str] = None
    is_system: Optional[bool] = Field(None, alias="isSystem")
    has_users: Optional[bool] = Field(None, alias="hasUsers")
    sort_by: str = Field("name", pattern=r"^(name|createdAt|updatedAt)$", alias="sortBy")
    sort_order: str = Field("asc", pattern=r"^(asc|desc)$", alias="sortOrder")

    model_config = {"populate_by_name": True}


class UserIdsRequest(BaseModel):
    user_ids: List[str] = Field(..., min_length=1, alias="userIds")

    model_config = {"populate_by_name": True}


class RoleIdsRequest(BaseModel):
    role_ids: List[str] = Field(..., min_length=1, alias="roleIds")

    model_config = {"populate_by_name": True}


class PermissionResponse(BaseModel):
    """Response model for a permission."""

    permission_id: str = Field(..., alias="permissionId")
    name: str
    resource: str
    action: str
    description: Optional[str] = None
    created_at: str = Field("", alias="createdAt")
    updated_at: str = Field("", alias="updatedAt")

    model_config = {"populate_by_name": True}

    @classmethod
    def from_permission(cls, permission: Permission) -> "PermissionResponse":
        return cls(
            permission_id=permission.permission_id,
            name=permission.name,
            resource=permission.resource,
            action=permission.action,
            description=permission.description,
            created_at=permission.created_at,
            updated_at=permission.updated_at,
        )


class RoleResponse(BaseModel):
    """Response model for a role with its permissions."""

    role_id: str = Field(..., alias="roleId")
    name: str
    description: str
    is_system: bool = Field(..., alias="isSystem")
    permissions: List[PermissionResponse]
    user_count: int = Field(..., alias="userCount")
    permission_count: int = Field(..., alias="permissionCount")
    created_at: str = Field(..., alias="createdAt")
    updated_at: str = Field(..., alias="updatedAt")
    created_by: Optional[str] = Field(None, alias="createdBy")

    model_config = {"populate_by_name": True}

    @classmethod
    def from_details(cls, details: RoleDetails) -> "RoleResponse":
        """Create response from RoleDetails dataclass."""
        role = details.role
        return cls(
            role_id=role.role_id,
            name=role.name,
            description=role.description,
            is_system=role.is_system,
            permissions=[PermissionResponse.from_permission(p) for p in details.permissions],
            user_count=details.user_count,
            permission_count=len(details.permissions),
            created_at=role.created_at,
            updated_at=role.updated_at,
            created_by=role.created_by,
        )


class RoleListResponse(BaseModel):
    roles: List[RoleResponse]
    pagination: Pagination


class RoleSummary(BaseModel):
    role_id: str = Field(..., alias="roleId")
    name: str
    description: str
    is_system: bool = Field(..., alias="isSystem")
    permission_count: int = Field(..., alias="permissionCount")
    user_count: int = Field(..., alias="userCount")

    model_config = {"populate_by_name": True}


class RoleUsage(BaseModel):
    role_id: str = Field(..., alias="roleId")
    name: str
    user_count: int = Field(..., alias="userCount")

    model_config = {"populate_by_name": True}


class RoleStatistics(BaseModel):
    total: int
    system: int
    custom: int
    with_users: int = Field(..., alias="withUsers")
    without_users: int = Field(..., alias="withoutUsers")
    avg_permissions_per_role: float = Field(..., alias="avgPermissionsPerRole")
    most_used_roles: List[RoleUsage] = Field(..., alias="mostUsedRoles")

    model_config = {"populate_by_name": True}


class UserSummary(BaseModel):
    user_id: str = Field(..., alias="userId")
    email: str
    username: str
    is_superuser: bool = Field(..., alias="isSuperuser")
    is_active: bool = Field(True, alias="isActive")

    model_config = {"populate_by_name": True}

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        return cls(
            user_id=user.user_id,
            email=user.email,
            username=user.username,
            is_superuser=user.is_superuser,
            is_active=user.is_active,
        )


class RoleUsersResponse(BaseModel):
    users: List[UserSummary]
    total: int


# --- Permissions ---------------------------------------------------------------


class PermissionCreate(BaseModel):
    """Request body for creating a permission from a name or resource/action."""

    name: Optional[str] = None
    resource: Optional[str] = None
    action: Optional[str] = None
    description: Optional[str] = Field(None, max_length=500)


class PermissionUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = Field(None, max_length=500)


class PermissionFilter(BaseModel):
    resource: Optional[str] = None
    action: Optional[str] = None
    search: Optional[str] = None


class RoleRef(BaseModel):
    role_id: str = Field(..., alias="roleId")
    name: str

    model_config = {"populate_by_name": True}


class PermissionDetailResponse(PermissionResponse):
    roles: List[RoleRef] = Field(default_factory=list)


class PermissionListResponse(BaseModel):
    permissions: List[PermissionResponse]
    pagination: Pagination


# --- Users -----------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for registering a user known to the identity provider."""

    user_id: str = Field(..., min_length=1, max_length=128, alias="userId")
    email: str = Field("", max_length=255)
    username: str = Field("", max_length=50)
    is_superuser: bool = Field(False, alias="isSuperuser")
    is_active: bool = Field(True, alias="isActive")
    role_ids: List[str] = Field(default_factory=list, alias="roleIds")

    model_config = {"populate_by_name": True}


class UserUpdate(BaseModel):
    """Partial update for a user. role_ids, when given, replaces every assignment."""

    email: Optional[str] = Field(None, max_length=255)
    username: Optional[str] = Field(None, min_length=1, max_length=50)
    is_superuser: Optional[bool] = Field(None, alias="isSuperuser")
    is_active: Optional[bool] = Field(None, alias="isActive")
    role_ids: Optional[List[str]] = Field(None, alias="roleIds")

    model_config = {"populate_by_name": True}


class UserRolesUpdate(BaseModel):
    role_ids: List[str] = Field(..., alias="roleIds")

    model_config = {"populate_by_name": True}


class UserStatusUpdate(BaseModel):
    user_ids: List[str] = Field(..., min_length=1, alias="userIds")
    is_active: bool = Field(..., alias="isActive")

    model_config = {"populate_by_name": True}


class UserFilter(BaseModel):
    search: Optional[str] = None
    is_active: Optional[bool] = Field(None, alias="isActive")
    is_superuser: Optional[bool] = Field(None, alias="isSuperuser")
    role_id: Optional[str] = Field(None, alias="roleId")

    model_config = {"populate_by_name": True}


class UserResponse(UserSummary):
    """A user with the roles assigned to it, in assignment order."""

    roles: List[RoleRef] = Field(default_factory=list)
    created_at: str = Field("", alias="createdAt")
    updated_at: str = Field("", alias="updatedAt")

    @classmethod
    def from_snapshot(cls, snapshot: UserWithRoles) -> "UserResponse":
        user = snapshot.user
        return cls(
            **UserSummary.from_user(user).model_dump(),
            roles=[RoleRef(role_id=r.role.role_id, name=r.role.name) for r in snapshot.roles],
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class UserListResponse(BaseModel):
    users: List[UserResponse]
    pagination: Pagination


class UserRoleCheck(BaseModel):
    user_id: str = Field(..., alias="userId")
    role_name: str = Field(..., alias="roleName")
    has_role: bool = Field(..., alias="hasRole")

    model_config = {"populate_by_name": True}


class UserStatistics(BaseModel):
    total: int
    active: int
    inactive: int
    superusers: int
    by_role: Dict[str, int] = Field(..., alias="byRole")

    model_config = {"populate_by_name": True}


# --- Resolution ------------------------------------------------------------------


class EffectivePermissions(BaseModel):
    """Union of all permissions a user holds through their roles."""

    user_id: str = Field(..., alias="userId")
    permissions: List[str]
    is_superuser: bool = Field(..., alias="isSuperuser")
    is_active: bool = Field(True, alias="isActive")
    roles: List[str]
    resolved_at: str = Field(..., alias="resolvedAt")

    model_config = {"populate_by_name": True}


class PermissionCheckResult(BaseModel):
    """Outcome of a single permission check and the grant source."""

    granted: bool
    reason: str


# --- Menus -----------------------------------------------------------------------


class MenuCreate(BaseModel):
    """Request body for creating a menu node."""

    menu_id: str = Field(..., pattern=MENU_ID_PATTERN, alias="id")
    title: str = Field(..., min_length=1, max_length=100)
    parent_id: Optional[str] = Field(None, alias="parentId")
    href: Optional[str] = Field(None, max_length=255)
    icon: Optional[str] = Field(None, max_length=50)
    order_index: int = Field(0, alias="orderIndex")
    is_active: bool = Field(True, alias="isActive")

    model_config = {"populate_by_name": True}


class MenuUpdate(BaseModel):
    """
    Partial update for a menu node.

    parent_id is only applied when it was explicitly provided; an explicit
    null moves the node to the root. An explicit null clears href or icon.
    """

    title: Optional[str] = Field(None, min_length=1, max_length=100)
    parent_id: Optional[str] = Field(None, alias="parentId")
    href: Optional[str] = Field(None, max_length=255)
    icon: Optional[str] = Field(None, max_length=50)
    order_index: Optional[int] = Field(None, alias="orderIndex")
    is_active: Optional[bool] = Field(None, alias="isActive")

    model_config = {"populate_by_name": True}


class MenuMove(BaseModel):
    new_parent_id: Optional[str] = Field(None, alias="newParentId")

    model_config = {"populate_by_name": True}


class MenuReorderItem(BaseModel):
    menu_id: str = Field(..., alias="menuId")
    order_index: int = Field(..., alias="orderIndex")

    model_config = {"populate_by_name": True}


class MenuFilter(BaseModel):
    """
    Filter for the admin menu tree.

    parent_id scopes the result to one parent's children when it was
    explicitly provided (null meaning top-level nodes).
    """

    search: Optional[str] = None
    is_active: Optional[bool] = Field(None, alias="isActive")
    parent_id: Optional[str] = Field(None, alias="parentId")

    model_config = {"populate_by_name": True}

    @property
    def scopes_parent(self) -> bool:
        return "parent_id" in self.model_fields_set


class MenuPermissionSummary(BaseModel):
    can_view: bool = Field(False, alias="canView")
    can_edit: bool = Field(False, alias="canEdit")
    can_delete: bool = Field(False, alias="canDelete")
    can_export: bool = Field(False, alias="canExport")

    model_config = {"populate_by_name": True}

    @classmethod
    def from_record(cls, record: MenuPermission) -> "MenuPermissionSummary":
        return cls(**record.flags())


class MenuPermissionInput(BaseModel):
    """
    Requested flags for one menu. Unset flags keep their stored value.
    """

    menu_id: str = Field(..., alias="menuId")
    can_view: Optional[bool] = Field(None, alias="canView")
    can_edit: Optional[bool] = Field(None, alias="canEdit")
    can_delete: Optional[bool] = Field(None, alias="canDelete")
    can_export: Optional[bool] = Field(None, alias="canExport")

    model_config = {"populate_by_name": True}

    def merged_over(self, existing: Optional[MenuPermission]) -> Dict[str, bool]:
        """Overlay the requested flags on the existing record's flags."""
        merged = existing.flags() if existing else {name: False for name in CAPABILITY_FLAGS}
        for name in CAPABILITY_FLAGS:
            value = getattr(self, name)
            if value is not None:
                merged[name] = value
        return merged


class BatchMenuPermissionUpdate(BaseModel):
    permissions: List[MenuPermissionInput]
    apply_to_children: bool = Field(False, alias="applyToChildren")

    model_config = {"populate_by_name": True}


class MenuResponse(BaseModel):
    """Response model for a menu node without its subtree."""

    id: str
    parent_id: Optional[str] = Field(None, alias="parentId")
    title: str
    href: Optional[str] = None
    icon: Optional[str] = None
    order_index: int = Field(0, alias="orderIndex")
    is_active: bool = Field(True, alias="isActive")
    created_at: str = Field("", alias="createdAt")
    updated_at: str = Field("", alias="updatedAt")

    model_config = {"populate_by_name": True}

    @classmethod
    def from_menu(cls, menu: Menu) -> "MenuResponse":
        return cls(
            id=menu.menu_id,
            parent_id=menu.parent_id,
            title=menu.title,
            href=menu.href,
            icon=menu.icon,
            order_index=menu.order_index,
            is_active=menu.is_active,
            created_at=menu.created_at,
            updated_at=menu.updated_at,
        )


class MenuDetailResponse(MenuResponse):
    parent: Optional[MenuResponse] = None
    children: List[MenuResponse] = Field(default_factory=list)


class MenuNode(MenuResponse):
    """Tree node; permissions are present only on user-facing trees."""

    children: List["MenuNode"] = Field(default_factory=list)
    permissions: Optional[MenuPermissionSummary] = None


MenuNode.model_rebuild()


class UserMenuTree(BaseModel):
    menus: List[MenuNode]
    total_count: int = Field(..., alias="totalCount")
    active_count: int = Field(..., alias="activeCount")

    model_config = {"populate_by_name": True}


class GrantingRole(BaseModel):
    role_id: str = Field(..., alias="roleId")
    role_name: str = Field(..., alias="roleName")

    model_config = {"populate_by_name": True}


class MenuAccessResult(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    granting_roles: Optional[List[GrantingRole]] = Field(None, alias="grantingRoles")

    model_config = {"populate_by_name": True}


class MenuTreeStatistics(BaseModel):
    total_menus: int = Field(..., alias="totalMenus")
    active_menus: int = Field(..., alias="activeMenus")
    top_level_menus: int = Field(..., alias="topLevelMenus")
    max_depth: int = Field(..., alias="maxDepth")
    average_children_per_menu: float = Field(..., alias="averageChildrenPerMenu")

    model_config = {"populate_by_name": True}


class MenuPermissionMatrixRow(BaseModel):
    role_id: str = Field(..., alias="roleId")
    role_name: str = Field(..., alias="roleName")
    permissions: Dict[str, MenuPermissionSummary]

    model_config = {"populate_by_name": True}


class MenuPermissionEntry(MenuPermissionSummary):
    menu_id: str = Field(..., alias="menuId")
    role_id: str = Field(..., alias="roleId")
    role_name: Optional[str] = Field(None, alias="roleName")

    @classmethod
    def from_record(
        cls, record: MenuPermission, role_name: Optional[str] = None
    ) -> "MenuPermissionEntry":
        return cls(
            menu_id=record.menu_id,
            role_id=record.role_id,
            role_name=role_name,
            **record.flags(),
        )


class RoleMenuPermissions(BaseModel):
    role_id: str = Field(..., alias="roleId")
    menu_permissions: List[MenuPermissionEntry] = Field(..., alias="menuPermissions")

    model_config = {"populate_by_name": True}


class MenuPermissionSet(BaseModel):
    """Full flag set for a single menu grant."""

    can_view: bool = Field(False, alias="canView")
    can_edit: bool = Field(False, alias="canEdit")
    can_delete: bool = Field(False, alias="canDelete")
    can_export: bool = Field(False, alias="canExport")

    model_config = {"populate_by_name": True}

    @field_validator("can_view", "can_edit", "can_delete", "can_export", mode="before")
    @classmethod
    def coerce_none(cls, v):
        return False if v is None else v
