"""Per-role menu capabilities and their aggregation into per-user views."""

import logging
from typing import Dict, Iterable, List, Optional, Union

from rolegate.shared.audit import AuditAction, AuditLogger, get_audit_logger, record_audit
from rolegate.shared.errors import NotFoundError, RbacValidationError, StoreError

from .menu_tree import build_menu_nodes, collect_descendants, count_nodes, index_children
from .models import (
    CAPABILITY_FLAGS,
    BulkOperationResult,
    GrantingRole,
    Menu,
    MenuAccessResult,
    MenuCapability,
    MenuFilter,
    MenuNode,
    MenuPermission,
    MenuPermissionEntry,
    MenuPermissionInput,
    MenuPermissionMatrixRow,
    MenuPermissionSet,
    MenuPermissionSummary,
    MenuTreeStatistics,
    Role,
    UserMenuTree,
)
from .store import RbacStore, get_rbac_store

logger = logging.getLogger(__name__)


def merge_menu_permissions(records: Iterable[MenuPermission]) -> Dict[str, MenuPermissionSummary]:
    """OR-merge capability flags per menu across any number of roles."""
    merged: Dict[str, Dict[str, bool]] = {}
    for record in records:
        flags = merged.setdefault(record.menu_id, {name: False for name in CAPABILITY_FLAGS})
        for name, value in record.flags().items():
            flags[name] = flags[name] or value
    return {menu_id: MenuPermissionSummary(**flags) for menu_id, flags in merged.items()}


def parse_capability(capability: Union[str, MenuCapability]) -> MenuCapability:
    try:
        return MenuCapability(capability)
    except ValueError:
        raise RbacValidationError(
            f"Invalid capability '{capability}'. Expected one of: "
            f"{', '.join(c.value for c in MenuCapability)}",
            field="capability",
        )


class MenuPermissionService:
    """
    Service for menu capability grants.

    Handles:
    - Per-user visible menu trees (flags OR-merged across roles)
    - Batch and cascading grant updates with partial-failure results
    - Access checks, the role x menu matrix and tree statistics
    """

    def __init__(
        self,
        store: Optional[RbacStore] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.store = store or get_rbac_store()
        self.audit = audit or get_audit_logger()

    # =========================================================================
    # Trees
    # =========================================================================

    async def build_user_menu_tree(self, user_id: str) -> UserMenuTree:
        """
        Build the menu tree a user may see.

        Only active menus with can_view through at least one role are
        included, and a node is kept only if its whole ancestor chain is
        visible too. A deactivated user sees an empty tree.

        Raises:
            NotFoundError: If the user does not exist
        """
        user = await self.store.get_user(user_id)
        if not user:
            raise NotFoundError(f"User '{user_id}' not found", details={"userId": user_id})

        role_ids = await self.store.list_user_role_ids(user_id) if user.is_active else []
        if not role_ids:
            return UserMenuTree(menus=[], total_count=0, active_count=0)

        records = await self.store.find_menu_permissions(role_ids=role_ids, can_view=True)
        permissions = merge_menu_permissions(records)

        visible = [
            m for m in await self.store.list_menus()
            if m.menu_id in permissions and m.is_active
        ]
        menus = build_menu_nodes(visible, permissions)
        total = count_nodes(menus)

        logger.debug(f"Built menu tree for {user_id}: {total} visible menu(s)")
        return UserMenuTree(menus=menus, total_count=total, active_count=total)

    async def build_complete_menu_tree(
        self, menu_filter: Optional[MenuFilter] = None
    ) -> List[MenuNode]:
        """
        Every menu matching the filter as a tree, permissions ignored.

        Nodes whose parent was filtered out become roots of the result.
        """
        menus = await self.store.find_menus_by_filter(menu_filter)
        return build_menu_nodes(menus, keep_orphans=True)

    # =========================================================================
    # Grants
    # =========================================================================

    async def get_menu_permissions(self, menu_id: str) -> List[MenuPermissionEntry]:
        """All role grants on one menu, with role names."""
        await self._require_menu(menu_id)
        records = await self.store.find_menu_permissions(menu_ids=[menu_id])

        entries = []
        for record in records:
            role = await self.store.get_role(record.role_id)
            entries.append(MenuPermissionEntry.from_record(record, role.name if role else None))
        entries.sort(key=lambda e: e.role_name or e.role_id)
        return entries

    async def set_menu_permission(
        self,
        role_id: str,
        menu_id: str,
        flags: MenuPermissionSet,
        actor_id: Optional[str],
    ) -> MenuPermissionEntry:
        """
        Create or replace a single role's grant on a menu.

        Raises:
            NotFoundError: If the role or menu does not exist
            RbacValidationError: If every flag is false
        """
        role = await self._require_role(role_id)
        await self._require_menu(menu_id)

        record = MenuPermission(menu_id=menu_id, role_id=role_id, **flags.model_dump())
        if not record.has_any_permission():
            raise RbacValidationError(
                "At least one capability must be granted",
                details={"menuId": menu_id, "roleId": role_id},
            )

        async with self.store.transaction() as uow:
            uow.put_menu_permission(record)

        logger.info(
            f"Admin {actor_id} set menu permission {menu_id} for role {role_id}: {record.summary()}",
            extra={
                "event": "menu_permission_updated",
                "menu_id": menu_id,
                "role_id": role_id,
                "admin_user_id": actor_id,
            },
        )
        record_audit(
            self.audit, actor_id, AuditAction.UPDATE_MENU_PERMISSION, "menu", menu_id,
            {"roleId": role_id, **record.flags()},
        )
        return MenuPermissionEntry.from_record(record, role.name)

    async def update_role_menu_permissions(
        self,
        role_id: str,
        items: List[MenuPermissionInput],
        apply_to_children: bool,
        actor_id: Optional[str],
    ) -> BulkOperationResult:
        """
        Apply flag changes for one role across many menus.

        Each requested flag overrides the stored value; unset flags keep it.
        With apply_to_children the same change is applied to every
        descendant. A menu reached more than once is written once, by the
        first item that reaches it. A result that is all false removes the
        grant. Every target menu commits in its own transaction.

        Args:
            role_id: Role whose grants change
            items: Requested flags per menu
            apply_to_children: Cascade each item to the menu's descendants
            actor_id: User performing the action

        Returns:
            BulkOperationResult listing each target menu id

        Raises:
            NotFoundError: If the role does not exist
        """
        await self._require_role(role_id)

        menus = await self.store.list_menus()
        known = {m.menu_id for m in menus}
        children = index_children(menus) if apply_to_children else {}

        result = BulkOperationResult()
        processed = set()

        for item in items:
            if item.menu_id not in known:
                result.add_failure(item.menu_id, "Menu not found")
                continue

            targets = [item.menu_id]
            if apply_to_children:
                targets.extend(collect_descendants(item.menu_id, children))

            for target in targets:
                if target in processed:
                    continue
                processed.add(target)
                try:
                    await self._apply_menu_permission(role_id, target, item)
                    result.success.append(target)
                except StoreError as e:
                    logger.error(f"Failed to update menu permission {target} for role {role_id}: {e}")
                    result.add_failure(target, str(e))

        logger.info(
            f"Admin {actor_id} batch-updated menu permissions for role {role_id}: "
            f"{len(result.success)} succeeded, {len(result.failed)} failed",
            extra={
                "event": "menu_permissions_batch_updated",
                "role_id": role_id,
                "admin_user_id": actor_id,
                "apply_to_children": apply_to_children,
            },
        )
        record_audit(
            self.audit, actor_id, AuditAction.BATCH_UPDATE_MENU_PERMISSIONS, "role", role_id,
            {
                "applyToChildren": apply_to_children,
                "menuIds": result.success,
                "failed": result.failed_ids,
            },
        )
        return result

    async def _apply_menu_permission(
        self, role_id: str, menu_id: str, item: MenuPermissionInput
    ) -> None:
        existing = await self.store.get_menu_permission(menu_id, role_id)
        merged = item.merged_over(existing)

        async with self.store.transaction() as uow:
            if any(merged.values()):
                uow.put_menu_permission(MenuPermission(menu_id=menu_id, role_id=role_id, **merged))
            elif existing:
                uow.delete_menu_permission(menu_id, role_id)

    async def remove_all_role_menu_permissions(
        self, role_id: str, actor_id: Optional[str]
    ) -> int:
        """Drop every menu grant of a role. Returns the number removed."""
        await self._require_role(role_id)
        records = await self.store.find_menu_permissions(role_ids=[role_id])

        async with self.store.transaction() as uow:
            for record in records:
                uow.delete_menu_permission(record.menu_id, role_id)

        logger.info(
            f"Admin {actor_id} removed {len(records)} menu permission(s) from role {role_id}",
            extra={
                "event": "menu_permissions_removed",
                "role_id": role_id,
                "admin_user_id": actor_id,
                "count": len(records),
            },
        )
        record_audit(
            self.audit, actor_id, AuditAction.REMOVE_ALL_MENU_PERMISSIONS, "role", role_id,
            {"count": len(records)},
        )
        return len(records)

    # =========================================================================
    # Access checks and reporting
    # =========================================================================

    async def check_menu_access(
        self,
        user_id: str,
        menu_id: str,
        capability: Union[str, MenuCapability] = MenuCapability.VIEW,
    ) -> MenuAccessResult:
        """
        Check one capability of a user on a menu.

        Denials carry a reason; grants list every granting role.

        Raises:
            RbacValidationError: If capability is not a known value
        """
        capability = parse_capability(capability)

        user = await self.store.get_user(user_id)
        if not user:
            return MenuAccessResult(allowed=False, reason="User not found")
        if not user.is_active:
            return MenuAccessResult(allowed=False, reason="User is inactive")

        role_ids = await self.store.list_user_role_ids(user_id)
        if not role_ids:
            return MenuAccessResult(allowed=False, reason="User has no roles")

        menu = await self.store.get_menu(menu_id)
        if not menu:
            return MenuAccessResult(allowed=False, reason="Menu not found")
        if not menu.is_active:
            return MenuAccessResult(allowed=False, reason="Menu is inactive")

        records = await self.store.find_menu_permissions(role_ids=role_ids, menu_ids=[menu_id])
        granting_ids = {r.role_id for r in records if r.allows(capability)}

        if not granting_ids:
            logger.debug(f"Menu {menu_id} {capability.value} denied for user {user_id}")
            return MenuAccessResult(
                allowed=False, reason=f"No {capability.value} permission for this menu"
            )

        granting_roles = []
        for role_id in role_ids:
            if role_id in granting_ids:
                role = await self.store.get_role(role_id)
                granting_roles.append(
                    GrantingRole(role_id=role_id, role_name=role.name if role else role_id)
                )
        return MenuAccessResult(allowed=True, granting_roles=granting_roles)

    async def get_menu_permission_matrix(self) -> List[MenuPermissionMatrixRow]:
        """Every role (ordered by name) with its flags per menu id."""
        records = await self.store.find_menu_permissions()
        by_role: Dict[str, Dict[str, MenuPermissionSummary]] = {}
        for record in records:
            by_role.setdefault(record.role_id, {})[record.menu_id] = (
                MenuPermissionSummary.from_record(record)
            )

        return [
            MenuPermissionMatrixRow(
                role_id=role.role_id,
                role_name=role.name,
                permissions=dict(sorted(by_role.get(role.role_id, {}).items())),
            )
            for role in await self.store.list_roles()
        ]

    async def get_menu_tree_statistics(self) -> MenuTreeStatistics:
        """
        Summary numbers for the whole tree.

        Depth counts a top-level menu as 1. The average branching factor is
        taken over menus that have at least one child.
        """
        menus = await self.store.list_menus()
        children = index_children(menus)

        roots = children.get(None, [])

        # Level-by-level walk from the roots
        max_depth = 0
        level = [m.menu_id for m in roots]
        while level:
            max_depth += 1
            level = [k.menu_id for menu_id in level for k in children.get(menu_id, [])]

        parent_count = sum(1 for m in menus if children.get(m.menu_id))
        child_count = sum(1 for m in menus if m.parent_id is not None)

        return MenuTreeStatistics(
            total_menus=len(menus),
            active_menus=sum(1 for m in menus if m.is_active),
            top_level_menus=len(roots),
            max_depth=max_depth,
            average_children_per_menu=round(child_count / parent_count, 2) if parent_count else 0.0,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _require_role(self, role_id: str) -> Role:
        role = await self.store.get_role(role_id)
        if not role:
            raise NotFoundError(f"Role '{role_id}' not found", details={"roleId": role_id})
        return role

    async def _require_menu(self, menu_id: str) -> Menu:
        menu = await self.store.get_menu(menu_id)
        if not menu:
            raise NotFoundError(f"Menu '{menu_id}' not found", details={"menuId": menu_id})
        return menu


# Global service instance
_menu_permission_instance: Optional[MenuPermissionService] = None


def get_menu_permission_service() -> MenuPermissionService:
    """Get or create the global MenuPermissionService instance."""
    global _menu_permission_instance
    if _menu_permission_instance is None:
        _menu_permission_instance = MenuPermissionService()
    return _menu_permission_instance
