"""Menu tree management: create, move, reorder and delete navigation nodes."""

import logging
from collections import deque
from typing import Dict, Iterable, List, Optional

from rolegate.shared.audit import AuditAction, AuditLogger, get_audit_logger, record_audit
from rolegate.shared.errors import ConflictError, NotFoundError, RbacValidationError

from .models import (
    Menu,
    MenuCreate,
    MenuDetailResponse,
    MenuNode,
    MenuPermissionSummary,
    MenuReorderItem,
    MenuResponse,
    MenuUpdate,
    utc_now_iso,
)
from .store import RbacStore, get_rbac_store

logger = logging.getLogger(__name__)


def menu_sort_key(menu: Menu):
    """Siblings order by order_index, ties broken by title then id."""
    return (menu.order_index, menu.title, menu.menu_id)


def index_children(menus: Iterable[Menu]) -> Dict[Optional[str], List[Menu]]:
    """Map parent id -> ordered children. Root nodes live under None."""
    children: Dict[Optional[str], List[Menu]] = {}
    for menu in menus:
        children.setdefault(menu.parent_id, []).append(menu)
    for siblings in children.values():
        siblings.sort(key=menu_sort_key)
    return children


def collect_descendants(menu_id: str, children: Dict[Optional[str], List[Menu]]) -> List[str]:
    """Breadth-first ids of every node below menu_id (menu_id itself excluded)."""
    found: List[str] = []
    seen = {menu_id}
    queue = deque([menu_id])
    while queue:
        current = queue.popleft()
        for child in children.get(current, []):
            if child.menu_id not in seen:
                seen.add(child.menu_id)
                found.append(child.menu_id)
                queue.append(child.menu_id)
    return found


def build_menu_nodes(
    menus: Iterable[Menu],
    permissions: Optional[Dict[str, MenuPermissionSummary]] = None,
    keep_orphans: bool = False,
) -> List[MenuNode]:
    """
    Assemble nested MenuNodes from a flat menu list.

    A node whose parent is not in the list is dropped, or promoted to a root
    when keep_orphans is set. Each level is ordered with menu_sort_key.
    """
    menus = list(menus)
    present = {m.menu_id for m in menus}
    children = index_children(menus)

    def to_node(menu: Menu) -> MenuNode:
        return MenuNode(
            **MenuResponse.from_menu(menu).model_dump(),
            permissions=permissions.get(menu.menu_id) if permissions is not None else None,
        )

    roots = [
        m for m in menus
        if m.parent_id is None or (keep_orphans and m.parent_id not in present)
    ]
    roots.sort(key=menu_sort_key)

    # Depth-first with an explicit stack
    top = [to_node(m) for m in roots]
    stack = list(top)
    while stack:
        node = stack.pop()
        node.children = [to_node(child) for child in children.get(node.id, [])]
        stack.extend(node.children)
    return top


def count_nodes(nodes: Iterable[MenuNode]) -> int:
    total = 0
    stack = list(nodes)
    while stack:
        node = stack.pop()
        total += 1
        stack.extend(node.children)
    return total


class MenuTreeService:
    """
    Service for structural edits of the menu tree.

    The parent relation is kept acyclic and free of dangling parents: moves
    into a node's own subtree and deletes of nodes with children are refused.
    """

    def __init__(
        self,
        store: Optional[RbacStore] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.store = store or get_rbac_store()
        self.audit = audit or get_audit_logger()

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_menu(self, menu_id: str) -> MenuDetailResponse:
        """Menu with its parent and ordered direct children."""
        menu = await self._require_menu(menu_id)
        parent = await self.store.get_menu(menu.parent_id) if menu.parent_id else None
        children = index_children(await self.store.list_menus()).get(menu_id, [])

        return MenuDetailResponse(
            **MenuResponse.from_menu(menu).model_dump(),
            parent=MenuResponse.from_menu(parent) if parent else None,
            children=[MenuResponse.from_menu(c) for c in children],
        )

    async def get_menu_path(self, menu_id: str) -> str:
        """Titles from the root down to the menu, joined with ' > '."""
        menu = await self._require_menu(menu_id)
        titles = [menu.title]
        seen = {menu.menu_id}
        while menu.parent_id and menu.parent_id not in seen:
            parent = await self.store.get_menu(menu.parent_id)
            if not parent:
                break
            titles.append(parent.title)
            seen.add(parent.menu_id)
            menu = parent
        return " > ".join(reversed(titles))

    async def get_descendants(self, menu_id: str) -> List[Menu]:
        """All menus below menu_id in breadth-first order."""
        await self._require_menu(menu_id)
        menus = await self.store.list_menus()
        by_id = {m.menu_id: m for m in menus}
        return [by_id[mid] for mid in collect_descendants(menu_id, index_children(menus))]

    # =========================================================================
    # Mutations
    # =========================================================================

    async def create_menu(self, data: MenuCreate, actor_id: Optional[str]) -> Menu:
        """
        Create a menu node.

        Raises:
            ConflictError: If the menu id is taken
            NotFoundError: If the parent does not exist
        """
        if await self.store.get_menu(data.menu_id):
            raise ConflictError(
                f"Menu '{data.menu_id}' already exists", details={"menuId": data.menu_id}
            )
        if data.parent_id is not None:
            await self._require_menu(data.parent_id, label="Parent menu")

        now = utc_now_iso()
        menu = Menu(
            menu_id=data.menu_id,
            title=data.title,
            parent_id=data.parent_id,
            href=data.href,
            icon=data.icon,
            order_index=data.order_index,
            is_active=data.is_active,
            created_at=now,
            updated_at=now,
        )

        async with self.store.transaction() as uow:
            uow.put_menu(menu)

        logger.info(
            f"Admin {actor_id} created menu: {menu.menu_id}",
            extra={"event": "menu_created", "menu_id": menu.menu_id, "admin_user_id": actor_id},
        )
        record_audit(
            self.audit, actor_id, AuditAction.CREATE_MENU, "menu", menu.menu_id,
            {"title": menu.title, "parentId": menu.parent_id},
        )
        return menu

    async def update_menu(
        self, menu_id: str, data: MenuUpdate, actor_id: Optional[str]
    ) -> Menu:
        """
        Update menu fields. A parent change is validated like move_menu.
        """
        menu = await self._require_menu(menu_id)
        changes = data.model_dump(exclude_unset=True)

        if "parent_id" in changes and data.parent_id != menu.parent_id:
            await self._validate_parent(menu_id, data.parent_id)
            menu.parent_id = data.parent_id

        for field in ("href", "icon"):
            if field in changes:
                setattr(menu, field, changes[field])
        for field in ("title", "order_index", "is_active"):
            if changes.get(field) is not None:
                setattr(menu, field, changes[field])
        menu.updated_at = utc_now_iso()

        async with self.store.transaction() as uow:
            uow.put_menu(menu)

        logger.info(
            f"Admin {actor_id} updated menu: {menu_id}",
            extra={
                "event": "menu_updated",
                "menu_id": menu_id,
                "admin_user_id": actor_id,
                "changes": list(changes.keys()),
            },
        )
        record_audit(
            self.audit, actor_id, AuditAction.UPDATE_MENU, "menu", menu_id,
            {"changes": list(changes.keys())},
        )
        return menu

    async def move_menu(
        self, menu_id: str, new_parent_id: Optional[str], actor_id: Optional[str]
    ) -> Menu:
        """
        Reparent a menu; None moves it to the root.

        Raises:
            NotFoundError: If the menu or the new parent does not exist
            RbacValidationError: If the new parent is the menu or one of its descendants
        """
        menu = await self._require_menu(menu_id)
        await self._validate_parent(menu_id, new_parent_id)

        old_parent_id = menu.parent_id
        menu.parent_id = new_parent_id
        menu.updated_at = utc_now_iso()

        async with self.store.transaction() as uow:
            uow.put_menu(menu)

        logger.info(
            f"Admin {actor_id} moved menu {menu_id}: {old_parent_id} -> {new_parent_id}",
            extra={
                "event": "menu_moved",
                "menu_id": menu_id,
                "admin_user_id": actor_id,
                "old_parent_id": old_parent_id,
                "new_parent_id": new_parent_id,
            },
        )
        record_audit(
            self.audit, actor_id, AuditAction.MOVE_MENU, "menu", menu_id,
            {"oldParentId": old_parent_id, "newParentId": new_parent_id},
        )
        return menu

    async def reorder_menus(
        self, items: List[MenuReorderItem], actor_id: Optional[str]
    ) -> List[Menu]:
        """
        Set order_index on several menus in one transaction.

        Raises:
            NotFoundError: If any menu id is unknown; nothing is written
        """
        menus = []
        missing = []
        for item in items:
            menu = await self.store.get_menu(item.menu_id)
            if menu is None:
                missing.append(item.menu_id)
                continue
            menu.order_index = item.order_index
            menus.append(menu)

        if missing:
            raise NotFoundError(
                f"Menus not found: {', '.join(missing)}", details={"missingIds": missing}
            )

        now = utc_now_iso()
        async with self.store.transaction() as uow:
            for menu in menus:
                menu.updated_at = now
                uow.put_menu(menu)

        logger.info(
            f"Admin {actor_id} reordered {len(menus)} menu(s)",
            extra={"event": "menus_reordered", "admin_user_id": actor_id, "count": len(menus)},
        )
        record_audit(
            self.audit, actor_id, AuditAction.REORDER_MENUS, "menu", "*",
            {"items": [{"menuId": i.menu_id, "orderIndex": i.order_index} for i in items]},
        )
        return menus

    async def delete_menu(self, menu_id: str, actor_id: Optional[str]) -> None:
        """
        Delete a leaf menu and every MenuPermission row on it.

        Raises:
            NotFoundError: If the menu does not exist
            RbacValidationError: If the menu has children
        """
        menu = await self._require_menu(menu_id)

        children = index_children(await self.store.list_menus()).get(menu_id, [])
        if children:
            raise RbacValidationError(
                f"Cannot delete menu '{menu_id}': it has {len(children)} child menu(s)",
                details={"menuId": menu_id, "childCount": len(children)},
            )

        records = await self.store.find_menu_permissions(menu_ids=[menu_id])

        async with self.store.transaction() as uow:
            for record in records:
                uow.delete_menu_permission(menu_id, record.role_id)
            uow.delete_menu(menu_id)

        logger.info(
            f"Admin {actor_id} deleted menu: {menu_id}",
            extra={
                "event": "menu_deleted",
                "menu_id": menu_id,
                "admin_user_id": actor_id,
                "permissions_removed": len(records),
            },
        )
        record_audit(
            self.audit, actor_id, AuditAction.DELETE_MENU, "menu", menu_id,
            {"title": menu.title, "permissionsRemoved": len(records)},
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _require_menu(self, menu_id: str, label: str = "Menu") -> Menu:
        menu = await self.store.get_menu(menu_id)
        if not menu:
            raise NotFoundError(f"{label} '{menu_id}' not found", details={"menuId": menu_id})
        return menu

    async def _validate_parent(self, menu_id: str, new_parent_id: Optional[str]) -> None:
        if new_parent_id is None:
            return
        if new_parent_id == menu_id:
            raise RbacValidationError(
                "A menu cannot be its own parent", details={"menuId": menu_id}, field="parentId"
            )
        await self._require_menu(new_parent_id, label="Parent menu")

        descendants = collect_descendants(menu_id, index_children(await self.store.list_menus()))
        if new_parent_id in descendants:
            raise RbacValidationError(
                f"Cannot move menu '{menu_id}' under its descendant '{new_parent_id}'",
                details={"menuId": menu_id, "parentId": new_parent_id},
                field="parentId",
            )


# Global service instance
_menu_tree_instance: Optional[MenuTreeService] = None


def get_menu_tree_service() -> MenuTreeService:
    """Get or create the global MenuTreeService instance."""
    global _menu_tree_instance
    if _menu_tree_instance is None:
        _menu_tree_instance = MenuTreeService()
    return _menu_tree_instance
