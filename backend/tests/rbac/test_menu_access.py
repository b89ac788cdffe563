"""Tests for menu capability aggregation and batch grant updates."""

import pytest

from rolegate.shared.audit import AuditAction, drain_audit
from rolegate.shared.errors import NotFoundError, RbacValidationError
from rolegate.shared.rbac.menu_access import merge_menu_permissions
from rolegate.shared.rbac.menu_tree import count_nodes
from rolegate.shared.rbac.models import (
    Menu,
    MenuCapability,
    MenuFilter,
    MenuPermission,
    MenuPermissionInput,
    MenuPermissionSet,
)


@pytest.fixture
async def tree(factory):
    """M1 > M2 > M3, plus roots M4 (inactive) and M5."""
    await factory.menu("M1", title="Reports", order_index=2)
    await factory.menu("M2", parent_id="M1", title="Sales")
    await factory.menu("M3", parent_id="M2", title="Daily")
    await factory.menu("M4", title="Legacy", is_active=False)
    await factory.menu("M5", title="Home", order_index=1)


@pytest.fixture
async def editor(factory, tree):
    """User u1 holding the reader and editor roles, in that order."""
    await factory.user("u1")
    reader = await factory.role("reader")
    editor = await factory.role("editor")
    await factory.assign("u1", reader.role_id, editor.role_id)
    return editor


def test_merge_is_a_logical_or_per_menu() -> None:
    merged = merge_menu_permissions(
        [
            MenuPermission("M1", "r1", can_view=True),
            MenuPermission("M1", "r2", can_edit=True),
            MenuPermission("M2", "r1", can_export=True),
        ]
    )

    assert merged["M1"].can_view and merged["M1"].can_edit
    assert not merged["M1"].can_delete
    assert merged["M2"].can_export and not merged["M2"].can_view


# =============================================================================
# User menu tree
# =============================================================================


async def test_user_tree_merges_flags_across_roles(menu_access, factory, editor) -> None:
    await factory.grant_menu("r-reader", "M5", can_view=True)
    await factory.grant_menu("r-editor", "M5", can_view=True, can_export=True)
    await factory.grant_menu("r-reader", "M1", can_view=True)
    await factory.grant_menu("r-editor", "M1", can_edit=True)

    tree = await menu_access.build_user_menu_tree("u1")

    assert [n.id for n in tree.menus] == ["M5", "M1"]
    home, reports = tree.menus
    assert home.permissions.can_view and home.permissions.can_export
    # rows without view do not contribute
    assert reports.permissions.can_view and not reports.permissions.can_edit
    assert tree.total_count == 2


async def test_user_tree_nests_visible_children(menu_access, factory, editor) -> None:
    for menu_id in ("M1", "M2", "M3", "M5"):
        await factory.grant_menu("r-reader", menu_id, can_view=True)
    await factory.grant_menu("r-editor", "M2", can_view=True, can_edit=True)

    tree = await menu_access.build_user_menu_tree("u1")

    assert [n.id for n in tree.menus] == ["M5", "M1"]
    sales = tree.menus[1].children[0]
    assert sales.id == "M2"
    assert sales.permissions.can_view and sales.permissions.can_edit
    assert [c.id for c in sales.children] == ["M3"]
    assert tree.total_count == 4
    assert tree.active_count == 4


async def test_user_tree_skips_inactive_and_orphaned_menus(menu_access, factory, editor) -> None:
    await factory.grant_menu("r-reader", "M4", can_view=True)
    await factory.grant_menu("r-reader", "M3", can_view=True)

    tree = await menu_access.build_user_menu_tree("u1")

    assert tree.menus == []
    assert tree.total_count == 0


async def test_user_tree_ignores_grants_without_view(menu_access, factory, editor) -> None:
    await factory.grant_menu("r-editor", "M5", can_edit=True)

    tree = await menu_access.build_user_menu_tree("u1")

    assert tree.menus == []


async def test_user_without_roles_gets_empty_tree(menu_access, factory, tree) -> None:
    await factory.user("loner")

    result = await menu_access.build_user_menu_tree("loner")

    assert result.menus == []
    assert result.total_count == 0


async def test_user_tree_unknown_user(menu_access) -> None:
    with pytest.raises(NotFoundError):
        await menu_access.build_user_menu_tree("ghost")


async def test_complete_tree_includes_inactive_menus(menu_access, tree) -> None:
    nodes = await menu_access.build_complete_menu_tree()

    assert [n.id for n in nodes] == ["M4", "M5", "M1"]
    assert nodes[2].children[0].children[0].id == "M3"
    assert nodes[0].permissions is None


async def test_complete_tree_promotes_filtered_orphans(menu_access, tree) -> None:
    nodes = await menu_access.build_complete_menu_tree(MenuFilter(search="daily"))
    assert [n.id for n in nodes] == ["M3"]

    scoped = await menu_access.build_complete_menu_tree(MenuFilter(parent_id=None))
    assert [n.id for n in scoped] == ["M4", "M5", "M1"]
    assert all(n.children == [] for n in scoped)


# =============================================================================
# Batch updates
# =============================================================================


async def test_cascade_to_children(menu_access, store, factory, tree, audit) -> None:
    await factory.role("analyst")

    result = await menu_access.update_role_menu_permissions(
        "r-analyst",
        [MenuPermissionInput(menuId="M1", canView=True)],
        apply_to_children=True,
        actor_id="admin",
    )

    assert result.success == ["M1", "M2", "M3"]
    assert result.failed == []
    for menu_id in ("M1", "M2", "M3"):
        record = await store.get_menu_permission(menu_id, "r-analyst")
        assert record.can_view and not record.can_edit
    await drain_audit()
    assert audit.actions() == [AuditAction.BATCH_UPDATE_MENU_PERMISSIONS]


async def test_unset_flags_keep_stored_values(menu_access, store, factory, tree) -> None:
    await factory.role("analyst")
    await factory.grant_menu("r-analyst", "M5", can_view=True, can_export=True)

    await menu_access.update_role_menu_permissions(
        "r-analyst", [MenuPermissionInput(menuId="M5", canEdit=True)], False, "admin"
    )

    record = await store.get_menu_permission("M5", "r-analyst")
    assert record.flags() == {
        "can_view": True,
        "can_edit": True,
        "can_delete": False,
        "can_export": True,
    }


async def test_all_false_result_removes_grant(menu_access, store, factory, tree) -> None:
    await factory.role("analyst")
    await factory.grant_menu("r-analyst", "M5", can_view=True)

    result = await menu_access.update_role_menu_permissions(
        "r-analyst", [MenuPermissionInput(menuId="M5", canView=False)], False, "admin"
    )

    assert result.success == ["M5"]
    assert await store.get_menu_permission("M5", "r-analyst") is None


async def test_unknown_menu_is_reported_and_others_proceed(menu_access, store, factory, tree) -> None:
    await factory.role("analyst")

    result = await menu_access.update_role_menu_permissions(
        "r-analyst",
        [MenuPermissionInput(menuId="NOPE", canView=True), MenuPermissionInput(menuId="M5", canView=True)],
        False,
        "admin",
    )

    assert result.success == ["M5"]
    assert [(f.id, f.error) for f in result.failed] == [("NOPE", "Menu not found")]


async def test_overlapping_targets_written_once(menu_access, store, factory, tree) -> None:
    await factory.role("analyst")

    result = await menu_access.update_role_menu_permissions(
        "r-analyst",
        [
            MenuPermissionInput(menuId="M1", canView=True),
            MenuPermissionInput(menuId="M2", canEdit=True),
        ],
        True,
        "admin",
    )

    assert result.success == ["M1", "M2", "M3"]
    record = await store.get_menu_permission("M2", "r-analyst")
    assert record.can_view and not record.can_edit


async def test_batch_update_unknown_role(menu_access, tree) -> None:
    with pytest.raises(NotFoundError):
        await menu_access.update_role_menu_permissions(
            "r-ghost", [MenuPermissionInput(menuId="M1", canView=True)], False, "admin"
        )


async def test_set_menu_permission_requires_a_flag(menu_access, factory, tree) -> None:
    await factory.role("analyst")

    with pytest.raises(RbacValidationError):
        await menu_access.set_menu_permission("r-analyst", "M1", MenuPermissionSet(), "admin")

    entry = await menu_access.set_menu_permission(
        "r-analyst", "M1", MenuPermissionSet(canView=True, canDelete=True), "admin"
    )
    assert entry.role_name == "analyst"
    assert entry.can_delete


async def test_remove_all_role_menu_permissions(menu_access, store, factory, tree) -> None:
    await factory.role("analyst")
    await factory.grant_menu("r-analyst", "M1", can_view=True)
    await factory.grant_menu("r-analyst", "M5", can_edit=True)

    removed = await menu_access.remove_all_role_menu_permissions("r-analyst", "admin")

    assert removed == 2
    assert await store.find_menu_permissions(role_ids=["r-analyst"]) == []


async def test_get_menu_permissions_lists_roles_by_name(menu_access, factory, tree) -> None:
    await factory.role("zeta")
    await factory.role("alpha")
    await factory.grant_menu("r-zeta", "M1", can_view=True)
    await factory.grant_menu("r-alpha", "M1", can_edit=True)

    entries = await menu_access.get_menu_permissions("M1")

    assert [e.role_name for e in entries] == ["alpha", "zeta"]


# =============================================================================
# Access checks and reporting
# =============================================================================


async def test_access_granted_lists_roles_in_assignment_order(menu_access, factory, editor) -> None:
    await factory.grant_menu("r-editor", "M5", can_view=True)
    await factory.grant_menu("r-reader", "M5", can_view=True)

    result = await menu_access.check_menu_access("u1", "M5", "view")

    assert result.allowed
    assert [r.role_name for r in result.granting_roles] == ["reader", "editor"]


@pytest.mark.parametrize(
    "user_id,menu_id,capability,reason",
    [
        ("ghost", "M5", "view", "User not found"),
        ("loner", "M5", "view", "User has no roles"),
        ("u1", "NOPE", "view", "Menu not found"),
        ("u1", "M4", "view", "Menu is inactive"),
        ("u1", "M5", "delete", "No delete permission for this menu"),
    ],
)
async def test_access_denial_reasons(menu_access, factory, editor, user_id, menu_id, capability, reason) -> None:
    await factory.user("loner")
    await factory.grant_menu("r-editor", "M4", can_view=True)
    await factory.grant_menu("r-editor", "M5", can_view=True, can_edit=True)

    result = await menu_access.check_menu_access(user_id, menu_id, capability)

    assert not result.allowed
    assert result.reason == reason
    assert result.granting_roles is None


async def test_access_with_enum_capability(menu_access, factory, editor) -> None:
    await factory.grant_menu("r-editor", "M5", can_export=True)

    result = await menu_access.check_menu_access("u1", "M5", MenuCapability.EXPORT)

    assert result.allowed


async def test_invalid_capability_is_rejected(menu_access, editor) -> None:
    with pytest.raises(RbacValidationError):
        await menu_access.check_menu_access("u1", "M5", "approve")


async def test_permission_matrix(menu_access, factory, tree) -> None:
    await factory.role("viewer")
    await factory.role("analyst")
    await factory.grant_menu("r-viewer", "M5", can_view=True)
    await factory.grant_menu("r-viewer", "M1", can_view=True, can_export=True)

    rows = await menu_access.get_menu_permission_matrix()

    assert [r.role_name for r in rows] == ["analyst", "viewer"]
    assert rows[0].permissions == {}
    assert list(rows[1].permissions) == ["M1", "M5"]
    assert rows[1].permissions["M1"].can_export


async def test_tree_statistics(menu_access, tree) -> None:
    stats = await menu_access.get_menu_tree_statistics()

    assert stats.total_menus == 5
    assert stats.active_menus == 4
    assert stats.top_level_menus == 3
    assert stats.max_depth == 3
    assert stats.average_children_per_menu == 1.0


async def test_statistics_of_empty_tree(menu_access) -> None:
    stats = await menu_access.get_menu_tree_statistics()

    assert stats.total_menus == 0
    assert stats.max_depth == 0
    assert stats.average_children_per_menu == 0.0


async def test_inactive_user_sees_nothing(menu_access, factory, editor) -> None:
    await factory.grant_menu("r-editor", "M5", can_view=True)
    await factory.user("gone", is_active=False)
    await factory.assign("gone", "r-editor")

    tree = await menu_access.build_user_menu_tree("gone")
    result = await menu_access.check_menu_access("gone", "M5", "view")

    assert tree.menus == [] and tree.total_count == 0
    assert not result.allowed
    assert result.reason == "User is inactive"


# =============================================================================
# Deep trees
# =============================================================================


DEPTH = 1200


@pytest.fixture
async def deep_chain(store, factory):
    """m0 > m1 > ... > m1199, all visible to role r-deep held by user deep."""
    await factory.user("deep")
    await factory.role("deep")
    await factory.assign("deep", "r-deep")
    async with store.transaction() as uow:
        for i in range(DEPTH):
            uow.put_menu(Menu(menu_id=f"m{i}", title=f"Level {i}", parent_id=f"m{i - 1}" if i else None))
            uow.put_menu_permission(MenuPermission(f"m{i}", "r-deep", can_view=True))


async def test_deep_chain_statistics_and_trees(menu_access, deep_chain) -> None:
    stats = await menu_access.get_menu_tree_statistics()
    complete = await menu_access.build_complete_menu_tree()
    user_tree = await menu_access.build_user_menu_tree("deep")

    assert stats.max_depth == DEPTH
    assert stats.top_level_menus == 1
    assert count_nodes(complete) == DEPTH
    assert user_tree.total_count == DEPTH

    node = user_tree.menus[0]
    while node.children:
        node = node.children[0]
    assert node.id == f"m{DEPTH - 1}"


async def test_deep_chain_cycle_check(menu_tree, deep_chain) -> None:
    with pytest.raises(RbacValidationError):
        await menu_tree.move_menu("m0", f"m{DEPTH - 1}", "admin")

    moved = await menu_tree.move_menu(f"m{DEPTH - 1}", None, "admin")
    assert moved.parent_id is None
    assert (await menu_tree.get_menu_path("m600")).startswith("Level 0 > Level 1 > ")
