"""Tests for permission definitions."""

import pytest

from rolegate.shared.audit import AuditAction, drain_audit
from rolegate.shared.errors import ConflictError, ForbiddenError, NotFoundError, RbacValidationError
from rolegate.shared.rbac.cache import PermissionCache
from rolegate.shared.rbac.models import PermissionCreate, PermissionFilter, PermissionUpdate
from rolegate.shared.rbac.permission_admin import PermissionAdminService


async def test_create_from_name(permission_admin, audit) -> None:
    permission = await permission_admin.create_permission(
        PermissionCreate(name="report:read", description="Read reports"), "admin"
    )

    assert (permission.resource, permission.action) == ("report", "read")
    await drain_audit()
    assert audit.actions() == [AuditAction.PERMISSION_CREATED]


async def test_create_from_resource_and_action(permission_admin) -> None:
    permission = await permission_admin.create_permission(
        PermissionCreate(resource="report", action="*"), "admin"
    )

    assert permission.name == "report:*"
    assert permission.is_wildcard


@pytest.mark.parametrize(
    "body",
    [
        PermissionCreate(name="report"),
        PermissionCreate(name="report:read:extra"),
        PermissionCreate(name="report:read", resource="audit"),
        PermissionCreate(description="nothing else"),
    ],
)
async def test_create_rejects_malformed_input(permission_admin, body) -> None:
    with pytest.raises(RbacValidationError):
        await permission_admin.create_permission(body, "admin")


async def test_create_duplicate_conflicts(permission_admin, factory) -> None:
    await factory.permission("report:read")

    with pytest.raises(ConflictError):
        await permission_admin.create_permission(PermissionCreate(name="report:read"), "admin")


async def test_rename_rederives_segments(permission_admin, factory) -> None:
    permission = await factory.permission("report:read")

    updated = await permission_admin.update_permission(
        permission.permission_id, PermissionUpdate(name="audit:read"), "admin"
    )

    assert (updated.resource, updated.action) == ("audit", "read")


async def test_rename_invalidates_cached_snapshots(store, factory, audit) -> None:
    cache = PermissionCache(ttl_seconds=300)
    service = PermissionAdminService(store=store, cache=cache, audit=audit)
    permission = await factory.permission("report:read")
    user = await factory.user("u1")
    await cache.set_user("u1", await store.find_user_with_roles(user.user_id))

    await service.update_permission(permission.permission_id, PermissionUpdate(name="report:view"), "admin")

    assert await cache.get_user("u1") is None


async def test_delete_permission_in_use_is_forbidden(permission_admin, factory) -> None:
    await factory.role("reporter", ["report:read"])
    permission = await factory.permission("report:read")

    with pytest.raises(ForbiddenError) as exc:
        await permission_admin.delete_permission(permission.permission_id, "admin")
    assert exc.value.details["roleCount"] == 1


async def test_delete_unused_permission(permission_admin, factory, store) -> None:
    permission = await factory.permission("report:read")

    await permission_admin.delete_permission(permission.permission_id, "admin")

    assert await store.get_permission(permission.permission_id) is None
    with pytest.raises(NotFoundError):
        await permission_admin.get_permission(permission.permission_id)


async def test_details_list_granting_roles(permission_admin, factory) -> None:
    await factory.role("zeta", ["report:read"])
    await factory.role("alpha", ["report:read"])
    permission = await factory.permission("report:read")

    details = await permission_admin.get_permission_details(permission.permission_id)

    assert [r.name for r in details.roles] == ["alpha", "zeta"]


async def test_list_filters(permission_admin, factory) -> None:
    for name in ("report:read", "report:write", "audit:read", "user:read"):
        await factory.permission(name)

    by_resource, _ = await permission_admin.list_permissions(PermissionFilter(resource="report"))
    by_action, pagination = await permission_admin.list_permissions(PermissionFilter(action="read"), limit=2)

    assert [p.name for p in by_resource] == ["report:read", "report:write"]
    assert [p.name for p in by_action] == ["audit:read", "report:read"]
    assert pagination.total == 3
