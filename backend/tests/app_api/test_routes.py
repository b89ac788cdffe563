"""HTTP tests for the admin and /me routers."""

import httpx
import pytest
from httpx import ASGITransport

from rolegate.app_api.main import create_app
from rolegate.shared.config import RbacSettings, get_settings
from rolegate.shared.rbac.admin_service import get_role_admin_service
from rolegate.shared.rbac.menu_access import get_menu_permission_service
from rolegate.shared.rbac.menu_tree import get_menu_tree_service
from rolegate.shared.rbac.permission_admin import get_permission_admin_service
from rolegate.shared.rbac.service import get_permission_resolver_service
from rolegate.shared.rbac.store import get_rbac_store
from rolegate.shared.rbac.user_admin import get_user_admin_service

ADMIN = {"X-User-Id": "admin"}
READER = {"X-User-Id": "reader"}


@pytest.fixture
def settings() -> RbacSettings:
    return RbacSettings(enable_authentication=True)


@pytest.fixture
def app(settings, store, resolver, role_admin, permission_admin, menu_tree, menu_access, user_admin):
    app = create_app()
    app.dependency_overrides[get_rbac_store] = lambda: store
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_permission_resolver_service] = lambda: resolver
    app.dependency_overrides[get_role_admin_service] = lambda: role_admin
    app.dependency_overrides[get_permission_admin_service] = lambda: permission_admin
    app.dependency_overrides[get_menu_tree_service] = lambda: menu_tree
    app.dependency_overrides[get_menu_permission_service] = lambda: menu_access
    app.dependency_overrides[get_user_admin_service] = lambda: user_admin
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
async def client(app, factory):
    await factory.user("admin", is_superuser=True)
    await factory.user("reader")
    await factory.role("auditor", ["role:read", "menu:read"])
    await factory.assign("reader", "r-auditor")

    async with httpx.AsyncClient(
        transport=ASGITransport(app=app), base_url="http://testserver"
    ) as client:
        yield client


def _error_code(response) -> str:
    return response.json()["detail"]["error"]["code"]


# =============================================================================
# Authentication and guards
# =============================================================================


async def test_health(client) -> None:
    response = await client.get("/health")
    assert response.status_code == 200


async def test_missing_identity_header_is_401(client) -> None:
    response = await client.get("/admin/roles/")
    assert response.status_code == 401


async def test_unknown_caller_is_registered_but_forbidden(client, store) -> None:
    response = await client.get("/admin/roles/", headers={"X-User-Id": "stranger"})

    assert response.status_code == 403
    registered = await store.get_user("stranger")
    assert registered is not None and not registered.is_superuser
    assert await store.list_user_role_ids("stranger") == []


async def test_missing_permission_is_403(client) -> None:
    response = await client.post("/admin/roles/", json={"name": "x"}, headers=READER)
    assert response.status_code == 403


async def test_read_permission_allows_listing(client) -> None:
    response = await client.get("/admin/roles/", headers=READER)

    assert response.status_code == 200
    body = response.json()
    assert [r["name"] for r in body["roles"]] == ["auditor"]
    assert body["pagination"]["total"] == 1


async def test_disabled_authentication_allows_anonymous(client, settings) -> None:
    settings.enable_authentication = False

    response = await client.get("/admin/roles/statistics")

    assert response.status_code == 200
    assert response.json()["total"] == 1


# =============================================================================
# Roles
# =============================================================================


async def test_role_lifecycle(client, factory) -> None:
    permission = await factory.permission("report:read")

    created = await client.post(
        "/admin/roles/",
        json={"name": "reporter", "description": "Reports", "permissionIds": [permission.permission_id]},
        headers=ADMIN,
    )
    assert created.status_code == 201
    role = created.json()
    assert [p["name"] for p in role["permissions"]] == ["report:read"]
    role_id = role["roleId"]

    duplicate = await client.post("/admin/roles/", json={"name": "reporter"}, headers=ADMIN)
    assert duplicate.status_code == 409
    assert _error_code(duplicate) == "conflict"

    check = await client.get(f"/admin/roles/{role_id}/has-permission", params={"name": "report:read"}, headers=ADMIN)
    assert check.json() == {"granted": True, "reason": "role:reporter"}

    deleted = await client.delete(f"/admin/roles/{role_id}", headers=ADMIN)
    assert deleted.status_code == 204

    missing = await client.get(f"/admin/roles/{role_id}", headers=ADMIN)
    assert missing.status_code == 404
    assert _error_code(missing) == "not_found"


async def test_role_permission_check_reports_granting_role(client, factory) -> None:
    await factory.role("ops", ["report:*"])

    wildcard = await client.get("/admin/roles/r-ops/has-permission", params={"name": "report:export"}, headers=READER)
    miss = await client.get("/admin/roles/r-ops/has-permission", params={"name": "audit:read"}, headers=READER)

    assert wildcard.json() == {"granted": True, "reason": "role:ops(wildcard)"}
    assert miss.json() == {"granted": False, "reason": "denied"}


async def test_create_role_with_unknown_permission_is_422(client) -> None:
    response = await client.post(
        "/admin/roles/", json={"name": "reporter", "permissionIds": ["nope"]}, headers=ADMIN
    )

    assert response.status_code == 422
    assert response.json()["detail"]["error"]["metadata"] == {"invalidIds": ["nope"]}


async def test_delete_role_in_use_is_403(client) -> None:
    response = await client.delete("/admin/roles/r-auditor", headers=ADMIN)

    assert response.status_code == 403
    assert response.json()["detail"]["error"]["metadata"]["userCount"] == 1


async def test_assign_users_reports_failures(client, factory) -> None:
    await factory.user("u2")

    response = await client.post(
        "/admin/roles/r-auditor/users", json={"userIds": ["u2", "reader", "ghost"]}, headers=ADMIN
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] == ["u2"]
    assert [f["id"] for f in body["failed"]] == ["reader", "ghost"]


async def test_bulk_delete(client, factory) -> None:
    await factory.role("temp")

    response = await client.post(
        "/admin/roles/bulk-delete", json={"roleIds": ["r-temp", "r-auditor"]}, headers=ADMIN
    )

    assert response.json()["success"] == ["r-temp"]
    assert response.json()["failed"][0]["id"] == "r-auditor"


# =============================================================================
# Permissions
# =============================================================================


async def test_permission_endpoints(client) -> None:
    created = await client.post("/admin/permissions/", json={"name": "report:read"}, headers=ADMIN)
    assert created.status_code == 201
    permission_id = created.json()["permissionId"]

    malformed = await client.post("/admin/permissions/", json={"name": "report"}, headers=ADMIN)
    assert malformed.status_code == 422

    listing = await client.get("/admin/permissions/", params={"resource": "report"}, headers=ADMIN)
    assert [p["name"] for p in listing.json()["permissions"]] == ["report:read"]

    assert (await client.delete(f"/admin/permissions/{permission_id}", headers=ADMIN)).status_code == 204


# =============================================================================
# Menus
# =============================================================================


async def test_menu_tree_endpoints(client) -> None:
    for body in (
        {"id": "M1", "title": "Reports", "orderIndex": 1},
        {"id": "M2", "title": "Sales", "parentId": "M1"},
        {"id": "M3", "title": "Home", "orderIndex": 0},
    ):
        response = await client.post("/admin/menus/", json=body, headers=ADMIN)
        assert response.status_code == 201

    tree = await client.get("/admin/menus/tree", headers=READER)
    assert [n["id"] for n in tree.json()] == ["M3", "M1"]
    assert tree.json()[1]["children"][0]["id"] == "M2"

    roots = await client.get("/admin/menus/tree", params={"parentId": ""}, headers=READER)
    assert all(n["children"] == [] for n in roots.json())

    path = await client.get("/admin/menus/M2/path", headers=READER)
    assert path.json() == {"menuId": "M2", "path": "Reports > Sales"}

    cycle = await client.post("/admin/menus/M1/move", json={"newParentId": "M2"}, headers=ADMIN)
    assert cycle.status_code == 422

    has_children = await client.delete("/admin/menus/M1", headers=ADMIN)
    assert has_children.status_code == 422
    assert has_children.json()["detail"]["error"]["metadata"]["childCount"] == 1


async def test_invalid_menu_id_is_rejected(client) -> None:
    response = await client.post("/admin/menus/", json={"id": "bad id!", "title": "x"}, headers=ADMIN)
    assert response.status_code == 422


async def test_batch_menu_permissions_cascade(client, factory) -> None:
    await factory.menu("M1")
    await factory.menu("M2", parent_id="M1")

    response = await client.put(
        "/admin/menus/roles/r-auditor/permissions",
        json={"permissions": [{"menuId": "M1", "canView": True}, {"menuId": "ZZ", "canView": True}], "applyToChildren": True},
        headers=ADMIN,
    )

    assert response.status_code == 200
    assert response.json()["success"] == ["M1", "M2"]
    assert response.json()["failed"] == [{"id": "ZZ", "error": "Menu not found"}]

    matrix = await client.get("/admin/menus/matrix", headers=READER)
    row = matrix.json()[0]
    assert row["roleName"] == "auditor"
    assert row["permissions"]["M2"]["canView"] is True

    unknown_role = await client.put(
        "/admin/menus/roles/r-ghost/permissions",
        json={"permissions": [{"menuId": "M1", "canView": True}]},
        headers=ADMIN,
    )
    assert unknown_role.status_code == 404


# =============================================================================
# Users
# =============================================================================


async def test_user_admin_endpoints(client, factory) -> None:
    await factory.role("support", ["user:read"])

    created = await client.post(
        "/admin/users/",
        json={"userId": "u9", "email": "u9@example.com", "username": "nine", "roleIds": ["r-support"]},
        headers=ADMIN,
    )
    assert created.status_code == 201
    assert created.json()["roles"] == [{"roleId": "r-support", "name": "support"}]

    taken = await client.post("/admin/users/", json={"userId": "u10", "email": "U9@example.com"}, headers=ADMIN)
    assert taken.status_code == 409
    assert _error_code(taken) == "conflict"

    bad_role = await client.post("/admin/users/", json={"userId": "u11", "roleIds": ["r-ghost"]}, headers=ADMIN)
    assert bad_role.status_code == 422
    assert bad_role.json()["detail"]["error"]["metadata"] == {"invalidIds": ["r-ghost"]}

    deactivated = await client.patch("/admin/users/u9", json={"isActive": False}, headers=ADMIN)
    assert deactivated.json()["isActive"] is False
    mine = await client.get("/me/permissions", headers={"X-User-Id": "u9"})
    assert mine.json()["permissions"] == []
    assert mine.json()["isActive"] is False

    roles = await client.put("/admin/users/u9/roles", json={"roleIds": ["r-auditor"]}, headers=ADMIN)
    assert [r["name"] for r in roles.json()["roles"]] == ["auditor"]
    has_role = await client.get("/admin/users/u9/has-role", params={"name": "auditor"}, headers=ADMIN)
    assert has_role.json() == {"userId": "u9", "roleName": "auditor", "hasRole": True}

    status = await client.post(
        "/admin/users/status", json={"userIds": ["u9", "ghost"], "isActive": True}, headers=ADMIN
    )
    assert status.json()["success"] == ["u9"]
    assert status.json()["failed"] == [{"id": "ghost", "error": "User not found"}]

    protected = await client.post(
        "/admin/users/status", json={"userIds": ["admin"], "isActive": False}, headers=ADMIN
    )
    assert protected.json()["failed"] == [{"id": "admin", "error": "Cannot deactivate superuser"}]

    stats = await client.get("/admin/users/statistics", headers=ADMIN)
    assert stats.json() == {
        "total": 3,
        "active": 3,
        "inactive": 0,
        "superusers": 1,
        "byRole": {"auditor": 2},
    }

    listing = await client.get("/admin/users/", params={"roleId": "r-auditor"}, headers=ADMIN)
    assert [u["userId"] for u in listing.json()["users"]] == ["u9", "reader"]

    missing = await client.get("/admin/users/ghost", headers=ADMIN)
    assert missing.status_code == 404


async def test_user_admin_requires_user_permissions(client) -> None:
    response = await client.get("/admin/users/", headers=READER)
    assert response.status_code == 403


async def test_first_admin_bootstrapped_on_empty_store(store, resolver, role_admin, user_admin) -> None:
    settings = RbacSettings(enable_authentication=True, bootstrap_admin_id="first-admin")
    app = create_app(settings=settings, store=store)
    app.dependency_overrides[get_permission_resolver_service] = lambda: resolver
    app.dependency_overrides[get_role_admin_service] = lambda: role_admin
    app.dependency_overrides[get_user_admin_service] = lambda: user_admin
    first = {"X-User-Id": "first-admin"}
    newcomer = {"X-User-Id": "newcomer"}

    async with app.router.lifespan_context(app):
        async with httpx.AsyncClient(
            transport=ASGITransport(app=app), base_url="http://testserver"
        ) as client:
            roles = await client.get("/admin/roles/", headers=first)
            assert roles.status_code == 200
            by_name = {r["name"]: r["roleId"] for r in roles.json()["roles"]}
            assert {"super_admin", "viewer"} <= set(by_name)

            assert (await client.get("/admin/users/", headers=newcomer)).status_code == 403

            assigned = await client.post(
                f"/admin/roles/{by_name['viewer']}/users", json={"userIds": ["newcomer"]}, headers=first
            )
            assert assigned.json()["success"] == ["newcomer"]

            listing = await client.get("/admin/users/", headers=newcomer)
            assert listing.status_code == 200
            assert [u["userId"] for u in listing.json()["users"]] == ["first-admin", "newcomer"]


# =============================================================================
# /me
# =============================================================================


async def test_my_permissions(client) -> None:
    response = await client.get("/me/permissions", headers=READER)

    assert response.status_code == 200
    body = response.json()
    assert body["permissions"] == ["menu:read", "role:read"]
    assert body["roles"] == ["auditor"]
    assert body["isSuperuser"] is False


async def test_my_permission_check(client) -> None:
    granted = await client.get("/me/permissions/check", params={"name": "role:read"}, headers=READER)
    denied = await client.get("/me/permissions/check", params={"name": "role:delete"}, headers=READER)
    malformed = await client.get("/me/permissions/check", params={"name": "role"}, headers=READER)
    superuser = await client.get("/me/permissions/check", params={"name": "any:thing"}, headers=ADMIN)

    assert granted.json() == {"granted": True, "reason": "role:auditor"}
    assert denied.json()["granted"] is False
    assert malformed.status_code == 422
    assert superuser.json()["reason"] == "superuser"


async def test_unknown_user_permissions_is_404_without_auto_registration(client, settings) -> None:
    settings.auto_register_users = False

    response = await client.get("/me/permissions", headers={"X-User-Id": "stranger"})
    assert response.status_code == 404


async def test_my_menus_and_access(client, factory) -> None:
    await factory.menu("M1", title="Reports")
    await factory.menu("M2", title="Hidden")
    await factory.grant_menu("r-auditor", "M1", can_view=True, can_export=True)

    menus = await client.get("/me/menus", headers=READER)
    body = menus.json()
    assert [n["id"] for n in body["menus"]] == ["M1"]
    assert body["menus"][0]["permissions"]["canExport"] is True
    assert body["totalCount"] == 1

    allowed = await client.get("/me/menus/M1/access", params={"capability": "export"}, headers=READER)
    assert allowed.json()["allowed"] is True
    assert allowed.json()["grantingRoles"] == [{"roleId": "r-auditor", "roleName": "auditor"}]

    denied = await client.get("/me/menus/M2/access", headers=READER)
    assert denied.json() == {"allowed": False, "reason": "No view permission for this menu", "grantingRoles": None}

    invalid = await client.get("/me/menus/M1/access", params={"capability": "approve"}, headers=READER)
    assert invalid.status_code == 422
