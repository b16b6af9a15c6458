"""
HTTP API end to end: authentication, decision bundles on routes, and cache
invalidation triggered by administration endpoints.
"""
from datetime import timedelta

import pytest
from conftest import Store, auth_headers, make_token
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from cms_backend import main
from cms_backend.core.database.base import Base
from cms_backend.core.database.engine import AsyncSessionLocal, engine
from cms_backend.features.permissions.models import AuditLog, role_permissions, user_permissions


@pytest.fixture
async def client():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await main.startup()
    async with AsyncClient(transport=ASGITransport(app=main.app), base_url="http://test") as client:
        yield client
    await main.shutdown()


@pytest.fixture
def store(client) -> Store:
    return Store(AsyncSessionLocal)


@pytest.fixture
async def admin(store):
    return await store.user(is_admin=True, email="admin@example.com")


async def check(client, user, resource, action) -> bool:
    response = await client.post(
        "/permissions/check",
        json={"resource": resource, "action": action},
        headers=auth_headers(user),
    )
    assert response.status_code == 200
    return response.json()["has_permission"]


async def test_health(client):
    assert (await client.get("/health")).json() == {"status": "healthy"}
    assert (await client.get("/")).json()["status"] == "online"


async def test_anonymous_and_invalid_tokens_get_401(client):
    assert (await client.post("/permissions/check", json={"resource": "Product", "action": "read"})).status_code == 401
    assert (await client.get("/users/me")).status_code == 401

    expired = make_token("someone", expires_in=timedelta(minutes=-1))
    response = await client.get("/users/me", headers={"Authorization": f"Bearer {expired}"})
    assert response.status_code == 401


async def test_me_returns_profile_with_roles(client, store):
    role = await store.role("content_editor", ["Product:read"])
    user = await store.user(roles=[role], email="editor@example.com")

    response = await client.get("/users/me", headers=auth_headers(user))

    assert response.status_code == 200
    body = response.json()
    assert body["email"] == "editor@example.com"
    assert [r["code"] for r in body["roles"]] == ["content_editor"]
    assert body["last_login_at"] is not None


async def test_deactivated_user_is_rejected(client, store):
    user = await store.user(is_active=False)

    assert (await client.get("/users/me", headers=auth_headers(user))).status_code == 403
    assert not await check(client, user, "Product", "read")


async def test_granting_to_a_role_reaches_its_holders(client, store, admin):
    role = await store.role("content_editor", ["Product:read"])
    holder = await store.user(roles=[role])
    bystander = await store.user()
    update = await store.permission("Product:update")

    assert not await check(client, holder, "Product", "update")
    assert not await check(client, bystander, "Product", "update")

    response = await client.post(
        f"/permissions/roles/{role.id}/permissions",
        json={"permission_id": update.id},
        headers=auth_headers(admin),
    )
    assert response.status_code == 200
    assert response.json()["cleared_users"] == 1

    # Visible immediately, not after the TTL
    assert await check(client, holder, "Product", "update")
    assert not await check(client, bystander, "Product", "update")

    response = await client.delete(
        f"/permissions/roles/{role.id}/permissions/{update.id}",
        headers=auth_headers(admin),
    )
    assert response.status_code == 204
    assert not await check(client, holder, "Product", "update")


async def test_changing_a_parent_reaches_holders_of_the_child(client, store, admin):
    blog = await store.role("blog_reader", ["Blog:read"])
    child = await store.role("product_reader", ["Product:read"])
    user = await store.user(roles=[child])

    assert not await check(client, user, "Blog", "read")

    response = await client.put(
        f"/permissions/roles/{child.id}",
        json={"parent_role_id": blog.id},
        headers=auth_headers(admin),
    )
    assert response.status_code == 200
    assert await check(client, user, "Blog", "read")

    response = await client.put(
        f"/permissions/roles/{child.id}",
        json={"is_active": False},
        headers=auth_headers(admin),
    )
    assert response.status_code == 200
    assert not await check(client, user, "Product", "read")


async def test_role_cannot_inherit_from_its_descendant(client, store, admin):
    parent = await store.role("parent")
    child = await store.role("child", parent=parent)

    response = await client.put(
        f"/permissions/roles/{parent.id}",
        json={"parent_role_id": child.id},
        headers=auth_headers(admin),
    )

    assert response.status_code == 400


async def test_user_assignments_clear_that_user(client, store, admin):
    role = await store.role("media_manager", ["Media:update"])
    user = await store.user()
    direct = await store.permission("Blog:publish")

    assert not await check(client, user, "Media", "update")

    response = await client.post(
        f"/permissions/users/{user.id}/roles", json={"role_id": role.id}, headers=auth_headers(admin)
    )
    assert response.status_code == 200
    assert await check(client, user, "Media", "update")

    response = await client.post(
        f"/permissions/users/{user.id}/permissions", json={"permission_id": direct.id}, headers=auth_headers(admin)
    )
    assert response.status_code == 200
    assert await check(client, user, "Blog", "publish")

    response = await client.delete(f"/permissions/users/{user.id}/roles/{role.id}", headers=auth_headers(admin))
    assert response.status_code == 204
    assert not await check(client, user, "Media", "update")


async def test_deleting_a_role_clears_its_holders(client, store, admin):
    role = await store.role("temporary", ["Page:update"])
    user = await store.user(roles=[role])

    assert await check(client, user, "Page", "update")

    response = await client.delete(f"/permissions/roles/{role.id}", headers=auth_headers(admin))
    assert response.status_code == 204
    assert not await check(client, user, "Page", "update")


async def test_role_permissions_field_needs_manage_permissions(client, store):
    target = await store.role("target")
    permission = await store.permission("Product:read")
    role_editor = await store.user(permissions=["Role:update", "Role:read"])
    manager = await store.user(permissions=["Role:manage_permissions"])

    url = f"/permissions/roles/{target.id}/permissions"
    body = {"permission_id": permission.id}

    assert (await client.post(url, json=body, headers=auth_headers(role_editor))).status_code == 403
    assert (await client.post(url, json=body)).status_code == 401
    assert (await client.post(url, json=body, headers=auth_headers(manager))).status_code == 200


async def test_staff_lists_follow_permissions(client, store):
    reader = await store.user(permissions=["Role:read"])
    nobody = await store.user()
    await store.role("content_editor")

    response = await client.get("/permissions/roles", headers=auth_headers(reader))
    assert [r["code"] for r in response.json()] == ["content_editor"]

    # Queries without permission see nothing rather than an error
    assert (await client.get("/permissions/roles", headers=auth_headers(nobody))).json() == []
    assert (await client.get("/users/", headers=auth_headers(nobody))).json() == []

    response = await client.post(
        "/permissions/roles", json={"name": "New", "code": "new"}, headers=auth_headers(reader)
    )
    assert response.status_code == 403


async def test_system_permissions_cannot_be_deleted(client, store, admin):
    seeded = await store.permission("Product:read", is_system=True)
    custom = await store.permission("Product:archive")

    assert (await client.delete(f"/permissions/permissions/{seeded.id}", headers=auth_headers(admin))).status_code == 403
    assert (await client.delete(f"/permissions/permissions/{custom.id}", headers=auth_headers(admin))).status_code == 204


async def test_deleting_a_permission_removes_its_grants(client, store, admin):
    role = await store.role("archivist", ["Product:archive"])
    holder = await store.user(roles=[role], permissions=["Product:archive"])
    custom = await store.permission("Product:archive")

    assert await check(client, holder, "Product", "archive")

    response = await client.delete(f"/permissions/permissions/{custom.id}", headers=auth_headers(admin))
    assert response.status_code == 204

    async with AsyncSessionLocal() as db:
        assert (await db.execute(select(user_permissions))).all() == []
        assert (await db.execute(select(role_permissions))).all() == []
    assert not await check(client, holder, "Product", "archive")


async def test_permission_creation(client, store, admin):
    editor = await store.user(permissions=["Product:read"])
    body = {"name": "Archive products", "resource": "Product", "action": "Archive", "category": "products"}

    assert (await client.post("/permissions/permissions", json=body, headers=auth_headers(editor))).status_code == 403

    response = await client.post("/permissions/permissions", json=body, headers=auth_headers(admin))
    assert response.status_code == 201
    assert response.json()["identifier"] == "Product:archive"
    assert not response.json()["is_system"]

    response = await client.post("/permissions/permissions", json=body, headers=auth_headers(admin))
    assert response.status_code == 409


async def test_validation_errors_are_400(client, admin):
    body = {"name": "Bad", "resource": "Not a name!", "action": "read"}

    response = await client.post("/permissions/permissions", json=body, headers=auth_headers(admin))

    assert response.status_code == 400
    assert "resource" in response.json()


async def test_cache_administration_is_admin_only(client, store, admin):
    editor = await store.user(permissions=["Product:read"])
    await check(client, editor, "Product", "read")

    assert (await client.get("/permissions/cache/stats", headers=auth_headers(editor))).status_code == 403

    response = await client.get("/permissions/cache/stats", headers=auth_headers(admin))
    assert response.status_code == 200
    assert response.json()["total_entries"] == 1

    response = await client.delete("/permissions/cache", headers=auth_headers(admin))
    assert response.json() == {"cleared": 1}


async def test_my_list_access(client, store):
    editor = await store.user(permissions=["Product:read", "Product:create"])

    response = await client.get("/permissions/me/access", headers=auth_headers(editor))

    assert response.status_code == 200
    rows = {row["list_name"]: row for row in response.json()}
    assert rows["Product"] == {"list_name": "Product", "query": True, "create": True, "update": False, "delete": False}
    assert rows["User"]["query"] is False
    assert rows["PermissionCache"]["query"] is False


async def test_effective_permissions_of_users(client, store):
    viewer = await store.user(permissions=["User:read"])
    other = await store.user(permissions=["Blog:read", "Blog:update"])

    response = await client.get(f"/permissions/users/{other.id}/permissions", headers=auth_headers(other))
    assert response.json()["permissions"] == ["Blog:read", "Blog:update"]
    assert response.json()["readable_resources"] == ["Blog"]

    assert (await client.get(f"/permissions/users/{viewer.id}/permissions", headers=auth_headers(other))).status_code == 403
    assert (await client.get(f"/permissions/users/{other.id}/permissions", headers=auth_headers(viewer))).status_code == 200


async def test_administration_is_audited(client, store, admin):
    auditor = await store.user(permissions=["ActivityLog:view_logs"])
    nobody = await store.user()

    response = await client.post(
        "/permissions/roles", json={"name": "Writers", "code": "writers"}, headers=auth_headers(admin)
    )
    assert response.status_code == 201

    async with AsyncSessionLocal() as db:
        entries = (await db.execute(select(AuditLog))).scalars().all()
    assert [(e.user_id, e.action, e.resource_type) for e in entries] == [(admin.id, "create", "role")]

    assert (await client.get("/permissions/audit-logs", headers=auth_headers(nobody))).status_code == 403
    response = await client.get("/permissions/audit-logs", headers=auth_headers(auditor))
    assert response.status_code == 200
    assert response.json()["total"] == 1
    assert response.json()["items"][0]["action"] == "create"
