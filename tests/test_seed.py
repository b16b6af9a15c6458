"""
Default permission catalogue and roles.
"""
from sqlalchemy import func, select

from cms_backend.features.permissions.models import Permission, Role
from cms_backend.features.permissions.resolver import PermissionResolver
from scripts.seed_permissions import DEFAULT_ROLES, default_permissions, seed_permissions, seed_roles


async def test_seed_is_idempotent(session_factory):
    async with session_factory() as db:
        first = await seed_permissions(db)
        assert await seed_roles(db, first) == len(DEFAULT_ROLES)

    async with session_factory() as db:
        second = await seed_permissions(db)
        assert await seed_roles(db, second) == 0

        permission_count = await db.scalar(select(func.count()).select_from(Permission))
        role_count = await db.scalar(select(func.count()).select_from(Role))

    assert set(first) == set(second)
    assert permission_count == len(default_permissions())
    assert role_count == len(DEFAULT_ROLES)


async def test_seeded_permissions_are_system_and_well_formed(session_factory):
    async with session_factory() as db:
        permissions = await seed_permissions(db)

    assert "Product:publish" in permissions
    assert "ActivityLog:view_logs" in permissions
    for identifier, permission in permissions.items():
        assert permission.is_system
        assert identifier == f"{permission.resource}:{permission.action}"


async def test_seeded_roles_resolve(session_factory, store):
    async with session_factory() as db:
        await seed_roles(db, await seed_permissions(db))
        result = await db.execute(select(Role).where(Role.code.in_(["content_editor", "super_admin"])))
        roles = {role.code: role for role in result.scalars().all()}

    editor = await store.user(roles=[roles["content_editor"]])
    super_admin_holder = await store.user(roles=[roles["super_admin"]])
    resolver = PermissionResolver(session_factory)

    assert await resolver.has_permission(editor.id, "Product", "update")
    assert not await resolver.has_permission(editor.id, "Product", "publish")
    # Holding every permission is not the same as being a superadmin
    assert await resolver.calculate_user_permissions(super_admin_holder.id) == {
        f"{resource}:{action}" for resource, action, _category, _description in default_permissions()
    }
