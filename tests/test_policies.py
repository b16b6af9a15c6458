"""
The CMS access policies registered by build_access_registry.
"""
from types import SimpleNamespace

import pytest
from conftest import CountingResolver

from cms_backend.features.permissions.access_control import AccessControlFactory
from cms_backend.features.permissions.cache import PermissionCache
from cms_backend.features.permissions.context import AccessContext, Session
from cms_backend.features.permissions.policies import (
    FIELD_RULES,
    PUBLIC_CONTENT,
    STAFF_CONTENT,
    build_access_registry,
)


ADMIN = Session(user_id="admin", is_admin=True)
AUDITOR = Session(user_id="auditor")
EDITOR = Session(user_id="editor")
SEO = Session(user_id="seo")


@pytest.fixture
def resolver() -> CountingResolver:
    return CountingResolver(sets={
        "admin": {"*"},
        "auditor": {"ActivityLog:view_logs"},
        "editor": {"Product:read", "Product:update", "Blog:create", "FormSubmission:read"},
        "seo": {"SeoSetting:update"},
    })


@pytest.fixture
def registry(resolver, clock):
    cache = PermissionCache(resolver, clock=clock)
    return build_access_registry(AccessControlFactory(cache), cache)


def ctx(session, operation, resource, item=None, field=None) -> AccessContext:
    return AccessContext(session=session, operation=operation, resource=resource, item=item, field=field)


def test_every_list_is_registered(registry):
    names = set(registry.list_names)

    assert set(PUBLIC_CONTENT) <= names
    assert set(STAFF_CONTENT) <= names
    assert {"Permission", "ActivityLog", "FormSubmission", "PermissionCache", "Profile"} <= names


@pytest.mark.parametrize("list_name", PUBLIC_CONTENT)
async def test_public_content_is_readable_anonymously(registry, list_name):
    access = registry.list_access(list_name)

    assert await access.allows(ctx(None, "query", list_name))
    assert not await access.allows(ctx(None, "create", list_name))


@pytest.mark.parametrize("list_name", STAFF_CONTENT)
async def test_staff_content_is_hidden_from_anonymous(registry, list_name):
    access = registry.list_access(list_name)

    assert not await access.allows(ctx(None, "query", list_name))
    assert await access.allows(ctx(ADMIN, "query", list_name))


async def test_permissions_readable_by_any_user_managed_by_admins(registry):
    access = registry.list_access("Permission")
    seeded = SimpleNamespace(is_system=True)
    custom = SimpleNamespace(is_system=False)

    assert await access.allows(ctx(EDITOR, "query", "Permission"))
    assert not await access.allows(ctx(None, "query", "Permission"))
    assert not await access.allows(ctx(EDITOR, "create", "Permission"))
    assert await access.allows(ctx(ADMIN, "create", "Permission"))
    assert await access.allows(ctx(ADMIN, "delete", "Permission", item=custom))
    assert not await access.allows(ctx(ADMIN, "delete", "Permission", item=seeded))


async def test_audit_logs_need_view_logs(registry):
    access = registry.list_access("ActivityLog")

    assert await access.allows(ctx(AUDITOR, "query", "ActivityLog"))
    assert not await access.allows(ctx(EDITOR, "query", "ActivityLog"))
    # Entries are only written by the system
    assert not await access.allows(ctx(ADMIN, "create", "ActivityLog"))
    assert not await access.allows(ctx(ADMIN, "update", "ActivityLog"))
    assert await access.allows(ctx(ADMIN, "delete", "ActivityLog"))
    assert not await access.allows(ctx(AUDITOR, "delete", "ActivityLog"))


async def test_form_submissions_accept_anonymous_creates(registry):
    access = registry.list_access("FormSubmission")

    assert await access.allows(ctx(None, "create", "FormSubmission"))
    assert not await access.allows(ctx(None, "query", "FormSubmission"))
    assert await access.allows(ctx(EDITOR, "query", "FormSubmission"))
    assert not await access.allows(ctx(EDITOR, "delete", "FormSubmission"))


async def test_cache_administration_is_admin_only(registry, resolver):
    access = registry.list_access("PermissionCache")

    assert await access.allows(ctx(ADMIN, "query", "PermissionCache"))
    assert not await access.allows(ctx(EDITOR, "query", "PermissionCache"))
    assert sum(resolver.calls.values()) == 0


async def test_product_seo_field_accepts_either_permission(registry):
    field = registry.field_access("Product", "seo_setting")

    assert await field.allows(ctx(SEO, "update", "Product", field="seo_setting"))
    assert await field.allows(ctx(EDITOR, "update", "Product", field="seo_setting"))
    assert not await field.allows(ctx(AUDITOR, "update", "Product", field="seo_setting"))


async def test_publish_needs_publish_permission(registry):
    field = registry.field_access("Product", "status")

    assert not await field.allows(ctx(EDITOR, "update", "Product", field="status"))
    assert await field.allows(ctx(ADMIN, "update", "Product", field="status"))


async def test_field_rules_are_registered(registry):
    for list_name, field_name, _identifiers in FIELD_RULES:
        field = registry.field_access(list_name, field_name)
        assert await field.allows(ctx(ADMIN, "update", list_name, field=field_name))
        assert not await field.allows(ctx(None, "update", list_name, field=field_name))
