"""
Access policies of every protected list and field in the CMS.

Built once by the composition root; routes look bundles up by list name.
"""
import dataclasses

from cms_backend.features.permissions.access_control import AccessControlFactory, AccessRegistry
from cms_backend.features.permissions.cache import PermissionCache
from cms_backend.features.permissions.context import AccessContext
from cms_backend.features.permissions.presets import allow


# Content anyone may read; writes need "<Resource>:<action>"
PUBLIC_CONTENT = (
    "Product",
    "ProductSeries",
    "Blog",
    "Application",
    "Page",
    "FaqItem",
    "Category",
    "NavigationMenu",
    "SiteConfig",
)

# Back-office lists gated on "<Resource>:<action>" for every operation
STAFF_CONTENT = (
    "User",
    "Role",
    "Media",
    "MediaCategory",
    "MediaTag",
    "DocumentTemplate",
    "ReusableBlock",
    "FormConfig",
    "CustomScript",
    "SeoSetting",
)

# (list, field, identifiers); holding any one identifier is enough
FIELD_RULES = (
    ("Product", "seo_setting", ("Product:update", "SeoSetting:update")),
    ("Product", "status", ("Product:publish",)),
    ("Blog", "status", ("Blog:publish",)),
    ("CustomScript", "code", ("CustomScript:inject_code",)),
    ("Role", "permissions", ("Role:manage_permissions",)),
    ("User", "roles", ("User:manage_roles",)),
    ("User", "direct_permissions", ("User:manage_roles",)),
)


def permission_list_access(factory: AccessControlFactory):
    """
    Permissions are readable by any signed-in user (the permission picker
    needs them) and managed by superadmins. Seeded permissions cannot be
    deleted.
    """
    async def check(ctx: AccessContext) -> bool:
        if ctx.session is None:
            return False
        if ctx.operation == "query":
            return True
        if ctx.operation == "delete" and ctx.item is not None and ctx.item.is_system:
            return False
        return ctx.session.is_admin

    return factory.create_custom_access_control(check)


def audit_log_access(factory: AccessControlFactory, cache: PermissionCache):
    """Audit entries are written by the system only and read with ActivityLog:view_logs."""
    async def check(ctx: AccessContext) -> bool:
        if ctx.session is None:
            return False
        if ctx.operation == "query":
            return await cache.has_permission(ctx.session.user_id, "ActivityLog", "view_logs")
        if ctx.operation == "delete":
            return ctx.session.is_admin
        return False

    return factory.create_custom_access_control(check)


def form_submission_access(factory: AccessControlFactory):
    """Visitors submit forms anonymously; staff handle submissions with FormSubmission permissions."""
    access = factory.create_access_control("FormSubmission")
    return dataclasses.replace(access, operation=dataclasses.replace(access.operation, create=allow))


def build_access_registry(factory: AccessControlFactory, cache: PermissionCache) -> AccessRegistry:
    registry = AccessRegistry()

    for list_name in PUBLIC_CONTENT:
        registry.register_list(list_name, factory.public_read_access(list_name))
    for list_name in STAFF_CONTENT:
        registry.register_list(list_name, factory.create_access_control(list_name))

    registry.register_list("Permission", permission_list_access(factory))
    registry.register_list("ActivityLog", audit_log_access(factory, cache))
    registry.register_list("FormSubmission", form_submission_access(factory))
    registry.register_list("PermissionCache", factory.admin_only_access())
    registry.register_list("Profile", factory.authenticated_access())

    for list_name, field_name, identifiers in FIELD_RULES:
        registry.register_field(list_name, field_name, factory.create_field_access(list_name, identifiers))

    return registry
