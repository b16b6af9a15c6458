"""
Fixed access policies that never consult the permission cache.
"""
from cms_backend.features.permissions.context import AccessContext, AccessPredicate, ListAccessControl, OperationAccess


async def allow(_ctx: AccessContext) -> bool:
    return True


async def is_authenticated(ctx: AccessContext) -> bool:
    return ctx.session is not None


async def is_admin(ctx: AccessContext) -> bool:
    return ctx.session is not None and ctx.session.is_admin


def _same_for_all(predicate: AccessPredicate) -> ListAccessControl:
    return ListAccessControl(
        operation=OperationAccess(query=predicate, create=predicate, update=predicate, delete=predicate),
    )


def admin_only_access() -> ListAccessControl:
    """
    Only superadmins, for every operation.

    Example:
        registry.register_list("PermissionCache", admin_only_access())
    """
    return _same_for_all(is_admin)


def authenticated_access() -> ListAccessControl:
    """Any logged-in user, no permission lookup."""
    return _same_for_all(is_authenticated)
