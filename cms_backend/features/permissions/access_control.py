"""
Access control helpers.

Turns RBAC permissions into the decision bundles the API layer evaluates for
every protected list (query/create/update/delete plus a row filter) and
every protected field (read/create/update).

Example:
    factory = AccessControlFactory(permission_cache)

    registry.register_list("Product", factory.create_access_control("Product"))
    registry.register_field(
        "Product", "seo_setting",
        factory.create_field_access("Product", ["Product:update", "SeoSetting:update"]),
    )
"""
import dataclasses
from collections.abc import Iterable
from typing import Dict

from cms_backend.features.permissions import presets
from cms_backend.features.permissions.context import (
    DENY_ALL,
    OPERATION_ACTIONS,
    AccessContext,
    AccessPredicate,
    FieldAccessControl,
    FilterAccess,
    ListAccessControl,
    OperationAccess,
    deny,
)
from cms_backend.features.permissions.resolver import PermissionChecks
from cms_backend.utils import get_logger


log = get_logger(__name__)


# ============================================================================
# Factory
# ============================================================================

class AccessControlFactory:
    """
    Builds decision bundles backed by a permission source.

    In the application the source is the PermissionCache; any PermissionChecks
    implementation works (tests use the resolver directly).
    """

    def __init__(self, checks: PermissionChecks):
        self.checks = checks

    def _resource_check(self, resource_name: str, action: str) -> AccessPredicate:
        async def check(ctx: AccessContext) -> bool:
            if ctx.session is None:
                return False
            return await self.checks.has_permission(ctx.session.user_id, resource_name, action)
        return check

    def _identifiers_check(self, identifiers: tuple[str, ...]) -> AccessPredicate:
        async def check(ctx: AccessContext) -> bool:
            if ctx.session is None:
                return False
            return await self.checks.has_any_identifier(ctx.session.user_id, identifiers)
        return check

    def create_access_control(self, resource_name: str) -> ListAccessControl:
        """
        Access control for a list, driven by "<resource_name>:<action>" permissions.

        Query requires read permission. The filter is all-or-nothing: with read
        permission every row is visible, without it none is.
        """
        read = self._resource_check(resource_name, OPERATION_ACTIONS["query"])
        return ListAccessControl(
            operation=OperationAccess(
                query=read,
                create=self._resource_check(resource_name, "create"),
                update=self._resource_check(resource_name, "update"),
                delete=self._resource_check(resource_name, "delete"),
            ),
            filter=FilterAccess(query=read),
        )

    def create_field_access(
        self,
        resource_name: str,
        required_permissions: Iterable[str] = (),
    ) -> FieldAccessControl:
        """
        Field-level access control.

        Without required_permissions each operation falls back to the
        resource's own permission (read/create/update). With them, holding
        any ONE of the listed identifiers is enough:

            # Editable by product editors or SEO specialists
            create_field_access("Product", ["Product:update", "SeoSetting:update"])
        """
        required = tuple(required_permissions)
        if not required:
            return FieldAccessControl(
                read=self._resource_check(resource_name, "read"),
                create=self._resource_check(resource_name, "create"),
                update=self._resource_check(resource_name, "update"),
            )

        check = self._identifiers_check(required)
        return FieldAccessControl(read=check, create=check, update=check)

    def create_custom_access_control(self, check_permission: AccessPredicate) -> ListAccessControl:
        """
        Wrap a custom async check into a list access control.

        The check receives the AccessContext (session, operation and, for
        update/delete, the current item) and returns True to allow:

            async def own_posts(ctx):
                if ctx.operation in ("update", "delete"):
                    if ctx.item is not None and ctx.item.author_id == ctx.session.user_id:
                        return True
                    return await cache.has_permission(ctx.session.user_id, "Blog", ctx.operation)
                return True

            factory.create_custom_access_control(own_posts)

        A check that raises denies access.
        """
        def bind(operation: str) -> AccessPredicate:
            async def check(ctx: AccessContext) -> bool:
                try:
                    return bool(await check_permission(dataclasses.replace(ctx, operation=operation)))
                except Exception:
                    log.exception("Custom access check failed for %s on %s", operation, ctx.resource)
                    return False
            return check

        return ListAccessControl(
            operation=OperationAccess(
                query=bind("query"),
                create=bind("create"),
                update=bind("update"),
                delete=bind("delete"),
            )
        )

    def admin_only_access(self) -> ListAccessControl:
        return presets.admin_only_access()

    def authenticated_access(self) -> ListAccessControl:
        return presets.authenticated_access()

    def public_read_access(self, resource_name: str) -> ListAccessControl:
        """
        Anyone may query; create/update/delete need the resource permission.

        For public-facing content such as products and blog posts.
        """
        resource_access = self.create_access_control(resource_name).operation
        return ListAccessControl(
            operation=dataclasses.replace(resource_access, query=presets.allow),
        )


# ============================================================================
# Registry
# ============================================================================

class AccessRegistry:
    """
    Decision bundles registered by protected lists and fields.

    Lookups of names that were never registered return a deny-all bundle.
    """

    def __init__(self):
        self._lists: Dict[str, ListAccessControl] = {}
        self._fields: Dict[tuple[str, str], FieldAccessControl] = {}

    def register_list(self, list_name: str, access: ListAccessControl) -> None:
        self._lists[list_name] = access

    def register_field(self, list_name: str, field_name: str, access: FieldAccessControl) -> None:
        self._fields[(list_name, field_name)] = access

    @property
    def list_names(self) -> list[str]:
        return sorted(self._lists)

    def list_access(self, list_name: str) -> ListAccessControl:
        access = self._lists.get(list_name)
        if access is None:
            log.warning("No access control registered for list %s, denying", list_name)
            return DENY_ALL
        return access

    def field_access(self, list_name: str, field_name: str) -> FieldAccessControl:
        access = self._fields.get((list_name, field_name))
        if access is None:
            log.warning("No access control registered for field %s.%s, denying", list_name, field_name)
            return FieldAccessControl(read=deny, create=deny, update=deny)
        return access
