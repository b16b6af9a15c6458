"""
Effective permission calculation.

A user's effective permission set is computed from:
1. Superadmin flag (short-circuits to the wildcard)
2. Permissions of every active role the user holds
3. Permissions inherited from each role's parent role(s)
4. Permissions granted directly to the user

Every failure path resolves to the empty set: a lookup that cannot be
completed must deny access, never grant it.
"""
from collections.abc import Iterable
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from cms_backend.features.permissions.identifiers import WILDCARD, grants, make_identifier, split_identifier
from cms_backend.features.permissions.models import Role, user_roles
from cms_backend.features.users.models import User
from cms_backend.utils import get_logger


log = get_logger(__name__)

EMPTY: frozenset[str] = frozenset()
SUPERADMIN: frozenset[str] = frozenset({WILDCARD})


def collect_role_permissions(role: Role, depth: int, into: set[str]) -> None:
    """
    Add the role's permission identifiers and those of up to `depth` ancestors.

    depth=0 collects the role alone, depth=1 adds the immediate parent, and so
    on. Ancestors beyond `depth` are never touched, so they need not be loaded.
    """
    into.update(perm.identifier for perm in role.permissions if perm.identifier)
    if depth > 0 and role.parent_role is not None:
        collect_role_permissions(role.parent_role, depth - 1, into)


class PermissionChecks:
    """
    Permission checks shared by anything that can produce an effective set.

    Subclasses implement get_user_permissions(); the resolver computes it on
    every call, the cache serves it from memory.
    """

    async def get_user_permissions(self, user_id: str) -> frozenset[str]:
        raise NotImplementedError

    async def has_permission(self, user_id: str, resource: str, action: str) -> bool:
        """
        Check if a user holds "<resource>:<action>" (or the wildcard).

        Unknown resources or actions simply never match.
        """
        permissions = await self.get_user_permissions(user_id)
        allowed = grants(permissions, make_identifier(resource, action))
        log.debug("User %s %s %s:%s", user_id, "granted" if allowed else "denied", resource, action)
        return allowed

    async def has_any_identifier(self, user_id: str, identifiers: Iterable[str]) -> bool:
        """True if the user holds the wildcard or any one of the identifiers."""
        permissions = await self.get_user_permissions(user_id)
        if WILDCARD in permissions:
            return True
        return any(identifier in permissions for identifier in identifiers)

    async def has_any_permission(self, user_id: str, pairs: Iterable[tuple[str, str]]) -> bool:
        """
        Check if the user holds ANY of the (resource, action) pairs (OR logic).

        Stops at the first pair that is granted. An empty list grants nothing.
        """
        permissions = await self.get_user_permissions(user_id)
        for resource, action in pairs:
            if grants(permissions, make_identifier(resource, action)):
                return True
        return False

    async def has_all_permissions(self, user_id: str, pairs: Iterable[tuple[str, str]]) -> bool:
        """
        Check if the user holds ALL of the (resource, action) pairs (AND logic).

        Stops at the first pair that is missing. An empty list asks for
        nothing and is granted.
        """
        permissions = await self.get_user_permissions(user_id)
        for resource, action in pairs:
            if not grants(permissions, make_identifier(resource, action)):
                return False
        return True

    async def get_accessible_resources(self, user_id: str, action: str) -> list[str]:
        """
        Resource names the user may perform `action` on.

        Returns ["*"] for superadmins.
        """
        permissions = await self.get_user_permissions(user_id)
        if WILDCARD in permissions:
            return [WILDCARD]

        resources = set()
        for identifier in permissions:
            resource, permission_action = split_identifier(identifier)
            if resource and permission_action == action:
                resources.add(resource)
        return sorted(resources)


class PermissionResolver(PermissionChecks):
    """
    Computes effective permission sets straight from the database.

    Usage:
        resolver = PermissionResolver(AsyncSessionLocal)
        permissions = await resolver.calculate_user_permissions(user_id)
        # frozenset({"Product:create", "Blog:read"}) or frozenset({"*"})

    Args:
        session_factory: Callable returning an AsyncSession context manager
        inheritance_depth: Parent hops a role inherits through (1 = immediate parent only)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], inheritance_depth: int = 1):
        if inheritance_depth < 0:
            raise ValueError("Inheritance depth must not be negative")
        self.session_factory = session_factory
        self.inheritance_depth = inheritance_depth

    def _load_options(self) -> list:
        options = [
            selectinload(User.roles).selectinload(Role.permissions),
            selectinload(User.direct_permissions),
        ]
        # One path per ancestor level: roles -> parent_role x hops -> permissions
        for hops in range(1, self.inheritance_depth + 1):
            path = selectinload(User.roles)
            for _ in range(hops):
                path = path.selectinload(Role.parent_role)
            options.append(path.selectinload(Role.permissions))
        return options

    async def calculate_user_permissions(self, user_id: str) -> frozenset[str]:
        """
        Calculate the complete set of permission identifiers for a user.

        Returns:
            frozenset() for missing or inactive users,
            frozenset({"*"}) for superadmins,
            otherwise the union of role, inherited and direct permissions.
        """
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(User).where(User.id == user_id).options(*self._load_options())
                )
                user = result.scalar_one_or_none()

                if user is None or not user.is_active:
                    log.debug("User %s missing or inactive, no permissions", user_id)
                    return EMPTY

                if user.is_admin:
                    return SUPERADMIN

                permissions: set[str] = set()
                for role in user.roles:
                    if role.is_active:
                        collect_role_permissions(role, self.inheritance_depth, permissions)

                permissions.update(perm.identifier for perm in user.direct_permissions if perm.identifier)
                return frozenset(permissions)
        except Exception:
            log.exception("Failed to calculate permissions for user %s", user_id)
            return EMPTY

    async def get_user_permissions(self, user_id: str) -> frozenset[str]:
        return await self.calculate_user_permissions(user_id)

    async def get_role_user_ids(self, role_id: str) -> set[str]:
        """
        Ids of users whose effective set depends on the role.

        That is every holder of the role, plus every holder of a role that
        inherits from it within the inheritance depth. Errors propagate; the
        cache decides how to degrade.
        """
        async with self.session_factory() as session:
            role_ids = {role_id}
            frontier = {role_id}
            for _ in range(self.inheritance_depth):
                result = await session.execute(select(Role.id).where(Role.parent_role_id.in_(list(frontier))))
                frontier = set(result.scalars().all()) - role_ids
                if not frontier:
                    break
                role_ids |= frontier

            result = await session.execute(
                select(user_roles.c.user_id).where(user_roles.c.role_id.in_(list(role_ids))).distinct()
            )
            return set(result.scalars().all())
