"""
Decision types shared by access control bundles and presets.

A decision function is an async predicate over an AccessContext. Bundles group
one predicate per list operation (query/create/update/delete) or per field
operation (read/create/update).
"""
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional


Operation = Literal["query", "create", "update", "delete"]
FieldOperation = Literal["read", "create", "update"]

OPERATIONS: tuple[str, ...] = ("query", "create", "update", "delete")
FIELD_OPERATIONS: tuple[str, ...] = ("read", "create", "update")

# Permission action checked for each list operation
OPERATION_ACTIONS: Dict[str, str] = {
    "query": "read",
    "create": "create",
    "update": "update",
    "delete": "delete",
}


# ============================================================================
# Decision Types
# ============================================================================

@dataclass(frozen=True)
class Session:
    """The authenticated user behind a request."""
    user_id: str
    is_admin: bool = False
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class AccessContext:
    """
    Everything a decision function may look at.

    session is None for anonymous requests. item is the stored row for
    update/delete decisions when the caller has loaded it.
    """
    session: Optional[Session]
    operation: str
    resource: Optional[str] = None
    item: Any = None
    field: Optional[str] = None


AccessPredicate = Callable[[AccessContext], Awaitable[bool]]


async def deny(_ctx: AccessContext) -> bool:
    return False


@dataclass(frozen=True)
class OperationAccess:
    query: AccessPredicate
    create: AccessPredicate
    update: AccessPredicate
    delete: AccessPredicate

    def for_operation(self, operation: str) -> AccessPredicate:
        """Predicate for an operation name; unknown operations are denied."""
        if operation not in OPERATIONS:
            return deny
        return getattr(self, operation)


@dataclass(frozen=True)
class FilterAccess:
    """Row filter for queries: True shows every row, False shows none."""
    query: AccessPredicate


@dataclass(frozen=True)
class ListAccessControl:
    operation: OperationAccess
    filter: Optional[FilterAccess] = None

    async def allows(self, ctx: AccessContext) -> bool:
        return await self.operation.for_operation(ctx.operation)(ctx)

    async def filter_allows(self, ctx: AccessContext) -> bool:
        if self.filter is None:
            return True
        return await self.filter.query(ctx)


@dataclass(frozen=True)
class FieldAccessControl:
    read: AccessPredicate
    create: AccessPredicate
    update: AccessPredicate

    async def allows(self, ctx: AccessContext) -> bool:
        if ctx.operation not in FIELD_OPERATIONS:
            return False
        return await getattr(self, ctx.operation)(ctx)


DENY_ALL = ListAccessControl(
    operation=OperationAccess(query=deny, create=deny, update=deny, delete=deny),
    filter=FilterAccess(query=deny),
)


