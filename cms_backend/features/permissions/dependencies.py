"""
FastAPI glue for the permission engine.

Implements:
- Accessors for the engine objects built by the composition root (app.state)
- Dependencies that evaluate registered decision bundles for a route
- Audit logging helpers
"""
from typing import Any, Dict, Optional
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cms_backend.features.permissions.access_control import AccessRegistry
from cms_backend.features.permissions.context import AccessContext, FieldAccessControl, ListAccessControl, Session
from cms_backend.features.permissions.cache import PermissionCache
from cms_backend.features.permissions.models import AuditLog
from cms_backend.features.users.dependencies import get_session
from cms_backend.utils import get_logger


log = get_logger(__name__)


# ============================================================================
# Engine Accessors
# ============================================================================

def get_permission_cache(request: Request) -> PermissionCache:
    return request.app.state.permission_cache


def get_access_registry(request: Request) -> AccessRegistry:
    return request.app.state.access_registry


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


# ============================================================================
# Access Checks
# ============================================================================

def _denied(session: Optional[Session], detail: str) -> HTTPException:
    if session is None:
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


async def ensure_access(access: ListAccessControl, ctx: AccessContext) -> None:
    """
    Raise unless the bundle allows the context's operation.

    Anonymous callers get a 401, authenticated callers a 403.

    Usage (when the decision needs the stored item):
        ctx = AccessContext(session=session, operation="delete", resource="Permission", item=permission)
        await ensure_access(registry.list_access("Permission"), ctx)
    """
    if not await access.allows(ctx):
        log.debug("Denied %s on %s for %s", ctx.operation, ctx.resource, ctx.session and ctx.session.user_id)
        raise _denied(ctx.session, f"Permission denied: {ctx.operation} on {ctx.resource}")


async def ensure_field_access(access: FieldAccessControl, ctx: AccessContext) -> None:
    """Raise unless the field bundle allows the context's operation."""
    if not await access.allows(ctx):
        raise _denied(ctx.session, f"Permission denied: {ctx.operation} on {ctx.resource}.{ctx.field}")


def require_access(list_name: str, operation: str):
    """
    FastAPI dependency to require an operation on a registered list.

    Usage:
        @router.post("/roles")
        async def create_role(
            session: Session = Depends(require_access("Role", "create"))
        ):
            # Caller may create roles
            pass

    Returns:
        Dependency function that returns the caller's session (None if the
        bundle admits anonymous callers)

    Raises:
        HTTPException: 401/403 if the bundle denies the operation
    """
    async def access_dependency(
        registry: AccessRegistry = Depends(get_access_registry),
        session: Optional[Session] = Depends(get_session),
    ) -> Optional[Session]:
        ctx = AccessContext(session=session, operation=operation, resource=list_name)
        await ensure_access(registry.list_access(list_name), ctx)
        return session

    return access_dependency


def require_field_access(list_name: str, field_name: str, operation: str):
    """
    FastAPI dependency to require read/create/update access to a field.

    Usage:
        @router.post("/roles/{role_id}/permissions")
        async def add(session: Session = Depends(require_field_access("Role", "permissions", "update"))):
            ...
    """
    async def field_access_dependency(
        registry: AccessRegistry = Depends(get_access_registry),
        session: Optional[Session] = Depends(get_session),
    ) -> Optional[Session]:
        ctx = AccessContext(session=session, operation=operation, resource=list_name, field=field_name)
        await ensure_field_access(registry.field_access(list_name, field_name), ctx)
        return session

    return field_access_dependency


def query_visible(list_name: str):
    """
    FastAPI dependency evaluating the query decision and row filter of a list.

    Resolves to False when the caller may not see any row; list endpoints then
    return an empty result instead of an error.
    """
    async def filter_dependency(
        registry: AccessRegistry = Depends(get_access_registry),
        session: Optional[Session] = Depends(get_session),
    ) -> bool:
        access = registry.list_access(list_name)
        ctx = AccessContext(session=session, operation="query", resource=list_name)
        return await access.allows(ctx) and await access.filter_allows(ctx)

    return filter_dependency


# ============================================================================
# Audit Logging
# ============================================================================

async def create_audit_log(
    session_factory: async_sessionmaker[AsyncSession],
    user_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None
) -> None:
    """
    Create an audit log entry.

    Runs as a background task after the response, so it opens its own
    database session. Failures are logged and never reach the client.

    Args:
        session_factory: Session factory for the audit write
        user_id: User performing the action
        action: Action performed (e.g., "create", "update", "delete", "assign")
        resource_type: Type of resource (e.g., "role", "permission", "user")
        resource_id: ID of the resource
        details: Additional details
        ip_address: Client IP address
        user_agent: Client user agent
    """
    try:
        async with session_factory() as db:
            db.add(AuditLog(
                user_id=user_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                details=details,
                ip_address=ip_address,
                user_agent=user_agent
            ))
            await db.commit()
    except Exception:
        log.exception("Failed to write audit log for %s %s:%s", action, resource_type, resource_id)
        return

    log.info("Audit: user=%s action=%s resource=%s:%s", user_id, action, resource_type, resource_id)
