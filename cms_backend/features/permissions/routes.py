"""
Permission management API routes.

Provides endpoints for managing permissions, roles and their assignments,
checking effective permissions, and operating the permission cache. Every
mutation that changes someone's effective permissions invalidates the cache
for exactly the users it affects.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Request, BackgroundTasks
from sqlalchemy import select, delete, and_, insert, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from cms_backend.core.database.engine import get_db
from cms_backend.features.permissions.access_control import AccessRegistry
from cms_backend.features.permissions.cache import PermissionCache
from cms_backend.features.permissions.context import OPERATIONS, AccessContext, Session
from cms_backend.features.permissions.identifiers import make_identifier
from cms_backend.features.users.dependencies import get_required_session
from cms_backend.features.users.models import User
from cms_backend.features.permissions.models import (
    Permission,
    Role,
    AuditLog,
    role_permissions,
    user_roles,
    user_permissions,
)
from cms_backend.features.permissions.schemas import (
    PermissionCreate,
    PermissionUpdate,
    PermissionResponse,
    RoleCreate,
    RoleUpdate,
    RoleResponse,
    RoleWithPermissions,
    AssignRoleToUser,
    AssignPermission,
    PermissionCheckRequest,
    PermissionCheckResponse,
    UserPermissionsResponse,
    ListAccessResponse,
    CacheStatsResponse,
    CacheClearResponse,
    AuditLogResponse,
    AuditLogListResponse,
)
from cms_backend.features.permissions.dependencies import (
    create_audit_log,
    ensure_access,
    get_access_registry,
    get_permission_cache,
    get_session_factory,
    query_visible,
    require_access,
    require_field_access,
)
from cms_backend.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


def _audit(
    background_tasks: BackgroundTasks,
    request: Request,
    session_factory: async_sessionmaker[AsyncSession],
    session: Session,
    action: str,
    resource_type: str,
    resource_id: Optional[str],
    details: Optional[dict] = None,
) -> None:
    background_tasks.add_task(
        create_audit_log,
        session_factory=session_factory,
        user_id=session.user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent")
    )


async def _get_or_404(db: AsyncSession, model, item_id: str, name: str):
    result = await db.execute(select(model).where(model.id == item_id))
    item = result.scalars().first()
    if not item:
        raise HTTPException(status_code=404, detail=f"{name} not found")
    return item


# ============================================================================
# Permission Routes
# ============================================================================

@router.post("/permissions", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    permission: PermissionCreate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    session: Session = Depends(require_access("Permission", "create"))  # Superadmins only
):
    """Create a new permission (superadmin only)."""
    try:
        db_permission = Permission(**permission.model_dump())
        db.add(db_permission)
        await db.commit()
        await db.refresh(db_permission)
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Permission {make_identifier(permission.resource, permission.action)} already exists"
        )

    _audit(background_tasks, request, session_factory, session, "create", "permission",
           db_permission.id, {"identifier": db_permission.identifier})
    return db_permission


@router.get("/permissions", response_model=List[PermissionResponse])
async def list_permissions(
    skip: int = 0,
    limit: int = 100,
    resource: Optional[str] = None,
    action: Optional[str] = None,
    category: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    visible: bool = Depends(query_visible("Permission"))
):
    """List permissions with optional filtering."""
    if not visible:
        return []

    stmt = select(Permission)

    if resource:
        stmt = stmt.where(Permission.resource == resource)
    if action:
        stmt = stmt.where(Permission.action == action)
    if category:
        stmt = stmt.where(Permission.category == category)

    stmt = stmt.order_by(Permission.identifier).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.get("/permissions/{permission_id}", response_model=PermissionResponse)
async def get_permission(
    permission_id: str,
    db: AsyncSession = Depends(get_db),
    _session: Session = Depends(require_access("Permission", "query"))
):
    """Get a specific permission by ID."""
    return await _get_or_404(db, Permission, permission_id, "Permission")


@router.put("/permissions/{permission_id}", response_model=PermissionResponse)
async def update_permission(
    permission_id: str,
    permission_update: PermissionUpdate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    session: Session = Depends(require_access("Permission", "update"))
):
    """
    Update a permission's display fields (superadmin only).

    Resource and action are fixed once created, so the identifier and every
    cached set stay valid.
    """
    db_permission = await _get_or_404(db, Permission, permission_id, "Permission")

    update_data = permission_update.model_dump(exclude_unset=True)
    for key, value in update_data.items():
        setattr(db_permission, key, value)

    await db.commit()
    await db.refresh(db_permission)

    _audit(background_tasks, request, session_factory, session, "update", "permission", permission_id, update_data)
    return db_permission


@router.delete("/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_permission(
    permission_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: AccessRegistry = Depends(get_access_registry),
    cache: PermissionCache = Depends(get_permission_cache),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    session: Session = Depends(get_required_session)
):
    """Delete a permission (superadmin only, never a system permission)."""
    db_permission = await _get_or_404(db, Permission, permission_id, "Permission")

    ctx = AccessContext(session=session, operation="delete", resource="Permission", item=db_permission)
    await ensure_access(registry.list_access("Permission"), ctx)

    identifier = db_permission.identifier
    await db.delete(db_permission)
    await db.commit()

    # Held through any number of roles and users
    cache.clear_all_permissions_cache()

    _audit(background_tasks, request, session_factory, session, "delete", "permission",
           permission_id, {"identifier": identifier})
    return None


# ============================================================================
# Role Routes
# ============================================================================

async def _validate_parent(db: AsyncSession, role_id: Optional[str], parent_role_id: str) -> None:
    """The parent must exist and must not make the role its own ancestor."""
    current: Optional[str] = parent_role_id
    seen = set()
    while current is not None and current not in seen:
        if current == role_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Role cannot inherit from itself or its descendants"
            )
        seen.add(current)
        result = await db.execute(select(Role.parent_role_id).where(Role.id == current))
        row = result.first()
        if row is None:
            if current == parent_role_id:
                raise HTTPException(status_code=404, detail="Parent role not found")
            break
        current = row[0]


@router.post("/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    session: Session = Depends(require_access("Role", "create"))
):
    """Create a new role. Nobody holds it yet, so no cache entry is affected."""
    if role.parent_role_id:
        await _validate_parent(db, None, role.parent_role_id)

    try:
        db_role = Role(**role.model_dump())
        db.add(db_role)
        await db.commit()
        await db.refresh(db_role)
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Role with this name or code already exists"
        )

    _audit(background_tasks, request, session_factory, session, "create", "role", db_role.id, role.model_dump())
    return db_role


@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(
    skip: int = 0,
    limit: int = 100,
    is_active: Optional[bool] = None,
    db: AsyncSession = Depends(get_db),
    visible: bool = Depends(query_visible("Role"))
):
    """List roles, highest priority first."""
    if not visible:
        return []

    stmt = select(Role)
    if is_active is not None:
        stmt = stmt.where(Role.is_active == is_active)

    stmt = stmt.order_by(Role.priority.desc(), Role.name).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.get("/roles/{role_id}", response_model=RoleWithPermissions)
async def get_role(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    _session: Session = Depends(require_access("Role", "query"))
):
    """Get a specific role with its own (not inherited) permissions."""
    stmt = select(Role).where(Role.id == role_id).options(selectinload(Role.permissions))
    result = await db.execute(stmt)
    role = result.scalars().first()

    if not role:
        raise HTTPException(status_code=404, detail="Role not found")

    return role


@router.put("/roles/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: str,
    role_update: RoleUpdate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    session: Session = Depends(require_access("Role", "update"))
):
    """
    Update a role.

    Changing the parent or the active flag changes the effective permissions
    of every holder, so their cache entries are cleared.
    """
    db_role = await _get_or_404(db, Role, role_id, "Role")

    update_data = role_update.model_dump(exclude_unset=True)
    if update_data.get("parent_role_id"):
        await _validate_parent(db, role_id, update_data["parent_role_id"])

    affects_holders = (
        ("parent_role_id" in update_data and update_data["parent_role_id"] != db_role.parent_role_id)
        or ("is_active" in update_data and update_data["is_active"] != db_role.is_active)
    )

    for key, value in update_data.items():
        setattr(db_role, key, value)

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Role with this name already exists"
        )
    await db.refresh(db_role)

    if affects_holders:
        await cache.clear_role_permissions_cache(role_id)

    _audit(background_tasks, request, session_factory, session, "update", "role", role_id, update_data)
    return db_role


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    session: Session = Depends(require_access("Role", "delete"))
):
    """Delete a role. System roles cannot be deleted."""
    db_role = await _get_or_404(db, Role, role_id, "Role")

    if db_role.is_system:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="System roles cannot be deleted"
        )

    # Holders are unreachable once the assignments cascade away
    try:
        affected = await cache.resolver.get_role_user_ids(role_id)
    except Exception:
        log.exception("Failed to look up holders of role %s, flushing the whole cache", role_id)
        affected = None

    role_name = db_role.name
    await db.delete(db_role)
    await db.commit()

    if affected is None:
        cache.clear_all_permissions_cache()
    else:
        cache.clear_users_permissions_cache(affected)

    _audit(background_tasks, request, session_factory, session, "delete", "role", role_id, {"name": role_name})
    return None


@router.post("/roles/{role_id}/permissions", status_code=status.HTTP_200_OK)
async def assign_permission_to_role(
    role_id: str,
    assignment: AssignPermission,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    session: Session = Depends(require_field_access("Role", "permissions", "update"))
):
    """Grant a permission to a role (requires Role:manage_permissions)."""
    role = await _get_or_404(db, Role, role_id, "Role")
    permission = await _get_or_404(db, Permission, assignment.permission_id, "Permission")

    # Check if already assigned
    check_stmt = select(role_permissions).where(
        and_(
            role_permissions.c.role_id == role_id,
            role_permissions.c.permission_id == assignment.permission_id
        )
    )
    check_result = await db.execute(check_stmt)
    if check_result.first():
        return {"message": f"Permission '{permission.identifier}' already assigned to role '{role.name}'"}

    stmt = insert(role_permissions).values(role_id=role_id, permission_id=assignment.permission_id)
    await db.execute(stmt)
    await db.commit()

    cleared = await cache.clear_role_permissions_cache(role_id)

    _audit(background_tasks, request, session_factory, session, "assign_permission", "role", role_id,
           {"permission_id": assignment.permission_id, "identifier": permission.identifier})
    return {
        "message": f"Permission '{permission.identifier}' assigned to role '{role.name}'",
        "cleared_users": cleared,
    }


@router.delete("/roles/{role_id}/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_permission_from_role(
    role_id: str,
    permission_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    session: Session = Depends(require_field_access("Role", "permissions", "update"))
):
    """Revoke a permission from a role (requires Role:manage_permissions)."""
    assignment = and_(
        role_permissions.c.role_id == role_id,
        role_permissions.c.permission_id == permission_id
    )
    check_result = await db.execute(select(role_permissions).where(assignment))
    if not check_result.first():
        raise HTTPException(status_code=404, detail="Permission assignment not found")

    await db.execute(delete(role_permissions).where(assignment))
    await db.commit()

    await cache.clear_role_permissions_cache(role_id)

    _audit(background_tasks, request, session_factory, session, "remove_permission", "role", role_id,
           {"permission_id": permission_id})
    return None


# ============================================================================
# User Assignment Routes
# ============================================================================

@router.post("/users/{user_id}/roles", status_code=status.HTTP_200_OK)
async def assign_role_to_user(
    user_id: str,
    assignment: AssignRoleToUser,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    session: Session = Depends(require_field_access("User", "roles", "update"))
):
    """Give a user a role (requires User:manage_roles)."""
    await _get_or_404(db, User, user_id, "User")
    role = await _get_or_404(db, Role, assignment.role_id, "Role")

    check_stmt = select(user_roles).where(
        and_(user_roles.c.user_id == user_id, user_roles.c.role_id == assignment.role_id)
    )
    check_result = await db.execute(check_stmt)
    if check_result.first():
        return {"message": f"User already has role '{role.name}'"}

    await db.execute(insert(user_roles).values(user_id=user_id, role_id=assignment.role_id))
    await db.commit()

    cache.clear_user_permissions_cache(user_id)

    _audit(background_tasks, request, session_factory, session, "assign_role", "user", user_id,
           {"role_id": assignment.role_id, "role_name": role.name})
    return {"message": f"Role '{role.name}' assigned to user"}


@router.delete("/users/{user_id}/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_role_from_user(
    user_id: str,
    role_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    session: Session = Depends(require_field_access("User", "roles", "update"))
):
    """Take a role away from a user (requires User:manage_roles)."""
    assignment = and_(user_roles.c.user_id == user_id, user_roles.c.role_id == role_id)
    check_result = await db.execute(select(user_roles).where(assignment))
    if not check_result.first():
        raise HTTPException(status_code=404, detail="Role assignment not found")

    await db.execute(delete(user_roles).where(assignment))
    await db.commit()

    cache.clear_user_permissions_cache(user_id)

    _audit(background_tasks, request, session_factory, session, "remove_role", "user", user_id, {"role_id": role_id})
    return None


@router.post("/users/{user_id}/permissions", status_code=status.HTTP_200_OK)
async def assign_permission_to_user(
    user_id: str,
    assignment: AssignPermission,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    session: Session = Depends(require_field_access("User", "direct_permissions", "update"))
):
    """Grant a permission directly to a user (requires User:manage_roles)."""
    await _get_or_404(db, User, user_id, "User")
    permission = await _get_or_404(db, Permission, assignment.permission_id, "Permission")

    check_stmt = select(user_permissions).where(
        and_(
            user_permissions.c.user_id == user_id,
            user_permissions.c.permission_id == assignment.permission_id
        )
    )
    check_result = await db.execute(check_stmt)
    if check_result.first():
        return {"message": f"User already has permission '{permission.identifier}'"}

    await db.execute(insert(user_permissions).values(user_id=user_id, permission_id=assignment.permission_id))
    await db.commit()

    cache.clear_user_permissions_cache(user_id)

    _audit(background_tasks, request, session_factory, session, "assign_permission", "user", user_id,
           {"permission_id": assignment.permission_id, "identifier": permission.identifier})
    return {"message": f"Permission '{permission.identifier}' granted to user"}


@router.delete("/users/{user_id}/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_permission_from_user(
    user_id: str,
    permission_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    session: Session = Depends(require_field_access("User", "direct_permissions", "update"))
):
    """Revoke a directly granted permission (requires User:manage_roles)."""
    assignment = and_(user_permissions.c.user_id == user_id, user_permissions.c.permission_id == permission_id)
    check_result = await db.execute(select(user_permissions).where(assignment))
    if not check_result.first():
        raise HTTPException(status_code=404, detail="Permission assignment not found")

    await db.execute(delete(user_permissions).where(assignment))
    await db.commit()

    cache.clear_user_permissions_cache(user_id)

    _audit(background_tasks, request, session_factory, session, "remove_permission", "user", user_id,
           {"permission_id": permission_id})
    return None


# ============================================================================
# Permission Check Routes
# ============================================================================

@router.post("/check", response_model=PermissionCheckResponse)
async def check_permission(
    check_request: PermissionCheckRequest,
    cache: PermissionCache = Depends(get_permission_cache),
    session: Session = Depends(require_access("Profile", "query"))
):
    """Check if the current user has a specific permission."""
    allowed = await cache.has_permission(session.user_id, check_request.resource, check_request.action)
    return PermissionCheckResponse(
        has_permission=allowed,
        identifier=make_identifier(check_request.resource, check_request.action),
    )


@router.get("/me/access", response_model=List[ListAccessResponse])
async def get_my_list_access(
    registry: AccessRegistry = Depends(get_access_registry),
    session: Session = Depends(require_access("Profile", "query"))
):
    """Which operations the current user may perform on every registered list (drives the admin menu)."""
    rows = []
    for list_name in registry.list_names:
        access = registry.list_access(list_name)
        allowed = {}
        for operation in OPERATIONS:
            ctx = AccessContext(session=session, operation=operation, resource=list_name)
            allowed[operation] = await access.allows(ctx)
        rows.append(ListAccessResponse(list_name=list_name, **allowed))
    return rows


@router.get("/users/{user_id}/permissions", response_model=UserPermissionsResponse)
async def get_user_permissions(
    user_id: str,
    cache: PermissionCache = Depends(get_permission_cache),
    session: Session = Depends(require_access("Profile", "query"))
):
    """Get the effective permissions of a user."""
    # Own permissions, or anyone's with User:read
    if user_id != session.user_id and not await cache.has_permission(session.user_id, "User", "read"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to view other users' permissions"
        )

    permissions = await cache.get_cached_user_permissions(user_id)
    return UserPermissionsResponse(
        user_id=user_id,
        permissions=sorted(permissions),
        readable_resources=await cache.get_accessible_resources(user_id, "read"),
    )


# ============================================================================
# Cache Routes
# ============================================================================

@router.get("/cache/stats", response_model=CacheStatsResponse)
async def get_cache_stats(
    cache: PermissionCache = Depends(get_permission_cache),
    _session: Session = Depends(require_access("PermissionCache", "query"))
):
    """Permission cache statistics (superadmin only)."""
    return cache.get_cache_stats()


@router.delete("/cache", response_model=CacheClearResponse)
async def clear_cache(
    background_tasks: BackgroundTasks,
    request: Request,
    cache: PermissionCache = Depends(get_permission_cache),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    session: Session = Depends(require_access("PermissionCache", "delete"))
):
    """Flush the whole permission cache, e.g. after bulk changes (superadmin only)."""
    cleared = cache.clear_all_permissions_cache()
    _audit(background_tasks, request, session_factory, session, "flush", "permission_cache", None, {"cleared": cleared})
    return CacheClearResponse(cleared=cleared)


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    skip: int = 0,
    limit: int = 50,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    _session: Session = Depends(require_access("ActivityLog", "query"))  # ActivityLog:view_logs
):
    """List audit logs with optional filtering."""
    stmt = select(AuditLog)

    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)

    # Get total count
    count_stmt = select(func.count()).select_from(stmt.subquery())
    total_result = await db.execute(count_stmt)
    total = total_result.scalar() or 0

    # Get paginated results
    stmt = stmt.order_by(AuditLog.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    logs = result.scalars().all()

    pages = (total + limit - 1) // limit if limit > 0 else 0
    page = (skip // limit) + 1 if limit > 0 else 1

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=page,
        page_size=limit,
        pages=pages
    )
