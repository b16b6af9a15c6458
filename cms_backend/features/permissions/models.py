"""
Permission and Role models for the CMS RBAC system.

This module implements:
- Permissions addressed by "<Resource>:<action>" identifiers
- Roles grouping permissions, with an optional parent role to inherit from
- Direct user permissions (supplementing role permissions)
- Audit log of permission administration
"""
from typing import Any, Dict
from sqlalchemy import String, ForeignKey, Table, Column, JSON, Text, Boolean, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from cms_backend.core.database.base import Base, TimestampMixin, generate_ulid
from cms_backend.features.permissions.identifiers import make_identifier


# ============================================================================
# Association Tables for Many-to-Many Relationships
# ============================================================================

# Role-Permission relationship
role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(26), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)

# User-Role relationship (a user may hold several roles)
user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", String(26), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)

# User direct permissions (supplement role permissions)
user_permissions = Table(
    "user_permissions",
    Base.metadata,
    Column("user_id", String(26), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(26), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)


# ============================================================================
# Core Models
# ============================================================================

class Permission(Base, TimestampMixin):
    """
    A single action on a single resource type.

    Examples:
    - resource="Product", action="create"  -> identifier "Product:create"
    - resource="Blog", action="publish"    -> identifier "Blog:publish"
    - resource="CustomScript", action="inject_code"

    The identifier is derived from resource and action and never set directly.
    """
    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("resource", "action", name="uq_permissions_resource_action"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Permission definition
    resource: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    identifier: Mapped[str] = mapped_column(String(151), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="content")

    # System permissions are seeded and cannot be deleted
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    roles: Mapped[list["Role"]] = relationship(
        "Role",
        secondary=role_permissions,
        back_populates="permissions",
    )

    users: Mapped[list["User"]] = relationship(  # type: ignore
        "User",
        secondary=user_permissions,
        back_populates="direct_permissions",
    )

    @validates("resource", "action")
    def _sync_identifier(self, key: str, value: str) -> str:
        resource = value if key == "resource" else self.resource
        action = value if key == "action" else self.action
        if resource and action:
            self.identifier = make_identifier(resource, action)
        return value

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, identifier={self.identifier!r})>"


class Role(Base, TimestampMixin):
    """
    Role grouping permissions.

    A role may name one parent role; holders of the role also receive the
    parent's permissions. How many parent hops are followed is decided by the
    resolver (one by default).
    Examples: content_editor, seo_specialist, media_manager
    """
    __tablename__ = "roles"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Role definition
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Inactive roles contribute nothing to their holders
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    parent_role_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("roles.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Relationships
    permissions: Mapped[list["Permission"]] = relationship(
        "Permission",
        secondary=role_permissions,
        back_populates="roles",
        lazy="selectin"
    )

    # Loaded explicitly (see PermissionResolver) so the walk depth stays bounded
    parent_role: Mapped["Role | None"] = relationship(
        "Role",
        remote_side=[id],
        back_populates="child_roles",
    )

    child_roles: Mapped[list["Role"]] = relationship(
        "Role",
        back_populates="parent_role",
    )

    users: Mapped[list["User"]] = relationship(  # type: ignore
        "User",
        secondary=user_roles,
        back_populates="roles",
    )

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, code={self.code!r}, parent={self.parent_role_id})>"


class AuditLog(Base, TimestampMixin):
    """
    Audit log for permission administration.

    Tracks who changed roles, permissions and assignments, and from where.
    """
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Actor
    user_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, user_id={self.user_id}, action={self.action}, resource={self.resource_type})>"
