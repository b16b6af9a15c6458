"""
User model with ULID primary keys.
"""
from datetime import datetime
from sqlalchemy import String, Boolean
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cms_backend.core.database.base import Base, TimestampMixin, generate_ulid
from cms_backend.features.permissions.models import user_roles, user_permissions


class User(Base, TimestampMixin):
    """
    CMS back-office user, the principal every access decision is made for.

    Effective permissions are the union of the user's active roles (plus
    inherited parent roles) and directly granted permissions. Admins
    (is_admin) bypass all checks; inactive users are denied everything.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # User information
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Status flags
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    last_login_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Relationships
    roles: Mapped[list["Role"]] = relationship(  # type: ignore
        "Role",
        secondary=user_roles,
        back_populates="users",
        lazy="selectin"
    )

    direct_permissions: Mapped[list["Permission"]] = relationship(  # type: ignore
        "Permission",
        secondary=user_permissions,
        back_populates="users",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email!r})>"
