"""
Seed script to populate default permissions and roles.

Run this script after database initialization to create:
- The CMS permission catalogue ("<Resource>:<action>")
- Default system roles
- Initial role-permission assignments

Existing permissions and roles are left untouched, so the script can be
re-run after new resources are added.

Usage:
    uv run python -m scripts.seed_permissions
"""
import asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cms_backend.core.database.engine import AsyncSessionLocal, init_db
from cms_backend.features.permissions.identifiers import make_identifier
from cms_backend.features.permissions.models import Permission, Role
from cms_backend.utils import get_logger


log = get_logger(__name__)


CRUD = ("create", "read", "update", "delete")

# category -> resources that get the four CRUD permissions
RESOURCES = {
    "auth_and_users": ("User", "Role", "Permission"),
    "navigation": ("NavigationMenu",),
    "media": ("Media", "MediaCategory", "MediaTag"),
    "products": ("ProductSeries", "Product"),
    "content": ("Category", "Blog", "Application", "Page", "FaqItem"),
    "component_blocks": ("DocumentTemplate", "ReusableBlock"),
    "forms": ("FormConfig", "FormSubmission"),
    "advanced": ("CustomScript", "SeoSetting"),
    "site_config": ("SiteConfig",),
}

# (resource, action, category, description) beyond plain CRUD
SPECIAL_PERMISSIONS = [
    ("User", "manage_roles", "auth_and_users", "Manage user roles and direct permissions"),
    ("Role", "manage_permissions", "auth_and_users", "Manage role permissions"),
    ("ActivityLog", "read", "auth_and_users", "View activity log"),
    ("ActivityLog", "view_logs", "auth_and_users", "View audit logs"),
    ("ActivityLog", "delete", "auth_and_users", "Delete activity log entries"),
    ("Product", "publish", "products", "Publish products"),
    ("Blog", "publish", "content", "Publish blog posts"),
    ("FormSubmission", "export", "forms", "Export form submissions"),
    ("CustomScript", "inject_code", "advanced", "Inject custom scripts into pages"),
]


def default_permissions() -> list[tuple[str, str, str, str]]:
    """The full catalogue as (resource, action, category, description)."""
    catalogue = []
    for category, resources in RESOURCES.items():
        for resource in resources:
            for action in CRUD:
                catalogue.append((resource, action, category, f"{action.capitalize()} {resource}"))
    catalogue.extend(SPECIAL_PERMISSIONS)
    return catalogue


DEFAULT_ROLES = {
    "super_admin": {
        "name": "Super Admin",
        "description": "Every permission in the system",
        "priority": 10,
        "permissions": "ALL"  # Special case - gets all permissions
    },
    "content_editor": {
        "name": "Content Editor",
        "description": "Creates and edits content",
        "priority": 7,
        "permissions": [
            "Product:create", "Product:read", "Product:update",
            "ProductSeries:read", "ProductSeries:update",
            "Blog:create", "Blog:read", "Blog:update",
            "Application:create", "Application:read", "Application:update",
            "FaqItem:create", "FaqItem:read", "FaqItem:update",
            "Media:create", "Media:read", "Media:update", "Media:delete",
            "MediaCategory:read", "MediaTag:read", "Category:read",
            "DocumentTemplate:create", "DocumentTemplate:read", "DocumentTemplate:update", "DocumentTemplate:delete",
            "ReusableBlock:create", "ReusableBlock:read", "ReusableBlock:update", "ReusableBlock:delete",
        ]
    },
    "content_reviewer": {
        "name": "Content Reviewer",
        "description": "Reviews and publishes content",
        "priority": 8,
        "permissions": [
            "Product:read", "Product:update", "Product:publish",
            "ProductSeries:read",
            "Blog:read", "Blog:update", "Blog:publish",
            "Application:read", "Application:update",
            "FaqItem:read", "FaqItem:update",
            "Media:read",
        ]
    },
    "customer_support": {
        "name": "Customer Support",
        "description": "Handles customer enquiries",
        "priority": 5,
        "permissions": [
            "FormSubmission:read", "FormSubmission:update", "FormSubmission:export",
            "Product:read", "ProductSeries:read", "FaqItem:read",
        ]
    },
    "seo_specialist": {
        "name": "SEO Specialist",
        "description": "Optimizes the site for search engines",
        "priority": 6,
        "permissions": [
            "SeoSetting:create", "SeoSetting:read", "SeoSetting:update", "SeoSetting:delete",
            "CustomScript:create", "CustomScript:read", "CustomScript:update", "CustomScript:delete",
            "CustomScript:inject_code",
            "Product:read", "Blog:read", "Application:read",
        ]
    },
    "media_manager": {
        "name": "Media Manager",
        "description": "Manages the media library",
        "priority": 6,
        "permissions": [
            "Media:create", "Media:read", "Media:update", "Media:delete",
            "MediaCategory:create", "MediaCategory:read", "MediaCategory:update", "MediaCategory:delete",
            "MediaTag:create", "MediaTag:read", "MediaTag:update", "MediaTag:delete",
            "Category:create", "Category:read", "Category:update", "Category:delete",
        ]
    },
}


async def seed_permissions(db: AsyncSession) -> dict[str, Permission]:
    """
    Create default permissions.

    Returns:
        Dictionary mapping identifiers to Permission objects
    """
    log.info("Creating default permissions...")
    result = await db.execute(select(Permission))
    permissions_map = {perm.identifier: perm for perm in result.scalars().all()}

    created = 0
    for resource, action, category, description in default_permissions():
        identifier = make_identifier(resource, action)
        if identifier in permissions_map:
            log.debug("Permission '%s' already exists, skipping", identifier)
            continue

        permission = Permission(
            resource=resource,
            action=action,
            name=identifier,
            description=description,
            category=category,
            is_system=True,
        )
        db.add(permission)
        permissions_map[identifier] = permission
        created += 1

    await db.commit()
    log.info("Created %d permissions (%d total)", created, len(permissions_map))
    return permissions_map


async def seed_roles(db: AsyncSession, permissions_map: dict[str, Permission]) -> int:
    """
    Create default roles and assign permissions.

    Args:
        db: Database session
        permissions_map: Dictionary of identifier -> Permission object

    Returns:
        Number of roles created
    """
    log.info("Creating default roles...")
    created = 0

    for code, role_config in DEFAULT_ROLES.items():
        stmt = select(Role).where(Role.code == code).options(selectinload(Role.permissions))
        result = await db.execute(stmt)
        if result.scalars().first():
            log.debug("Role '%s' already exists, skipping", code)
            continue

        role = Role(
            code=code,
            name=role_config["name"],
            description=role_config["description"],
            priority=role_config["priority"],
            is_system=True,
        )

        if role_config["permissions"] == "ALL":
            role.permissions = list(permissions_map.values())
        else:
            granted = []
            for identifier in role_config["permissions"]:
                if identifier in permissions_map:
                    granted.append(permissions_map[identifier])
                else:
                    log.warning("Permission '%s' not found for role '%s'", identifier, code)
            role.permissions = granted

        db.add(role)
        created += 1
        log.info("Created role '%s' with %d permissions", code, len(role.permissions))

    await db.commit()
    return created


async def main():
    """Main function to seed permissions and roles."""
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    async with AsyncSessionLocal() as db:
        try:
            permissions_map = await seed_permissions(db)
            await seed_roles(db, permissions_map)
        except Exception as e:
            log.error(f"Error seeding permissions: {e}", exc_info=True)
            await db.rollback()
            raise

    log.info("Permission seeding completed successfully!")
    for code, role_config in DEFAULT_ROLES.items():
        log.info(f"  - {code}: {role_config['description']}")


if __name__ == "__main__":
    asyncio.run(main())
