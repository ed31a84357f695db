"""
Seed script to populate the default permission catalog and roles.

Run this script after database initialization to create:
- The global permission catalog
- The global super_admin role holding the system permission
- The standard organization roles for every existing organization

Re-running is safe: rows that already exist are left untouched.

Usage:
    python -m scripts.seed_permissions
"""
import asyncio
from typing import Dict, List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_rbac.core import config
from chatbot_rbac.core.database.engine import get_db, init_db
from chatbot_rbac.features.organizations.models import Organization
from chatbot_rbac.features.permissions import catalog, grants, roles
from chatbot_rbac.features.permissions.context import ActorContext
from chatbot_rbac.features.permissions.models import Permission, Role, Scope
from chatbot_rbac.utils import get_logger


log = get_logger(__name__)


# (code, name, category, is_dangerous)
DEFAULT_PERMISSIONS = [
    # User management
    ("users.view", "View users", "users", False),
    ("users.create", "Invite users", "users", False),
    ("users.update", "Edit users", "users", False),
    ("users.delete", "Remove users", "users", True),

    # Bot content
    ("content.view", "View bot content", "content", False),
    ("content.create", "Create bot content", "content", False),
    ("content.edit", "Edit bot content", "content", False),
    ("content.publish", "Publish bot content", "content", False),
    ("content.delete", "Delete bot content", "content", True),

    # Conversations
    ("chats.view", "View conversations", "chats", False),
    ("chats.handle", "Reply to conversations", "chats", False),
    ("chats.transfer", "Transfer conversations", "chats", False),
    ("chats.export", "Export conversations", "chats", False),

    # Analytics
    ("analytics.view", "View analytics", "analytics", False),
    ("analytics.export", "Export analytics", "analytics", False),

    # Settings and billing
    ("settings.view", "View settings", "settings", False),
    ("settings.update", "Change settings", "settings", True),
    ("billing.view", "View billing", "billing", False),
    ("billing.manage", "Manage billing", "billing", True),
    ("api.manage", "Manage API keys and webhooks", "integrations", True),

    # Access control
    ("audit.view", "View audit log", "access", False),
    ("roles.manage", "Manage roles and grants", "access", True),
    ("permissions.manage", "Manage the organization permission catalog", "access", True),
    ("assignments.manage", "Assign and revoke roles", "access", True),
]


# Organization roles created in every organization
ORGANIZATION_ROLES = {
    "org_admin": {
        "name": "Organization Administrator",
        "level": 80,
        "permissions": "ALL",
    },
    "manager": {
        "name": "Manager",
        "level": 60,
        "permissions": [
            "users.view", "users.create", "users.update",
            "content.view", "content.create", "content.edit", "content.publish",
            "chats.view", "chats.handle", "chats.transfer", "chats.export",
            "analytics.view", "analytics.export",
            "settings.view", "audit.view", "assignments.manage",
        ],
    },
    "agent": {
        "name": "Agent",
        "level": 40,
        "permissions": ["chats.view", "chats.handle", "chats.transfer", "content.view"],
    },
    "content_creator": {
        "name": "Content Creator",
        "level": 30,
        "permissions": ["content.view", "content.create", "content.edit", "analytics.view"],
    },
    "analyst": {
        "name": "Analyst",
        "level": 25,
        "permissions": ["analytics.view", "analytics.export", "chats.view"],
    },
    "viewer": {
        "name": "Viewer",
        "level": 5,
        "is_default": True,
        "permissions": ["content.view", "chats.view", "analytics.view"],
    },
}


async def seed_permissions(db: AsyncSession, actor: ActorContext) -> Dict[str, Permission]:
    """
    Create the global permission catalog.

    Returns:
        Dictionary mapping permission codes to Permission objects
    """
    log.info("Creating default permissions...")
    permissions_map: Dict[str, Permission] = {}

    catalog_rows = [
        (code, name, category, is_dangerous, Scope.ORGANIZATION.value)
        for code, name, category, is_dangerous in DEFAULT_PERMISSIONS
    ]
    catalog_rows.append(
        (config.ELEVATED_PERMISSION_CODE, "Manage the platform", "system", True, Scope.GLOBAL.value)
    )

    for sort_order, (code, name, category, is_dangerous, scope) in enumerate(catalog_rows):
        existing = await catalog.find_permission(db, code)
        if existing:
            log.debug(f"Permission '{code}' already exists, skipping")
            permissions_map[code] = existing
            continue

        permissions_map[code] = await catalog.define_permission(
            db,
            actor,
            code=code,
            name=name,
            scope=scope,
            category=category,
            is_dangerous=is_dangerous,
            sort_order=sort_order,
        )
        log.info(f"Created permission: {code}")

    log.info(f"Catalog holds {len(permissions_map)} default permissions")
    return permissions_map


async def _grant_all(
    db: AsyncSession, actor: ActorContext, role: Role, codes: List[str], permissions_map: Dict[str, Permission]
) -> int:
    granted = 0
    for code in codes:
        permission = permissions_map.get(code)
        if permission is None:
            log.warning(f"Permission '{code}' not found for role '{role.code}'")
            continue
        await grants.set_grant(db, actor, role.id, permission.id)
        granted += 1
    return granted


async def seed_global_roles(db: AsyncSession, actor: ActorContext, permissions_map: Dict[str, Permission]) -> Role:
    """Create the super_admin role, the only holder of the system permission."""
    existing = await roles.find_role(db, "super_admin")
    if existing:
        log.debug("Role 'super_admin' already exists, skipping")
        return existing

    role = await roles.create_role(
        db,
        actor,
        code="super_admin",
        name="Super Administrator",
        level=100,
        is_system_role=True,
        description="Full platform access",
    )
    await _grant_all(db, actor, role, [config.ELEVATED_PERMISSION_CODE], permissions_map)
    log.info("Created role 'super_admin'")
    return role


async def seed_organization_roles(
    db: AsyncSession,
    organization_id: str,
    actor: Optional[ActorContext] = None,
    permissions_map: Optional[Dict[str, Permission]] = None,
) -> List[Role]:
    """
    Create the standard roles of one organization.

    Also used when a new organization is provisioned.
    """
    actor = actor or ActorContext.system()
    if permissions_map is None:
        permissions_map = {
            permission.code: permission
            for permission in await catalog.list_permissions(db, organization_id)
        }
    org_permission_codes = [
        code for code, permission in permissions_map.items() if permission.scope == Scope.ORGANIZATION.value
    ]

    created: List[Role] = []
    for code, role_config in ORGANIZATION_ROLES.items():
        if await roles.find_role(db, code, organization_id):
            log.debug(f"Role '{code}' already exists in {organization_id}, skipping")
            continue

        role = await roles.create_role(
            db,
            actor,
            code=code,
            name=role_config["name"],
            organization_id=organization_id,
            level=role_config["level"],
            is_default=role_config.get("is_default", False),
        )
        codes = org_permission_codes if role_config["permissions"] == "ALL" else role_config["permissions"]
        granted = await _grant_all(db, actor, role, codes, permissions_map)
        log.info(f"Created role '{code}' in {organization_id} with {granted} permissions")
        created.append(role)
    return created


async def main():
    """Main function to seed permissions and roles."""
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    actor = ActorContext.system()

    # Get database session
    async for db in get_db():
        try:
            permissions_map = await seed_permissions(db, actor)
            await seed_global_roles(db, actor, permissions_map)

            organization_ids = (await db.execute(select(Organization.id))).scalars().all()
            for organization_id in organization_ids:
                await seed_organization_roles(db, organization_id, actor, permissions_map)

            log.info("Permission seeding completed successfully!")
            log.info(f"Organizations seeded: {len(organization_ids)}")

        except Exception as e:
            log.error(f"Error seeding permissions: {e}", exc_info=True)
            await db.rollback()
            raise

        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main())
