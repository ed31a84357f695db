"""
Tests for the default catalog and role seeding.
"""

from sqlalchemy import select, func

from chatbot_rbac.features.organizations.models import Organization
from chatbot_rbac.features.permissions import assignments, grants, roles
from chatbot_rbac.features.permissions.models import AuditEntry, Permission, Role
from chatbot_rbac.features.permissions.resolver import check
from scripts.seed_permissions import (
    DEFAULT_PERMISSIONS,
    ORGANIZATION_ROLES,
    seed_global_roles,
    seed_organization_roles,
    seed_permissions,
)


async def count(db, model):
    return (await db.execute(select(func.count()).select_from(model))).scalar()


class TestSeeding:

    async def test_seed_is_idempotent(self, db, system_actor):
        acme = Organization(name="Acme", slug="acme")
        db.add(acme)
        await db.commit()

        for _ in range(2):
            permissions_map = await seed_permissions(db, system_actor)
            await seed_global_roles(db, system_actor, permissions_map)
            await seed_organization_roles(db, acme.id, system_actor, permissions_map)

        assert await count(db, Permission) == len(DEFAULT_PERMISSIONS) + 1
        assert await count(db, Role) == len(ORGANIZATION_ROLES) + 1

        entries_after_first_run = await count(db, AuditEntry)
        await seed_permissions(db, system_actor)
        assert await count(db, AuditEntry) == entries_after_first_run

    async def test_seeded_roles_behave(self, db, system_actor, make_user):
        acme = Organization(name="Acme", slug="acme")
        db.add(acme)
        await db.commit()
        permissions_map = await seed_permissions(db, system_actor)
        super_admin = await seed_global_roles(db, system_actor, permissions_map)
        await seed_organization_roles(db, acme.id, system_actor)

        assert super_admin.is_system_role
        assert await grants.list_effective_permissions(db, super_admin.id) == {"system.manage"}

        default = await roles.get_default_role(db, acme.id)
        assert default.code == "viewer"

        org_admin = await roles.find_role(db, "org_admin", acme.id)
        assert "system.manage" not in await grants.list_effective_permissions(db, org_admin.id)

        erin = await make_user("erin@example.com", [acme])
        agent = await roles.find_role(db, "agent", acme.id)
        await assignments.assign_role(db, system_actor, erin.id, agent.id, is_primary=True)

        assert (await check(db, erin.id, "chats.handle", acme.id)).allowed
        assert not (await check(db, erin.id, "billing.manage", acme.id)).allowed
