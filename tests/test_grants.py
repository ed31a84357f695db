"""
Tests for role-permission grants and inheritance.
"""

import pytest
from sqlalchemy import select

from chatbot_rbac.core.exceptions import NotFound, InvalidScope, ScopeMismatch, SystemRoleImmutable
from chatbot_rbac.features.permissions import catalog, grants, roles
from chatbot_rbac.features.permissions.models import AuditEntry


async def grant_entries(db):
    result = await db.execute(
        select(AuditEntry).where(AuditEntry.resource_type == "role_permission").order_by(AuditEntry.id)
    )
    return list(result.scalars().all())


class TestSetGrant:

    async def test_set_grant_is_idempotent(self, db, system_actor, world):
        role_id = world.agent.id
        permission_id = world.permissions["chats.transfer"].id
        before = len(await grant_entries(db))

        first = await grants.set_grant(db, system_actor, role_id, permission_id)
        second = await grants.set_grant(db, system_actor, role_id, permission_id)

        assert first.id == second.id
        rows = [g for g in await grants.list_role_grants(db, role_id) if g.permission_id == permission_id]
        assert len(rows) == 1

        entries = (await grant_entries(db))[before:]
        assert [e.action for e in entries] == ["permissions_updated", "permissions_updated"]
        assert entries[0].old_values is None
        assert entries[1].old_values == entries[1].new_values

    async def test_deny_replaces_allow(self, db, system_actor, world):
        grant = await grants.set_grant(
            db, system_actor, world.agent.id, world.permissions["chats.handle"].id, is_granted=False
        )
        assert grant.is_granted is False
        assert await grants.list_effective_permissions(db, world.agent.id) == {"chats.view"}

    async def test_conditions_are_stored(self, db, system_actor, world):
        conditions = [{"kind": "time_window", "start": "09:00", "end": "17:00"}]
        grant = await grants.set_grant(
            db, system_actor, world.agent.id, world.permissions["chats.transfer"].id, conditions=conditions
        )
        assert grant.conditions == conditions

    async def test_org_role_cannot_hold_global_permission(self, db, system_actor, world):
        with pytest.raises(ScopeMismatch):
            await grants.set_grant(db, system_actor, world.agent.id, world.permissions["system.manage"].id)

    async def test_global_role_cannot_hold_org_permission(self, db, system_actor, world):
        with pytest.raises(ScopeMismatch):
            await grants.set_grant(db, system_actor, world.super_admin.id, world.permissions["chats.view"].id)

    async def test_other_organizations_permission(self, db, system_actor, world):
        private = await catalog.define_permission(
            db, system_actor, code="crm.sync", name="Sync CRM", organization_id=world.globex.id
        )
        private_id = private.id
        with pytest.raises(ScopeMismatch):
            await grants.set_grant(db, system_actor, world.agent.id, private_id)
        await grants.set_grant(db, system_actor, world.globex_agent.id, private_id)


class TestRevokeGrant:

    async def test_revoke_returns_to_no_opinion(self, db, system_actor, world):
        await grants.revoke_grant(db, system_actor, world.agent.id, world.permissions["chats.view"].id)
        assert await grants.list_effective_permissions(db, world.agent.id) == {"chats.handle"}
        assert (await grant_entries(db))[-1].action == "permission_revoked"

    async def test_revoke_missing_grant(self, db, system_actor, world):
        with pytest.raises(NotFound):
            await grants.revoke_grant(db, system_actor, world.agent.id, world.permissions["content.delete"].id)

    async def test_system_role_keeps_one_allow(self, db, system_actor, admin_actor, world):
        owner = await roles.create_role(
            db, system_actor, code="owner", name="Owner", organization_id=world.acme.id, is_system_role=True
        )
        owner_id = owner.id
        view_id = world.permissions["chats.view"].id
        await grants.set_grant(db, system_actor, owner_id, view_id)

        with pytest.raises(SystemRoleImmutable):
            await grants.revoke_grant(db, admin_actor, owner_id, view_id)
        with pytest.raises(SystemRoleImmutable):
            await grants.set_grant(db, admin_actor, owner_id, view_id, is_granted=False)

        assert await grants.list_effective_permissions(db, owner_id) == {"chats.view"}

        # An elevated actor may empty it
        await grants.revoke_grant(db, system_actor, owner_id, view_id)
        assert await grants.list_role_grants(db, owner_id) == []


class TestInheritance:

    async def _lead(self, db, system_actor, world):
        return await roles.create_role(
            db, system_actor, code="lead", name="Lead", organization_id=world.acme.id, level=50,
            parent_role_id=world.agent.id, inherits_permissions=True,
        )

    async def test_child_copies_parent_grants(self, db, system_actor, world):
        lead = await self._lead(db, system_actor, world)
        rows = await grants.list_role_grants(db, lead.id)
        assert [(g.permission.code, g.is_inherited) for g in rows] == [
            ("chats.handle", True),
            ("chats.view", True),
        ]

    async def test_parent_changes_propagate(self, db, system_actor, world):
        lead = await self._lead(db, system_actor, world)
        await grants.set_grant(db, system_actor, world.agent.id, world.permissions["chats.transfer"].id)
        await grants.revoke_grant(db, system_actor, world.agent.id, world.permissions["chats.view"].id)

        assert await grants.list_effective_permissions(db, lead.id) == {"chats.handle", "chats.transfer"}

    async def test_direct_grant_on_child_wins(self, db, system_actor, world):
        lead = await self._lead(db, system_actor, world)
        handle_id = world.permissions["chats.handle"].id

        override = await grants.set_grant(db, system_actor, lead.id, handle_id, is_granted=False)
        assert override.is_inherited is False

        # Re-granting on the parent does not touch the child's own deny
        await grants.set_grant(db, system_actor, world.agent.id, handle_id, conditions=[{"kind": "day_of_week", "days": ["monday"]}])
        assert await grants.list_effective_permissions(db, lead.id) == {"chats.view"}

    async def test_inherited_rows_cannot_be_revoked_on_child(self, db, system_actor, world):
        lead = await self._lead(db, system_actor, world)
        with pytest.raises(InvalidScope):
            await grants.revoke_grant(db, system_actor, lead.id, world.permissions["chats.view"].id)

    async def test_turning_off_inheritance_removes_copies(self, db, system_actor, world):
        lead = await self._lead(db, system_actor, world)
        await roles.update_role(db, system_actor, lead.id, inherits_permissions=False)
        assert await grants.list_role_grants(db, lead.id) == []

    async def test_revoking_child_override_restores_parent_grant(self, db, system_actor, world):
        lead = await self._lead(db, system_actor, world)
        handle_id = world.permissions["chats.handle"].id

        await grants.set_grant(db, system_actor, lead.id, handle_id, is_granted=False)
        assert "chats.handle" not in await grants.list_effective_permissions(db, lead.id)

        await grants.revoke_grant(db, system_actor, lead.id, handle_id)

        rows = {g.permission.code: g for g in await grants.list_role_grants(db, lead.id)}
        assert rows["chats.handle"].is_inherited
        assert await grants.list_effective_permissions(db, lead.id) == {"chats.handle", "chats.view"}

    async def test_revoking_child_override_restores_parent_deny(self, db, system_actor, world):
        transfer_id = world.permissions["chats.transfer"].id
        await grants.set_grant(db, system_actor, world.agent.id, transfer_id, is_granted=False)
        lead = await self._lead(db, system_actor, world)

        await grants.set_grant(db, system_actor, lead.id, transfer_id)
        await grants.revoke_grant(db, system_actor, lead.id, transfer_id)

        restored = [g for g in await grants.list_role_grants(db, lead.id) if g.permission_id == transfer_id]
        assert [(g.is_granted, g.is_inherited) for g in restored] == [(False, True)]


class TestBulkGrants:

    async def test_set_grants_applies_one_grant_to_many(self, db, system_actor, world):
        ids = [world.permissions[code].id for code in ("chats.transfer", "content.delete", "chats.transfer")]
        before = len(await grant_entries(db))

        written = await grants.set_grants(db, system_actor, world.viewer.id, ids)

        assert [g.permission.code for g in written] == ["chats.transfer", "content.delete"]
        assert await grants.list_effective_permissions(db, world.viewer.id) == {
            "chats.transfer", "chats.view", "content.delete",
        }
        assert len(await grant_entries(db)) == before + 2

    async def test_set_grants_is_all_or_nothing(self, db, system_actor, world):
        viewer_id = world.viewer.id
        ids = [world.permissions["chats.transfer"].id, world.permissions["system.manage"].id]
        with pytest.raises(ScopeMismatch):
            await grants.set_grants(db, system_actor, viewer_id, ids)
        assert await grants.list_effective_permissions(db, viewer_id) == {"chats.view"}

    async def test_revoke_grants(self, db, system_actor, world):
        ids = [world.permissions["chats.handle"].id, world.permissions["chats.view"].id]
        codes = await grants.revoke_grants(db, system_actor, world.agent.id, ids)
        assert sorted(codes) == ["chats.handle", "chats.view"]
        assert await grants.list_role_grants(db, world.agent.id) == []

    async def test_revoke_grants_is_all_or_nothing(self, db, system_actor, world):
        agent_id = world.agent.id
        ids = [world.permissions["chats.handle"].id, world.permissions["content.delete"].id]
        with pytest.raises(NotFound):
            await grants.revoke_grants(db, system_actor, agent_id, ids)
        assert await grants.list_effective_permissions(db, agent_id) == {"chats.handle", "chats.view"}

    async def test_empty_batch_is_rejected(self, db, system_actor, world):
        with pytest.raises(InvalidScope):
            await grants.set_grants(db, system_actor, world.viewer.id, [])
