"""
Tests for the audit trail: atomicity with mutations, queries and iteration.
"""

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_rbac.core.exceptions import AuditWriteFailed
from chatbot_rbac.features.permissions import audit, roles
from chatbot_rbac.features.permissions.models import AuditEntry


class TestAtomicity:

    async def test_failed_audit_write_rolls_back_mutation(self, db, system_actor, world, monkeypatch):
        acme_id = world.acme.id
        before = (await db.execute(select(AuditEntry.id))).scalars().all()
        real_flush = AsyncSession.flush

        async def failing_flush(session, objects=None):
            if any(isinstance(obj, AuditEntry) for obj in session.new):
                raise SQLAlchemyError("audit store unavailable")
            return await real_flush(session, objects)

        monkeypatch.setattr(AsyncSession, "flush", failing_flush)
        with pytest.raises(AuditWriteFailed):
            await roles.create_role(db, system_actor, code="lead", name="Lead", organization_id=acme_id)
        monkeypatch.undo()

        assert await roles.find_role(db, "lead", acme_id) is None
        assert (await db.execute(select(AuditEntry.id))).scalars().all() == before

    async def test_entries_are_append_only(self, db, system_actor, world):
        role = await roles.create_role(db, system_actor, code="lead", name="Lead", organization_id=world.acme.id)
        entry = (
            await db.execute(select(AuditEntry).where(AuditEntry.resource_id == role.id))
        ).scalars().one()

        entry.description = "rewritten"
        with pytest.raises(AuditWriteFailed):
            await db.flush()
        await db.rollback()

    async def test_entry_records_actor_context(self, db, admin_actor, world):
        await roles.create_role(db, admin_actor, code="lead", name="Lead", organization_id=world.acme.id)
        entry = (await db.execute(select(AuditEntry).order_by(AuditEntry.id.desc()))).scalars().first()

        assert entry.actor_id == admin_actor.actor_id
        assert entry.ip_address == "10.0.0.1"
        assert entry.user_agent == "pytest"
        assert entry.organization_id == world.acme.id
        assert entry.new_values["code"] == "lead"


class TestQueries:

    async def test_filters_and_paging(self, db, world):
        entries, total = await audit.query_audit_entries(
            db, audit.AuditFilters(resource_type="role"), skip=0, limit=2
        )
        # world creates five roles
        assert total == 5
        assert len(entries) == 2
        assert entries[0].id > entries[1].id

        by_org, org_total = await audit.query_audit_entries(db, audit.AuditFilters(organization_id=world.globex.id))
        assert org_total == len(by_org)
        assert {e.organization_id for e in by_org} == {world.globex.id}

    async def test_iteration_survives_concurrent_appends(self, db, system_actor, world):
        everything = [e.id for e in (await audit.query_audit_entries(db, limit=1000))[0]]

        seen = []
        async for entry in audit.iter_audit_entries(db, page_size=3):
            seen.append(entry.id)
            if len(seen) == 4:
                await roles.create_role(db, system_actor, code="late", name="Late", organization_id=world.acme.id)

        assert seen == everything
