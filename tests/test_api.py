"""
Tests for the HTTP API: authentication, management guards, checks and
error translation.
"""

import pytest

from chatbot_rbac.features.permissions import assignments, grants, roles
from chatbot_rbac.features.permissions.dependencies import has_elevated_privilege
from chatbot_rbac.features.permissions.resolver import load_snapshot


@pytest.fixture
async def staffed(db, system_actor, world):
    """root is super_admin; alice is an acme agent; bob manages acme roles and reads its audit log."""
    await assignments.assign_role(db, system_actor, world.root.id, world.super_admin.id)
    await assignments.assign_role(db, system_actor, world.alice.id, world.agent.id, is_primary=True)

    manager = await roles.create_role(
        db, system_actor, code="manager", name="Manager", organization_id=world.acme.id, level=60
    )
    for code in ("roles.manage", "audit.view"):
        await grants.set_grant(db, system_actor, manager.id, world.permissions[code].id)
    await assignments.assign_role(db, system_actor, world.bob.id, manager.id)
    return world


class TestHealth:

    async def test_health_needs_no_auth(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestAuthentication:

    async def test_missing_token(self, client):
        response = await client.get("/users/me")
        assert response.status_code in (401, 403)

    async def test_invalid_token(self, client):
        response = await client.get("/users/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    async def test_profile(self, client, staffed, headers_for):
        response = await client.get("/users/me", headers=headers_for(staffed.alice))
        assert response.status_code == 200
        body = response.json()
        assert body["email"] == "alice@example.com"
        assert body["organization_ids"] == [staffed.acme.id]
        assert body["primary_role_label"] == "Agent"

    async def test_my_roles(self, client, staffed, headers_for):
        response = await client.get("/users/me/roles", headers=headers_for(staffed.bob))
        assert response.status_code == 200
        assert [role["code"] for role in response.json()] == ["manager"]


class TestPermissionCheck:

    async def test_check_own_permission(self, client, staffed, headers_for):
        response = await client.post(
            "/permissions/check",
            json={"permission_code": "chats.handle"},
            headers=headers_for(staffed.alice),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["allowed"] is True
        assert body["reason"] == "explicit_allow"
        assert body["organization_id"] == staffed.acme.id
        assert body["matched_role_id"] == staffed.agent.id

    async def test_check_batch(self, client, staffed, headers_for):
        response = await client.post(
            "/permissions/check",
            json={"permission_codes": ["chats.view", "content.delete"], "mode": "all"},
            headers=headers_for(staffed.alice),
        )
        assert response.json()["allowed"] is False
        assert response.json()["permission_code"] == "content.delete"

    async def test_check_requires_a_code(self, client, staffed, headers_for):
        response = await client.post("/permissions/check", json={}, headers=headers_for(staffed.alice))
        assert response.status_code == 400

    async def test_checking_others_needs_assignment_management(self, client, staffed, headers_for):
        response = await client.post(
            "/permissions/check",
            json={"user_id": staffed.bob.id, "permission_code": "chats.handle"},
            headers=headers_for(staffed.alice),
        )
        assert response.status_code == 403

        response = await client.post(
            "/permissions/check",
            json={"user_id": staffed.alice.id, "permission_code": "chats.handle", "organization_id": staffed.acme.id},
            headers=headers_for(staffed.root),
        )
        assert response.status_code == 200
        assert response.json()["allowed"] is True

    async def test_user_permissions(self, client, staffed, headers_for):
        response = await client.get(
            f"/permissions/users/{staffed.alice.id}/permissions", headers=headers_for(staffed.alice)
        )
        assert response.status_code == 200
        assert response.json()["permission_codes"] == ["chats.handle", "chats.view"]


class TestManagement:

    async def test_global_catalog_needs_system_permission(self, client, staffed, headers_for):
        payload = {"code": "reports.schedule", "name": "Schedule reports"}

        denied = await client.post("/permissions/permissions", json=payload, headers=headers_for(staffed.bob))
        assert denied.status_code == 403

        created = await client.post("/permissions/permissions", json=payload, headers=headers_for(staffed.root))
        assert created.status_code == 201
        assert created.json()["resource"] == "reports"

    async def test_org_role_management_is_scoped(self, client, staffed, headers_for):
        payload = {"code": "lead", "name": "Lead", "level": 50}

        created = await client.post(
            "/permissions/roles", json={**payload, "organization_id": staffed.acme.id}, headers=headers_for(staffed.bob)
        )
        assert created.status_code == 201
        assert created.json()["organization_id"] == staffed.acme.id

        elsewhere = await client.post(
            "/permissions/roles", json={**payload, "organization_id": staffed.globex.id}, headers=headers_for(staffed.bob)
        )
        assert elsewhere.status_code == 403

        duplicate = await client.post(
            "/permissions/roles", json={**payload, "organization_id": staffed.acme.id}, headers=headers_for(staffed.bob)
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["error_code"] == "DUPLICATE_CODE"

    async def test_grant_and_assign_through_api(self, client, staffed, headers_for):
        root = headers_for(staffed.root)
        transfer_id = staffed.permissions["chats.transfer"].id

        grant = await client.put(
            f"/permissions/roles/{staffed.viewer.id}/permissions/{transfer_id}",
            json={"is_granted": True, "conditions": [{"kind": "ip_range", "cidrs": ["10.0.0.0/8"]}]},
            headers=root,
        )
        assert grant.status_code == 200
        assert grant.json()["permission_code"] == "chats.transfer"

        assigned = await client.post(
            "/permissions/assignments",
            json={"user_id": staffed.bob.id, "role_id": staffed.viewer.id, "reason": "Weekend cover"},
            headers=root,
        )
        assert assigned.status_code == 201
        assert assigned.json()["status"] == "active"

        revoked = await client.delete(f"/permissions/assignments/{staffed.bob.id}/{staffed.viewer.id}", headers=root)
        assert revoked.status_code == 200
        assert revoked.json()["status"] == "inactive"

    async def test_domain_errors_are_translated(self, client, staffed, headers_for):
        response = await client.put(
            f"/permissions/roles/{staffed.agent.id}/permissions/{staffed.permissions['system.manage'].id}",
            json={"is_granted": True},
            headers=headers_for(staffed.root),
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "SCOPE_MISMATCH"

        missing = await client.get("/permissions/roles/01NOSUCHROLE00000000000000", headers=headers_for(staffed.root))
        assert missing.status_code == 404

    async def test_system_role_protected_from_org_managers(self, client, staffed, headers_for):
        response = await client.delete(f"/permissions/roles/{staffed.super_admin.id}", headers=headers_for(staffed.bob))
        assert response.status_code == 403

    async def test_clone_role_through_api(self, client, staffed, headers_for):
        cloned = await client.post(
            f"/permissions/roles/{staffed.agent.id}/clone",
            json={"code": "senior_agent", "name": "Senior Agent"},
            headers=headers_for(staffed.bob),
        )
        assert cloned.status_code == 201
        body = cloned.json()
        assert body["code"] == "senior_agent"
        assert body["organization_id"] == staffed.acme.id
        assert body["level"] == 40

        listed = await client.get(f"/permissions/roles/{body['id']}/permissions", headers=headers_for(staffed.bob))
        assert {grant["permission_code"] for grant in listed.json()} == {"chats.handle", "chats.view"}

        global_clone = await client.post(
            f"/permissions/roles/{staffed.super_admin.id}/clone",
            json={"code": "platform_admin", "name": "Platform Admin"},
            headers=headers_for(staffed.bob),
        )
        assert global_clone.status_code == 403

    async def test_bulk_grant_and_revoke_through_api(self, client, staffed, headers_for):
        root = headers_for(staffed.root)
        url = f"/permissions/roles/{staffed.viewer.id}/permissions"
        extra_ids = [staffed.permissions["chats.transfer"].id, staffed.permissions["content.delete"].id]

        granted = await client.put(url, json={"permission_ids": extra_ids}, headers=root)
        assert granted.status_code == 200
        assert [grant["permission_code"] for grant in granted.json()] == ["chats.transfer", "content.delete"]

        revoked = await client.request("DELETE", url, json={"permission_ids": extra_ids}, headers=root)
        assert revoked.status_code == 204

        listed = await client.get(url, headers=root)
        assert [grant["permission_code"] for grant in listed.json()] == ["chats.view"]

    async def test_bulk_grant_is_rejected_as_a_whole(self, client, staffed, headers_for):
        root = headers_for(staffed.root)
        url = f"/permissions/roles/{staffed.viewer.id}/permissions"
        mixed = [staffed.permissions["chats.transfer"].id, staffed.permissions["system.manage"].id]

        response = await client.put(url, json={"permission_ids": mixed}, headers=root)
        assert response.status_code == 400
        assert response.json()["error_code"] == "SCOPE_MISMATCH"

        listed = await client.get(url, headers=root)
        assert [grant["permission_code"] for grant in listed.json()] == ["chats.view"]

        empty = await client.put(url, json={"permission_ids": []}, headers=root)
        assert empty.status_code == 422


class TestAuditLog:

    async def test_audit_log_is_guarded_and_paged(self, client, staffed, headers_for):
        denied = await client.get(
            "/permissions/audit-logs", params={"organization_id": staffed.acme.id}, headers=headers_for(staffed.alice)
        )
        assert denied.status_code == 403

        response = await client.get(
            "/permissions/audit-logs",
            params={"organization_id": staffed.acme.id, "limit": 5, "resource_type": "user_role"},
            headers=headers_for(staffed.bob),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert body["pages"] == 1
        assert {item["action"] for item in body["items"]} == {"role_assigned"}

        # The whole log needs the system permission
        assert (await client.get("/permissions/audit-logs", headers=headers_for(staffed.bob))).status_code == 403
        assert (await client.get("/permissions/audit-logs", headers=headers_for(staffed.root))).status_code == 200


class TestElevatedPrivilege:

    async def test_system_permission_holders_are_elevated(self, db, staffed):
        assert await has_elevated_privilege(db, staffed.root.id) is True
        assert await has_elevated_privilege(db, staffed.alice.id) is False
        assert await has_elevated_privilege(db, None) is False

    async def test_decides_from_a_global_snapshot(self, db, staffed):
        snapshot = await load_snapshot(db, staffed.root.id)
        assert await has_elevated_privilege(db, staffed.root.id, snapshot=snapshot) is True

        # Organization snapshots fall back to a global check
        scoped = await load_snapshot(db, staffed.root.id, staffed.acme.id)
        assert await has_elevated_privilege(db, staffed.root.id, snapshot=scoped) is True
