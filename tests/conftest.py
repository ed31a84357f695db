"""
Pytest configuration and fixtures for testing.

This module provides:
- An isolated SQLite database per test
- Factories for organizations, users and actors
- A small permission catalog shared by the service tests
- An async HTTP client wired to the test database
"""

import os
import tempfile

# Set test environment before importing app modules
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{tempfile.gettempdir()}/chatbot-rbac-unused.db"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["MUTATION_RETRY_BACKOFF_SECONDS"] = "0.01"

import pytest
from types import SimpleNamespace
from typing import Dict, Iterable, Optional

from httpx import AsyncClient, ASGITransport

from chatbot_rbac.core.database.engine import build_engine, build_session_factory, create_all, get_db
from chatbot_rbac.features.organizations.membership import add_member
from chatbot_rbac.features.organizations.models import Organization
from chatbot_rbac.features.permissions import catalog, grants, roles
from chatbot_rbac.features.permissions.context import ActorContext
from chatbot_rbac.features.users.auth import create_access_token
from chatbot_rbac.features.users.models import User


# =============================================================================
# DATABASE FIXTURES
# =============================================================================


@pytest.fixture
async def engine(tmp_path):
    """Fresh SQLite file per test, schema created from the models."""
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'rbac.db'}")
    await create_all(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# =============================================================================
# ACTOR AND ENTITY FIXTURES
# =============================================================================


@pytest.fixture
def system_actor() -> ActorContext:
    return ActorContext.system()


@pytest.fixture
def admin_actor() -> ActorContext:
    """A non-elevated organization administrator."""
    return ActorContext(actor_id="01ORGADMIN0000000000000000", ip_address="10.0.0.1", user_agent="pytest")


@pytest.fixture
def make_org(db):
    async def _make(slug: str) -> Organization:
        organization = Organization(name=slug.title(), slug=slug)
        db.add(organization)
        await db.commit()
        return organization
    return _make


@pytest.fixture
def make_user(db):
    async def _make(email: str, organizations: Iterable[Organization] = (), current: Optional[Organization] = None) -> User:
        user = User(email=email, name=email.split("@")[0].title(), current_organization_id=current.id if current else None)
        db.add(user)
        await db.flush()
        for organization in organizations:
            await add_member(db, organization.id, user.id)
        await db.commit()
        return user
    return _make


@pytest.fixture
async def world(session_factory, system_actor):
    """
    Two organizations, a small global catalog and the usual roles.

    Built in its own session so the objects stay readable (detached) after a
    test's session rolls back.

    - acme: agent (40, allows chats.handle/chats.view), restricted (10, denies
      chats.handle), viewer (5, default, allows chats.view)
    - globex: agent (40, allows chats.handle)
    - global: super_admin (system role, allows system.manage)
    """
    async with session_factory() as db:
        acme = Organization(name="Acme", slug="acme")
        globex = Organization(name="Globex", slug="globex")
        db.add_all([acme, globex])
        await db.commit()

        permissions: Dict[str, object] = {}
        for code in ("chats.handle", "chats.view", "chats.transfer", "content.delete", "roles.manage", "audit.view"):
            permissions[code] = await catalog.define_permission(db, system_actor, code=code, name=code.replace(".", " "))
        permissions["system.manage"] = await catalog.define_permission(
            db, system_actor, code="system.manage", name="Manage the platform", scope="global", is_dangerous=True
        )

        agent = await roles.create_role(db, system_actor, code="agent", name="Agent", organization_id=acme.id, level=40)
        restricted = await roles.create_role(
            db, system_actor, code="restricted", name="Restricted", organization_id=acme.id, level=10
        )
        viewer = await roles.create_role(
            db, system_actor, code="viewer", name="Viewer", organization_id=acme.id, level=5, is_default=True
        )
        globex_agent = await roles.create_role(
            db, system_actor, code="agent", name="Agent", organization_id=globex.id, level=40
        )
        super_admin = await roles.create_role(
            db, system_actor, code="super_admin", name="Super Administrator", level=100, is_system_role=True
        )

        await grants.set_grant(db, system_actor, agent.id, permissions["chats.handle"].id)
        await grants.set_grant(db, system_actor, agent.id, permissions["chats.view"].id)
        await grants.set_grant(db, system_actor, restricted.id, permissions["chats.handle"].id, is_granted=False)
        await grants.set_grant(db, system_actor, viewer.id, permissions["chats.view"].id)
        await grants.set_grant(db, system_actor, globex_agent.id, permissions["chats.handle"].id)
        await grants.set_grant(db, system_actor, super_admin.id, permissions["system.manage"].id)

        users = {}
        for email, organizations, current in (
            ("alice@example.com", [acme], acme),
            ("bob@example.com", [acme, globex], acme),
            ("root@example.com", [], None),
        ):
            user = User(email=email, name=email.split("@")[0].title(), current_organization_id=current.id if current else None)
            db.add(user)
            await db.flush()
            for organization in organizations:
                await add_member(db, organization.id, user.id)
            users[email.split("@")[0]] = user
        await db.commit()

    return SimpleNamespace(
        acme=acme,
        globex=globex,
        permissions=permissions,
        agent=agent,
        restricted=restricted,
        viewer=viewer,
        globex_agent=globex_agent,
        super_admin=super_admin,
        **users,
    )


# =============================================================================
# API FIXTURES
# =============================================================================


@pytest.fixture
async def client(session_factory):
    """Async test client for the FastAPI app, bound to the test database."""
    from chatbot_rbac.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def auth_headers(user: User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.fixture
def headers_for():
    return auth_headers
