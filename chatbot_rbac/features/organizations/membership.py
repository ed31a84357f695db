"""
Organization membership lookup.

The authorization core only needs to know which organizations a user belongs
to (the scope check in role assignment). ``MembershipDirectory`` is that
interface; ``SqlMembershipDirectory`` is the default implementation backed by
the ``user_organizations`` table.
"""
from typing import Protocol
from sqlalchemy import select, insert
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_rbac.core.exceptions import NotFound
from chatbot_rbac.features.organizations.models import Organization, user_organizations
from chatbot_rbac.features.users.models import User
from chatbot_rbac.utils import get_logger


log = get_logger(__name__)


class MembershipDirectory(Protocol):
    async def organizations_for_user(self, user_id: str) -> set[str]:
        ...


class SqlMembershipDirectory:
    """Membership lookup against the local ``user_organizations`` table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def organizations_for_user(self, user_id: str) -> set[str]:
        result = await self.db.execute(
            select(user_organizations.c.organization_id).where(user_organizations.c.user_id == user_id)
        )
        return set(result.scalars().all())


class StaticMembershipDirectory:
    """In-memory directory, for callers that already hold membership data."""

    def __init__(self, memberships: dict[str, set[str]]):
        self.memberships = memberships

    async def organizations_for_user(self, user_id: str) -> set[str]:
        return set(self.memberships.get(user_id, set()))


async def add_member(db: AsyncSession, organization_id: str, user_id: str) -> bool:
    """
    Add a user to an organization. Returns False if already a member.

    Does not commit; callers own the transaction.
    """
    if await db.get(Organization, organization_id) is None:
        raise NotFound("organization", organization_id)
    if await db.get(User, user_id) is None:
        raise NotFound("user", user_id)

    existing = await db.execute(
        select(user_organizations).where(
            user_organizations.c.organization_id == organization_id,
            user_organizations.c.user_id == user_id,
        )
    )
    if existing.first():
        return False

    await db.execute(insert(user_organizations).values(organization_id=organization_id, user_id=user_id))
    log.info(f"User {user_id} joined organization {organization_id}")
    return True
