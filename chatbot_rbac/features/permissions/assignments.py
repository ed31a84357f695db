"""
User-role assignments.

An assignment is live while it is active and ``effective_from <= t <
effective_until`` (an empty ``effective_until`` is unbounded). Revocation is
soft. A user has at most one active primary assignment: promotion always
demotes the previous primary with a single UPDATE in the same transaction,
and a partial unique index backs that up at the storage level.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_rbac.core.database.engine import retry_on_conflict
from chatbot_rbac.core.exceptions import (
    InvalidScope,
    NotFound,
    RoleCapacityExceeded,
    RoleScopeViolation,
)
from chatbot_rbac.features.organizations.membership import MembershipDirectory, SqlMembershipDirectory
from chatbot_rbac.features.permissions import audit
from chatbot_rbac.features.permissions.context import ActorContext
from chatbot_rbac.features.permissions.models import (
    AssignmentScope,
    AuditAction,
    Role,
    Status,
    UserRole,
)
from chatbot_rbac.features.permissions.roles import get_default_role, get_role
from chatbot_rbac.features.users.models import User
from chatbot_rbac.utils import get_logger, to_naive_utc, utcnow


log = get_logger(__name__)


def assignment_snapshot(assignment: UserRole) -> Dict[str, Any]:
    return {
        "user_id": assignment.user_id,
        "role_id": assignment.role_id,
        "is_active": assignment.is_active,
        "is_primary": assignment.is_primary,
        "scope": assignment.scope,
        "scope_context": assignment.scope_context,
        "effective_from": assignment.effective_from,
        "effective_until": assignment.effective_until,
        "assigned_reason": assignment.assigned_reason,
    }


def assignment_status(assignment: UserRole, as_of: Optional[datetime] = None) -> str:
    """One of ``active``, ``pending``, ``expired`` or ``inactive``."""
    as_of = to_naive_utc(as_of) or utcnow()
    if not assignment.is_active:
        return "inactive"
    if assignment.effective_from and assignment.effective_from > as_of:
        return "pending"
    if assignment.effective_until and assignment.effective_until <= as_of:
        return "expired"
    return "active"


def _effective_at(as_of: datetime):
    return (
        UserRole.is_active.is_(True),
        UserRole.effective_from <= as_of,
        or_(UserRole.effective_until.is_(None), UserRole.effective_until > as_of),
    )


async def _get_active_assignment(db: AsyncSession, user_id: str, role_id: str) -> UserRole:
    result = await db.execute(
        select(UserRole).where(
            UserRole.user_id == user_id,
            UserRole.role_id == role_id,
            UserRole.is_active.is_(True),
        )
    )
    assignment = result.scalars().first()
    if assignment is None:
        raise NotFound("assignment", role_id)
    return assignment


async def _demote_primary(
    db: AsyncSession, actor: ActorContext, user_id: str, keep_assignment_id: Optional[str] = None
) -> None:
    """Clear the primary flag on the user's other assignments in one UPDATE."""
    stmt = select(UserRole).where(UserRole.user_id == user_id, UserRole.is_primary.is_(True))
    if keep_assignment_id:
        stmt = stmt.where(UserRole.id != keep_assignment_id)
    demoted = list((await db.execute(stmt)).scalars().all())
    if not demoted:
        return

    await db.execute(
        update(UserRole)
        .where(UserRole.id.in_([assignment.id for assignment in demoted]))
        .values(is_primary=False)
        .execution_options(synchronize_session="fetch")
    )
    for assignment in demoted:
        await audit.record(
            db,
            actor=actor,
            action=AuditAction.ASSIGNMENT_UPDATED,
            resource_type="user_role",
            resource_id=assignment.id,
            resource_name=assignment.role.code if assignment.role else None,
            organization_id=assignment.organization_id,
            old_values={"is_primary": True},
            new_values={"is_primary": False},
            description="Replaced as primary role",
        )


async def _check_capacity(db: AsyncSession, role: Role, user_id: str) -> None:
    if role.max_users is None:
        return
    result = await db.execute(
        select(func.count(UserRole.id)).where(
            UserRole.role_id == role.id,
            UserRole.is_active.is_(True),
            UserRole.user_id != user_id,
        )
    )
    if (result.scalar() or 0) >= role.max_users:
        raise RoleCapacityExceeded(
            f"Role {role.code!r} already has {role.max_users} active assignment(s)",
            role_id=role.id,
            max_users=role.max_users,
        )


# ============================================================================
# Mutations
# ============================================================================

@retry_on_conflict
async def assign_role(
    db: AsyncSession,
    actor: ActorContext,
    user_id: str,
    role_id: str,
    *,
    is_primary: bool = False,
    effective_from: Optional[datetime] = None,
    effective_until: Optional[datetime] = None,
    scope: Optional[str] = None,
    scope_context: Optional[Dict[str, Any]] = None,
    reason: Optional[str] = None,
    directory: Optional[MembershipDirectory] = None,
) -> UserRole:
    """
    Assign a role to a user, or reactivate and update an existing assignment.

    Raises:
        NotFound: user or role missing
        RoleScopeViolation: user outside the role's organization, or a
            non-elevated actor assigning a global role
        InvalidScope: empty effective window, bad assignment scope, inactive role
        RoleCapacityExceeded: the role's max_users is reached
    """
    role = await get_role(db, role_id)
    if await db.get(User, user_id) is None:
        raise NotFound("user", user_id)
    if not role.is_active:
        raise InvalidScope(f"Role {role.code!r} is inactive", role_id=role_id)

    if role.is_global:
        if not actor.elevated:
            raise RoleScopeViolation("Only elevated actors can assign global roles", role_id=role_id)
    else:
        directory = directory or SqlMembershipDirectory(db)
        if role.organization_id not in await directory.organizations_for_user(user_id):
            raise RoleScopeViolation(
                "User is not a member of the role's organization",
                user_id=user_id,
                organization_id=role.organization_id,
            )

    scope = scope.value if isinstance(scope, AssignmentScope) else scope
    scope = scope or (AssignmentScope.GLOBAL.value if role.is_global else AssignmentScope.ORGANIZATION.value)
    if scope not in [item.value for item in AssignmentScope]:
        raise InvalidScope(f"Unknown assignment scope {scope!r}", scope=scope)
    if role.is_global != (scope == AssignmentScope.GLOBAL.value):
        raise InvalidScope("Assignment scope does not fit the role's scope", scope=scope, role_id=role_id)

    effective_from = to_naive_utc(effective_from) or utcnow()
    effective_until = to_naive_utc(effective_until)
    if effective_until is not None and effective_until <= effective_from:
        raise InvalidScope("effective_until must be after effective_from")

    await _check_capacity(db, role, user_id)

    result = await db.execute(
        select(UserRole).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
    )
    assignment = result.scalars().first()
    old_values = assignment_snapshot(assignment) if assignment else None

    if is_primary:
        await _demote_primary(db, actor, user_id, keep_assignment_id=assignment.id if assignment else None)

    if assignment is None:
        assignment = UserRole(user_id=user_id, role_id=role_id, role=role)
        db.add(assignment)
    assignment.organization_id = role.organization_id
    assignment.is_active = True
    assignment.is_primary = is_primary
    assignment.scope = scope
    assignment.scope_context = scope_context or None
    assignment.effective_from = effective_from
    assignment.effective_until = effective_until
    assignment.assigned_by = actor.actor_id
    assignment.assigned_reason = reason
    assignment.revoked_at = None
    assignment.revoked_by = None
    await db.flush()

    await audit.record(
        db,
        actor=actor,
        action=AuditAction.ROLE_ASSIGNED,
        resource_type="user_role",
        resource_id=assignment.id,
        resource_name=role.code,
        organization_id=role.organization_id,
        old_values=old_values,
        new_values=assignment_snapshot(assignment),
        description=reason,
    )
    await db.commit()
    await db.refresh(assignment)

    log.info(f"Role {role.code} assigned to user {user_id} (primary={is_primary}) by {actor.actor_id}")
    return assignment


@retry_on_conflict
async def revoke_role(db: AsyncSession, actor: ActorContext, user_id: str, role_id: str) -> UserRole:
    """Soft-revoke an active assignment; the row is kept for history."""
    assignment = await _get_active_assignment(db, user_id, role_id)
    old_values = assignment_snapshot(assignment)

    assignment.is_active = False
    assignment.is_primary = False
    assignment.revoked_at = utcnow()
    assignment.revoked_by = actor.actor_id
    await db.flush()

    await audit.record(
        db,
        actor=actor,
        action=AuditAction.ROLE_REMOVED,
        resource_type="user_role",
        resource_id=assignment.id,
        resource_name=assignment.role.code if assignment.role else None,
        organization_id=assignment.organization_id,
        old_values=old_values,
        new_values=assignment_snapshot(assignment),
    )
    await db.commit()
    await db.refresh(assignment)

    log.info(f"Role {role_id} revoked from user {user_id} by {actor.actor_id}")
    return assignment


@retry_on_conflict
async def set_primary_role(db: AsyncSession, actor: ActorContext, user_id: str, role_id: str) -> UserRole:
    """Make an existing active assignment the user's primary one."""
    assignment = await _get_active_assignment(db, user_id, role_id)
    if assignment.is_primary:
        return assignment

    await _demote_primary(db, actor, user_id, keep_assignment_id=assignment.id)
    assignment.is_primary = True
    await db.flush()

    await audit.record(
        db,
        actor=actor,
        action=AuditAction.ASSIGNMENT_UPDATED,
        resource_type="user_role",
        resource_id=assignment.id,
        resource_name=assignment.role.code if assignment.role else None,
        organization_id=assignment.organization_id,
        old_values={"is_primary": False},
        new_values={"is_primary": True},
    )
    await db.commit()
    await db.refresh(assignment)
    return assignment


@retry_on_conflict
async def extend_assignment(
    db: AsyncSession,
    actor: ActorContext,
    user_id: str,
    role_id: str,
    effective_until: Optional[datetime],
) -> UserRole:
    """Move the end of an assignment's window (None makes it unbounded)."""
    assignment = await _get_active_assignment(db, user_id, role_id)
    effective_until = to_naive_utc(effective_until)
    if effective_until is not None and effective_until <= assignment.effective_from:
        raise InvalidScope("effective_until must be after effective_from")

    old_until = assignment.effective_until
    assignment.effective_until = effective_until
    await db.flush()

    await audit.record(
        db,
        actor=actor,
        action=AuditAction.ASSIGNMENT_UPDATED,
        resource_type="user_role",
        resource_id=assignment.id,
        resource_name=assignment.role.code if assignment.role else None,
        organization_id=assignment.organization_id,
        old_values={"effective_until": old_until},
        new_values={"effective_until": effective_until},
    )
    await db.commit()
    await db.refresh(assignment)
    return assignment


async def ensure_default_assignment(
    db: AsyncSession,
    actor: ActorContext,
    user_id: str,
    organization_id: str,
    directory: Optional[MembershipDirectory] = None,
) -> Optional[UserRole]:
    """
    Give a user the organization's default role if they hold nothing there yet.

    The default assignment becomes primary only when the user has no primary.
    Returns the new assignment, or None when nothing was assigned.
    """
    result = await db.execute(
        select(UserRole.id).where(
            UserRole.user_id == user_id,
            UserRole.organization_id == organization_id,
            UserRole.is_active.is_(True),
        )
    )
    if result.first() is not None:
        return None

    default_role = await get_default_role(db, organization_id)
    if default_role is None or not default_role.is_active:
        log.debug(f"No default role in organization {organization_id}")
        return None

    has_primary = await db.execute(
        select(UserRole.id).where(
            UserRole.user_id == user_id,
            UserRole.is_primary.is_(True),
            UserRole.is_active.is_(True),
        )
    )
    return await assign_role(
        db,
        actor,
        user_id,
        default_role.id,
        is_primary=has_primary.first() is None,
        reason="Default role",
        directory=directory,
    )


# ============================================================================
# Queries
# ============================================================================

async def list_active_roles(
    db: AsyncSession,
    user_id: str,
    as_of: Optional[datetime] = None,
    organization_id: Optional[str] = None,
) -> List[Role]:
    """
    Active roles held by the user at ``as_of``, highest level first.

    With ``organization_id`` only that organization's roles and global roles
    are returned.
    """
    as_of = to_naive_utc(as_of) or utcnow()
    stmt = (
        select(Role)
        .join(UserRole, UserRole.role_id == Role.id)
        .where(UserRole.user_id == user_id, *_effective_at(as_of))
        .where(Role.status == Status.ACTIVE.value)
    )
    if organization_id:
        stmt = stmt.where(or_(Role.organization_id.is_(None), Role.organization_id == organization_id))
    stmt = stmt.order_by(Role.level.desc(), Role.code)
    result = await db.execute(stmt)
    return list(result.scalars().unique().all())


async def list_assignments(
    db: AsyncSession,
    user_id: Optional[str] = None,
    role_id: Optional[str] = None,
    organization_id: Optional[str] = None,
    include_inactive: bool = False,
) -> List[UserRole]:
    stmt = select(UserRole)
    if user_id:
        stmt = stmt.where(UserRole.user_id == user_id)
    if role_id:
        stmt = stmt.where(UserRole.role_id == role_id)
    if organization_id:
        stmt = stmt.where(UserRole.organization_id == organization_id)
    if not include_inactive:
        stmt = stmt.where(UserRole.is_active.is_(True))
    stmt = stmt.order_by(UserRole.created_at, UserRole.id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def list_expiring_assignments(
    db: AsyncSession,
    within_days: int = 7,
    as_of: Optional[datetime] = None,
    organization_id: Optional[str] = None,
) -> List[UserRole]:
    """Live assignments whose window closes within the next ``within_days`` days."""
    as_of = to_naive_utc(as_of) or utcnow()
    horizon = as_of + timedelta(days=within_days)
    stmt = select(UserRole).where(
        *_effective_at(as_of),
        UserRole.effective_until.is_not(None),
        UserRole.effective_until <= horizon,
    )
    if organization_id:
        stmt = stmt.where(UserRole.organization_id == organization_id)
    stmt = stmt.order_by(UserRole.effective_until)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def primary_role_label(db: AsyncSession, user_id: str, as_of: Optional[datetime] = None) -> Optional[str]:
    """Display name of the user's current primary role. Never used for decisions."""
    as_of = to_naive_utc(as_of) or utcnow()
    result = await db.execute(
        select(Role.name)
        .join(UserRole, UserRole.role_id == Role.id)
        .where(UserRole.user_id == user_id, UserRole.is_primary.is_(True), *_effective_at(as_of))
    )
    return result.scalars().first()
