"""
Role-permission grants.

A grant row is an allow (``is_granted``) or an explicit deny; no row means the
role has no opinion. Roles with ``inherits_permissions`` carry copies of their
parent's grants as ``is_inherited`` rows, which are kept in sync here and
never replace a grant set directly on the child.
"""
from typing import Any, Dict, List, Optional, Set
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_rbac.core.database.engine import retry_on_conflict
from chatbot_rbac.core.exceptions import InvalidScope, NotFound, ScopeMismatch, SystemRoleImmutable
from chatbot_rbac.features.permissions import audit
from chatbot_rbac.features.permissions.context import ActorContext
from chatbot_rbac.features.permissions.models import (
    AuditAction,
    Permission,
    Role,
    RolePermission,
    Scope,
    Status,
)
from chatbot_rbac.utils import get_logger, utcnow


log = get_logger(__name__)


def grant_snapshot(grant: Optional[RolePermission]) -> Optional[Dict[str, Any]]:
    if grant is None:
        return None
    return {
        "is_granted": grant.is_granted,
        "is_inherited": grant.is_inherited,
        "conditions": grant.conditions,
        "constraints": grant.constraints,
    }


def check_grant_scope(role: Role, permission: Permission) -> None:
    """
    Grants must match scope exactly.

    Global roles hold global permissions only. Organization roles hold
    organization-scope permissions from the shared catalog or their own
    organization's catalog.
    """
    if role.is_global:
        if permission.scope != Scope.GLOBAL.value:
            raise ScopeMismatch(
                f"Global role {role.code!r} cannot hold organization permission {permission.code!r}",
                role_id=role.id,
                permission_id=permission.id,
            )
        return

    if permission.scope != Scope.ORGANIZATION.value:
        raise ScopeMismatch(
            f"Organization role {role.code!r} cannot hold global permission {permission.code!r}",
            role_id=role.id,
            permission_id=permission.id,
        )
    if permission.organization_id is not None and permission.organization_id != role.organization_id:
        raise ScopeMismatch(
            f"Permission {permission.code!r} belongs to another organization",
            role_id=role.id,
            permission_id=permission.id,
        )


async def _get_role(db: AsyncSession, role_id: str) -> Role:
    role = await db.get(Role, role_id)
    if role is None:
        raise NotFound("role", role_id)
    return role


async def _get_permission(db: AsyncSession, permission_id: str) -> Permission:
    permission = await db.get(Permission, permission_id)
    if permission is None:
        raise NotFound("permission", permission_id)
    return permission


async def _get_grant(db: AsyncSession, role_id: str, permission_id: str) -> Optional[RolePermission]:
    result = await db.execute(
        select(RolePermission).where(
            RolePermission.role_id == role_id,
            RolePermission.permission_id == permission_id,
        )
    )
    return result.scalars().first()


async def _role_grants(db: AsyncSession, role_id: str) -> List[RolePermission]:
    result = await db.execute(select(RolePermission).where(RolePermission.role_id == role_id))
    return list(result.scalars().all())


async def _ensure_system_role_keeps_grants(db: AsyncSession, actor: ActorContext, role: Role) -> None:
    if not role.is_system_role or actor.elevated:
        return
    result = await db.execute(
        select(func.count(RolePermission.id)).where(
            RolePermission.role_id == role.id,
            RolePermission.is_granted.is_(True),
        )
    )
    if not result.scalar():
        raise SystemRoleImmutable(
            f"System role {role.code!r} must keep at least one allow grant",
            role_id=role.id,
        )


async def _record_grant_change(
    db: AsyncSession,
    actor: ActorContext,
    action: AuditAction,
    role: Role,
    permission: Permission,
    grant_id: Optional[str],
    old_values: Optional[Dict[str, Any]],
    new_values: Optional[Dict[str, Any]],
    description: Optional[str] = None,
) -> None:
    await audit.record(
        db,
        actor=actor,
        action=action,
        resource_type="role_permission",
        resource_id=grant_id,
        resource_name=f"{role.code}:{permission.code}",
        organization_id=role.organization_id,
        old_values=old_values,
        new_values=new_values,
        description=description,
    )


# ============================================================================
# Inheritance
# ============================================================================

async def sync_inherited_grants(
    db: AsyncSession,
    actor: ActorContext,
    role: Role,
    _seen: Optional[Set[str]] = None,
) -> None:
    """
    Bring a role's inherited rows in line with its parent, then recurse into
    inheriting children.

    Does not commit; runs inside the caller's unit of work.
    """
    seen = _seen if _seen is not None else set()
    if role.id in seen:
        return
    seen.add(role.id)

    desired: Dict[str, RolePermission] = {}
    if role.parent_role_id and role.inherits_permissions:
        for parent_grant in await _role_grants(db, role.parent_role_id):
            desired[parent_grant.permission_id] = parent_grant

    current = {grant.permission_id: grant for grant in await _role_grants(db, role.id)}

    for permission_id, grant in current.items():
        if not grant.is_inherited:
            continue
        source = desired.get(permission_id)
        if source is None:
            old_values = grant_snapshot(grant)
            grant_id = grant.id
            await db.delete(grant)
            await db.flush()
            await _record_grant_change(
                db, actor, AuditAction.PERMISSION_REVOKED, role, grant.permission, grant_id,
                old_values, None, description="Inherited grant removed",
            )
            continue
        if (grant.is_granted, grant.conditions, grant.constraints) != (
            source.is_granted, source.conditions, source.constraints
        ):
            old_values = grant_snapshot(grant)
            grant.is_granted = source.is_granted
            grant.conditions = source.conditions
            grant.constraints = source.constraints
            grant.granted_by = actor.actor_id
            grant.granted_at = utcnow()
            await db.flush()
            await _record_grant_change(
                db, actor, AuditAction.PERMISSIONS_UPDATED, role, grant.permission, grant.id,
                old_values, grant_snapshot(grant), description="Inherited grant updated",
            )

    for permission_id, source in desired.items():
        if permission_id in current:
            # Direct grants on the child win over the parent's
            continue
        grant = RolePermission(
            role_id=role.id,
            permission_id=permission_id,
            permission=source.permission,
            is_granted=source.is_granted,
            is_inherited=True,
            conditions=source.conditions,
            constraints=source.constraints,
            granted_by=actor.actor_id,
            granted_at=utcnow(),
        )
        db.add(grant)
        await db.flush()
        await _record_grant_change(
            db, actor, AuditAction.PERMISSIONS_UPDATED, role, source.permission, grant.id,
            None, grant_snapshot(grant), description="Inherited from parent role",
        )

    await propagate_to_children(db, actor, role, seen)


async def propagate_to_children(
    db: AsyncSession,
    actor: ActorContext,
    role: Role,
    _seen: Optional[Set[str]] = None,
) -> None:
    result = await db.execute(
        select(Role).where(Role.parent_role_id == role.id, Role.inherits_permissions.is_(True))
    )
    for child in result.scalars().all():
        await sync_inherited_grants(db, actor, child, _seen)


# ============================================================================
# Grant Operations
# ============================================================================

async def _upsert_grant(
    db: AsyncSession,
    actor: ActorContext,
    role: Role,
    permission: Permission,
    is_granted: bool,
    conditions: Optional[List[Dict[str, Any]]],
    constraints: Optional[List[Dict[str, Any]]],
    description: Optional[str] = None,
) -> RolePermission:
    """Write one direct grant and its audit entry. Does not commit."""
    if not permission.is_active:
        raise InvalidScope(f"Permission {permission.code!r} is retired", permission_id=permission.id)
    check_grant_scope(role, permission)

    conditions = conditions or None
    constraints = constraints or None

    grant = await _get_grant(db, role.id, permission.id)
    old_values = grant_snapshot(grant)

    if grant is None:
        grant = RolePermission(
            role_id=role.id,
            permission_id=permission.id,
            permission=permission,
            is_granted=is_granted,
            is_inherited=False,
            conditions=conditions,
            constraints=constraints,
            granted_by=actor.actor_id,
            granted_at=utcnow(),
        )
        db.add(grant)
    elif (grant.is_granted, grant.is_inherited, grant.conditions, grant.constraints) != (
        is_granted, False, conditions, constraints
    ):
        grant.is_granted = is_granted
        grant.is_inherited = False
        grant.conditions = conditions
        grant.constraints = constraints
        grant.granted_by = actor.actor_id
        grant.granted_at = utcnow()
    await db.flush()

    await _record_grant_change(
        db, actor, AuditAction.PERMISSIONS_UPDATED, role, permission, grant.id,
        old_values, grant_snapshot(grant), description=description,
    )
    return grant


async def _delete_direct_grant(db: AsyncSession, actor: ActorContext, role: Role, permission_id: str) -> str:
    """Delete one direct grant and audit it. Returns the permission code. Does not commit."""
    grant = await _get_grant(db, role.id, permission_id)
    if grant is None:
        raise NotFound("grant", permission_id)
    if grant.is_inherited:
        raise InvalidScope(
            "Inherited grants follow the parent role; revoke it there or override it with a direct grant",
            role_id=role.id,
            permission_id=permission_id,
        )

    permission = grant.permission
    old_values = grant_snapshot(grant)
    grant_id = grant.id

    await db.delete(grant)
    await db.flush()

    await _record_grant_change(
        db, actor, AuditAction.PERMISSION_REVOKED, role, permission, grant_id, old_values, None,
    )
    return permission.code


async def _resync_after_revoke(db: AsyncSession, actor: ActorContext, role: Role) -> None:
    # A revoked override falls back to the parent's grant
    if role.parent_role_id and role.inherits_permissions:
        await sync_inherited_grants(db, actor, role)
    else:
        await propagate_to_children(db, actor, role)


def _unique(ids: List[str]) -> List[str]:
    return list(dict.fromkeys(ids))


async def copy_direct_grants(db: AsyncSession, actor: ActorContext, source: Role, target: Role) -> int:
    """
    Copy the source role's direct grants onto the target role.

    Inherited rows and grants on retired permissions are not copied; the
    target gets its inherited rows from its own parent.
    Does not commit. Returns the number of grants copied.
    """
    copied = 0
    for grant in await _role_grants(db, source.id):
        if grant.is_inherited or not grant.permission.is_active:
            continue
        await _upsert_grant(
            db, actor, target, grant.permission, grant.is_granted, grant.conditions, grant.constraints,
            description=f"Copied from role {source.code}",
        )
        copied += 1
    return copied


@retry_on_conflict
async def set_grant(
    db: AsyncSession,
    actor: ActorContext,
    role_id: str,
    permission_id: str,
    *,
    is_granted: bool = True,
    conditions: Optional[List[Dict[str, Any]]] = None,
    constraints: Optional[List[Dict[str, Any]]] = None,
) -> RolePermission:
    """
    Allow or explicitly deny a permission on a role (idempotent upsert).

    Always appends one ``permissions_updated`` audit entry; when nothing
    changes its old and new values are equal.

    Raises:
        NotFound: role or permission missing
        InvalidScope: the permission is retired
        ScopeMismatch: role and permission scopes are incompatible
        SystemRoleImmutable: a non-elevated actor would leave a system role without allow grants
    """
    role = await _get_role(db, role_id)
    permission = await _get_permission(db, permission_id)

    grant = await _upsert_grant(db, actor, role, permission, is_granted, conditions, constraints)
    await _ensure_system_role_keeps_grants(db, actor, role)
    await propagate_to_children(db, actor, role)

    await db.commit()
    await db.refresh(grant)

    log.info(
        f"Grant {role.code}:{permission.code} set to {'allow' if is_granted else 'deny'} by {actor.actor_id}"
    )
    return grant


@retry_on_conflict
async def set_grants(
    db: AsyncSession,
    actor: ActorContext,
    role_id: str,
    permission_ids: List[str],
    *,
    is_granted: bool = True,
    conditions: Optional[List[Dict[str, Any]]] = None,
    constraints: Optional[List[Dict[str, Any]]] = None,
) -> List[RolePermission]:
    """
    Apply the same grant to several permissions in one transaction.

    Each permission gets its own audit entry. One failing permission
    (missing, retired, wrong scope) rolls the whole batch back.
    """
    if not permission_ids:
        raise InvalidScope("permission_ids cannot be empty", role_id=role_id)
    role = await _get_role(db, role_id)

    written = []
    for permission_id in _unique(permission_ids):
        permission = await _get_permission(db, permission_id)
        written.append(await _upsert_grant(db, actor, role, permission, is_granted, conditions, constraints))

    await _ensure_system_role_keeps_grants(db, actor, role)
    await propagate_to_children(db, actor, role)

    await db.commit()
    for grant in written:
        await db.refresh(grant)

    log.info(f"{len(written)} grants on role {role.code} set by {actor.actor_id}")
    return written


@retry_on_conflict
async def revoke_grant(db: AsyncSession, actor: ActorContext, role_id: str, permission_id: str) -> None:
    """
    Remove a grant row, returning the role to "no opinion" on the permission.

    Inherited rows follow the parent and cannot be revoked on the child. When
    the revoked row overrode a parent grant, the parent's grant is inherited
    again.
    """
    role = await _get_role(db, role_id)
    code = await _delete_direct_grant(db, actor, role, permission_id)

    await _resync_after_revoke(db, actor, role)
    await _ensure_system_role_keeps_grants(db, actor, role)

    await db.commit()
    log.info(f"Grant {role.code}:{code} revoked by {actor.actor_id}")


@retry_on_conflict
async def revoke_grants(db: AsyncSession, actor: ActorContext, role_id: str, permission_ids: List[str]) -> List[str]:
    """
    Remove several direct grants in one transaction. All or nothing.

    Returns the revoked permission codes.
    """
    if not permission_ids:
        raise InvalidScope("permission_ids cannot be empty", role_id=role_id)
    role = await _get_role(db, role_id)

    codes = [await _delete_direct_grant(db, actor, role, permission_id) for permission_id in _unique(permission_ids)]

    await _resync_after_revoke(db, actor, role)
    await _ensure_system_role_keeps_grants(db, actor, role)

    await db.commit()
    log.info(f"{len(codes)} grants on role {role.code} revoked by {actor.actor_id}")
    return codes


async def list_role_grants(db: AsyncSession, role_id: str) -> List[RolePermission]:
    await _get_role(db, role_id)
    result = await db.execute(
        select(RolePermission)
        .join(Permission, Permission.id == RolePermission.permission_id)
        .where(RolePermission.role_id == role_id)
        .order_by(Permission.code)
    )
    return list(result.scalars().all())


async def list_effective_permissions(db: AsyncSession, role_id: str) -> Set[str]:
    """
    Codes this role allows, after deny-overrides-allow within the role.

    Only active permissions count. Other roles are not consulted.
    """
    await _get_role(db, role_id)
    result = await db.execute(
        select(Permission.code, RolePermission.is_granted)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .where(
            RolePermission.role_id == role_id,
            Permission.status == Status.ACTIVE.value,
        )
    )
    allowed: Set[str] = set()
    denied: Set[str] = set()
    for code, is_granted in result.all():
        (allowed if is_granted else denied).add(code)
    return allowed - denied
