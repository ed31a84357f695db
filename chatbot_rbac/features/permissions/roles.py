"""
Role graph: creation, updates, deletion, default roles and parent links.
"""
from typing import Any, Dict, List, Optional
from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_rbac.core.database.engine import retry_on_conflict
from chatbot_rbac.core.exceptions import (
    DuplicateCode,
    InvalidScope,
    NotFound,
    RoleInUse,
    RoleScopeViolation,
    ScopeMismatch,
    SystemRoleImmutable,
)
from chatbot_rbac.features.organizations.models import Organization
from chatbot_rbac.features.permissions import audit
from chatbot_rbac.features.permissions.context import ActorContext
from chatbot_rbac.features.permissions.grants import copy_direct_grants, sync_inherited_grants
from chatbot_rbac.features.permissions.models import (
    AuditAction,
    Permission,
    Role,
    RolePermission,
    Scope,
    Status,
    UserRole,
    same_organization,
)
from chatbot_rbac.utils import get_logger, utcnow


log = get_logger(__name__)

EDITABLE_FIELDS = (
    "code", "name", "description", "level", "is_default", "is_system_role",
    "status", "max_users", "inherits_permissions",
)
# Fields of a system role only an elevated actor may touch
PROTECTED_FIELDS = ("code", "is_system_role", "organization_id", "scope")


def role_snapshot(role: Role) -> Dict[str, Any]:
    return {
        "organization_id": role.organization_id,
        "code": role.code,
        "name": role.name,
        "description": role.description,
        "scope": role.scope,
        "level": role.level,
        "is_system_role": role.is_system_role,
        "is_default": role.is_default,
        "status": role.status,
        "parent_role_id": role.parent_role_id,
        "inherits_permissions": role.inherits_permissions,
        "max_users": role.max_users,
    }


async def get_role(db: AsyncSession, role_id: str) -> Role:
    role = await db.get(Role, role_id)
    if role is None:
        raise NotFound("role", role_id)
    return role


async def find_role(db: AsyncSession, code: str, organization_id: Optional[str] = None) -> Optional[Role]:
    result = await db.execute(
        select(Role).where(Role.code == code, same_organization(Role.organization_id, organization_id))
    )
    return result.scalars().first()


async def list_roles(
    db: AsyncSession,
    organization_id: Optional[str] = None,
    *,
    include_global: bool = True,
    include_inactive: bool = False,
) -> List[Role]:
    """Roles of an organization (and optionally the global roles), highest level first."""
    if organization_id and include_global:
        owner = or_(Role.organization_id.is_(None), Role.organization_id == organization_id)
    else:
        owner = same_organization(Role.organization_id, organization_id)

    stmt = select(Role).where(owner)
    if not include_inactive:
        stmt = stmt.where(Role.status == Status.ACTIVE.value)
    stmt = stmt.order_by(Role.level.desc(), Role.code)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_default_role(db: AsyncSession, organization_id: Optional[str]) -> Optional[Role]:
    result = await db.execute(
        select(Role).where(
            same_organization(Role.organization_id, organization_id),
            Role.is_default.is_(True),
        )
    )
    return result.scalars().first()


async def role_hierarchy_path(db: AsyncSession, role_id: str) -> List[Dict[str, Any]]:
    """Ancestry of a role, root first, ending with the role itself."""
    path: List[Dict[str, Any]] = []
    seen: set[str] = set()
    current: Optional[Role] = await get_role(db, role_id)
    while current is not None and current.id not in seen:
        seen.add(current.id)
        path.append({"id": current.id, "code": current.code, "name": current.name, "level": current.level})
        current = await db.get(Role, current.parent_role_id) if current.parent_role_id else None
    path.reverse()
    return path


async def _demote_default(
    db: AsyncSession, actor: ActorContext, organization_id: Optional[str], keep_role_id: Optional[str] = None
) -> Optional[str]:
    """Clear the default flag on the scope's current default role. Returns its id."""
    previous = await get_default_role(db, organization_id)
    if previous is None or previous.id == keep_role_id:
        return None

    previous.is_default = False
    await db.flush()
    await audit.record(
        db,
        actor=actor,
        action=AuditAction.UPDATED,
        resource_type="role",
        resource_id=previous.id,
        resource_name=previous.code,
        organization_id=organization_id,
        old_values={"is_default": True},
        new_values={"is_default": False},
        description="Replaced as default role",
    )
    log.info(f"Role {previous.code} demoted from default (org={organization_id})")
    return previous.id


async def _validate_parent(db: AsyncSession, role_id: Optional[str], organization_id: Optional[str], parent_role_id: str) -> Role:
    parent = await db.get(Role, parent_role_id)
    if parent is None:
        raise NotFound("role", parent_role_id)
    if parent.organization_id != organization_id:
        raise ScopeMismatch("Parent role must belong to the same scope", parent_role_id=parent_role_id)

    # Walk up from the parent; meeting the role itself means a cycle
    seen: set[str] = set()
    current: Optional[Role] = parent
    while current is not None and current.id not in seen:
        if role_id is not None and current.id == role_id:
            raise InvalidScope("Role hierarchy cannot contain cycles", role_id=role_id, parent_role_id=parent_role_id)
        seen.add(current.id)
        current = await db.get(Role, current.parent_role_id) if current.parent_role_id else None
    return parent


async def _insert_role(
    db: AsyncSession,
    actor: ActorContext,
    *,
    code: str,
    name: str,
    organization_id: Optional[str],
    level: int,
    is_system_role: bool,
    is_default: bool,
    description: Optional[str],
    parent_role_id: Optional[str],
    inherits_permissions: bool,
    max_users: Optional[int],
    audit_extra: Optional[Dict[str, Any]] = None,
) -> Role:
    """Validate, insert and audit a role, then materialize inherited grants. Does not commit."""
    if is_system_role and not actor.elevated:
        raise SystemRoleImmutable("Only elevated actors can create system roles", code=code)
    if organization_id is None and not actor.elevated:
        raise RoleScopeViolation("Only elevated actors can create global roles", code=code)
    if max_users is not None and max_users < 0:
        raise InvalidScope("max_users cannot be negative", max_users=max_users)

    if organization_id is not None and await db.get(Organization, organization_id) is None:
        raise NotFound("organization", organization_id)
    if await find_role(db, code, organization_id) is not None:
        raise DuplicateCode(f"Role {code!r} already exists", code=code, organization_id=organization_id)
    if parent_role_id:
        await _validate_parent(db, None, organization_id, parent_role_id)

    demoted_role_id = None
    if is_default:
        demoted_role_id = await _demote_default(db, actor, organization_id)

    role = Role(
        organization_id=organization_id,
        code=code,
        name=name,
        description=description,
        scope=Scope.GLOBAL.value if organization_id is None else Scope.ORGANIZATION.value,
        level=level,
        is_system_role=is_system_role,
        is_default=is_default,
        status=Status.ACTIVE.value,
        parent_role_id=parent_role_id,
        inherits_permissions=inherits_permissions,
        max_users=max_users,
    )
    db.add(role)
    await db.flush()

    new_values = role_snapshot(role)
    if demoted_role_id:
        new_values["demoted_default_role_id"] = demoted_role_id
    new_values.update(audit_extra or {})
    await audit.record(
        db,
        actor=actor,
        action=AuditAction.CREATED,
        resource_type="role",
        resource_id=role.id,
        resource_name=role.code,
        organization_id=organization_id,
        new_values=new_values,
    )

    if parent_role_id and inherits_permissions:
        await sync_inherited_grants(db, actor, role)
    return role


@retry_on_conflict
async def create_role(
    db: AsyncSession,
    actor: ActorContext,
    *,
    code: str,
    name: str,
    organization_id: Optional[str] = None,
    level: int = 0,
    is_system_role: bool = False,
    is_default: bool = False,
    description: Optional[str] = None,
    parent_role_id: Optional[str] = None,
    inherits_permissions: bool = False,
    max_users: Optional[int] = None,
) -> Role:
    """
    Create a global role (organization_id None) or an organization role.

    When ``is_default`` is set the scope's previous default role is demoted in
    the same transaction.

    Raises:
        SystemRoleImmutable: a non-elevated actor creates a system role
        RoleScopeViolation: a non-elevated actor creates a global role
        DuplicateCode: the code exists in that scope
        ScopeMismatch: the parent role belongs to another scope
    """
    role = await _insert_role(
        db,
        actor,
        code=code,
        name=name,
        organization_id=organization_id,
        level=level,
        is_system_role=is_system_role,
        is_default=is_default,
        description=description,
        parent_role_id=parent_role_id,
        inherits_permissions=inherits_permissions,
        max_users=max_users,
    )

    await db.commit()
    await db.refresh(role)

    log.info(f"Role {role.code} created (org={organization_id}, level={level})")
    return role


@retry_on_conflict
async def clone_role(
    db: AsyncSession,
    actor: ActorContext,
    role_id: str,
    *,
    code: str,
    name: str,
    description: Optional[str] = None,
) -> Role:
    """
    Copy a role and its direct grants under a new code in the same scope.

    The copy keeps level, parent, inheritance and capacity. It is never a
    system or default role. Role and grants are written in one transaction.
    """
    source = await get_role(db, role_id)
    role = await _insert_role(
        db,
        actor,
        code=code,
        name=name,
        organization_id=source.organization_id,
        level=source.level,
        is_system_role=False,
        is_default=False,
        description=description if description is not None else source.description,
        parent_role_id=source.parent_role_id,
        inherits_permissions=source.inherits_permissions,
        max_users=source.max_users,
        audit_extra={"cloned_from_role_id": source.id},
    )
    copied = await copy_direct_grants(db, actor, source, role)

    await db.commit()
    await db.refresh(role)

    log.info(f"Role {source.code} cloned as {role.code} with {copied} grants by {actor.actor_id}")
    return role


@retry_on_conflict
async def update_role(db: AsyncSession, actor: ActorContext, role_id: str, **changes: Any) -> Role:
    """
    Change role attributes.

    ``organization_id``/``scope`` are fixed for every role; on system roles a
    non-elevated actor also cannot change ``code`` or ``is_system_role``.
    Status changes are audited as ``status_changed``, anything else as ``updated``.
    """
    role = await get_role(db, role_id)
    if isinstance(changes.get("status"), Status):
        changes["status"] = changes["status"].value

    touched_protected = [
        key for key in PROTECTED_FIELDS if key in changes and changes[key] != getattr(role, key)
    ]
    if touched_protected and (role.is_system_role or changes.get("is_system_role")) and not actor.elevated:
        raise SystemRoleImmutable(
            f"System role fields cannot be changed: {', '.join(touched_protected)}",
            role_id=role_id,
        )
    if any(key in touched_protected for key in ("organization_id", "scope")):
        raise InvalidScope("A role's scope cannot change", role_id=role_id)

    unknown = sorted(set(changes) - set(EDITABLE_FIELDS) - {"organization_id", "scope"})
    if unknown:
        raise InvalidScope(f"Role fields cannot be changed: {', '.join(unknown)}", fields=unknown)

    if "status" in changes and changes["status"] not in (Status.ACTIVE.value, Status.INACTIVE.value):
        raise InvalidScope(f"Unknown status {changes['status']!r}")
    if changes.get("max_users") is not None and changes["max_users"] < 0:
        raise InvalidScope("max_users cannot be negative", max_users=changes["max_users"])
    if "code" in changes and changes["code"] != role.code:
        if await find_role(db, changes["code"], role.organization_id) is not None:
            raise DuplicateCode(f"Role {changes['code']!r} already exists", code=changes["code"])

    old_values = role_snapshot(role)
    if changes.get("is_default") and not role.is_default:
        await _demote_default(db, actor, role.organization_id, keep_role_id=role.id)

    for key in EDITABLE_FIELDS:
        if key in changes:
            setattr(role, key, changes[key])
    await db.flush()

    status_changed = old_values["status"] != role.status
    await audit.record(
        db,
        actor=actor,
        action=AuditAction.STATUS_CHANGED if status_changed else AuditAction.UPDATED,
        resource_type="role",
        resource_id=role.id,
        resource_name=role.code,
        organization_id=role.organization_id,
        old_values=old_values,
        new_values=role_snapshot(role),
    )

    if old_values["inherits_permissions"] != role.inherits_permissions:
        await sync_inherited_grants(db, actor, role)

    await db.commit()
    await db.refresh(role)
    return role


@retry_on_conflict
async def set_parent_role(
    db: AsyncSession, actor: ActorContext, role_id: str, parent_role_id: Optional[str]
) -> Role:
    """Attach a role to a parent in the same scope (or detach with None) and re-sync inherited grants."""
    role = await get_role(db, role_id)
    if parent_role_id:
        await _validate_parent(db, role.id, role.organization_id, parent_role_id)

    old_parent = role.parent_role_id
    role.parent_role_id = parent_role_id
    await db.flush()

    await audit.record(
        db,
        actor=actor,
        action=AuditAction.UPDATED,
        resource_type="role",
        resource_id=role.id,
        resource_name=role.code,
        organization_id=role.organization_id,
        old_values={"parent_role_id": old_parent},
        new_values={"parent_role_id": parent_role_id},
    )
    await sync_inherited_grants(db, actor, role)

    await db.commit()
    await db.refresh(role)
    return role


@retry_on_conflict
async def delete_role(db: AsyncSession, actor: ActorContext, role_id: str, *, cascade: bool = False) -> None:
    """
    Delete a role.

    With ``cascade`` every active assignment is revoked first, each audited as
    ``role_removed`` in assignment order, followed by the ``deleted`` entry.
    Revoked assignments are kept as history. Grants go with the role; child
    roles are detached.

    Raises:
        SystemRoleImmutable: system role and non-elevated actor
        RoleInUse: active assignments exist and cascade is False
    """
    role = await get_role(db, role_id)
    if role.is_system_role and not actor.elevated:
        raise SystemRoleImmutable(f"System role {role.code!r} cannot be deleted", role_id=role_id)

    result = await db.execute(
        select(UserRole)
        .where(UserRole.role_id == role_id, UserRole.is_active.is_(True))
        .order_by(UserRole.created_at, UserRole.id)
    )
    assignments = list(result.scalars().all())
    if assignments and not cascade:
        raise RoleInUse(
            f"Role {role.code!r} has {len(assignments)} active assignment(s)",
            role_id=role_id,
            active_assignments=len(assignments),
        )

    now = utcnow()
    for assignment in assignments:
        old_values = {"is_active": True, "is_primary": assignment.is_primary}
        assignment.is_active = False
        assignment.is_primary = False
        assignment.revoked_at = now
        assignment.revoked_by = actor.actor_id
        await db.flush()
        await audit.record(
            db,
            actor=actor,
            action=AuditAction.ROLE_REMOVED,
            resource_type="user_role",
            resource_id=assignment.id,
            resource_name=role.code,
            organization_id=assignment.organization_id,
            old_values={**old_values, "user_id": assignment.user_id, "role_id": role_id},
            new_values={"is_active": False, "is_primary": False},
            description="Revoked by role deletion",
        )

    children = (await db.execute(select(Role).where(Role.parent_role_id == role_id))).scalars().all()
    for child in children:
        child.parent_role_id = None
        await db.flush()
        await audit.record(
            db,
            actor=actor,
            action=AuditAction.UPDATED,
            resource_type="role",
            resource_id=child.id,
            resource_name=child.code,
            organization_id=child.organization_id,
            old_values={"parent_role_id": role_id},
            new_values={"parent_role_id": None},
            description="Parent role deleted",
        )
        await sync_inherited_grants(db, actor, child)

    grant_codes = (
        await db.execute(
            select(Permission.code)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .where(RolePermission.role_id == role_id)
            .order_by(Permission.code)
        )
    ).scalars().all()

    old_values = role_snapshot(role)
    old_values["grants"] = list(grant_codes)

    # Detach assignment history from the role before it goes
    await db.execute(
        update(UserRole)
        .where(UserRole.role_id == role_id)
        .values(role_id=None)
        .execution_options(synchronize_session="fetch")
    )
    await db.delete(role)
    await db.flush()

    await audit.record(
        db,
        actor=actor,
        action=AuditAction.DELETED,
        resource_type="role",
        resource_id=role_id,
        resource_name=old_values["code"],
        organization_id=old_values["organization_id"],
        old_values=old_values,
        description=f"Role deleted ({len(assignments)} assignment(s) revoked)" if cascade else None,
    )
    await db.commit()

    log.info(f"Role {old_values['code']} deleted by {actor.actor_id} (cascade={cascade})")
