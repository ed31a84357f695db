"""
Permission catalog: definition, listing, descriptive edits and retirement.

Permissions are never hard-deleted; retiring one marks it inactive so audit
history keeps pointing at a real row.
"""
import re
from typing import Any, Dict, List, Optional
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_rbac.core.database.engine import retry_on_conflict
from chatbot_rbac.core.exceptions import DuplicateCode, InvalidScope, NotFound, PermissionInUse
from chatbot_rbac.features.organizations.models import Organization
from chatbot_rbac.features.permissions import audit
from chatbot_rbac.features.permissions.context import ActorContext
from chatbot_rbac.features.permissions.models import (
    AuditAction,
    Permission,
    Role,
    RolePermission,
    Scope,
    Status,
    same_organization,
)
from chatbot_rbac.utils import get_logger


log = get_logger(__name__)

SEGMENT = r"[a-z][a-z0-9_]*"
CODE_PATTERN = re.compile(rf"^({SEGMENT})\.({SEGMENT})$")

# Fields that may change at any time
DESCRIPTIVE_FIELDS = ("name", "description", "category", "sort_order", "is_dangerous", "requires_approval")


def permission_snapshot(permission: Permission) -> Dict[str, Any]:
    return {
        "organization_id": permission.organization_id,
        "code": permission.code,
        "name": permission.name,
        "description": permission.description,
        "resource": permission.resource,
        "action": permission.action,
        "scope": permission.scope,
        "category": permission.category,
        "is_dangerous": permission.is_dangerous,
        "requires_approval": permission.requires_approval,
        "sort_order": permission.sort_order,
        "status": permission.status,
    }


def validate_code(code: str, resource: Optional[str] = None, action: Optional[str] = None) -> tuple[str, str]:
    """
    Check the ``resource.action`` naming convention.

    Returns the (resource, action) pair parsed from the code.
    """
    match = CODE_PATTERN.match(code or "")
    if not match:
        raise InvalidScope(f"Permission code {code!r} must look like 'resource.action'", code=code)
    parsed_resource, parsed_action = match.groups()
    if resource is not None and resource != parsed_resource:
        raise InvalidScope(f"Resource {resource!r} does not match code {code!r}", code=code)
    if action is not None and action != parsed_action:
        raise InvalidScope(f"Action {action!r} does not match code {code!r}", code=code)
    return parsed_resource, parsed_action


def validate_scope(scope: str, organization_id: Optional[str]) -> str:
    if isinstance(scope, Scope):
        scope = scope.value
    if scope not in (Scope.GLOBAL.value, Scope.ORGANIZATION.value):
        raise InvalidScope(f"Unknown scope {scope!r}", scope=scope)
    if organization_id is not None and scope == Scope.GLOBAL.value:
        raise InvalidScope("Organization-owned permissions cannot be global", organization_id=organization_id)
    return scope


async def get_permission(db: AsyncSession, permission_id: str) -> Permission:
    permission = await db.get(Permission, permission_id)
    if permission is None:
        raise NotFound("permission", permission_id)
    return permission


async def find_permission(db: AsyncSession, code: str, organization_id: Optional[str] = None) -> Optional[Permission]:
    """Look up a permission by code in exactly one catalog (global when organization_id is None)."""
    result = await db.execute(
        select(Permission).where(
            Permission.code == code,
            same_organization(Permission.organization_id, organization_id),
        )
    )
    return result.scalars().first()


async def list_permissions(
    db: AsyncSession,
    organization_id: Optional[str] = None,
    *,
    include_inactive: bool = False,
    resource: Optional[str] = None,
    category: Optional[str] = None,
) -> List[Permission]:
    """
    Global permissions plus, when an organization is given, that organization's own.

    Ordered by category, then sort order, then name.
    """
    if organization_id:
        owner = or_(Permission.organization_id.is_(None), Permission.organization_id == organization_id)
    else:
        owner = Permission.organization_id.is_(None)

    stmt = select(Permission).where(owner)
    if not include_inactive:
        stmt = stmt.where(Permission.status == Status.ACTIVE.value)
    if resource:
        stmt = stmt.where(Permission.resource == resource)
    if category:
        stmt = stmt.where(Permission.category == category)

    stmt = stmt.order_by(Permission.category, Permission.sort_order, Permission.name)
    result = await db.execute(stmt)
    return list(result.scalars().all())


@retry_on_conflict
async def define_permission(
    db: AsyncSession,
    actor: ActorContext,
    *,
    code: str,
    name: str,
    organization_id: Optional[str] = None,
    resource: Optional[str] = None,
    action: Optional[str] = None,
    scope: str = Scope.ORGANIZATION.value,
    is_dangerous: bool = False,
    category: str = "general",
    description: Optional[str] = None,
    requires_approval: bool = False,
    sort_order: int = 0,
) -> Permission:
    """
    Add a permission to the global catalog or to one organization's catalog.

    Raises:
        InvalidScope: bad code, unknown scope, or an organization-owned global permission
        DuplicateCode: the code already exists in that catalog
        NotFound: the organization does not exist
    """
    resource, action = validate_code(code, resource, action)
    scope = validate_scope(scope, organization_id)

    if organization_id is not None and await db.get(Organization, organization_id) is None:
        raise NotFound("organization", organization_id)

    if await find_permission(db, code, organization_id) is not None:
        raise DuplicateCode(f"Permission {code!r} already exists", code=code, organization_id=organization_id)

    permission = Permission(
        organization_id=organization_id,
        code=code,
        name=name,
        description=description,
        resource=resource,
        action=action,
        scope=scope,
        category=category,
        is_dangerous=is_dangerous,
        requires_approval=requires_approval,
        sort_order=sort_order,
        status=Status.ACTIVE.value,
    )
    db.add(permission)
    await db.flush()

    await audit.record(
        db,
        actor=actor,
        action=AuditAction.CREATED,
        resource_type="permission",
        resource_id=permission.id,
        resource_name=permission.code,
        organization_id=organization_id,
        new_values=permission_snapshot(permission),
    )
    await db.commit()
    await db.refresh(permission)

    log.info(f"Permission {permission.code} defined (org={organization_id})")
    return permission


@retry_on_conflict
async def update_permission(
    db: AsyncSession,
    actor: ActorContext,
    permission_id: str,
    **changes: Any,
) -> Permission:
    """
    Edit descriptive fields of a permission.

    Identity fields (organization, code, resource, action, scope) are fixed once
    defined; attempting to change them raises InvalidScope.
    """
    fixed = sorted(set(changes) - set(DESCRIPTIVE_FIELDS))
    if fixed:
        raise InvalidScope(f"Permission fields cannot be changed: {', '.join(fixed)}", fields=fixed)

    permission = await get_permission(db, permission_id)
    old_values = permission_snapshot(permission)

    for key, value in changes.items():
        setattr(permission, key, value)
    await db.flush()

    await audit.record(
        db,
        actor=actor,
        action=AuditAction.UPDATED,
        resource_type="permission",
        resource_id=permission.id,
        resource_name=permission.code,
        organization_id=permission.organization_id,
        old_values=old_values,
        new_values=permission_snapshot(permission),
    )
    await db.commit()
    await db.refresh(permission)
    return permission


@retry_on_conflict
async def retire_permission(db: AsyncSession, actor: ActorContext, permission_id: str) -> Permission:
    """
    Mark a permission inactive.

    Raises:
        PermissionInUse: an active role still holds an allow grant for it
    """
    permission = await get_permission(db, permission_id)
    if not permission.is_active:
        return permission

    result = await db.execute(
        select(Role.code)
        .join(RolePermission, RolePermission.role_id == Role.id)
        .where(
            RolePermission.permission_id == permission_id,
            RolePermission.is_granted.is_(True),
            Role.status == Status.ACTIVE.value,
        )
    )
    holders = sorted(set(result.scalars().all()))
    if holders:
        raise PermissionInUse(
            f"Permission {permission.code!r} is granted to active roles",
            permission_id=permission_id,
            roles=holders,
        )

    permission.status = Status.INACTIVE.value
    await db.flush()

    await audit.record(
        db,
        actor=actor,
        action=AuditAction.STATUS_CHANGED,
        resource_type="permission",
        resource_id=permission.id,
        resource_name=permission.code,
        organization_id=permission.organization_id,
        old_values={"status": Status.ACTIVE.value},
        new_values={"status": Status.INACTIVE.value},
    )
    await db.commit()
    await db.refresh(permission)

    log.info(f"Permission {permission.code} retired")
    return permission
