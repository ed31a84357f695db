"""
Permission management API routes.

Provides endpoints for the permission catalog, roles, grants, user-role
assignments, authorization checks and the audit log. Every mutation is
audited inside its own transaction by the service layer.
"""
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_rbac.core import config
from chatbot_rbac.core.database.engine import get_db
from chatbot_rbac.core.rate_limit import limiter
from chatbot_rbac.features.users.dependencies import get_current_user
from chatbot_rbac.features.users.models import User
from chatbot_rbac.features.permissions import assignments, audit, catalog, grants, roles
from chatbot_rbac.features.permissions.context import ActorContext
from chatbot_rbac.features.permissions.dependencies import (
    ensure_can_manage,
    get_actor_context,
    get_snapshot,
    request_context,
)
from chatbot_rbac.features.permissions.resolver import load_snapshot
from chatbot_rbac.features.permissions.schemas import (
    PermissionCreate,
    PermissionUpdate,
    PermissionResponse,
    RoleCreate,
    RoleUpdate,
    RoleParentUpdate,
    RoleClone,
    RoleResponse,
    RoleHierarchyNode,
    GrantSet,
    GrantBulkSet,
    GrantBulkRevoke,
    GrantResponse,
    EffectivePermissionsResponse,
    AssignRoleToUser,
    AssignmentExtend,
    AssignmentResponse,
    PermissionCheckRequest,
    PermissionCheckResponse,
    UserPermissionsResponse,
    AuditLogResponse,
    AuditLogListResponse,
)
from chatbot_rbac.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


def _assignment_response(assignment) -> AssignmentResponse:
    response = AssignmentResponse.model_validate(assignment)
    response.status = assignments.assignment_status(assignment)
    return response


# ============================================================================
# Permission Catalog Routes
# ============================================================================

@router.post("/permissions", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    permission: PermissionCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    actor: ActorContext = Depends(get_actor_context)
):
    """Define a permission in the global catalog or an organization's catalog."""
    await ensure_can_manage(request, db, current_user, "permissions", permission.organization_id)
    return await catalog.define_permission(db, actor, **permission.model_dump())


@router.get("/permissions", response_model=List[PermissionResponse])
async def list_permissions(
    organization_id: Optional[str] = None,
    include_inactive: bool = False,
    resource: Optional[str] = None,
    category: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List global permissions plus the organization's own."""
    return await catalog.list_permissions(
        db, organization_id, include_inactive=include_inactive, resource=resource, category=category
    )


@router.get("/permissions/{permission_id}", response_model=PermissionResponse)
async def get_permission(
    permission_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get a specific permission by ID."""
    return await catalog.get_permission(db, permission_id)


@router.put("/permissions/{permission_id}", response_model=PermissionResponse)
async def update_permission(
    permission_id: str,
    permission_update: PermissionUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    actor: ActorContext = Depends(get_actor_context)
):
    """Update descriptive fields of a permission."""
    permission = await catalog.get_permission(db, permission_id)
    await ensure_can_manage(request, db, current_user, "permissions", permission.organization_id)
    return await catalog.update_permission(db, actor, permission_id, **permission_update.model_dump(exclude_unset=True))


@router.delete("/permissions/{permission_id}", response_model=PermissionResponse)
async def retire_permission(
    permission_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    actor: ActorContext = Depends(get_actor_context)
):
    """Retire a permission (marked inactive, never hard-deleted)."""
    permission = await catalog.get_permission(db, permission_id)
    await ensure_can_manage(request, db, current_user, "permissions", permission.organization_id)
    return await catalog.retire_permission(db, actor, permission_id)


# ============================================================================
# Role Routes
# ============================================================================

@router.post("/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    actor: ActorContext = Depends(get_actor_context)
):
    """Create a new role."""
    await ensure_can_manage(request, db, current_user, "roles", role.organization_id)
    return await roles.create_role(db, actor, **role.model_dump())


@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(
    organization_id: Optional[str] = None,
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List roles of an organization plus the system-wide roles."""
    org_id = organization_id or current_user.current_organization_id
    return await roles.list_roles(db, org_id, include_inactive=include_inactive)


@router.get("/roles/{role_id}", response_model=RoleResponse)
async def get_role(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get a specific role."""
    return await roles.get_role(db, role_id)


@router.put("/roles/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: str,
    role_update: RoleUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    actor: ActorContext = Depends(get_actor_context)
):
    """Update a role."""
    role = await roles.get_role(db, role_id)
    await ensure_can_manage(request, db, current_user, "roles", role.organization_id)
    update_data = role_update.model_dump(exclude_unset=True)
    if "status" in update_data and update_data["status"] is not None:
        update_data["status"] = update_data["status"].value
    return await roles.update_role(db, actor, role_id, **update_data)


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    request: Request,
    cascade: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    actor: ActorContext = Depends(get_actor_context)
):
    """Delete a role; with ``cascade`` its active assignments are revoked first."""
    role = await roles.get_role(db, role_id)
    await ensure_can_manage(request, db, current_user, "roles", role.organization_id)
    await roles.delete_role(db, actor, role_id, cascade=cascade)
    return None


@router.put("/roles/{role_id}/parent", response_model=RoleResponse)
async def set_parent_role(
    role_id: str,
    parent: RoleParentUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    actor: ActorContext = Depends(get_actor_context)
):
    """Attach a role to a parent role (or detach it)."""
    role = await roles.get_role(db, role_id)
    await ensure_can_manage(request, db, current_user, "roles", role.organization_id)
    return await roles.set_parent_role(db, actor, role_id, parent.parent_role_id)


@router.post("/roles/{role_id}/clone", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def clone_role(
    role_id: str,
    clone: RoleClone,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    actor: ActorContext = Depends(get_actor_context)
):
    """Copy a role and its direct grants under a new code."""
    role = await roles.get_role(db, role_id)
    await ensure_can_manage(request, db, current_user, "roles", role.organization_id)
    return await roles.clone_role(db, actor, role_id, **clone.model_dump())


@router.get("/roles/{role_id}/hierarchy", response_model=List[RoleHierarchyNode])
async def get_role_hierarchy(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Ancestry of a role, root first."""
    return await roles.role_hierarchy_path(db, role_id)


# ============================================================================
# Grant Routes
# ============================================================================

@router.get("/roles/{role_id}/permissions", response_model=List[GrantResponse])
async def list_role_grants(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List allow and deny grants of a role."""
    return [GrantResponse.from_grant(grant) for grant in await grants.list_role_grants(db, role_id)]


@router.get("/roles/{role_id}/effective-permissions", response_model=EffectivePermissionsResponse)
async def list_effective_permissions(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Codes the role allows after deny-overrides-allow."""
    codes = await grants.list_effective_permissions(db, role_id)
    return EffectivePermissionsResponse(role_id=role_id, permission_codes=sorted(codes))


@router.put("/roles/{role_id}/permissions/{permission_id}", response_model=GrantResponse)
async def set_grant(
    role_id: str,
    permission_id: str,
    grant: GrantSet,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    actor: ActorContext = Depends(get_actor_context)
):
    """Allow or explicitly deny a permission on a role."""
    role = await roles.get_role(db, role_id)
    await ensure_can_manage(request, db, current_user, "roles", role.organization_id)
    data = grant.model_dump()
    db_grant = await grants.set_grant(
        db,
        actor,
        role_id,
        permission_id,
        is_granted=data["is_granted"],
        conditions=data["conditions"],
        constraints=data["constraints"],
    )
    return GrantResponse.from_grant(db_grant)


@router.delete("/roles/{role_id}/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_grant(
    role_id: str,
    permission_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    actor: ActorContext = Depends(get_actor_context)
):
    """Remove a grant (the role goes back to having no opinion)."""
    role = await roles.get_role(db, role_id)
    await ensure_can_manage(request, db, current_user, "roles", role.organization_id)
    await grants.revoke_grant(db, actor, role_id, permission_id)
    return None


@router.put("/roles/{role_id}/permissions", response_model=List[GrantResponse])
async def set_grants(
    role_id: str,
    bulk: GrantBulkSet,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    actor: ActorContext = Depends(get_actor_context)
):
    """Apply one grant to several permissions in a single transaction."""
    role = await roles.get_role(db, role_id)
    await ensure_can_manage(request, db, current_user, "roles", role.organization_id)
    data = bulk.model_dump()
    written = await grants.set_grants(
        db,
        actor,
        role_id,
        data["permission_ids"],
        is_granted=data["is_granted"],
        conditions=data["conditions"],
        constraints=data["constraints"],
    )
    return [GrantResponse.from_grant(grant) for grant in written]


@router.delete("/roles/{role_id}/permissions", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_grants(
    role_id: str,
    bulk: GrantBulkRevoke,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    actor: ActorContext = Depends(get_actor_context)
):
    """Remove several direct grants at once; nothing is removed if one fails."""
    role = await roles.get_role(db, role_id)
    await ensure_can_manage(request, db, current_user, "roles", role.organization_id)
    await grants.revoke_grants(db, actor, role_id, bulk.permission_ids)
    return None


# ============================================================================
# Assignment Routes
# ============================================================================

@router.post("/assignments", response_model=AssignmentResponse, status_code=status.HTTP_201_CREATED)
async def assign_role_to_user(
    assignment: AssignRoleToUser,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    actor: ActorContext = Depends(get_actor_context)
):
    """Assign a role to a user."""
    role = await roles.get_role(db, assignment.role_id)
    await ensure_can_manage(request, db, current_user, "assignments", role.organization_id)
    db_assignment = await assignments.assign_role(
        db,
        actor,
        assignment.user_id,
        assignment.role_id,
        is_primary=assignment.is_primary,
        effective_from=assignment.effective_from,
        effective_until=assignment.effective_until,
        scope=assignment.scope.value if assignment.scope else None,
        scope_context=assignment.scope_context,
        reason=assignment.reason,
    )
    return _assignment_response(db_assignment)


@router.get("/assignments", response_model=List[AssignmentResponse])
async def list_assignments(
    request: Request,
    user_id: Optional[str] = None,
    role_id: Optional[str] = None,
    organization_id: Optional[str] = None,
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List assignments; users may always list their own."""
    if user_id != current_user.id or organization_id is not None:
        await ensure_can_manage(request, db, current_user, "assignments", organization_id)
    rows = await assignments.list_assignments(
        db, user_id=user_id, role_id=role_id, organization_id=organization_id, include_inactive=include_inactive
    )
    return [_assignment_response(row) for row in rows]


@router.get("/assignments/expiring", response_model=List[AssignmentResponse])
async def list_expiring_assignments(
    request: Request,
    organization_id: Optional[str] = None,
    within_days: int = 7,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Live assignments ending within the next ``within_days`` days."""
    await ensure_can_manage(request, db, current_user, "assignments", organization_id)
    rows = await assignments.list_expiring_assignments(db, within_days=within_days, organization_id=organization_id)
    return [_assignment_response(row) for row in rows]


@router.delete("/assignments/{user_id}/{role_id}", response_model=AssignmentResponse)
async def revoke_role_from_user(
    user_id: str,
    role_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    actor: ActorContext = Depends(get_actor_context)
):
    """Revoke a role from a user (soft revoke, kept for history)."""
    role = await roles.get_role(db, role_id)
    await ensure_can_manage(request, db, current_user, "assignments", role.organization_id)
    return _assignment_response(await assignments.revoke_role(db, actor, user_id, role_id))


@router.put("/assignments/{user_id}/{role_id}/primary", response_model=AssignmentResponse)
async def set_primary_role(
    user_id: str,
    role_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    actor: ActorContext = Depends(get_actor_context)
):
    """Make an existing assignment the user's primary role."""
    role = await roles.get_role(db, role_id)
    await ensure_can_manage(request, db, current_user, "assignments", role.organization_id)
    return _assignment_response(await assignments.set_primary_role(db, actor, user_id, role_id))


@router.patch("/assignments/{user_id}/{role_id}", response_model=AssignmentResponse)
async def extend_assignment(
    user_id: str,
    role_id: str,
    extension: AssignmentExtend,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    actor: ActorContext = Depends(get_actor_context)
):
    """Change when an assignment ends."""
    role = await roles.get_role(db, role_id)
    await ensure_can_manage(request, db, current_user, "assignments", role.organization_id)
    return _assignment_response(
        await assignments.extend_assignment(db, actor, user_id, role_id, extension.effective_until)
    )


# ============================================================================
# Permission Check Routes
# ============================================================================

@router.post("/check", response_model=PermissionCheckResponse)
@limiter.limit(config.CHECK_RATE_LIMIT)
async def check_permission(
    check_request: PermissionCheckRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Check permissions for the caller, or for another user when the caller
    manages assignments in that organization.
    """
    org_id = check_request.organization_id or current_user.current_organization_id
    user_id = check_request.user_id or current_user.id
    if user_id != current_user.id:
        await ensure_can_manage(request, db, current_user, "assignments", org_id)

    if user_id == current_user.id and check_request.at is None:
        snapshot = await get_snapshot(request, db, current_user, org_id)
    else:
        snapshot = await load_snapshot(db, user_id, org_id, at=check_request.at)

    context = request_context(request, check_request.attributes)
    if check_request.permission_codes:
        codes = list(check_request.permission_codes)
        if check_request.permission_code:
            codes.insert(0, check_request.permission_code)
        if check_request.mode == "all":
            decision = snapshot.decide_all(codes, context)
        else:
            decision = snapshot.decide_any(codes, context)
    else:
        decision = snapshot.decide(check_request.permission_code, context)

    return PermissionCheckResponse(user_id=user_id, organization_id=org_id, **decision.to_dict())


@router.get("/users/{user_id}/permissions", response_model=UserPermissionsResponse)
async def get_user_permissions(
    user_id: str,
    request: Request,
    organization_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get the roles and allowed permission codes of a user in an organization."""
    org_id = organization_id or current_user.current_organization_id
    if user_id != current_user.id:
        await ensure_can_manage(request, db, current_user, "assignments", org_id)

    snapshot = await load_snapshot(db, user_id, org_id)
    active_roles = await assignments.list_active_roles(db, user_id, organization_id=org_id)

    return UserPermissionsResponse(
        user_id=user_id,
        organization_id=org_id,
        roles=[RoleResponse.model_validate(role) for role in active_roles],
        permission_codes=sorted(snapshot.allowed_codes(request_context(request))),
    )


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    request: Request,
    skip: int = 0,
    limit: int = config.AUDIT_PAGE_SIZE,
    organization_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List audit entries, newest first."""
    await ensure_can_manage(request, db, current_user, "audit", organization_id, action="view")
    if limit <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="limit must be positive")

    filters = audit.AuditFilters(
        organization_id=organization_id,
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        since=since,
        until=until,
    )

    entries, total = await audit.query_audit_entries(db, filters, skip=skip, limit=limit)

    pages = (total + limit - 1) // limit
    page = (skip // limit) + 1

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in entries],
        total=total,
        page=page,
        page_size=limit,
        pages=pages
    )
