"""
FastAPI dependencies for route protection.

Implements:
- Per-request authorization snapshots (one load per organization per request)
- Actor context with the elevated-privilege flag for administrative services
- ``require_permission`` / ``require_any_permission`` route guards
- Management guards for the administrative API
"""
from typing import Any, Dict, List, Optional
from fastapi import Depends, HTTPException, status, Request
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_rbac.core import config
from chatbot_rbac.core.database.engine import get_db
from chatbot_rbac.features.permissions.context import ActorContext
from chatbot_rbac.features.permissions.resolver import AuthorizationSnapshot, check, load_snapshot
from chatbot_rbac.features.users.dependencies import get_current_user
from chatbot_rbac.features.users.models import User
from chatbot_rbac.utils import get_logger


log = get_logger(__name__)


# ============================================================================
# Snapshots and Context
# ============================================================================

def request_context(request: Request, attributes: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Condition context for checks made on behalf of this request."""
    return {
        "ip_address": request.client.host if request.client else None,
        "attributes": attributes or {},
    }


async def get_snapshot(
    request: Request,
    db: AsyncSession,
    user: User,
    organization_id: Optional[str],
) -> AuthorizationSnapshot:
    """Load the user's snapshot for an organization once per request."""
    cache: Dict[Optional[str], AuthorizationSnapshot] | None = getattr(request.state, "authz_snapshots", None)
    if cache is None:
        cache = {}
        request.state.authz_snapshots = cache
    if organization_id not in cache:
        cache[organization_id] = await load_snapshot(db, user.id, organization_id)
    return cache[organization_id]


def resolve_organization_id(request: Request, user: User, organization_id: Optional[str] = None) -> Optional[str]:
    """Explicit id, else the path or query parameter, else the user's current organization."""
    return (
        organization_id
        or request.path_params.get("organization_id")
        or request.query_params.get("organization_id")
        or user.current_organization_id
    )


async def has_elevated_privilege(
    db: AsyncSession,
    user_id: Optional[str],
    *,
    snapshot: Optional[AuthorizationSnapshot] = None,
    context: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    True when the user holds the global system permission.

    Pass the user's organization-less snapshot to decide without another load.
    """
    if not user_id:
        return False
    if snapshot is not None and snapshot.user_id == user_id and snapshot.organization_id is None:
        return snapshot.decide(config.ELEVATED_PERMISSION_CODE, context).allowed
    decision = await check(db, user_id, config.ELEVATED_PERMISSION_CODE, None, context=context)
    return decision.allowed


async def get_actor_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
) -> ActorContext:
    """Who is acting, from where, and whether they are elevated."""
    snapshot = await get_snapshot(request, db, current_user, None)
    elevated = await has_elevated_privilege(db, current_user.id, snapshot=snapshot, context=request_context(request))
    return ActorContext(
        actor_id=current_user.id,
        organization_id=current_user.current_organization_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        elevated=elevated,
    )


# ============================================================================
# Route Guards
# ============================================================================

def require_permission(permission_code: str, organization_id: Optional[str] = None):
    """
    FastAPI dependency to require a specific permission.

    Usage:
        @router.post("/chats/{chat_id}/reply")
        async def reply(
            db: AsyncSession = Depends(get_db),
            user: User = Depends(require_permission("chats.handle"))
        ):
            # User may handle chats in their current organization
            pass

    The organization comes from ``organization_id``, the request's
    ``organization_id`` path/query parameter, or the user's current one.

    Raises:
        HTTPException: 403 if the resolver denies the permission
    """
    async def permission_dependency(
        request: Request,
        db: AsyncSession = Depends(get_db),
        current_user: User = Depends(get_current_user)
    ) -> User:
        org_id = resolve_organization_id(request, current_user, organization_id)
        snapshot = await get_snapshot(request, db, current_user, org_id)
        decision = snapshot.decide(permission_code, request_context(request))
        if not decision.allowed:
            log.info(f"User {current_user.id} denied {permission_code} in org {org_id}: {decision.reason.value}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {permission_code} ({decision.reason.value})"
            )
        return current_user

    return permission_dependency


def require_any_permission(permission_codes: List[str], organization_id: Optional[str] = None):
    """
    FastAPI dependency to require ANY of the specified permissions.

    Usage:
        @router.get("/analytics")
        async def get_reports(
            user: User = Depends(require_any_permission(["analytics.view", "analytics.export"]))
        ):
            pass
    """
    async def permission_dependency(
        request: Request,
        db: AsyncSession = Depends(get_db),
        current_user: User = Depends(get_current_user)
    ) -> User:
        org_id = resolve_organization_id(request, current_user, organization_id)
        snapshot = await get_snapshot(request, db, current_user, org_id)
        decision = snapshot.decide_any(permission_codes, request_context(request))
        if not decision.allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: requires one of {permission_codes}"
            )
        return current_user

    return permission_dependency


async def ensure_can_manage(
    request: Request,
    db: AsyncSession,
    user: User,
    resource: str,
    organization_id: Optional[str],
    action: str = "manage",
) -> None:
    """
    Guard an administrative operation.

    Objects of an organization need ``<resource>.<action>`` there (or the
    system permission); global objects need the system permission.
    """
    ctx = request_context(request)
    global_snapshot = await get_snapshot(request, db, user, None)
    if await has_elevated_privilege(db, user.id, snapshot=global_snapshot, context=ctx):
        return

    permission_code = f"{resource}.{action}"
    if organization_id is not None:
        snapshot = await get_snapshot(request, db, user, organization_id)
        if snapshot.decide(permission_code, ctx).allowed:
            return
        detail = f"Permission denied: {permission_code}"
    else:
        detail = f"Permission denied: {config.ELEVATED_PERMISSION_CODE}"

    log.info(f"User {user.id} denied {permission_code} (org={organization_id})")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
