"""
Authorization resolver.

Answers "can user U perform permission P in organization O" with a
``Decision``. Resolution is read-only: the user's live roles and their grants
are loaded once into an ``AuthorizationSnapshot`` with plain SELECTs, and
every decision after that is computed in memory, so one snapshot can serve
all checks of a request.

Decision rules:
1. Only assignments live at the evaluation instant, on active roles, whose
   ``scope_context`` is satisfied by the check attributes, take part.
2. Organization-scope permissions are satisfiable only by roles of the
   organization being checked; global-scope permissions only by global roles.
3. Grants whose conditions do not hold are ignored (see ``conditions``).
4. Any applicable deny wins, then any applicable allow, else deny by default.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_rbac.features.permissions.conditions import build_context, grant_applies, scope_context_satisfied
from chatbot_rbac.features.permissions.models import (
    Permission,
    Role,
    RolePermission,
    Scope,
    Status,
    UserRole,
)
from chatbot_rbac.utils import get_logger, to_naive_utc, utcnow


log = get_logger(__name__)


class DecisionReason(str, enum.Enum):
    EXPLICIT_DENY = "explicit_deny"
    EXPLICIT_ALLOW = "explicit_allow"
    NO_GRANT_DEFAULT_DENY = "no_grant_default_deny"
    SCOPE_MISMATCH = "scope_mismatch"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: DecisionReason
    permission_code: str
    matched_role_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value,
            "permission_code": self.permission_code,
            "matched_role_id": self.matched_role_id,
        }


@dataclass(frozen=True)
class HeldRole:
    id: str
    code: str
    level: int
    organization_id: Optional[str]
    scope_context: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class HeldGrant:
    role_id: str
    code: str
    resource: str
    scope: str
    is_granted: bool
    conditions: Optional[List[Dict[str, Any]]] = None


@dataclass
class AuthorizationSnapshot:
    """The user's live roles and grants, ready for in-memory decisions."""
    user_id: str
    organization_id: Optional[str]
    at: datetime
    roles: Dict[str, HeldRole] = field(default_factory=dict)
    grants: List[HeldGrant] = field(default_factory=list)

    def _context(self, context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        context = dict(context or {})
        return build_context(
            at=to_naive_utc(context.get("at")) or self.at,
            ip_address=context.get("ip_address"),
            attributes=context.get("attributes"),
        )

    def _in_scope(self, role: HeldRole, grant: HeldGrant) -> bool:
        if grant.scope == Scope.GLOBAL.value:
            return role.organization_id is None
        return self.organization_id is not None and role.organization_id == self.organization_id

    def _best_role(self, grants: Iterable[HeldGrant]) -> str:
        role_ids = sorted(
            {grant.role_id for grant in grants},
            key=lambda role_id: (-self.roles[role_id].level, self.roles[role_id].code),
        )
        return role_ids[0]

    def decide(self, permission_code: str, context: Optional[Dict[str, Any]] = None) -> Decision:
        """
        Decide one permission code.

        ``resource.*`` asks whether any permission of the resource is allowed.
        Unknown codes are denied by default.
        """
        if permission_code.endswith(".*"):
            resource = permission_code[:-2]
            codes = sorted({grant.code for grant in self.grants if grant.resource == resource})
            decision = self.decide_any(codes, context) if codes else None
            if decision is None:
                return Decision(False, DecisionReason.NO_GRANT_DEFAULT_DENY, permission_code)
            return Decision(decision.allowed, decision.reason, permission_code, decision.matched_role_id)

        ctx = self._context(context)
        candidates = [grant for grant in self.grants if grant.code == permission_code]

        in_scope = [grant for grant in candidates if self._in_scope(self.roles[grant.role_id], grant)]
        if candidates and not in_scope:
            return Decision(False, DecisionReason.SCOPE_MISMATCH, permission_code)

        applicable = [
            grant for grant in in_scope
            if scope_context_satisfied(self.roles[grant.role_id].scope_context, ctx)
            and grant_applies(grant.is_granted, grant.conditions, ctx)
        ]
        denies = [grant for grant in applicable if not grant.is_granted]
        if denies:
            return Decision(False, DecisionReason.EXPLICIT_DENY, permission_code, self._best_role(denies))

        allows = [grant for grant in applicable if grant.is_granted]
        if allows:
            return Decision(True, DecisionReason.EXPLICIT_ALLOW, permission_code, self._best_role(allows))

        return Decision(False, DecisionReason.NO_GRANT_DEFAULT_DENY, permission_code)

    def decide_any(self, permission_codes: Iterable[str], context: Optional[Dict[str, Any]] = None) -> Decision:
        """First allowed decision, or the first denial when none is allowed."""
        decisions = [self.decide(code, context) for code in permission_codes]
        if not decisions:
            raise ValueError("At least one permission code is required")
        for decision in decisions:
            if decision.allowed:
                return decision
        return decisions[0]

    def decide_all(self, permission_codes: Iterable[str], context: Optional[Dict[str, Any]] = None) -> Decision:
        """First denial, or the last allowed decision when all are allowed."""
        decisions = [self.decide(code, context) for code in permission_codes]
        if not decisions:
            raise ValueError("At least one permission code is required")
        for decision in decisions:
            if not decision.allowed:
                return decision
        return decisions[-1]

    def allowed_codes(self, context: Optional[Dict[str, Any]] = None) -> Set[str]:
        """Every permission code this snapshot allows."""
        return {
            code for code in {grant.code for grant in self.grants}
            if self.decide(code, context).allowed
        }


async def load_snapshot(
    db: AsyncSession,
    user_id: str,
    organization_id: Optional[str] = None,
    *,
    at: Optional[datetime] = None,
) -> AuthorizationSnapshot:
    """Load the user's live roles and their grants on active permissions."""
    at = to_naive_utc(at) or utcnow()
    snapshot = AuthorizationSnapshot(user_id=user_id, organization_id=organization_id, at=at)

    # Roles outside this organization are loaded too so a scope mismatch can be reported
    result = await db.execute(
        select(
            Role.id, Role.code, Role.level, Role.organization_id, UserRole.scope_context
        )
        .join(UserRole, UserRole.role_id == Role.id)
        .where(
            UserRole.user_id == user_id,
            UserRole.is_active.is_(True),
            UserRole.effective_from <= at,
            or_(UserRole.effective_until.is_(None), UserRole.effective_until > at),
            Role.status == Status.ACTIVE.value,
        )
    )
    for role_id, code, level, role_org_id, scope_context in result.all():
        snapshot.roles[role_id] = HeldRole(
            id=role_id,
            code=code,
            level=level,
            organization_id=role_org_id,
            scope_context=scope_context,
        )
    if not snapshot.roles:
        return snapshot

    visible_permissions = Permission.organization_id.is_(None)
    if organization_id:
        visible_permissions = or_(visible_permissions, Permission.organization_id == organization_id)

    result = await db.execute(
        select(
            RolePermission.role_id,
            RolePermission.is_granted,
            RolePermission.conditions,
            RolePermission.constraints,
            Permission.code,
            Permission.resource,
            Permission.scope,
        )
        .join(Permission, Permission.id == RolePermission.permission_id)
        .where(
            RolePermission.role_id.in_(list(snapshot.roles)),
            Permission.status == Status.ACTIVE.value,
            visible_permissions,
        )
    )
    for role_id, is_granted, conditions, constraints, code, resource, scope in result.all():
        snapshot.grants.append(
            HeldGrant(
                role_id=role_id,
                code=code,
                resource=resource,
                scope=scope,
                is_granted=is_granted,
                conditions=(conditions or []) + (constraints or []) or None,
            )
        )
    return snapshot


async def check(
    db: AsyncSession,
    user_id: str,
    permission_code: str,
    organization_id: Optional[str] = None,
    *,
    at: Optional[datetime] = None,
    context: Optional[Dict[str, Any]] = None,
) -> Decision:
    """
    Single-shot authorization check.

    ``context`` may carry ``ip_address`` and ``attributes`` for grant
    conditions and assignment scope contexts. Never raises for unknown codes.
    """
    snapshot = await load_snapshot(db, user_id, organization_id, at=at)
    decision = snapshot.decide(permission_code, context)
    log.debug(
        f"Check user={user_id} code={permission_code} org={organization_id}: "
        f"{decision.reason.value} (role={decision.matched_role_id})"
    )
    return decision


async def check_any(
    db: AsyncSession,
    user_id: str,
    permission_codes: List[str],
    organization_id: Optional[str] = None,
    *,
    at: Optional[datetime] = None,
    context: Optional[Dict[str, Any]] = None,
) -> Decision:
    snapshot = await load_snapshot(db, user_id, organization_id, at=at)
    return snapshot.decide_any(permission_codes, context)


async def check_all(
    db: AsyncSession,
    user_id: str,
    permission_codes: List[str],
    organization_id: Optional[str] = None,
    *,
    at: Optional[datetime] = None,
    context: Optional[Dict[str, Any]] = None,
) -> Decision:
    snapshot = await load_snapshot(db, user_id, organization_id, at=at)
    return snapshot.decide_all(permission_codes, context)
