"""
Permission, Role, grant, assignment and audit models for organization-scoped RBAC.

This module implements the five relations of the authorization core:
- permissions: atomic capabilities (resource + action), global or tenant-owned
- roles: leveled roles, global (system) or bound to one organization
- role_permissions: allow/deny grants with conditions and provenance
- user_roles: time-bounded user assignments with a single primary role
- audit_entries: append-only log of every mutation
"""
import enum
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy import (
    String, ForeignKey, JSON, Text, DateTime, Boolean, Integer, Index, UniqueConstraint, event, text
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chatbot_rbac.core.database.base import Base, TimestampMixin, generate_ulid
from chatbot_rbac.core.exceptions import AuditWriteFailed
from chatbot_rbac.utils import utcnow


class Scope(str, enum.Enum):
    GLOBAL = "global"
    ORGANIZATION = "organization"


class AssignmentScope(str, enum.Enum):
    """Qualifier stored on an assignment; narrower than the role's own scope."""
    GLOBAL = "global"
    ORGANIZATION = "organization"
    DEPARTMENT = "department"
    TEAM = "team"
    PERSONAL = "personal"


class Status(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class AuditAction(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    STATUS_CHANGED = "status_changed"
    PERMISSIONS_UPDATED = "permissions_updated"
    PERMISSION_REVOKED = "permission_revoked"
    ROLE_ASSIGNED = "role_assigned"
    ROLE_REMOVED = "role_removed"
    ASSIGNMENT_UPDATED = "assignment_updated"


# ============================================================================
# Core Models
# ============================================================================

class Permission(Base, TimestampMixin):
    """
    Permission model defining one action on one resource.

    ``organization_id`` is null for catalog-wide permissions. ``scope`` says
    where the capability is exercised: ``global`` permissions are platform
    capabilities held by global roles, ``organization`` permissions are
    exercised inside a tenant.
    Examples:
    - code="chats.handle", resource="chats", action="handle", scope="organization"
    - code="system.manage", resource="system", action="manage", scope="global"
    """
    __tablename__ = "permissions"
    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_permissions_org_code"),
        # NULLs are distinct in unique constraints; global codes need their own index
        Index(
            "uq_permissions_global_code", "code", unique=True,
            sqlite_where=text("organization_id IS NULL"),
            postgresql_where=text("organization_id IS NULL"),
        ),
    )

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    organization_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("organizations.id", ondelete="RESTRICT"),
        nullable=True,
        index=True
    )

    # Permission definition
    code: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    resource: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    scope: Mapped[str] = mapped_column(String(20), nullable=False, default=Scope.ORGANIZATION.value)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general", index=True)

    is_dangerous: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=Status.ACTIVE.value, nullable=False)

    @property
    def is_active(self) -> bool:
        return self.status == Status.ACTIVE.value

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, code={self.code!r}, org_id={self.organization_id}, scope={self.scope})>"


class Role(Base, TimestampMixin):
    """
    Role model for grouping permissions.

    Roles are organization-specific or global (system-wide, organization_id
    null). At most one role per scope is the default role.
    Examples: super_admin (global), org_admin, manager, agent, viewer
    """
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_roles_org_code"),
        Index(
            "uq_roles_global_code", "code", unique=True,
            sqlite_where=text("organization_id IS NULL"),
            postgresql_where=text("organization_id IS NULL"),
        ),
        Index(
            "uq_roles_org_default", "organization_id", unique=True,
            sqlite_where=text("is_default AND organization_id IS NOT NULL"),
            postgresql_where=text("is_default AND organization_id IS NOT NULL"),
        ),
        Index(
            "uq_roles_global_default", "is_default", unique=True,
            sqlite_where=text("is_default AND organization_id IS NULL"),
            postgresql_where=text("is_default AND organization_id IS NULL"),
        ),
    )

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Link to specific organization (null = system-wide role)
    organization_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )

    # Role definition
    code: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    scope: Mapped[str] = mapped_column(String(20), nullable=False, default=Scope.ORGANIZATION.value)
    level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    is_system_role: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=Status.ACTIVE.value, nullable=False)

    # Inheritance: grants of the parent are materialized on this role as inherited rows
    parent_role_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("roles.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    inherits_permissions: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Capacity (null = unlimited active assignments)
    max_users: Mapped[int | None] = mapped_column(Integer, nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status == Status.ACTIVE.value

    @property
    def is_global(self) -> bool:
        return self.organization_id is None

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, code={self.code!r}, org_id={self.organization_id}, level={self.level})>"


class RolePermission(Base, TimestampMixin):
    """
    Grant binding one role to one permission.

    ``is_granted`` false records an explicit deny, which is different from
    having no row at all ("no opinion").
    """
    __tablename__ = "role_permissions"
    __table_args__ = (
        UniqueConstraint("role_id", "permission_id", name="uq_role_permissions_role_permission"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    role_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    permission_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("permissions.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    is_granted: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_inherited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Tagged condition objects, e.g. [{"kind": "time_window", "start": "09:00", "end": "17:00"}]
    conditions: Mapped[List[Dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    constraints: Mapped[List[Dict[str, Any]] | None] = mapped_column(JSON, nullable=True)

    # Provenance
    granted_by: Mapped[str | None] = mapped_column(String(26), nullable=True)
    granted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    permission: Mapped["Permission"] = relationship("Permission", lazy="selectin")

    def __repr__(self) -> str:
        return (
            f"<RolePermission(role_id={self.role_id}, permission_id={self.permission_id}, "
            f"granted={self.is_granted}, inherited={self.is_inherited})>"
        )


class UserRole(Base, TimestampMixin):
    """
    Assignment of one role to one user.

    Live only while ``is_active`` and ``effective_from <= now < effective_until``.
    Revocation is soft so that history is retained.
    """
    __tablename__ = "user_roles"
    __table_args__ = (
        UniqueConstraint("user_id", "role_id", name="uq_user_roles_user_role"),
        # Storage-level guard: one active primary assignment per user
        Index(
            "uq_user_roles_active_primary", "user_id", unique=True,
            sqlite_where=text("is_primary AND is_active"),
            postgresql_where=text("is_primary AND is_active"),
        ),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    user_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # Deleting a role keeps its (revoked) assignments as history
    role_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("roles.id", ondelete="SET NULL"), nullable=True, index=True
    )
    # Copied from the role so assignments can be filtered per tenant
    organization_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    scope: Mapped[str] = mapped_column(String(20), nullable=False, default=AssignmentScope.ORGANIZATION.value)
    scope_context: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    effective_from: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    effective_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Provenance
    assigned_by: Mapped[str | None] = mapped_column(String(26), nullable=True)
    assigned_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String(26), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    role: Mapped[Optional["Role"]] = relationship("Role", lazy="selectin")

    def is_effective_at(self, moment: datetime) -> bool:
        if not self.is_active:
            return False
        if self.effective_from is not None and self.effective_from > moment:
            return False
        if self.effective_until is not None and self.effective_until <= moment:
            return False
        return True

    def __repr__(self) -> str:
        return (
            f"<UserRole(user_id={self.user_id}, role_id={self.role_id}, "
            f"active={self.is_active}, primary={self.is_primary})>"
        )


class AuditEntry(Base):
    """
    Append-only record of a role, grant, assignment or permission mutation.

    The integer key gives the log a total order. Entries carry no foreign keys
    so that deleting the audited object never rewrites its history.
    """
    __tablename__ = "audit_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    organization_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)
    actor_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)
    resource_name: Mapped[str | None] = mapped_column(String(150), nullable=True)

    old_values: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    new_values: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)

    def __repr__(self) -> str:
        return f"<AuditEntry(id={self.id}, actor_id={self.actor_id}, action={self.action}, resource={self.resource_type})>"


@event.listens_for(AuditEntry, "before_update")
def _reject_audit_update(_mapper, _connection, target: AuditEntry) -> None:
    raise AuditWriteFailed("Audit entries are append-only", entry_id=target.id)


@event.listens_for(AuditEntry, "before_delete")
def _reject_audit_delete(_mapper, _connection, target: AuditEntry) -> None:
    raise AuditWriteFailed("Audit entries are append-only", entry_id=target.id)


def same_organization(column, organization_id: str | None):
    """Filter clause for an organization id column, treating None as global."""
    if organization_id is None:
        return column.is_(None)
    return column == organization_id
