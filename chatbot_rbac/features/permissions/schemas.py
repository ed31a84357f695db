"""
Pydantic schemas for permission management.

Request and response models for the catalog, roles, grants, assignments,
authorization checks and the audit log.
"""
import ipaddress
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

from chatbot_rbac.features.permissions.models import AssignmentScope, Scope, Status


CODE_PATTERN = r"^[a-z][a-z0-9_]*\.[a-z][a-z0-9_]*$"
ROLE_CODE_PATTERN = r"^[a-z][a-z0-9_]*$"
HHMM_PATTERN = r"^([01][0-9]|2[0-3]):[0-5][0-9]$"


# ============================================================================
# Condition Schemas
# ============================================================================

class TimeWindowCondition(BaseModel):
    """Grant applies between two wall-clock times (end exclusive)."""
    kind: Literal["time_window"]
    start: str = Field(..., pattern=HHMM_PATTERN)
    end: str = Field(..., pattern=HHMM_PATTERN)
    timezone: Optional[str] = Field(None, description="IANA zone name; UTC when omitted")


class DayOfWeekCondition(BaseModel):
    kind: Literal["day_of_week"]
    days: List[Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]] = Field(
        ..., min_length=1
    )
    timezone: Optional[str] = None

    @field_validator("days", mode="before")
    @classmethod
    def days_lowercase(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [day.lower() if isinstance(day, str) else day for day in v]
        return v


class IpRangeCondition(BaseModel):
    kind: Literal["ip_range"]
    cidrs: List[str] = Field(..., min_length=1, description="Networks or single addresses")

    @field_validator("cidrs")
    @classmethod
    def valid_networks(cls, v: List[str]) -> List[str]:
        for cidr in v:
            ipaddress.ip_network(cidr, strict=False)
        return v


class AttributeCondition(BaseModel):
    """Grant applies when a check attribute equals one of the listed values."""
    kind: Literal["attribute"]
    key: str = Field(..., min_length=1, max_length=100)
    values: List[Any] = Field(..., min_length=1)


Condition = Annotated[
    Union[TimeWindowCondition, DayOfWeekCondition, IpRangeCondition, AttributeCondition],
    Field(discriminator="kind"),
]


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionBase(BaseModel):
    """Base permission schema."""
    code: str = Field(..., pattern=CODE_PATTERN, max_length=100, description="resource.action, e.g. 'chats.handle'")
    name: str = Field(..., min_length=1, max_length=150)
    description: Optional[str] = Field(None, max_length=1000)
    category: str = Field("general", min_length=1, max_length=50)
    is_dangerous: bool = False
    requires_approval: bool = False
    sort_order: int = 0


class PermissionCreate(PermissionBase):
    """Schema for defining a new permission."""
    organization_id: Optional[str] = Field(None, description="Owning organization (null for the global catalog)")
    scope: Scope = Scope.ORGANIZATION


class PermissionUpdate(BaseModel):
    """Descriptive fields only; identity fields are fixed."""
    name: Optional[str] = Field(None, min_length=1, max_length=150)
    description: Optional[str] = Field(None, max_length=1000)
    category: Optional[str] = Field(None, min_length=1, max_length=50)
    is_dangerous: Optional[bool] = None
    requires_approval: Optional[bool] = None
    sort_order: Optional[int] = None


class PermissionResponse(PermissionBase):
    """Schema for permission response."""
    id: str
    organization_id: Optional[str]
    resource: str
    action: str
    scope: str
    status: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    code: str = Field(..., pattern=ROLE_CODE_PATTERN, max_length=50)
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    level: int = Field(0, ge=0, le=1000, description="Higher means more authority")


class RoleCreate(RoleBase):
    """Schema for creating a new role."""
    organization_id: Optional[str] = Field(None, description="Organization ID (null for system-wide role)")
    is_system_role: bool = False
    is_default: bool = False
    parent_role_id: Optional[str] = None
    inherits_permissions: bool = False
    max_users: Optional[int] = Field(None, ge=0)


class RoleUpdate(BaseModel):
    """Schema for updating a role."""
    code: Optional[str] = Field(None, pattern=ROLE_CODE_PATTERN, max_length=50)
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    level: Optional[int] = Field(None, ge=0, le=1000)
    is_default: Optional[bool] = None
    is_system_role: Optional[bool] = None
    status: Optional[Status] = None
    max_users: Optional[int] = Field(None, ge=0)
    inherits_permissions: Optional[bool] = None


class RoleParentUpdate(BaseModel):
    parent_role_id: Optional[str] = None


class RoleClone(BaseModel):
    """New identity for a copy of an existing role."""
    code: str = Field(..., pattern=ROLE_CODE_PATTERN, max_length=50)
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)


class RoleResponse(RoleBase):
    """Schema for role response."""
    id: str
    organization_id: Optional[str]
    scope: str
    is_system_role: bool
    is_default: bool
    status: str
    parent_role_id: Optional[str]
    inherits_permissions: bool
    max_users: Optional[int]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleHierarchyNode(BaseModel):
    id: str
    code: str
    name: str
    level: int


# ============================================================================
# Grant Schemas
# ============================================================================

class GrantSet(BaseModel):
    """Allow or explicitly deny a permission on a role."""
    is_granted: bool = True
    conditions: Optional[List[Condition]] = None
    constraints: Optional[List[Condition]] = None


class GrantBulkSet(GrantSet):
    """The same grant applied to several permissions at once."""
    permission_ids: List[str] = Field(..., min_length=1)


class GrantBulkRevoke(BaseModel):
    permission_ids: List[str] = Field(..., min_length=1)


class GrantResponse(BaseModel):
    id: str
    role_id: str
    permission_id: str
    permission_code: str
    is_granted: bool
    is_inherited: bool
    conditions: Optional[List[Dict[str, Any]]] = None
    constraints: Optional[List[Dict[str, Any]]] = None
    granted_by: Optional[str] = None
    granted_at: datetime

    @classmethod
    def from_grant(cls, grant) -> "GrantResponse":
        return cls(
            id=grant.id,
            role_id=grant.role_id,
            permission_id=grant.permission_id,
            permission_code=grant.permission.code,
            is_granted=grant.is_granted,
            is_inherited=grant.is_inherited,
            conditions=grant.conditions,
            constraints=grant.constraints,
            granted_by=grant.granted_by,
            granted_at=grant.granted_at,
        )


class EffectivePermissionsResponse(BaseModel):
    role_id: str
    permission_codes: List[str]


# ============================================================================
# Assignment Schemas
# ============================================================================

class AssignRoleToUser(BaseModel):
    """Schema for assigning a role to a user."""
    user_id: str
    role_id: str
    is_primary: bool = False
    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = None
    scope: Optional[AssignmentScope] = None
    scope_context: Optional[Dict[str, Any]] = None
    reason: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def window_not_empty(self) -> "AssignRoleToUser":
        if self.effective_from and self.effective_until and self.effective_until <= self.effective_from:
            raise ValueError("effective_until must be after effective_from")
        return self


class AssignmentExtend(BaseModel):
    effective_until: Optional[datetime] = None


class AssignmentResponse(BaseModel):
    id: str
    user_id: str
    role_id: Optional[str]
    organization_id: Optional[str]
    is_active: bool
    is_primary: bool
    scope: str
    scope_context: Optional[Dict[str, Any]] = None
    effective_from: datetime
    effective_until: Optional[datetime] = None
    assigned_by: Optional[str] = None
    assigned_reason: Optional[str] = None
    revoked_by: Optional[str] = None
    revoked_at: Optional[datetime] = None
    status: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Check Schemas
# ============================================================================

class PermissionCheckRequest(BaseModel):
    """Schema for checking one or more permissions for a user."""
    user_id: Optional[str] = Field(None, description="Defaults to the caller")
    organization_id: Optional[str] = None
    permission_code: Optional[str] = Field(None, max_length=100)
    permission_codes: Optional[List[str]] = Field(None, min_length=1)
    mode: Literal["any", "all"] = "any"
    at: Optional[datetime] = None
    attributes: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def one_code_source(self) -> "PermissionCheckRequest":
        if not self.permission_code and not self.permission_codes:
            raise ValueError("permission_code or permission_codes is required")
        return self


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    allowed: bool
    reason: str
    permission_code: str
    matched_role_id: Optional[str] = None
    user_id: str
    organization_id: Optional[str] = None


class UserPermissionsResponse(BaseModel):
    """Everything a user is allowed in one organization."""
    user_id: str
    organization_id: Optional[str]
    roles: List[RoleResponse]
    permission_codes: List[str]


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: int
    organization_id: Optional[str]
    actor_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    resource_name: Optional[str]
    old_values: Optional[Dict[str, Any]]
    new_values: Optional[Dict[str, Any]]
    description: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int
