"""
Pydantic schemas for user-related responses.
"""
from datetime import datetime
from pydantic import BaseModel, EmailStr


class UserResponse(BaseModel):
    """Schema for the authenticated user's profile."""
    id: str
    email: EmailStr
    name: str
    is_active: bool
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    # Organization information
    current_organization_id: str | None = None
    organization_ids: list[str] = []

    # Display-only label derived from the primary assignment
    primary_role_label: str | None = None

    model_config = {"from_attributes": True}


class UserRoleSummary(BaseModel):
    """A role the user currently holds."""
    id: str
    code: str
    name: str
    level: int
    organization_id: str | None = None

    model_config = {"from_attributes": True}
