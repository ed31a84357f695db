"""
User feature routes.
"""
from typing import Annotated, Optional
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_rbac.core.database.engine import get_db
from chatbot_rbac.features.users.models import User
from chatbot_rbac.features.users.schemas import UserResponse, UserRoleSummary
from chatbot_rbac.features.users.dependencies import get_current_user
from chatbot_rbac.features.permissions.assignments import list_active_roles, primary_role_label


router = APIRouter(tags=["users"])


@router.get("/me", response_model=UserResponse)
async def get_current_user_profile(
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Get current authenticated user's profile."""
    profile = UserResponse.model_validate(user)
    profile.organization_ids = [org.id for org in user.organizations]
    profile.primary_role_label = await primary_role_label(db, user.id)
    return profile


@router.get("/me/roles", response_model=list[UserRoleSummary])
async def get_current_user_roles(
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    organization_id: Optional[str] = None
):
    """Roles the current user holds right now, highest level first."""
    return await list_active_roles(db, user.id, organization_id=organization_id)
