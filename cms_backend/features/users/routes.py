"""
User feature routes.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cms_backend.core.database.engine import get_db
from cms_backend.features.permissions.dependencies import query_visible, require_access
from cms_backend.features.users.models import User
from cms_backend.features.users.schemas import UserResponse, UserPublic
from cms_backend.features.users.dependencies import get_current_user


router = APIRouter(tags=["users"])


@router.get("/me", response_model=UserResponse)
async def get_current_user_profile(
    user: Annotated[User, Depends(get_current_user)]
):
    """Get current authenticated user's profile."""
    return user


@router.get("/{user_id}", response_model=UserResponse, dependencies=[Depends(require_access("User", "query"))])
async def get_user_by_id(
    user_id: str,
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Get a user by ID (requires User:read)."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )

    return user


@router.get("/", response_model=list[UserPublic])
async def list_users(
    db: Annotated[AsyncSession, Depends(get_db)],
    visible: Annotated[bool, Depends(query_visible("User"))],
    skip: int = 0,
    limit: int = 50
):
    """List users; callers without User:read get an empty list."""
    if not visible:
        return []

    result = await db.execute(
        select(User)
        .order_by(User.email)
        .offset(skip)
        .limit(limit)
    )
    return result.scalars().all()
