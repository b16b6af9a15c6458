"""
FastAPI dependencies for authentication.
"""
from typing import Annotated, Optional
from datetime import datetime, timezone
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cms_backend.core.database.engine import get_db
from cms_backend.features.permissions.context import Session
from cms_backend.features.users.models import User
from cms_backend.features.users.auth import session_from_token


security = HTTPBearer(auto_error=False)


async def get_session(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Optional[Session]:
    """
    Session of the caller, or None for anonymous requests.

    Usage:
        @router.get("/products")
        async def list_products(session: Optional[Session] = Depends(get_session)):
            ...
    """
    if credentials is None:
        return None
    return session_from_token(credentials.credentials)


async def get_required_session(
    session: Annotated[Optional[Session], Depends(get_session)],
) -> Session:
    """Session of the caller; anonymous requests get a 401."""
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return session


async def get_current_user(
    session: Annotated[Session, Depends(get_required_session)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> User:
    """
    Get the database user behind the session.

    This dependency:
    1. Requires a valid session token
    2. Looks up the user in the local database
    3. Updates last_login_at timestamp

    Usage:
        @router.get("/me")
        async def get_me(user: User = Depends(get_current_user)):
            return user
    """
    result = await db.execute(select(User).where(User.id == session.user_id))
    user = result.scalar_one_or_none()

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown user",
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )

    user.last_login_at = datetime.now(timezone.utc)
    await db.commit()
    await db.refresh(user)
    return user


def get_authorization_header(request) -> str:
    """
    Extract authorization header for rate limiting.
    Used with slowapi Limiter.
    """
    auth = request.headers.get("Authorization", "")
    return auth or "anonymous"
