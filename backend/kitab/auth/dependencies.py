"""Route guards resolving the bearer token to a ``User``."""

import uuid

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kitab.auth.jwt import ACCESS_TOKEN_TYPE, decode_token
from kitab.database import get_db
from kitab.models.user import User

# auto_error=False so a missing header yields 401 rather than 403
_bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _user_id_from_token(token: str) -> uuid.UUID:
    try:
        payload = decode_token(token)
    except JWTError:
        raise _unauthorized() from None

    if payload.get("type") != ACCESS_TOKEN_TYPE:
        raise _unauthorized("Invalid token type")

    try:
        return uuid.UUID(payload.get("sub") or "")
    except ValueError:
        raise _unauthorized() from None


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Return the user named by the access token, or fail with 401."""
    if credentials is None:
        raise _unauthorized()

    user_id = _user_id_from_token(credentials.credentials)
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise _unauthorized()
    return user


async def get_current_active_user(user: User = Depends(get_current_user)) -> User:
    """Like ``get_current_user`` but 403 for deactivated accounts."""
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is inactive",
        )
    return user
