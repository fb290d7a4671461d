"""FastAPI dependencies resolving the calling user from a bearer token."""

import uuid

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_billing.auth.jwt import decode_token
from subscription_billing.database import get_db
from subscription_billing.models.user import User

# Raises 403 automatically if no token provided
_bearer_scheme = HTTPBearer()


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Validate the bearer token and load its user.

    Raises:
        HTTPException 401: Invalid or expired token, wrong token type, or unknown user.
    """
    try:
        payload = decode_token(credentials.credentials)
    except JWTError:
        raise _unauthorized() from None

    if payload.get("type") != "access":
        raise _unauthorized("Invalid token type")

    sub: str | None = payload.get("sub")
    if sub is None:
        raise _unauthorized()
    try:
        user_id = uuid.UUID(sub)
    except ValueError:
        raise _unauthorized() from None

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise _unauthorized()
    return user


async def get_current_active_user(user: User = Depends(get_current_user)) -> User:
    """Return the current user only if their account is active.

    Raises:
        HTTPException 403: If the user account is inactive.
    """
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is inactive",
        )
    return user
