"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.
The socket gateway reuses authenticate_token() for its handshake.
"""

import uuid
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from shared.models.models import User, UserRole
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)


class TokenData:
    def __init__(self, payload: dict):
        self.user_id: uuid.UUID = uuid.UUID(payload["sub"])
        self.role: UserRole = UserRole(payload["role"])
        self.email: str = payload["email"]
        self.jti: str = payload["jti"]
        self.payload = payload


async def decode_token(token: str, redis) -> Optional[TokenData]:
    """Verify signature, expiry and deny-list. Returns None when unusable."""
    try:
        payload = verify_access_token(token)
        token_data = TokenData(payload)
    except (JWTError, KeyError, ValueError):
        return None
    if await RedisCache(redis).is_token_revoked(token_data.jti):
        return None
    return token_data


async def authenticate_token(token: Optional[str], db: AsyncSession, redis) -> Optional[User]:
    """Resolve a raw access token to an active user, or None."""
    if not token:
        return None
    token_data = await decode_token(token, redis)
    if not token_data:
        return None
    user = await db.scalar(select(User).where(User.id == token_data.user_id))
    if not user or not user.is_active:
        return None
    return user


async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_redis),
) -> TokenData:
    """
    Extract and validate JWT from Authorization header.
    Checks deny-list in Redis to handle revoked tokens (logout).
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = verify_access_token(credentials.credentials)
        token_data = TokenData(payload)
    except (JWTError, KeyError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if await RedisCache(redis).is_token_revoked(token_data.jti):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has been revoked",
        )

    return token_data


async def get_current_user(
    token_data: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Load full User object from database using JWT sub claim."""
    user = await db.scalar(select(User).where(User.id == token_data.user_id))

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )
    return user


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(
        self,
        current_user: User = Depends(get_current_user),
    ) -> User:
        if current_user.role not in self.roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Required role: {[r.value for r in self.roles]}",
            )
        return current_user


# Convenience role dependencies
require_lister = RoleRequired(UserRole.LANDLORD, UserRole.AGENT, UserRole.ADMIN)
require_admin = RoleRequired(UserRole.ADMIN)


def is_admin(user: User) -> bool:
    return user.role == UserRole.ADMIN
