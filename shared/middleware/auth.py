"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.
JWT is validated here; core operations receive a Principal (user id + role).
"""

import uuid
from dataclasses import dataclass
from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from shared.models.models import User, UserRole
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """The acting user as the core sees it."""

    user_id: uuid.UUID
    role: UserRole

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        return cls(user_id=user.id, role=UserRole(user.role))

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class TokenData:
    def __init__(self, payload: dict):
        try:
            self.user_id: uuid.UUID = uuid.UUID(str(payload["sub"]))
            self.role: UserRole = UserRole(payload["role"])
        except (KeyError, ValueError) as exc:
            raise JWTError("Malformed token claims") from exc
        self.email: Optional[str] = payload.get("email")
        self.jti: Optional[str] = payload.get("jti")


async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_redis),
) -> TokenData:
    """
    Extract and validate JWT from Authorization header.
    Checks deny-list in Redis to handle revoked tokens.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        token_data = TokenData(verify_access_token(credentials.credentials))
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if token_data.jti and await RedisCache(redis).is_token_revoked(token_data.jti):
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
    result = await db.execute(select(User).where(User.id == token_data.user_id))
    user = result.scalar_one_or_none()

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


async def get_principal(current_user: User = Depends(get_current_user)) -> Principal:
    return Principal.from_user(current_user)


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(
        self,
        principal: Principal = Depends(get_principal),
    ) -> Principal:
        if principal.role not in self.roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Required role: {[r.value for r in self.roles]}",
            )
        return principal


# Convenience role dependencies
require_provider = RoleRequired(UserRole.PROVIDER, UserRole.ADMIN)
require_admin = RoleRequired(UserRole.ADMIN)
