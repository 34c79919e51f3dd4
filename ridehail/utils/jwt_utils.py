"""
JWT Utilities
Handles JWT token creation, verification, and user authentication
"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from ridehail.config import get_settings
from ridehail.models.user_model import User
from ridehail.services.authorization import Actor
from ridehail.utils.helpers import utcnow

logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer()


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create JWT access token

    Args:
        data: Claims, at least user_id and role
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string
    """
    settings = get_settings()
    to_encode = data.copy()

    expire = utcnow() + (
        expires_delta or timedelta(hours=settings.access_token_expire_hours)
    )
    to_encode.update({"exp": expire})

    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> Optional[dict]:
    """
    Verify and decode JWT token

    Returns:
        Decoded token payload or None if invalid
    """
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        logger.warning(f"Token verification failed: {str(e)}")
        return None


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> User:
    """
    Get current authenticated user from JWT token
    Used as dependency in protected routes

    Raises:
        HTTPException: If token is invalid or user not found
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = verify_token(credentials.credentials)
    if payload is None or not payload.get("user_id"):
        raise credentials_exception

    user = User.objects(id=payload["user_id"]).first()
    if user is None:
        raise credentials_exception

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="User account is deactivated"
        )

    return user


def actor_of(user: User) -> Actor:
    return Actor(user_id=str(user.id), role=user.role)


def _require_role(role: str, label: str):
    async def dependency(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role != role:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail=f"{label} access required"
            )
        return current_user

    dependency.__name__ = f"require_{role}"
    return dependency


require_admin = _require_role("admin", "Admin")
require_driver = _require_role("driver", "Driver")
require_passenger = _require_role("passenger", "Passenger")
