"""
Authentication dependencies for FastAPI

Tokens are issued by the external identity service. This module only verifies
the signature and turns the claims into a principal.
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
from uuid import UUID
import jwt
import structlog

from emergency_dispatch.core.config import settings
from emergency_dispatch.core.logging import user_id_var

logger = structlog.get_logger()

# HTTP Bearer token scheme
security = HTTPBearer(auto_error=False)

ROLE_USER = "user"
ROLE_RESPONDER = "responder"
ROLE_ADMIN = "admin"
VALID_ROLES = {ROLE_USER, ROLE_RESPONDER, ROLE_ADMIN}


class UserContext:
    """Authenticated principal"""

    def __init__(self, user_id: UUID, role: str):
        self.user_id = user_id
        self.role = role

    def is_responder(self) -> bool:
        return self.role == ROLE_RESPONDER

    def is_requester(self) -> bool:
        return self.role == ROLE_USER

    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def decode_access_token(token: str) -> UserContext:
    """
    Decode a bearer token into a principal

    Raises:
        jwt.ExpiredSignatureError: token expired
        jwt.InvalidTokenError: token malformed, badly signed or missing claims
    """
    payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])

    role = payload.get("role")
    if role not in VALID_ROLES:
        raise jwt.InvalidTokenError("Unknown principal role")

    try:
        user_id = UUID(str(payload.get("sub")))
    except ValueError as e:
        raise jwt.InvalidTokenError("Invalid subject claim") from e

    return UserContext(user_id=user_id, role=role)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> UserContext:
    """Get current authenticated principal from JWT token"""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        user_context = decode_access_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e) or "Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id_var.set(str(user_context.user_id))
    logger.debug("user_authenticated", user_id=str(user_context.user_id), role=user_context.role)
    return user_context


async def get_current_responder(
    current_user: UserContext = Depends(get_current_user)
) -> UserContext:
    """Get current principal ensuring it is a responder"""
    if not current_user.is_responder():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access restricted to responders"
        )
    return current_user


async def get_current_requester(
    current_user: UserContext = Depends(get_current_user)
) -> UserContext:
    """Get current principal ensuring it can submit emergency requests"""
    if current_user.is_responder():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access restricted to users"
        )
    return current_user


async def require_admin(
    current_user: UserContext = Depends(get_current_user)
) -> UserContext:
    """Require administrative principal"""
    if not current_user.is_admin():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_user
