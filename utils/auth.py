"""Bearer authentication for the intent API"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from config import Config
from models import UserRole
from utils.exceptions import ForbiddenError, UnauthorizedError

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller: a stable user id and a marketplace role"""
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value


def create_access_token(user_id: str, role: str, expires_minutes: int = 60) -> str:
    """Issue a token; used by the identity service and by tests"""
    if not Config.JWT_SECRET_KEY:
        raise UnauthorizedError("JWT_SECRET_KEY is not configured")
    now = datetime.now(timezone.utc)
    claims = {
        "sub": user_id,
        "role": role,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(claims, Config.JWT_SECRET_KEY, algorithm=Config.JWT_ALGORITHM)


def decode_token(token: str) -> Principal:
    if not Config.JWT_SECRET_KEY:
        raise UnauthorizedError("Authentication is not configured")
    try:
        payload = jwt.decode(token, Config.JWT_SECRET_KEY, algorithms=[Config.JWT_ALGORITHM])
    except JWTError:
        raise UnauthorizedError("Invalid or expired token")

    user_id = payload.get("sub")
    role = payload.get("role")
    valid_roles = {r.value for r in UserRole}
    if not user_id or role not in valid_roles:
        raise UnauthorizedError("Token is missing a subject or a valid role")
    return Principal(user_id=str(user_id), role=role)


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Principal:
    if credentials is None or not credentials.credentials:
        raise UnauthorizedError("Bearer token required")
    return decode_token(credentials.credentials)


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        logger.warning(f"⚠️ ADMIN_ACCESS_DENIED: user={principal.user_id} role={principal.role}")
        raise ForbiddenError("Admin access required")
    return principal
