import enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from storefront.config import JWT_ALGORITHM, JWT_SECRET
from storefront.errors import AuthorizationError


class Role(str, enum.Enum):
    USER = "user"
    ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    def can_access(self, owner_id: str) -> bool:
        return self.is_admin or self.user_id == owner_id


def create_access_token(user_id: str, role: Role = Role.USER, expires_in: timedelta = timedelta(hours=1)) -> str:
    payload = {
        "sub": user_id,
        "role": role.value,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_token(authorization: Optional[str] = Header(None)) -> Principal:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        user_id = claims["sub"]
        role = Role(claims.get("role", Role.USER.value))
    except (AttributeError, ValueError, KeyError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return Principal(user_id=str(user_id), role=role)


def require_admin(principal: Principal = Depends(verify_token)) -> Principal:
    if not principal.is_admin:
        raise AuthorizationError("Admin privileges required")
    return principal
