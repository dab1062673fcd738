"""
Principal resolution for API routes.

Session issuance lives outside this service; callers present a bearer JWT
carrying the user id, organization scope and role. Executors authenticate
internal callbacks with a shared service token.
"""
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from maes.core.config import settings
from maes.core.errors import NotFoundError, PermissionDeniedError

security = HTTPBearer(auto_error=False)

# JWT settings
JWT_ALGORITHM = "HS256"

ROLE_LEVELS = {
    "viewer": 0,
    "analyst": 1,
    "admin": 2,
    "superadmin": 3,
}


class Principal(BaseModel):
    user_id: str
    organization_id: uuid.UUID
    role: str = "viewer"

    @property
    def is_superadmin(self) -> bool:
        return self.role == "superadmin"

    def has_role(self, minimum: str) -> bool:
        return ROLE_LEVELS.get(self.role, -1) >= ROLE_LEVELS[minimum]


def create_access_token(user_id: str, organization_id: uuid.UUID, role: str = "analyst") -> str:
    """Create JWT access token"""
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {
        "sub": user_id,
        "organization_id": str(organization_id),
        "role": role,
        # Use numeric timestamps for compatibility across JWT libs
        "exp": int(expire.timestamp()),
        "iat": int(now.timestamp()),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=JWT_ALGORITHM)


def _verify_token(token: str) -> Optional[Principal]:
    """Verify JWT token and return the principal if valid"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[JWT_ALGORITHM])
        return Principal(
            user_id=payload["sub"],
            organization_id=uuid.UUID(payload["organization_id"]),
            role=payload.get("role", "viewer"),
        )
    except (JWTError, KeyError, ValueError):
        return None


async def get_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Principal:
    principal = _verify_token(credentials.credentials) if credentials else None
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if principal.role not in ROLE_LEVELS:
        raise HTTPException(status_code=403, detail=f"Unknown role: {principal.role}")
    return principal


def ensure_org_access(principal: Principal, organization_id: uuid.UUID, minimum_role: str = "viewer") -> None:
    """
    Scope check: the path organization must be the principal's own unless
    the principal is a superadmin.
    """
    if organization_id != principal.organization_id and not principal.is_superadmin:
        # Do not reveal whether another tenant's organization exists.
        raise NotFoundError("Organization not found", {"organization_id": str(organization_id)})
    if not principal.has_role(minimum_role):
        raise PermissionDeniedError(
            f"Role '{minimum_role}' or higher required",
            {"required_role": minimum_role, "role": principal.role},
        )


async def verify_service_token(x_service_token: Optional[str] = Header(default=None)) -> str:
    """Authenticate executor callbacks using constant-time comparison"""
    if not x_service_token or not secrets.compare_digest(
        x_service_token.encode("utf-8"),
        settings.SERVICE_AUTH_TOKEN.encode("utf-8"),
    ):
        raise HTTPException(status_code=401, detail="Invalid service token")
    return x_service_token


require_principal = Depends(get_principal)
require_service = Depends(verify_service_token)
