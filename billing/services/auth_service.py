"""Bearer-token identity for API requests.

Users sign in through the platform's auth service; this module only verifies
the JWT it issues and exposes the caller's id and role as FastAPI dependencies.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, UTC

import jwt
from fastapi import Depends, Header, HTTPException

from billing.config import get_settings
from billing.services.tenant_filter import TenantConfig, is_foreign_package

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: str


def create_jwt(user_id: str, role: str = "user") -> str:
    """Create a signed JWT for the given user (used by tooling and tests)."""
    settings = get_settings()
    payload = {
        "sub": str(user_id),
        "role": role,
        "exp": datetime.now(UTC) + timedelta(days=settings.jwt_expire_days),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def _decode_jwt(token: str) -> dict:
    settings = get_settings()
    return jwt.decode(
        token, settings.jwt_secret, algorithms=[settings.jwt_algorithm],
        options={"require": ["exp", "sub"]},
    )


async def get_principal(authorization: str | None = Header(None)) -> Principal:
    """FastAPI dependency: decode the bearer token or raise 401."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = _decode_jwt(authorization.split(" ", 1)[1].strip())
        user_id = str(payload["sub"])
    except (jwt.ExpiredSignatureError, jwt.InvalidTokenError, KeyError):
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return Principal(user_id=user_id, role=str(payload.get("role") or "user"))


async def get_current_user_id(principal: Principal = Depends(get_principal)) -> str:
    return principal.user_id


async def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if principal.role != ADMIN_ROLE:
        raise HTTPException(status_code=403, detail="Admin access required")
    return principal


async def get_package_id(x_package_id: str | None = Header(None)) -> str:
    """Resolve the tenant package of a request; other apps' packages are refused."""
    settings = get_settings()
    if is_foreign_package(x_package_id, TenantConfig.from_settings(settings)):
        raise HTTPException(status_code=400, detail=f"Unsupported package: {x_package_id}")
    return settings.package_id
