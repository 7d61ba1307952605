from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.wa_agent.settings import Settings

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AdminContext:
    user_id: str


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def require_admin(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AdminContext:
    settings = get_settings(request)
    if not settings.admin_auth_enabled:
        return AdminContext(user_id="dev-local")

    if not settings.admin_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="admin auth is enabled but ADMIN_SECRET is not configured",
        )
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="missing bearer token",
        )
    if not hmac.compare_digest(
        credentials.credentials.encode("utf-8"), settings.admin_secret.encode("utf-8")
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid admin token",
        )
    return AdminContext(user_id="admin")
