"""Manager authentication for the mutating endpoints."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import HTTPException, Request
from jose import JWTError, jwt

from config.settings import settings, split_csv


def create_token(subject: str, role: str, expires_minutes: int = 60) -> str:
    claims = {
        "sub": subject,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def _token_from(request: Request) -> str | None:
    token = request.cookies.get(settings.AUTH_COOKIE_NAME)
    if token:
        return token
    header = request.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


async def require_manager(request: Request) -> dict[str, Any]:
    """Dependency: the caller must carry a valid token with a manager role."""
    token = _token_from(request)
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid authentication token") from exc

    role = str(payload.get("role") or "").lower()
    if role not in split_csv(settings.MANAGER_ROLES.lower()):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return payload
