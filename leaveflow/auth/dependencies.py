"""Auth dependencies — JWT validation, permission enforcement."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable

from fastapi import Depends, Request
from fastapi.exceptions import HTTPException
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.common.constants import PERMISSIONS
from leaveflow.common.exceptions import ForbiddenException
from leaveflow.common.logging import get_security_logger
from leaveflow.config import settings
from leaveflow.core_hr.models import Employee
from leaveflow.database import get_db

security_logger = get_security_logger()


def _extract_bearer(request: Request) -> str:
    """Extract Bearer token from Authorization header."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header.")
    return auth_header[7:]


def create_access_token(employee_id: uuid.UUID, *, expires_minutes: int = 60) -> str:
    """Issue an access token for *employee_id* (used by scripts and tests)."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(employee_id),
        "type": "access",
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


# ── Core dependency ─────────────────────────────────────────────────

async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Employee:
    """Validate the JWT and return the authenticated, active Employee."""
    token = _extract_bearer(request)

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired.")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token.")

    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type.")

    try:
        employee_id = uuid.UUID(payload["sub"])
    except (KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token subject.")

    result = await db.execute(
        select(Employee).where(Employee.id == employee_id, Employee.is_active.is_(True))
    )
    employee = result.scalars().first()
    if employee is None:
        raise HTTPException(status_code=401, detail="User account is inactive or not found.")

    return employee


# ── Permission-based dependency ─────────────────────────────────────

def permissions_of(employee: Employee) -> set[str]:
    granted: set[str] = set()
    for role in employee.role_set():
        granted.update(PERMISSIONS.get(role, []))
    return granted


def require_permission(permission: str) -> Callable:
    """Return a FastAPI dependency that enforces a specific permission string."""

    async def _check(
        employee: Employee = Depends(get_current_user),
    ) -> Employee:
        if permission not in permissions_of(employee):
            security_logger.warning(
                "Permission %s denied to employee %s (roles=%s)",
                permission, employee.id, employee.roles,
            )
            raise ForbiddenException(
                detail=f"Permission '{permission}' is not granted to your roles.",
            )
        return employee

    return _check
