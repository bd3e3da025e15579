"""SerialStock — FastAPI dependencies (auth, DB, permissions)."""
from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from serialstock.db.session import get_db

DbSession = Annotated[AsyncSession, Depends(get_db)]

# ── Permission keys ─────────────────────────────────────────────────────────
PERM_UNITS_READ = "units:read"
PERM_UNITS_WRITE = "units:write"
PERM_UNITS_RESERVE = "units:reserve"
PERM_UNITS_DELETE = "units:delete"
PERM_UNITS_RECONCILE = "units:reconcile"

# ── Role → permissions matrix ────────────────────────────────────────────────
_ADMIN_PERMS = {
    PERM_UNITS_READ, PERM_UNITS_WRITE, PERM_UNITS_RESERVE,
    PERM_UNITS_DELETE, PERM_UNITS_RECONCILE,
}

_MANAGER_PERMS = {
    PERM_UNITS_READ, PERM_UNITS_WRITE, PERM_UNITS_RESERVE,
    PERM_UNITS_DELETE,
}

_FLOOR_ASSOCIATE_PERMS = {
    PERM_UNITS_READ, PERM_UNITS_RESERVE,
}

PERMISSION_MATRIX: dict[str, set[str]] = {
    "ADMIN": _ADMIN_PERMS,
    "MANAGER": _MANAGER_PERMS,
    "FLOOR_ASSOCIATE": _FLOOR_ASSOCIATE_PERMS,
}


class CurrentUser:
    """Caller identity from the JWT — set on request.state by middleware."""

    def __init__(self, id: str, email: str, tenant_id: UUID, role: str):
        self.id = id
        self.email = email
        self.tenant_id = tenant_id
        self.role = role

    def has_permission(self, permission: str) -> bool:
        return permission in PERMISSION_MATRIX.get(self.role, set())


async def require_auth(request: Request) -> CurrentUser:
    """Require authenticated user. Raise 401 if not logged in."""
    user = getattr(request.state, "user", None)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return user


def require_permission(permission: str):
    """Dependency factory: require specific RBAC permission."""

    async def _check(user: CurrentUser = Depends(require_auth)) -> CurrentUser:
        if not user.has_permission(permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: '{permission}' required. Your role: {user.role}",
            )
        return user

    return _check
