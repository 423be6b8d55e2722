"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.

The bearer token is validated once here and turned into an AuthContext,
which handlers receive explicitly as a parameter. Admin access is checked
against a closed Permission set granted per AdminRole.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from shared.models.models import AdminRole, User, UserRole
from shared.utils.errors import ForbiddenError, UnauthorizedError
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)


# ── Permissions ───────────────────────────────────────────────

class Permission(str, Enum):
    ANALYTICS_VIEW = "analytics:view"
    USERS_VIEW = "users:view"
    USERS_EDIT = "users:edit"
    USERS_APPROVE = "users:approve"
    BOOKINGS_VIEW = "bookings:view"
    BOOKINGS_EDIT = "bookings:edit"
    PAYMENTS_VIEW = "payments:view"
    PAYMENTS_REFUND = "payments:refund"
    SETTINGS_MANAGE = "settings:manage"


def permissions_for(admin_role: Optional[AdminRole]) -> frozenset[Permission]:
    """Capability set granted to an admin role. Unknown or missing roles get nothing."""
    match admin_role:
        case AdminRole.SUPER_ADMIN:
            return frozenset(Permission)
        case AdminRole.OPERATIONS:
            return frozenset({
                Permission.ANALYTICS_VIEW,
                Permission.USERS_VIEW,
                Permission.USERS_EDIT,
                Permission.USERS_APPROVE,
                Permission.BOOKINGS_VIEW,
                Permission.BOOKINGS_EDIT,
            })
        case AdminRole.SUPPORT:
            return frozenset({
                Permission.USERS_VIEW,
                Permission.BOOKINGS_VIEW,
                Permission.BOOKINGS_EDIT,
            })
        case AdminRole.FINANCE:
            return frozenset({
                Permission.ANALYTICS_VIEW,
                Permission.BOOKINGS_VIEW,
                Permission.PAYMENTS_VIEW,
                Permission.PAYMENTS_REFUND,
            })
        case _:
            return frozenset()


# ── Auth Context ──────────────────────────────────────────────

@dataclass(frozen=True)
class AuthContext:
    """Who is calling, resolved from the access token for one request."""
    user: User
    jti: str
    token_payload: dict = field(repr=False)
    request_id: Optional[str] = None
    ip_address: Optional[str] = None

    @property
    def user_id(self) -> uuid.UUID:
        return self.user.id

    @property
    def role(self) -> UserRole:
        return UserRole(self.user.role)

    @property
    def admin_role(self) -> Optional[AdminRole]:
        return AdminRole(self.user.admin_role) if self.user.admin_role else None

    @property
    def permissions(self) -> frozenset[Permission]:
        if self.role != UserRole.ADMIN:
            return frozenset()
        return permissions_for(self.admin_role)

    def has(self, permission: Permission) -> bool:
        return permission in self.permissions

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


async def get_token_payload(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_redis),
) -> dict:
    """
    Extract and validate JWT from Authorization header.
    Checks deny-list in Redis to handle revoked tokens (logout).
    """
    if not credentials:
        raise UnauthorizedError("Authentication required")

    try:
        payload = verify_access_token(credentials.credentials)
    except JWTError:
        raise UnauthorizedError("Invalid or expired token")

    jti = payload.get("jti")
    if jti and await RedisCache(redis).is_token_revoked(jti):
        raise UnauthorizedError("Token has been revoked")

    return payload


async def get_auth_context(
    request: Request,
    payload: dict = Depends(get_token_payload),
    db: AsyncSession = Depends(get_db),
) -> AuthContext:
    """Load the calling User and wrap it in an AuthContext."""
    try:
        user_id = uuid.UUID(payload["sub"])
    except (KeyError, ValueError):
        raise UnauthorizedError("Invalid token subject")

    user = await db.scalar(select(User).where(User.id == user_id))
    if not user:
        raise UnauthorizedError("User not found")
    if not user.is_active:
        raise ForbiddenError("User account is inactive")

    return AuthContext(
        user=user,
        jti=payload.get("jti", ""),
        token_payload=payload,
        request_id=getattr(request.state, "request_id", None),
        ip_address=request.client.host if request.client else None,
    )


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(
        self,
        auth: AuthContext = Depends(get_auth_context),
    ) -> AuthContext:
        if auth.role not in self.roles:
            raise ForbiddenError(f"Required role: {[r.value for r in self.roles]}")
        return auth


class PermissionRequired:
    """Dependency factory: caller must be an admin whose role grants `permission`."""

    def __init__(self, permission: Permission):
        self.permission = permission

    async def __call__(
        self,
        auth: AuthContext = Depends(get_auth_context),
    ) -> AuthContext:
        if not auth.is_admin:
            raise ForbiddenError("Admin access required")
        if not auth.has(self.permission):
            raise ForbiddenError(f"Missing permission: {self.permission.value}")
        return auth


# Convenience role dependencies
require_resident = RoleRequired(UserRole.RESIDENT)
require_sevak = RoleRequired(UserRole.SEVAK)
require_admin = RoleRequired(UserRole.ADMIN)
