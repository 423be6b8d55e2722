"""
services/auth/router.py
Password authentication endpoints.
Implements: Register → Login → JWT issue → Refresh (rotation) → Logout
"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Body, Cookie, Depends, Request, Response, status
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from shared.middleware.auth import AuthContext, get_auth_context
from shared.models.models import NotificationSettings, RefreshToken, User
from shared.schemas.schemas import (
    APIResponse,
    AuthResponse,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from shared.utils.errors import ConflictError, ForbiddenError, UnauthorizedError
from shared.utils.helpers import ensure_utc, utcnow
from shared.utils.security import (
    create_access_token,
    create_refresh_token,
    get_token_remaining_ttl,
    hash_password,
    hash_token,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])

REFRESH_COOKIE_PATH = "/auth/refresh"


# ── Helper ────────────────────────────────────────────────────

async def _issue_tokens(
    user: User,
    db: AsyncSession,
    response: Response,
    request: Request,
) -> tuple[str, str]:
    """Issue access + refresh tokens. Store refresh token in DB and set cookie."""
    access_token, _ = create_access_token(
        user_id=str(user.id),
        role=user.role.value if hasattr(user.role, "value") else user.role,
        email=user.email,
    )

    raw_refresh, hashed_refresh = create_refresh_token()
    db.add(RefreshToken(
        user_id=user.id,
        token_hash=hashed_refresh,
        expires_at=utcnow() + timedelta(days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS),
        user_agent=request.headers.get("user-agent"),
        ip_address=request.client.host if request.client else None,
    ))

    # httpOnly cookie for web clients; mobile clients use the body
    response.set_cookie(
        key="refresh_token",
        value=raw_refresh,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS * 86400,
        path=REFRESH_COOKIE_PATH,
    )
    return access_token, raw_refresh


def _auth_response(user: User, access_token: str, raw_refresh: str) -> AuthResponse:
    return AuthResponse(
        access_token=access_token,
        refresh_token=raw_refresh,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserResponse.model_validate(user),
    )


# ── Endpoints ─────────────────────────────────────────────────

@router.post(
    "/register",
    response_model=APIResponse[AuthResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Register a resident, sevak or vendor",
)
async def register(
    data: RegisterRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    existing = await db.scalar(
        select(User).where(or_(User.email == data.email.lower(), User.phone_number == data.phone_number))
    )
    if existing:
        raise ConflictError("User already exists with this email or phone number")

    user = User(
        full_name=data.full_name,
        email=data.email.lower(),
        phone_number=data.phone_number,
        password_hash=hash_password(data.password),
        role=data.role,
        last_login=utcnow(),
    )
    db.add(user)
    await db.flush()
    db.add(NotificationSettings(user_id=user.id))

    access_token, raw_refresh = await _issue_tokens(user, db, response, request)
    await db.commit()

    logger.info("Registered %s %s", user.role, user.id)
    return APIResponse(
        message="Registration successful",
        data=_auth_response(user, access_token, raw_refresh),
    )


@router.post("/login", response_model=APIResponse[AuthResponse], summary="Login with email or phone")
async def login(
    data: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    identifier = data.identifier.strip()
    user = await db.scalar(
        select(User).where(or_(User.email == identifier.lower(), User.phone_number == identifier))
    )
    if not user or not verify_password(data.password, user.password_hash):
        raise UnauthorizedError("Invalid credentials")
    if not user.is_active:
        raise ForbiddenError("Account is disabled")

    user.last_login = utcnow()
    access_token, raw_refresh = await _issue_tokens(user, db, response, request)
    await db.commit()

    return APIResponse(message="Login successful", data=_auth_response(user, access_token, raw_refresh))


@router.post("/refresh", response_model=APIResponse[TokenResponse], summary="Refresh access token")
async def refresh_token(
    request: Request,
    response: Response,
    data: Optional[RefreshRequest] = Body(None),
    # Accept from cookie (web) or request body (mobile)
    refresh_token_cookie: Optional[str] = Cookie(None, alias="refresh_token"),
    db: AsyncSession = Depends(get_db),
):
    """
    Issue a new access token using a valid refresh token.
    Implements refresh token rotation: the old token is revoked.
    """
    raw_token = data.refresh_token if data else refresh_token_cookie
    if not raw_token:
        raise UnauthorizedError("Refresh token required")

    db_token = await db.scalar(
        select(RefreshToken).where(
            RefreshToken.token_hash == hash_token(raw_token),
            RefreshToken.is_revoked.is_(False),
        )
    )
    if not db_token:
        raise UnauthorizedError("Invalid or revoked refresh token")
    if ensure_utc(db_token.expires_at) < utcnow():
        raise UnauthorizedError("Refresh token expired")

    user = await db.scalar(select(User).where(User.id == db_token.user_id))
    if not user or not user.is_active:
        raise UnauthorizedError("User not found or inactive")

    db_token.is_revoked = True
    access_token, raw_refresh = await _issue_tokens(user, db, response, request)
    await db.commit()

    return APIResponse(
        message="Token refreshed successfully",
        data=TokenResponse(
            access_token=access_token,
            refresh_token=raw_refresh,
            expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        ),
    )


@router.post("/logout", response_model=MessageResponse, summary="Logout user")
async def logout(
    response: Response,
    data: Optional[LogoutRequest] = Body(None),
    refresh_token_cookie: Optional[str] = Cookie(None, alias="refresh_token"),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Revoke refresh token + add JWT to deny-list in Redis.
    Clears httpOnly cookie.
    """
    ttl = get_token_remaining_ttl(auth.token_payload)
    if auth.jti and ttl > 0:
        try:
            await RedisCache(redis).revoke_token(auth.jti, ttl)
        except Exception as e:
            # Best effort: the refresh token is still revoked below
            logger.error("Failed to deny-list token %s: %s", auth.jti, e)

    raw_refresh = (data.refresh_token if data else None) or refresh_token_cookie
    if raw_refresh:
        db_token = await db.scalar(
            select(RefreshToken).where(
                RefreshToken.token_hash == hash_token(raw_refresh),
                RefreshToken.user_id == auth.user_id,
            )
        )
        if db_token:
            db_token.is_revoked = True

    response.delete_cookie(key="refresh_token", path=REFRESH_COOKIE_PATH)
    await db.commit()

    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=APIResponse[UserResponse], summary="Get current user")
async def get_me(auth: AuthContext = Depends(get_auth_context)):
    """Returns the authenticated user's profile."""
    return APIResponse(message="User retrieved successfully", data=UserResponse.model_validate(auth.user))
