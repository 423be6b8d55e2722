"""
services/notification/router.py
In-app notifications and per-user notification settings.
Channel delivery (push / SMS / email) happens in tasks/notification_tasks.py.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import AuthContext, get_auth_context
from shared.models.models import Notification, NotificationSettings, NotificationType
from shared.schemas.schemas import (
    APIResponse,
    MessageResponse,
    NotificationListData,
    NotificationResponse,
    NotificationSettingsResponse,
    NotificationSettingsUpdate,
)
from shared.utils.errors import NotFoundError
from shared.utils.helpers import paginate, utcnow

router = APIRouter(prefix="/notifications", tags=["Notifications"])


async def _unread_count(db: AsyncSession, user_id: UUID) -> int:
    count = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == user_id,
            Notification.is_read.is_(False),
        )
    )
    return count or 0


async def get_or_create_settings(db: AsyncSession, user_id: UUID) -> NotificationSettings:
    settings_row = await db.scalar(
        select(NotificationSettings).where(NotificationSettings.user_id == user_id)
    )
    if settings_row is None:
        settings_row = NotificationSettings(user_id=user_id)
        db.add(settings_row)
        await db.flush()
    return settings_row


# ── Notifications ─────────────────────────────────────────────

@router.get("", response_model=APIResponse[NotificationListData])
async def get_my_notifications(
    is_read: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Get the caller's in-app notifications, newest first."""
    query = (
        select(Notification)
        .where(Notification.user_id == auth.user_id)
        .order_by(Notification.created_at.desc())
    )
    if is_read is not None:
        query = query.where(Notification.is_read.is_(is_read))

    notifications, meta = await paginate(db, query, page, limit)
    return APIResponse(
        message="Notifications retrieved successfully",
        data={
            "items": [NotificationResponse.model_validate(n) for n in notifications],
            "pagination": meta,
            "unread_count": await _unread_count(db, auth.user_id),
        },
    )


@router.get("/unread-count", response_model=APIResponse[dict])
async def unread_count(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return APIResponse(
        message="Unread count retrieved successfully",
        data={"unread_count": await _unread_count(db, auth.user_id)},
    )


@router.patch("/read-all", response_model=MessageResponse)
async def mark_all_read(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await db.execute(
        update(Notification)
        .where(Notification.user_id == auth.user_id, Notification.is_read.is_(False))
        .values(is_read=True, read_at=utcnow())
    )
    await db.commit()
    return MessageResponse(message="All notifications marked as read")


@router.patch("/{notification_id}/read", response_model=APIResponse[NotificationResponse])
async def mark_read(
    notification_id: UUID,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    notification = await db.scalar(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == auth.user_id,
        )
    )
    if not notification:
        raise NotFoundError("Notification not found")

    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        await db.commit()

    return APIResponse(message="Marked as read", data=NotificationResponse.model_validate(notification))


# ── Settings ──────────────────────────────────────────────────

@router.get("/settings", response_model=APIResponse[NotificationSettingsResponse])
async def get_settings(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    settings_row = await get_or_create_settings(db, auth.user_id)
    await db.commit()
    return APIResponse(
        message="Notification settings retrieved successfully",
        data=NotificationSettingsResponse.model_validate(settings_row),
    )


@router.put("/settings", response_model=APIResponse[NotificationSettingsResponse])
async def update_settings(
    data: NotificationSettingsUpdate,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Partial update: omitted channels and types keep their current value."""
    settings_row = await get_or_create_settings(db, auth.user_id)

    for channel in ("push_enabled", "email_enabled", "sms_enabled"):
        value = getattr(data, channel)
        if value is not None:
            setattr(settings_row, channel, value)

    if data.enabled_types:
        merged = dict(settings_row.enabled_types or {})
        for key, enabled in data.enabled_types.items():
            merged[NotificationType(key).value] = enabled
        settings_row.enabled_types = merged

    await db.commit()
    return APIResponse(
        message="Notification settings updated successfully",
        data=NotificationSettingsResponse.model_validate(settings_row),
    )
