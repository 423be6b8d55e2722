"""
services/notification/dispatcher.py
Creates in-app notifications for workflow events and publishes them for delivery.
Respects each user's NotificationSettings (disabled types are skipped).
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.notification.events import EventPublisher, NotificationEvent, publish_after_commit
from shared.models.models import (
    Booking,
    BookingStatus,
    Notification,
    NotificationSettings,
    NotificationType,
    Payment,
    Rating,
)

logger = logging.getLogger(__name__)


STATUS_MESSAGES = {
    BookingStatus.ASSIGNED: "Your booking has been assigned to a service provider",
    BookingStatus.IN_PROGRESS: "Your service has started",
    BookingStatus.COMPLETED: "Your service has been completed",
    BookingStatus.CANCELLED: "Your booking has been cancelled",
    BookingStatus.REFUNDED: "Your payment for this booking has been refunded",
}


def _channels(settings_row: Optional[NotificationSettings]) -> list[str]:
    if settings_row is None:
        return ["push", "sms", "email"]
    channels = []
    if settings_row.push_enabled:
        channels.append("push")
    if settings_row.sms_enabled:
        channels.append("sms")
    if settings_row.email_enabled:
        channels.append("email")
    return channels


async def create_notification(
    db: AsyncSession,
    publisher: EventPublisher,
    user_id: uuid.UUID,
    notification_type: NotificationType,
    title: str,
    body: str,
    data: Optional[dict] = None,
) -> Optional[Notification]:
    """
    Store an in-app notification and publish it for channel delivery once
    the surrounding transaction commits.
    Returns None when the user has switched this notification type off.
    """
    settings_row = await db.scalar(
        select(NotificationSettings).where(NotificationSettings.user_id == user_id)
    )
    if settings_row is not None and not settings_row.allows(notification_type):
        logger.info("Notification type %s disabled for user %s", notification_type.value, user_id)
        return None

    notification = Notification(
        user_id=user_id,
        type=notification_type,
        title=title,
        body=body,
        data=data or {},
    )
    db.add(notification)
    await db.flush()

    publish_after_commit(
        db,
        publisher,
        NotificationEvent(
            notification_id=notification.id,
            user_id=user_id,
            type=notification_type.value,
            title=title,
            body=body,
            data=data or {},
            channels=_channels(settings_row),
        ),
    )
    return notification


# ── Workflow Notifications ────────────────────────────────────

def _when(booking: Booking) -> str:
    return booking.scheduled_date.strftime("%a %b %d %Y")


async def notify_booking_created(db, publisher, booking: Booking):
    return await create_notification(
        db, publisher, booking.resident_id, NotificationType.BOOKING,
        "Booking Confirmed",
        f"Your booking #{booking.booking_number} has been confirmed for {_when(booking)}",
        {"booking_id": str(booking.id)},
    )


async def notify_booking_assigned(db, publisher, booking: Booking, sevak_id: uuid.UUID):
    return await create_notification(
        db, publisher, sevak_id, NotificationType.BOOKING,
        "New Job Assigned",
        f"You have been assigned a new job for {_when(booking)} at {booking.scheduled_time}",
        {"booking_id": str(booking.id)},
    )


async def notify_booking_rescheduled(db, publisher, booking: Booking, sevak_id: uuid.UUID):
    return await create_notification(
        db, publisher, sevak_id, NotificationType.BOOKING,
        "Booking Rescheduled",
        f"Booking #{booking.booking_number} has been moved to {_when(booking)} at {booking.scheduled_time}",
        {"booking_id": str(booking.id)},
    )


async def notify_status_change(db, publisher, booking: Booking, user_id: uuid.UUID):
    status = BookingStatus(booking.status)
    return await create_notification(
        db, publisher, user_id, NotificationType.BOOKING,
        "Booking Status Update",
        STATUS_MESSAGES.get(status, "Your booking status has been updated"),
        {"booking_id": str(booking.id), "status": status.value},
    )


async def notify_payment_success(db, publisher, payment: Payment):
    return await create_notification(
        db, publisher, payment.user_id, NotificationType.PAYMENT,
        "Payment Successful",
        f"Your payment of ₹{payment.amount} has been processed successfully",
        {"payment_id": str(payment.id), "booking_id": str(payment.booking_id)},
    )


async def notify_payment_failed(db, publisher, payment: Payment):
    return await create_notification(
        db, publisher, payment.user_id, NotificationType.PAYMENT,
        "Payment Failed",
        f"Your payment of ₹{payment.amount} could not be processed. Please try again.",
        {"payment_id": str(payment.id), "booking_id": str(payment.booking_id)},
    )


async def notify_refund_processed(db, publisher, payment: Payment):
    return await create_notification(
        db, publisher, payment.user_id, NotificationType.PAYMENT,
        "Refund Processed",
        f"A refund of ₹{payment.refund_amount} has been initiated to your original payment method",
        {"payment_id": str(payment.id), "booking_id": str(payment.booking_id)},
    )


async def notify_blacklisted(db, publisher, sevak_id: uuid.UUID, reason: str):
    return await create_notification(
        db, publisher, sevak_id, NotificationType.SYSTEM,
        "Account Suspended",
        f"Your account has been suspended from taking new jobs. Reason: {reason}",
        {},
    )


async def notify_reinstated(db, publisher, sevak_id: uuid.UUID):
    return await create_notification(
        db, publisher, sevak_id, NotificationType.SYSTEM,
        "Account Reinstated",
        "Your account has been reinstated. You can take new jobs again.",
        {},
    )


async def notify_rating_received(db, publisher, rating: Rating):
    return await create_notification(
        db, publisher, rating.sevak_id, NotificationType.RATING,
        "New Rating",
        f"A resident rated your service {rating.rating}/5",
        {"rating_id": str(rating.id), "booking_id": str(rating.booking_id)},
    )
