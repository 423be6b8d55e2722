"""
tasks/notification_tasks.py
Celery tasks for multi-channel notification delivery.

The API stores the in-app Notification and publishes a NotificationEvent
(services/notification/events.py). deliver_notification fans it out to push,
SMS and email. Channels already marked sent on the Notification row are
skipped, so retries never deliver the same channel twice.
"""

import logging
from typing import List

from sqlalchemy import select
from sqlalchemy.orm import Session

from config.settings import settings
from services.notification.events import NotificationEvent
from tasks.base import DatabaseTask
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

CHANNEL_FLAGS = {
    "push": "sent_push",
    "sms": "sent_sms",
    "email": "sent_email",
}


# ── Core Delivery Functions ────────────────────────────────────────────────────

def _send_fcm(fcm_token: str, title: str, body: str, data: dict = None) -> bool:
    """Send FCM push notification. Returns True on success."""
    try:
        import firebase_admin
        from firebase_admin import credentials, messaging

        if not firebase_admin._apps:
            firebase_admin.initialize_app(credentials.Certificate(settings.FIREBASE_CREDENTIALS_PATH))

        message = messaging.Message(
            notification=messaging.Notification(title=title, body=body),
            data={k: str(v) for k, v in (data or {}).items()},
            token=fcm_token,
            android=messaging.AndroidConfig(priority="high"),
            apns=messaging.APNSConfig(
                payload=messaging.APNSPayload(
                    aps=messaging.Aps(badge=1, sound="default")
                )
            ),
        )
        messaging.send(message)
        return True
    except Exception as e:
        logger.warning("FCM send failed: %s", e)
        return False


def _send_sms(phone: str, body: str) -> bool:
    """Send SMS via Twilio. Returns True on success."""
    try:
        from twilio.rest import Client

        client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        client.messages.create(
            body=body,
            from_=settings.TWILIO_FROM_NUMBER,
            to=phone if phone.startswith("+") else f"+91{phone}",
        )
        return True
    except Exception as e:
        logger.warning("SMS send failed: %s", e)
        return False


def _send_email(to_email: str, to_name: str, subject: str, html_body: str) -> bool:
    """Send transactional email via Resend. Returns True on success."""
    try:
        import resend

        resend.api_key = settings.RESEND_API_KEY
        resend.Emails.send({
            "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
            "to": [f"{to_name} <{to_email}>"],
            "subject": subject,
            "html": html_body,
        })
        return True
    except Exception as e:
        logger.warning("Email send failed: %s", e)
        return False


def _email_html(title: str, body: str) -> str:
    return f"""
    <div style="font-family: sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
        <h2 style="color: #333;">{title}</h2>
        <p style="color: #666; line-height: 1.6;">{body}</p>
        <p style="color: #999; font-size: 12px; margin-top: 24px;">
            You received this email because you have an account on {settings.APP_NAME}.
        </p>
    </div>
    """


def _channel_configured(channel: str) -> bool:
    match channel:
        case "sms":
            return bool(settings.TWILIO_ACCOUNT_SID and settings.TWILIO_FROM_NUMBER)
        case "email":
            return bool(settings.RESEND_API_KEY)
        case _:
            return True


# ── Delivery ───────────────────────────────────────────────────────────────────

def deliver_event(session: Session, event: NotificationEvent) -> List[str]:
    """
    Deliver one event over its channels and record what went out.
    Returns the channels that failed and should be retried.
    """
    from shared.models.models import Notification, User

    notification = session.execute(
        select(Notification).where(Notification.id == event.notification_id)
    ).scalar_one_or_none()
    user = session.execute(select(User).where(User.id == event.user_id)).scalar_one_or_none()
    if not notification or not user:
        logger.warning("deliver_event: notification %s or user %s not found", event.notification_id, event.user_id)
        return []

    failed = []
    for channel in event.channels:
        flag = CHANNEL_FLAGS.get(channel)
        if flag is None or getattr(notification, flag) or not _channel_configured(channel):
            continue

        match channel:
            case "push":
                if not user.fcm_token:
                    continue
                sent = _send_fcm(user.fcm_token, event.title, event.body, {**event.data, "type": event.type})
            case "sms":
                sent = _send_sms(user.phone_number, f"{event.title}: {event.body}")
            case "email":
                sent = _send_email(user.email, user.full_name, event.title, _email_html(event.title, event.body))

        if sent:
            setattr(notification, flag, True)
        else:
            failed.append(channel)

    session.flush()
    return failed


@celery_app.task(bind=True, base=DatabaseTask, max_retries=5, default_retry_delay=60)
def deliver_notification(self, event: dict):
    """
    Deliver a NotificationEvent. Failed channels are retried with
    exponential backoff; channels that already succeeded are not resent.
    """
    parsed = NotificationEvent.model_validate(event)
    db = self.get_session()
    try:
        failed = deliver_event(db, parsed)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.exception("deliver_notification failed for %s", parsed.notification_id)
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))
    finally:
        db.close()

    if failed:
        logger.info("Retrying channels %s for notification %s", failed, parsed.notification_id)
        raise self.retry(countdown=60 * (2 ** self.request.retries))
