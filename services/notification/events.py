"""
services/notification/events.py
Outbound notification events.

Workflow code stores the in-app Notification row and queues a NotificationEvent
on the database session. Queued events reach their EventPublisher only once the
session commits, so a delivery worker always finds the row; a rollback drops
them. Delivery over push / SMS / email happens elsewhere (Celery, see
tasks/notification_tasks.py) and is retried there.
"""

import logging
import uuid
from typing import Any, Dict, List, Protocol

from pydantic import BaseModel, Field
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

PENDING_EVENTS_KEY = "pending_notification_events"


class NotificationEvent(BaseModel):
    notification_id: uuid.UUID
    user_id: uuid.UUID
    type: str
    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)
    channels: List[str] = Field(default_factory=list)   # "push" | "sms" | "email"


class EventPublisher(Protocol):
    def publish(self, event: NotificationEvent) -> None: ...


class CeleryEventPublisher:
    """Queues each event onto the notifications Celery queue."""

    def publish(self, event: NotificationEvent) -> None:
        from tasks.notification_tasks import deliver_notification

        deliver_notification.delay(event.model_dump(mode="json"))


_publisher = CeleryEventPublisher()


def get_event_publisher() -> EventPublisher:
    """FastAPI dependency. Tests override this with an in-memory publisher."""
    return _publisher


def publish_safely(publisher: EventPublisher, event: NotificationEvent) -> bool:
    """Publish an event; broker failures are logged and never reach the caller."""
    try:
        publisher.publish(event)
        return True
    except Exception:
        logger.exception(
            "Failed to publish notification %s for user %s",
            event.notification_id,
            event.user_id,
        )
        return False


def publish_after_commit(db: AsyncSession, publisher: EventPublisher, event: NotificationEvent) -> None:
    """Hold `event` until `db` commits."""
    db.sync_session.info.setdefault(PENDING_EVENTS_KEY, []).append((publisher, event))


# ── Session hooks ─────────────────────────────────────────────

@event.listens_for(Session, "after_commit")
def _publish_pending_events(session: Session) -> None:
    for publisher, pending in session.info.pop(PENDING_EVENTS_KEY, []):
        publish_safely(publisher, pending)


@event.listens_for(Session, "after_rollback")
def _discard_pending_events(session: Session) -> None:
    dropped = session.info.pop(PENDING_EVENTS_KEY, [])
    if dropped:
        logger.info("Discarded %d notification event(s) after rollback", len(dropped))
