"""
tasks/celery_app.py
Celery application instance, shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4 -Q notifications,default

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "seva_booking",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.notification_tasks",
        "tasks.blacklist_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Asia/Kolkata",
    enable_utc=True,

    # Reliability: acknowledge task AFTER execution, not before
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Result expiry: keep task results for 1 hour
    result_expires=3600,

    task_max_retries=5,

    # Rate limits (per worker per second)
    task_annotations={
        "tasks.notification_tasks.deliver_notification": {"rate_limit": "30/s"},
    },

    # Routing: separate queues for different priority levels
    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications"},
        "tasks.blacklist_tasks.*": {"queue": "default"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Lift temporary sevak blacklists whose end date has passed
    "expire-sevak-blacklists": {
        "task": "tasks.blacklist_tasks.expire_sevak_blacklists",
        "schedule": crontab(minute=0),  # top of every hour
    },
}
