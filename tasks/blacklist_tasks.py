"""
tasks/blacklist_tasks.py
Periodic sweep that lifts expired temporary sevak blacklists.
Idempotent: a sevak already reinstated is no longer a candidate.
"""

import logging

from services.admin.blacklist import expire_blacklists
from tasks.base import DatabaseTask
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, base=DatabaseTask)
def expire_sevak_blacklists(self):
    """Beat task: runs every hour."""
    db = self.get_session()
    try:
        count = expire_blacklists(db)
        db.commit()
        logger.info("Expired %d sevak blacklist(s)", count)
        return count
    except Exception:
        db.rollback()
        logger.exception("expire_sevak_blacklists failed")
        raise
    finally:
        db.close()
