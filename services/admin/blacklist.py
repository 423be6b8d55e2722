"""
services/admin/blacklist.py
Sevak blacklisting rules, shared by the admin endpoints and the expiry sweep.

A blacklisted sevak cannot be assigned. Temporary blacklists expire after
their duration (BLACKLIST_DEFAULT_DAYS when none is given); permanent ones
only end on reinstatement.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config.settings import settings
from shared.models.models import BlacklistRecord, BlacklistType, User, UserRole
from shared.utils.helpers import ensure_utc, utcnow

logger = logging.getLogger(__name__)

EXPIRY_REASON = "Temporary blacklist expired"


def apply_blacklist(
    sevak: User,
    blacklisted_by_id: uuid.UUID,
    reason: str,
    blacklist_type: BlacklistType,
    duration_days: Optional[int] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> BlacklistRecord:
    """Flag the sevak and return the new (unsaved) BlacklistRecord."""
    now = now or utcnow()
    blacklist_type = BlacklistType(blacklist_type)

    end_date = None
    if blacklist_type == BlacklistType.TEMPORARY:
        duration_days = duration_days or settings.BLACKLIST_DEFAULT_DAYS
        end_date = now + timedelta(days=duration_days)
    else:
        duration_days = None

    sevak.is_blacklisted = True
    sevak.blacklist_reason = reason
    sevak.blacklist_type = blacklist_type
    sevak.blacklisted_at = now
    sevak.blacklisted_by_id = blacklisted_by_id
    sevak.blacklist_expires_at = end_date

    return BlacklistRecord(
        sevak_id=sevak.id,
        blacklisted_by_id=blacklisted_by_id,
        type=blacklist_type,
        reason=reason,
        notes=notes,
        duration_days=duration_days,
        start_date=now,
        end_date=end_date,
        is_active=True,
    )


def lift_blacklist(
    sevak: User,
    active_records: Iterable[BlacklistRecord],
    reason: str,
    reinstated_by_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
) -> None:
    """Clear every blacklist field on the sevak and close its active records."""
    now = now or utcnow()

    sevak.is_blacklisted = False
    sevak.blacklist_reason = None
    sevak.blacklist_type = None
    sevak.blacklisted_at = None
    sevak.blacklisted_by_id = None
    sevak.blacklist_expires_at = None

    for record in active_records:
        record.is_active = False
        record.reinstated_by_id = reinstated_by_id
        record.reinstatement_reason = reason
        record.reinstated_at = now


def expire_blacklists(session: Session, now: Optional[datetime] = None) -> int:
    """
    Reinstate sevaks whose temporary blacklist has run out.
    Runs on a synchronous session; returns the number of sevaks reinstated.
    """
    now = now or utcnow()
    candidates = session.execute(
        select(User).where(
            User.role == UserRole.SEVAK,
            User.is_blacklisted.is_(True),
            User.blacklist_type == BlacklistType.TEMPORARY,
            User.blacklist_expires_at.is_not(None),
        )
    ).scalars().all()

    expired = 0
    for sevak in candidates:
        if ensure_utc(sevak.blacklist_expires_at) > now:
            continue
        records = session.execute(
            select(BlacklistRecord).where(
                BlacklistRecord.sevak_id == sevak.id,
                BlacklistRecord.is_active.is_(True),
            )
        ).scalars().all()
        lift_blacklist(sevak, records, EXPIRY_REASON, now=now)
        expired += 1
        logger.info("Blacklist expired for sevak %s", sevak.id)

    session.flush()
    return expired
