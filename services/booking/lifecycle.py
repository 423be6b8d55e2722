"""
services/booking/lifecycle.py
Booking status transitions and timeline bookkeeping.

Every status change goes through transition(), which checks the target
state's legal predecessors (BookingStatus.predecessors) before touching
the booking.
"""

import logging
from typing import Optional

from shared.models.models import Booking, BookingStatus
from shared.utils.errors import InvalidTransitionError
from shared.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def append_timeline(booking: Booking, status: str, notes: Optional[str] = None) -> dict:
    """Add a {status, timestamp, notes} entry. JSON columns need reassignment to be tracked."""
    entry = {"status": status, "timestamp": utcnow().isoformat(), "notes": notes}
    booking.timeline = [*(booking.timeline or []), entry]
    return entry


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return BookingStatus(current) in BookingStatus(target).predecessors


def ensure_transition(booking: Booking, target: BookingStatus) -> None:
    current = BookingStatus(booking.status)
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, BookingStatus(target).value)


def transition(
    booking: Booking,
    target: BookingStatus,
    notes: Optional[str] = None,
) -> Booking:
    """
    Move booking to `target` or raise InvalidTransitionError (409).
    Records the matching timestamp and a timeline entry.
    """
    ensure_transition(booking, target)
    previous = BookingStatus(booking.status)
    now = utcnow()

    booking.status = target
    match target:
        case BookingStatus.ASSIGNED:
            booking.assigned_at = now
        case BookingStatus.IN_PROGRESS:
            booking.check_in_time = now
        case BookingStatus.COMPLETED:
            booking.completed_at = now
        case BookingStatus.CANCELLED:
            booking.cancelled_at = now

    append_timeline(booking, target.value, notes)
    logger.info(
        "Booking %s: %s → %s", booking.booking_number, previous.value, target.value
    )
    return booking

