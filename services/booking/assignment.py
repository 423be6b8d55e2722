"""
services/booking/assignment.py
Sevak assignment: admin assignment and sevak self-accept share this path.

A booking can only gain a sevak while it is pending and unassigned, and only
an active, verified, non-blacklisted sevak qualifies. Booking rows carry a
version counter, so two requests racing to assign the same booking cannot
both commit: the loser's UPDATE matches no row and raises StaleDataError,
which surfaces here as a ConflictError.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from services.booking.lifecycle import ensure_transition, transition
from services.notification.dispatcher import notify_booking_assigned, notify_status_change
from services.notification.events import EventPublisher
from shared.models.models import (
    AssignmentHistory,
    AssignmentType,
    Booking,
    BookingStatus,
    User,
    UserRole,
)
from shared.utils.errors import ConflictError, NotFoundError, SevakIneligibleError

logger = logging.getLogger(__name__)


def check_sevak_eligible(sevak: User) -> None:
    if not sevak.is_active:
        raise SevakIneligibleError("Sevak account is inactive")
    if not sevak.is_verified:
        raise SevakIneligibleError("Sevak is not verified")
    if sevak.is_blacklisted:
        raise SevakIneligibleError("Sevak is blacklisted")


async def assign_sevak(
    db: AsyncSession,
    publisher: EventPublisher,
    booking_id: uuid.UUID,
    sevak_id: uuid.UUID,
    assigned_by_id: uuid.UUID,
    assignment_type: AssignmentType = AssignmentType.MANUAL,
    notes: Optional[str] = None,
) -> Booking:
    """
    Assign `sevak_id` to a pending booking.

    Raises:
        NotFoundError: booking or sevak does not exist.
        ConflictError / InvalidTransitionError: booking already has a sevak or is not pending.
        SevakIneligibleError: sevak inactive, unverified or blacklisted.
    """
    booking = await db.get(Booking, booking_id)
    if not booking:
        raise NotFoundError("Booking not found")
    if booking.sevak_id is not None:
        raise ConflictError("Booking already has a sevak assigned")
    ensure_transition(booking, BookingStatus.ASSIGNED)

    sevak = await db.get(User, sevak_id)
    if not sevak or sevak.role != UserRole.SEVAK:
        raise NotFoundError("Sevak not found")
    check_sevak_eligible(sevak)

    booking.sevak_id = sevak.id
    booking.assigned_by_id = assigned_by_id
    booking.assignment_notes = notes
    label = "Accepted by" if assignment_type == AssignmentType.SELF_ACCEPT else "Assigned to"
    transition(booking, BookingStatus.ASSIGNED, notes or f"{label} {sevak.full_name}")

    db.add(AssignmentHistory(
        booking_id=booking.id,
        sevak_id=sevak.id,
        assigned_by_id=assigned_by_id,
        assignment_type=assignment_type,
        notes=notes,
    ))

    try:
        await db.flush()
    except StaleDataError:
        logger.warning("Concurrent assignment lost for booking %s", booking_id)
        raise ConflictError("Booking was assigned by another request")

    logger.info(
        "Booking %s assigned to sevak %s (%s)",
        booking.booking_number, sevak.id, assignment_type.value,
    )

    await notify_booking_assigned(db, publisher, booking, sevak.id)
    await notify_status_change(db, publisher, booking, booking.resident_id)
    return booking
