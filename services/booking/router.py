"""
services/booking/router.py
Resident-facing booking endpoints: create, list, view, reschedule, cancel,
and the available-slots lookup.
Status changes go through services/booking/lifecycle.py.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.booking.lifecycle import append_timeline, transition
from services.notification.dispatcher import (
    notify_booking_created,
    notify_booking_rescheduled,
    notify_status_change,
)
from services.notification.events import EventPublisher, get_event_publisher
from shared.middleware.auth import AuthContext, Permission, get_auth_context, require_resident
from shared.models.models import (
    Booking,
    BookingPaymentStatus,
    BookingStatus,
    Service,
    UserRole,
)
from shared.schemas.schemas import (
    APIResponse,
    AvailableSlotsResponse,
    BookingCancelRequest,
    BookingCreateRequest,
    BookingRescheduleRequest,
    BookingResponse,
    PaginatedData,
    ResidentBookingResponse,
)
from shared.utils.errors import ConflictError, ForbiddenError, NotFoundError
from shared.utils.helpers import generate_booking_number, generate_otp, paginate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])

RESCHEDULABLE = {BookingStatus.PENDING, BookingStatus.ASSIGNED}


# ── Helpers ───────────────────────────────────────────────────

async def get_booking_or_404(booking_id: UUID, db: AsyncSession) -> Booking:
    booking = await db.scalar(select(Booking).where(Booking.id == booking_id))
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


def _ensure_owner(booking: Booking, auth: AuthContext) -> None:
    if booking.resident_id != auth.user_id:
        raise ForbiddenError("You do not have permission to modify this booking")


def serialize_booking(booking: Booking, auth: AuthContext) -> BookingResponse:
    """Residents see their own check-in OTP; everyone else gets the plain view."""
    if auth.role == UserRole.RESIDENT and booking.resident_id == auth.user_id:
        return ResidentBookingResponse.model_validate(booking)
    return BookingResponse.model_validate(booking)


def all_slots() -> list[str]:
    return [f"{hour:02d}:00" for hour in range(settings.SLOT_START_HOUR, settings.SLOT_END_HOUR + 1)]


async def booked_slots(db: AsyncSession, service_id: UUID, on: date) -> set[str]:
    result = await db.execute(
        select(Booking.scheduled_time).where(
            Booking.service_id == service_id,
            Booking.scheduled_date == on,
            Booking.status.not_in([BookingStatus.CANCELLED, BookingStatus.REFUNDED]),
        )
    )
    return set(result.scalars().all())


# ── Create ────────────────────────────────────────────────────

@router.post(
    "",
    response_model=APIResponse[ResidentBookingResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_booking(
    data: BookingCreateRequest,
    auth: AuthContext = Depends(require_resident),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    """
    Create a pending booking for a catalog service.
    Price is taken from the service; the check-in OTP is generated here.
    """
    service = await db.scalar(select(Service).where(Service.id == data.service_id))
    if not service or not service.is_active:
        raise NotFoundError("Service not found")

    booking = Booking(
        booking_number=generate_booking_number(),
        resident_id=auth.user_id,
        service_id=service.id,
        scheduled_date=data.scheduled_date,
        scheduled_time=data.scheduled_time,
        estimated_duration=service.duration_minutes,
        status=BookingStatus.PENDING,
        address=data.address.model_dump(),
        special_instructions=data.special_instructions,
        base_price=service.base_price,
        additional_charges=Decimal("0.00"),
        discount=Decimal("0.00"),
        check_in_otp=generate_otp(settings.CHECK_IN_OTP_LENGTH),
        timeline=[],
        before_images=[],
        after_images=[],
    )
    booking.recompute_total()
    append_timeline(booking, BookingStatus.PENDING.value, "Booking created")
    db.add(booking)

    service.booking_count = (service.booking_count or 0) + 1
    await db.flush()

    await notify_booking_created(db, publisher, booking)
    await db.commit()

    logger.info("Booking %s created by resident %s", booking.booking_number, auth.user_id)
    return APIResponse(
        message="Booking created successfully",
        data=ResidentBookingResponse.model_validate(booking),
    )


# ── Read ──────────────────────────────────────────────────────

@router.get("/my-bookings", response_model=APIResponse[PaginatedData[ResidentBookingResponse]])
async def get_my_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    auth: AuthContext = Depends(require_resident),
    db: AsyncSession = Depends(get_db),
):
    query = (
        select(Booking)
        .where(Booking.resident_id == auth.user_id)
        .order_by(Booking.created_at.desc())
    )
    if status_filter:
        query = query.where(Booking.status == status_filter)

    bookings, meta = await paginate(db, query, page, limit)
    return APIResponse(
        message="Bookings retrieved successfully",
        data={
            "items": [ResidentBookingResponse.model_validate(b) for b in bookings],
            "pagination": meta,
        },
    )


@router.get("/available-slots", response_model=APIResponse[AvailableSlotsResponse])
async def get_available_slots(
    service_id: UUID = Query(...),
    on: date = Query(..., alias="date"),
    db: AsyncSession = Depends(get_db),
):
    """Hourly slots between SLOT_START_HOUR and SLOT_END_HOUR not already booked for the service."""
    taken = await booked_slots(db, service_id, on)
    return APIResponse(
        message="Available slots retrieved successfully",
        data=AvailableSlotsResponse(scheduled_date=on, slots=[s for s in all_slots() if s not in taken]),
    )


@router.get("/{booking_id}", response_model=APIResponse[ResidentBookingResponse])
async def get_booking(
    booking_id: UUID,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Visible to the owning resident, the assigned sevak, and admins with bookings:view."""
    booking = await get_booking_or_404(booking_id, db)

    allowed = (
        booking.resident_id == auth.user_id
        or (booking.sevak_id is not None and booking.sevak_id == auth.user_id)
        or auth.has(Permission.BOOKINGS_VIEW)
    )
    if not allowed:
        raise ForbiddenError("You do not have permission to view this booking")

    return APIResponse(message="Booking retrieved successfully", data=serialize_booking(booking, auth))


# ── Reschedule / Cancel ───────────────────────────────────────

@router.patch("/{booking_id}/reschedule", response_model=APIResponse[ResidentBookingResponse])
async def reschedule_booking(
    booking_id: UUID,
    data: BookingRescheduleRequest,
    auth: AuthContext = Depends(require_resident),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    booking = await get_booking_or_404(booking_id, db)
    _ensure_owner(booking, auth)

    if BookingStatus(booking.status) not in RESCHEDULABLE:
        raise ConflictError(f"Cannot reschedule a booking that is '{BookingStatus(booking.status).value}'")

    booking.scheduled_date = data.new_date
    booking.scheduled_time = data.new_time
    booking.recompute_total()
    append_timeline(booking, "rescheduled", f"Rescheduled to {data.new_date} at {data.new_time}")
    await db.flush()

    if booking.sevak_id:
        await notify_booking_rescheduled(db, publisher, booking, booking.sevak_id)

    await db.commit()
    return APIResponse(
        message="Booking rescheduled successfully",
        data=ResidentBookingResponse.model_validate(booking),
    )


@router.patch("/{booking_id}/cancel", response_model=APIResponse[ResidentBookingResponse])
async def cancel_booking(
    booking_id: UUID,
    data: BookingCancelRequest,
    auth: AuthContext = Depends(require_resident),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    """
    Cancel any booking that has not been completed.
    A paid booking records the expected refund; the refund itself is an admin action.
    """
    booking = await get_booking_or_404(booking_id, db)
    _ensure_owner(booking, auth)

    transition(booking, BookingStatus.CANCELLED, f"Cancelled by resident: {data.reason}")
    booking.cancelled_by_id = auth.user_id
    booking.cancellation_reason = data.reason
    if booking.payment_status == BookingPaymentStatus.PAID:
        booking.refund_amount = booking.total_amount
        booking.refund_status = "pending"
    await db.flush()

    if booking.sevak_id:
        await notify_status_change(db, publisher, booking, booking.sevak_id)

    await db.commit()
    return APIResponse(
        message="Booking cancelled successfully",
        data=ResidentBookingResponse.model_validate(booking),
    )
