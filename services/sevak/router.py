"""
services/sevak/router.py
Sevak job workflow: job lists, self-accept, OTP check-in, check-out,
completion with photos, and earnings.
"""

import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.booking.assignment import assign_sevak, check_sevak_eligible
from services.booking.lifecycle import append_timeline, transition
from services.booking.router import get_booking_or_404
from services.notification.dispatcher import notify_status_change
from services.notification.events import EventPublisher, get_event_publisher
from shared.middleware.auth import AuthContext, require_sevak
from shared.models.models import (
    AssignmentType,
    Booking,
    BookingStatus,
    Earning,
    EarningStatus,
)
from shared.schemas.schemas import (
    APIResponse,
    BookingResponse,
    CheckInRequest,
    CheckOutRequest,
    CheckOutResponse,
    EarningResponse,
    EarningsSummary,
    PaginatedData,
    SevakJobsData,
)
from shared.utils.errors import ConflictError, ForbiddenError, ValidationError
from shared.utils.helpers import ensure_utc, paginate, utcnow
from shared.utils.media import save_images

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sevak", tags=["Sevak"])

JOB_PHOTO_FOLDER = "job-photos"
TWO_PLACES = Decimal("0.01")


# ── Helpers ───────────────────────────────────────────────────

async def _get_own_job(booking_id: UUID, auth: AuthContext, db: AsyncSession) -> Booking:
    booking = await get_booking_or_404(booking_id, db)
    if booking.sevak_id != auth.user_id:
        raise ForbiddenError("You are not assigned to this booking")
    return booking


def split_commission(amount: Decimal) -> tuple[Decimal, Decimal]:
    """Return (commission, net) for a job total using SEVAK_COMMISSION_PERCENT."""
    amount = Decimal(amount)
    rate = Decimal(str(settings.SEVAK_COMMISSION_PERCENT)) / 100
    commission = (amount * rate).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    return commission, amount - commission


# ── Job Lists ─────────────────────────────────────────────────

@router.get("/jobs", response_model=APIResponse[SevakJobsData])
async def get_jobs(
    on: Optional[date] = Query(None, alias="date"),
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    auth: AuthContext = Depends(require_sevak),
    db: AsyncSession = Depends(get_db),
):
    """Jobs assigned to the caller, with today / upcoming counts."""
    query = (
        select(Booking)
        .where(Booking.sevak_id == auth.user_id)
        .order_by(Booking.scheduled_date.asc(), Booking.scheduled_time.asc())
    )
    if on:
        query = query.where(Booking.scheduled_date == on)
    if status_filter:
        query = query.where(Booking.status == status_filter)

    jobs, meta = await paginate(db, query, page, limit)

    today = utcnow().date()
    today_count = await db.scalar(
        select(func.count(Booking.id)).where(
            Booking.sevak_id == auth.user_id,
            Booking.scheduled_date == today,
        )
    )
    upcoming_count = await db.scalar(
        select(func.count(Booking.id)).where(
            Booking.sevak_id == auth.user_id,
            Booking.scheduled_date >= today,
            Booking.status.in_([BookingStatus.PENDING, BookingStatus.ASSIGNED]),
        )
    )

    return APIResponse(
        message="Jobs retrieved successfully",
        data=SevakJobsData(
            items=[BookingResponse.model_validate(j) for j in jobs],
            pagination=meta,
            today_count=today_count or 0,
            upcoming_count=upcoming_count or 0,
        ),
    )


@router.get("/available-jobs", response_model=APIResponse[PaginatedData[BookingResponse]])
async def get_available_jobs(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    auth: AuthContext = Depends(require_sevak),
    db: AsyncSession = Depends(get_db),
):
    """Pending, unassigned bookings scheduled from today on."""
    query = (
        select(Booking)
        .where(
            Booking.status == BookingStatus.PENDING,
            Booking.sevak_id.is_(None),
            Booking.scheduled_date >= utcnow().date(),
        )
        .order_by(Booking.scheduled_date.asc(), Booking.scheduled_time.asc())
    )
    jobs, meta = await paginate(db, query, page, limit)
    return APIResponse(
        message="Available jobs retrieved successfully",
        data={"items": [BookingResponse.model_validate(j) for j in jobs], "pagination": meta},
    )


@router.get("/jobs/{booking_id}", response_model=APIResponse[BookingResponse])
async def get_job(
    booking_id: UUID,
    auth: AuthContext = Depends(require_sevak),
    db: AsyncSession = Depends(get_db),
):
    booking = await _get_own_job(booking_id, auth, db)
    return APIResponse(message="Job retrieved successfully", data=BookingResponse.model_validate(booking))


# ── Accept ────────────────────────────────────────────────────

@router.post("/jobs/{booking_id}/accept", response_model=APIResponse[BookingResponse])
async def accept_job(
    booking_id: UUID,
    auth: AuthContext = Depends(require_sevak),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    """Self-assign a pending job. Same rules as admin assignment."""
    check_sevak_eligible(auth.user)

    booking = await get_booking_or_404(booking_id, db)
    if booking.scheduled_date < utcnow().date():
        raise ConflictError("Cannot accept a job scheduled in the past")

    booking = await assign_sevak(
        db, publisher,
        booking_id=booking.id,
        sevak_id=auth.user_id,
        assigned_by_id=auth.user_id,
        assignment_type=AssignmentType.SELF_ACCEPT,
    )
    await db.commit()
    return APIResponse(message="Job accepted successfully", data=BookingResponse.model_validate(booking))


# ── Check-in / Check-out ──────────────────────────────────────

@router.post("/check-in", response_model=APIResponse[BookingResponse])
async def check_in(
    data: CheckInRequest,
    auth: AuthContext = Depends(require_sevak),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    """Start the job. The resident reads the OTP out to the sevak on arrival."""
    booking = await _get_own_job(data.booking_id, auth, db)
    if booking.check_in_otp != data.otp:
        raise ValidationError("Invalid OTP")

    transition(booking, BookingStatus.IN_PROGRESS, "Sevak checked in")
    await db.flush()
    await notify_status_change(db, publisher, booking, booking.resident_id)
    await db.commit()

    return APIResponse(message="Checked in successfully", data=BookingResponse.model_validate(booking))


@router.post("/check-out", response_model=APIResponse[CheckOutResponse])
async def check_out(
    data: CheckOutRequest,
    auth: AuthContext = Depends(require_sevak),
    db: AsyncSession = Depends(get_db),
):
    """Record the check-out time. Status stays in-progress until the job is completed."""
    booking = await _get_own_job(data.booking_id, auth, db)
    if booking.status != BookingStatus.IN_PROGRESS:
        raise ConflictError("Job is not in progress")

    now = utcnow()
    started = ensure_utc(booking.check_in_time) or now
    duration = round((now - started).total_seconds() / 60)

    booking.check_out_time = now
    append_timeline(booking, "checked-out", f"Sevak checked out. Duration: {duration} minutes")
    await db.commit()

    return APIResponse(
        message="Checked out successfully",
        data=CheckOutResponse(
            booking=BookingResponse.model_validate(booking),
            checked_out_at=now,
            duration_minutes=duration,
        ),
    )


# ── Complete ──────────────────────────────────────────────────

@router.patch("/jobs/{booking_id}/complete", response_model=APIResponse[BookingResponse])
async def complete_job(
    booking_id: UUID,
    completion_notes: Optional[str] = Form(None, max_length=2000),
    before_images: List[UploadFile] = File(default=[]),
    after_images: List[UploadFile] = File(default=[]),
    auth: AuthContext = Depends(require_sevak),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    """
    Complete an in-progress job with optional before/after photos.
    Creates a pending Earning net of platform commission.
    """
    booking = await _get_own_job(booking_id, auth, db)
    transition(booking, BookingStatus.COMPLETED, "Job completed by Sevak")

    if len(before_images) > settings.MAX_JOB_PHOTOS or len(after_images) > settings.MAX_JOB_PHOTOS:
        raise ValidationError(f"At most {settings.MAX_JOB_PHOTOS} images per set are allowed")
    if before_images:
        booking.before_images = await save_images(before_images, JOB_PHOTO_FOLDER)
    if after_images:
        booking.after_images = await save_images(after_images, JOB_PHOTO_FOLDER)
    booking.completion_notes = completion_notes

    commission, net = split_commission(booking.total_amount)
    db.add(Earning(
        sevak_id=auth.user_id,
        booking_id=booking.id,
        amount=Decimal(booking.total_amount),
        commission=commission,
        net_amount=net,
        status=EarningStatus.PENDING,
    ))
    await db.flush()

    await notify_status_change(db, publisher, booking, booking.resident_id)
    await db.commit()

    logger.info("Booking %s completed by sevak %s", booking.booking_number, auth.user_id)
    return APIResponse(message="Job completed successfully", data=BookingResponse.model_validate(booking))


# ── Earnings ──────────────────────────────────────────────────

@router.get("/earnings", response_model=APIResponse[EarningsSummary])
async def get_earnings(
    auth: AuthContext = Depends(require_sevak),
    db: AsyncSession = Depends(get_db),
):
    """Lifetime net earnings, pending payout, and the 10 most recent entries."""
    total_earned = await db.scalar(
        select(func.coalesce(func.sum(Earning.net_amount), 0)).where(Earning.sevak_id == auth.user_id)
    )
    pending = await db.scalar(
        select(func.coalesce(func.sum(Earning.net_amount), 0)).where(
            Earning.sevak_id == auth.user_id,
            Earning.status == EarningStatus.PENDING,
        )
    )
    jobs_completed = await db.scalar(
        select(func.count(Booking.id)).where(
            Booking.sevak_id == auth.user_id,
            Booking.status == BookingStatus.COMPLETED,
        )
    )
    recent = await db.execute(
        select(Earning)
        .where(Earning.sevak_id == auth.user_id)
        .order_by(Earning.created_at.desc())
        .limit(10)
    )

    return APIResponse(
        message="Earnings retrieved successfully",
        data=EarningsSummary(
            total_earned=Decimal(total_earned or 0),
            pending_payout=Decimal(pending or 0),
            jobs_completed=jobs_completed or 0,
            recent=[EarningResponse.model_validate(e) for e in recent.scalars().all()],
        ),
    )
