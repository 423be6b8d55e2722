"""
services/rating/router.py
Resident ratings of sevaks on completed bookings.
"""

import logging
from decimal import Decimal
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.notification.dispatcher import notify_rating_received
from services.notification.events import EventPublisher, get_event_publisher
from shared.middleware.auth import AuthContext, Permission, get_auth_context, require_resident
from shared.models.models import Booking, BookingStatus, Rating, Service, User, UserRole
from shared.schemas.schemas import (
    APIResponse,
    MessageResponse,
    RatingCreateRequest,
    RatingReportRequest,
    RatingResponse,
    RatingUpdateRequest,
    SevakRatingsData,
)
from shared.utils.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from shared.utils.helpers import paginate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ratings", tags=["Ratings"])

SORT_ORDERS = {
    "newest": (Rating.created_at.desc(),),
    "highest": (Rating.rating.desc(), Rating.created_at.desc()),
    "lowest": (Rating.rating.asc(), Rating.created_at.desc()),
}


async def _get_rating_or_404(rating_id: UUID, db: AsyncSession) -> Rating:
    rating = await db.scalar(select(Rating).where(Rating.id == rating_id))
    if not rating:
        raise NotFoundError("Rating not found")
    return rating


async def _refresh_service_rating(db: AsyncSession, service_id: UUID) -> None:
    """Recalculate the denormalized average on the service."""
    await db.flush()
    avg, count = (await db.execute(
        select(func.avg(Rating.rating), func.count(Rating.id)).where(Rating.service_id == service_id)
    )).one()

    service = await db.get(Service, service_id)
    if service:
        service.rating_avg = Decimal(str(round(float(avg or 0), 2)))
        service.rating_count = count


@router.post("", response_model=APIResponse[RatingResponse], status_code=status.HTTP_201_CREATED)
async def create_rating(
    data: RatingCreateRequest,
    auth: AuthContext = Depends(require_resident),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    """
    Rate the sevak who completed a booking.
    - One rating per booking (unique constraint backs the check)
    - Only the resident who made the booking can rate it
    """
    booking = await db.scalar(select(Booking).where(Booking.id == data.booking_id))
    if not booking:
        raise NotFoundError("Booking not found")
    if booking.resident_id != auth.user_id:
        raise ForbiddenError("You can only rate bookings you created")
    if booking.status != BookingStatus.COMPLETED or booking.sevak_id is None:
        raise ValidationError("Can only rate completed bookings")

    existing = await db.scalar(select(Rating.id).where(Rating.booking_id == booking.id))
    if existing:
        raise ConflictError("Rating already exists for this booking")

    rating = Rating(
        booking_id=booking.id,
        resident_id=auth.user_id,
        sevak_id=booking.sevak_id,
        service_id=booking.service_id,
        rating=data.rating,
        comment=data.comment,
    )
    db.add(rating)
    await _refresh_service_rating(db, booking.service_id)
    await notify_rating_received(db, publisher, rating)
    await db.commit()

    logger.info("Booking %s rated %d by %s", booking.booking_number, rating.rating, auth.user_id)
    return APIResponse(message="Rating created successfully", data=RatingResponse.model_validate(rating))


@router.get("/sevak/{sevak_id}", response_model=APIResponse[SevakRatingsData])
async def get_sevak_ratings(
    sevak_id: UUID,
    sort: Literal["newest", "highest", "lowest"] = "newest",
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Public: a sevak's ratings with their overall average."""
    sevak = await db.scalar(select(User).where(User.id == sevak_id, User.role == UserRole.SEVAK))
    if not sevak:
        raise NotFoundError("Sevak not found")

    query = select(Rating).where(Rating.sevak_id == sevak_id).order_by(*SORT_ORDERS[sort])
    ratings, meta = await paginate(db, query, page, limit)

    avg, count = (await db.execute(
        select(func.avg(Rating.rating), func.count(Rating.id)).where(Rating.sevak_id == sevak_id)
    )).one()

    return APIResponse(
        message="Ratings retrieved successfully",
        data={
            "items": [RatingResponse.model_validate(r) for r in ratings],
            "pagination": meta,
            "average_rating": round(float(avg or 0), 1),
            "total_ratings": count,
        },
    )


@router.get("/booking/{booking_id}", response_model=APIResponse[RatingResponse])
async def get_booking_rating(
    booking_id: UUID,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    rating = await db.scalar(select(Rating).where(Rating.booking_id == booking_id))
    if not rating:
        raise NotFoundError("Rating not found")

    allowed = auth.user_id in (rating.resident_id, rating.sevak_id) or auth.has(Permission.BOOKINGS_VIEW)
    if not allowed:
        raise ForbiddenError("You do not have permission to view this rating")

    return APIResponse(message="Rating retrieved successfully", data=RatingResponse.model_validate(rating))


@router.put("/{rating_id}", response_model=APIResponse[RatingResponse])
async def update_rating(
    rating_id: UUID,
    data: RatingUpdateRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    rating = await _get_rating_or_404(rating_id, db)
    if rating.resident_id != auth.user_id:
        raise ForbiddenError("You can only update your own ratings")

    rating.rating = data.rating
    rating.comment = data.comment
    await _refresh_service_rating(db, rating.service_id)
    await db.commit()

    return APIResponse(message="Rating updated successfully", data=RatingResponse.model_validate(rating))


@router.post("/{rating_id}/report", response_model=MessageResponse)
async def report_rating(
    rating_id: UUID,
    data: RatingReportRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Flag a rating for moderation."""
    rating = await _get_rating_or_404(rating_id, db)
    rating.is_reported = True
    rating.report_reason = data.reason
    await db.commit()

    logger.info("Rating %s reported by %s", rating.id, auth.user_id)
    return MessageResponse(message="Rating reported successfully")
