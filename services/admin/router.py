"""
services/admin/router.py
Admin endpoints: dashboard, sevak moderation (verify, activate, blacklist,
reinstate), booking oversight and manual assignment, and the audit log.

Each endpoint requires one Permission; ALL mutations are logged to
AdminAuditLog before returning.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.admin.audit import record_admin_action
from services.admin.blacklist import apply_blacklist, lift_blacklist
from services.booking.assignment import assign_sevak
from services.notification.dispatcher import notify_blacklisted, notify_reinstated
from services.notification.events import EventPublisher, get_event_publisher
from shared.middleware.auth import AuthContext, Permission, PermissionRequired
from shared.models.models import (
    AdminAuditLog,
    AssignmentType,
    BlacklistRecord,
    Booking,
    BookingStatus,
    Earning,
    Payment,
    PaymentStatus,
    Service,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    APIResponse,
    AssignSevakRequest,
    AuditLogResponse,
    BlacklistRecordResponse,
    BlacklistRequest,
    BookingResponse,
    DashboardOverview,
    PaginatedData,
    ReinstateRequest,
    SevakAdminResponse,
    SevakDetailResponse,
)
from shared.utils.errors import ConflictError, NotFoundError
from shared.utils.helpers import paginate, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])

require_analytics = PermissionRequired(Permission.ANALYTICS_VIEW)
require_users_view = PermissionRequired(Permission.USERS_VIEW)
require_users_edit = PermissionRequired(Permission.USERS_EDIT)
require_users_approve = PermissionRequired(Permission.USERS_APPROVE)
require_bookings_view = PermissionRequired(Permission.BOOKINGS_VIEW)
require_bookings_edit = PermissionRequired(Permission.BOOKINGS_EDIT)


# ── Helpers ────────────────────────────────────────────────────────────────────

async def _get_sevak_or_404(db: AsyncSession, sevak_id: UUID) -> User:
    sevak = await db.scalar(select(User).where(User.id == sevak_id, User.role == UserRole.SEVAK))
    if not sevak:
        raise NotFoundError("Sevak not found")
    return sevak


async def _count(db: AsyncSession, model, *conditions) -> int:
    return await db.scalar(select(func.count(model.id)).where(*conditions)) or 0


async def _revenue(db: AsyncSession, *conditions) -> Decimal:
    total = await db.scalar(
        select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.status == PaymentStatus.SUCCESS, *conditions
        )
    )
    return Decimal(str(total or 0))


def _month_start(day: date) -> datetime:
    return datetime(day.year, day.month, 1, tzinfo=timezone.utc)


# ── Dashboard ─────────────────────────────────────────────────────────────────

@router.get("/dashboard/overview", response_model=APIResponse[DashboardOverview])
async def get_dashboard_overview(
    auth: AuthContext = Depends(require_analytics),
    db: AsyncSession = Depends(get_db),
):
    """Platform-wide counts and revenue. All queries run against the primary DB."""
    now = utcnow()
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    this_month = _month_start(now.date())
    last_month = _month_start((this_month - timedelta(days=1)).date())

    users = {
        "total": await _count(db, User),
        "residents": await _count(db, User, User.role == UserRole.RESIDENT),
        "sevaks": await _count(db, User, User.role == UserRole.SEVAK),
        "vendors": await _count(db, User, User.role == UserRole.VENDOR),
    }
    sevaks = {
        "total": users["sevaks"],
        "active": await _count(db, User, User.role == UserRole.SEVAK, User.is_active.is_(True)),
        "verified": await _count(db, User, User.role == UserRole.SEVAK, User.is_verified.is_(True)),
        "blacklisted": await _count(db, User, User.role == UserRole.SEVAK, User.is_blacklisted.is_(True)),
    }
    bookings = {
        "total": await _count(db, Booking),
        "pending": await _count(db, Booking, Booking.status == BookingStatus.PENDING),
        "completed": await _count(db, Booking, Booking.status == BookingStatus.COMPLETED),
        "cancelled": await _count(db, Booking, Booking.status == BookingStatus.CANCELLED),
        "today": await _count(db, Booking, Booking.created_at >= today_start),
        "this_month": await _count(db, Booking, Booking.created_at >= this_month),
        "services_active": await _count(db, Service, Service.is_active.is_(True)),
    }
    revenue = {
        "today": await _revenue(db, Payment.paid_at >= today_start),
        "this_month": await _revenue(db, Payment.paid_at >= this_month),
        "last_month": await _revenue(db, Payment.paid_at >= last_month, Payment.paid_at < this_month),
    }

    growth = 0.0
    if revenue["last_month"] > 0:
        growth = round(
            float((revenue["this_month"] - revenue["last_month"]) / revenue["last_month"] * 100), 2
        )

    return APIResponse(
        message="Dashboard overview retrieved successfully",
        data=DashboardOverview(
            users=users,
            sevaks=sevaks,
            bookings=bookings,
            revenue=revenue,
            revenue_growth_percent=growth,
        ),
    )


# ── Sevaks ────────────────────────────────────────────────────────────────────

@router.get("/sevaks", response_model=APIResponse[PaginatedData[SevakAdminResponse]])
async def list_sevaks(
    is_active: Optional[bool] = Query(None),
    is_verified: Optional[bool] = Query(None),
    is_blacklisted: Optional[bool] = Query(None),
    search: Optional[str] = Query(None, min_length=2),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    auth: AuthContext = Depends(require_users_view),
    db: AsyncSession = Depends(get_db),
):
    query = select(User).where(User.role == UserRole.SEVAK).order_by(User.created_at.desc())
    if is_active is not None:
        query = query.where(User.is_active.is_(is_active))
    if is_verified is not None:
        query = query.where(User.is_verified.is_(is_verified))
    if is_blacklisted is not None:
        query = query.where(User.is_blacklisted.is_(is_blacklisted))
    if search:
        pattern = f"%{search}%"
        query = query.where(or_(
            User.full_name.ilike(pattern),
            User.email.ilike(pattern),
            User.phone_number.ilike(pattern),
        ))

    sevaks, meta = await paginate(db, query, page, limit)
    return APIResponse(
        message="Sevaks retrieved successfully",
        data={"items": [SevakAdminResponse.model_validate(s) for s in sevaks], "pagination": meta},
    )


@router.get("/sevaks/assignable", response_model=APIResponse[list[SevakAdminResponse]])
async def list_assignable_sevaks(
    auth: AuthContext = Depends(require_users_view),
    db: AsyncSession = Depends(get_db),
):
    """Active, verified, non-blacklisted sevaks: the only valid assignment targets."""
    result = await db.execute(
        select(User)
        .where(
            User.role == UserRole.SEVAK,
            User.is_active.is_(True),
            User.is_verified.is_(True),
            User.is_blacklisted.is_(False),
        )
        .order_by(User.full_name.asc())
    )
    return APIResponse(
        message="Assignable sevaks retrieved successfully",
        data=[SevakAdminResponse.model_validate(s) for s in result.scalars().all()],
    )


@router.get("/sevaks/{sevak_id}", response_model=APIResponse[SevakDetailResponse])
async def get_sevak_details(
    sevak_id: UUID,
    auth: AuthContext = Depends(require_users_view),
    db: AsyncSession = Depends(get_db),
):
    sevak = await _get_sevak_or_404(db, sevak_id)

    recent = await db.execute(
        select(Booking)
        .where(Booking.sevak_id == sevak.id)
        .order_by(Booking.created_at.desc())
        .limit(10)
    )
    history = await db.execute(
        select(BlacklistRecord)
        .where(BlacklistRecord.sevak_id == sevak.id)
        .order_by(BlacklistRecord.start_date.desc())
    )
    completed_jobs = await _count(
        db, Booking, Booking.sevak_id == sevak.id, Booking.status == BookingStatus.COMPLETED
    )
    total_earnings = await db.scalar(
        select(func.coalesce(func.sum(Earning.net_amount), 0)).where(Earning.sevak_id == sevak.id)
    )

    return APIResponse(
        message="Sevak details retrieved successfully",
        data=SevakDetailResponse(
            sevak=SevakAdminResponse.model_validate(sevak),
            recent_bookings=[BookingResponse.model_validate(b) for b in recent.scalars().all()],
            blacklist_history=[BlacklistRecordResponse.model_validate(r) for r in history.scalars().all()],
            completed_jobs=completed_jobs,
            total_earnings=Decimal(str(total_earnings or 0)),
        ),
    )


@router.put("/sevaks/{sevak_id}/toggle-active", response_model=APIResponse[SevakAdminResponse])
async def toggle_sevak_active(
    sevak_id: UUID,
    auth: AuthContext = Depends(require_users_edit),
    db: AsyncSession = Depends(get_db),
):
    sevak = await _get_sevak_or_404(db, sevak_id)
    sevak.is_active = not sevak.is_active

    record_admin_action(
        db, auth, "TOGGLE_SEVAK_ACTIVE", "user", str(sevak.id), {"is_active": sevak.is_active}
    )
    await db.commit()

    logger.info("Sevak %s active=%s set by admin %s", sevak.id, sevak.is_active, auth.user_id)
    return APIResponse(
        message="Sevak status updated successfully",
        data=SevakAdminResponse.model_validate(sevak),
    )


@router.put("/sevaks/{sevak_id}/verify", response_model=APIResponse[SevakAdminResponse])
async def verify_sevak(
    sevak_id: UUID,
    auth: AuthContext = Depends(require_users_approve),
    db: AsyncSession = Depends(get_db),
):
    sevak = await _get_sevak_or_404(db, sevak_id)
    if sevak.is_verified:
        raise ConflictError("Sevak is already verified")
    sevak.is_verified = True

    record_admin_action(db, auth, "VERIFY_SEVAK", "user", str(sevak.id))
    await db.commit()

    return APIResponse(message="Sevak verified successfully", data=SevakAdminResponse.model_validate(sevak))


@router.post("/sevaks/{sevak_id}/blacklist", response_model=APIResponse[BlacklistRecordResponse])
async def blacklist_sevak(
    sevak_id: UUID,
    data: BlacklistRequest,
    auth: AuthContext = Depends(require_users_edit),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    """
    Blacklist a sevak. Temporary blacklists default to BLACKLIST_DEFAULT_DAYS
    and are lifted automatically by the expiry sweep.
    """
    sevak = await _get_sevak_or_404(db, sevak_id)
    if sevak.is_blacklisted:
        raise ConflictError("Sevak is already blacklisted")

    record = apply_blacklist(
        sevak,
        blacklisted_by_id=auth.user_id,
        reason=data.reason,
        blacklist_type=data.type,
        duration_days=data.duration_days,
        notes=data.notes,
    )
    db.add(record)
    record_admin_action(
        db, auth, "BLACKLIST_SEVAK", "user", str(sevak.id),
        {"type": record.type.value, "reason": data.reason, "duration_days": record.duration_days},
    )
    await db.flush()

    await notify_blacklisted(db, publisher, sevak.id, data.reason)
    await db.commit()

    logger.warning("Sevak %s blacklisted (%s) by admin %s", sevak.id, record.type.value, auth.user_id)
    return APIResponse(message="Sevak blacklisted successfully", data=BlacklistRecordResponse.model_validate(record))


@router.put("/sevaks/{sevak_id}/reinstate", response_model=APIResponse[SevakAdminResponse])
async def reinstate_sevak(
    sevak_id: UUID,
    data: ReinstateRequest,
    auth: AuthContext = Depends(require_users_edit),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    sevak = await _get_sevak_or_404(db, sevak_id)
    if not sevak.is_blacklisted:
        raise ConflictError("Sevak is not blacklisted")

    records = await db.execute(
        select(BlacklistRecord).where(
            BlacklistRecord.sevak_id == sevak.id,
            BlacklistRecord.is_active.is_(True),
        )
    )
    lift_blacklist(sevak, records.scalars().all(), data.reason, reinstated_by_id=auth.user_id)
    record_admin_action(db, auth, "REINSTATE_SEVAK", "user", str(sevak.id), {"reason": data.reason})
    await db.flush()

    await notify_reinstated(db, publisher, sevak.id)
    await db.commit()

    return APIResponse(message="Sevak reinstated successfully", data=SevakAdminResponse.model_validate(sevak))


# ── Bookings ──────────────────────────────────────────────────────────────────

@router.get("/bookings", response_model=APIResponse[PaginatedData[BookingResponse]])
async def list_all_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    sevak_id: Optional[UUID] = Query(None),
    resident_id: Optional[UUID] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    unassigned: bool = Query(False),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    auth: AuthContext = Depends(require_bookings_view),
    db: AsyncSession = Depends(get_db),
):
    """Admin: view all bookings with status, sevak, resident or date filters."""
    query = select(Booking).order_by(Booking.created_at.desc())

    if status_filter:
        query = query.where(Booking.status == status_filter)
    if sevak_id:
        query = query.where(Booking.sevak_id == sevak_id)
    if resident_id:
        query = query.where(Booking.resident_id == resident_id)
    if date_from:
        query = query.where(Booking.scheduled_date >= date_from)
    if date_to:
        query = query.where(Booking.scheduled_date <= date_to)
    if unassigned:
        query = query.where(Booking.sevak_id.is_(None))

    bookings, meta = await paginate(db, query, page, limit)
    return APIResponse(
        message="Bookings retrieved successfully",
        data={"items": [BookingResponse.model_validate(b) for b in bookings], "pagination": meta},
    )


@router.put("/bookings/{booking_id}/assign-sevak", response_model=APIResponse[BookingResponse])
async def assign_sevak_to_booking(
    booking_id: UUID,
    data: AssignSevakRequest,
    auth: AuthContext = Depends(require_bookings_edit),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    booking = await assign_sevak(
        db, publisher,
        booking_id=booking_id,
        sevak_id=data.sevak_id,
        assigned_by_id=auth.user_id,
        assignment_type=AssignmentType.MANUAL,
        notes=data.notes,
    )
    record_admin_action(
        db, auth, "ASSIGN_SEVAK", "booking", str(booking.id),
        {"sevak_id": str(data.sevak_id), "notes": data.notes},
    )
    await db.commit()

    return APIResponse(message="Sevak assigned successfully", data=BookingResponse.model_validate(booking))


# ── Audit Log ─────────────────────────────────────────────────────────────────

@router.get("/audit-logs", response_model=APIResponse[PaginatedData[AuditLogResponse]])
async def get_audit_logs(
    action: Optional[str] = Query(None, description="Filter by action type e.g. BLACKLIST_SEVAK"),
    entity_type: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    auth: AuthContext = Depends(PermissionRequired(Permission.SETTINGS_MANAGE)),
    db: AsyncSession = Depends(get_db),
):
    """Immutable admin audit log: append-only, never editable."""
    query = select(AdminAuditLog).order_by(AdminAuditLog.created_at.desc())
    if action:
        query = query.where(AdminAuditLog.action == action.upper())
    if entity_type:
        query = query.where(AdminAuditLog.entity_type == entity_type)

    logs, meta = await paginate(db, query, page, limit)
    return APIResponse(
        message="Audit logs retrieved successfully",
        data={"items": [AuditLogResponse.model_validate(log) for log in logs], "pagination": meta},
    )
