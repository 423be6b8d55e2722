"""
shared/models/models.py
All SQLAlchemy ORM models for the Seva Booking Platform.
UUID primary keys throughout; JSON columns map to JSONB on PostgreSQL.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base
from shared.utils.helpers import utcnow


JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum_column(enum_cls: type[PyEnum]) -> Enum:
    """Store enum values (not member names) in a portable VARCHAR column."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=30,
        values_callable=lambda members: [m.value for m in members],
    )


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    RESIDENT = "resident"
    SEVAK = "sevak"
    VENDOR = "vendor"
    ADMIN = "admin"


class AdminRole(str, PyEnum):
    SUPER_ADMIN = "super_admin"
    OPERATIONS = "operations"
    SUPPORT = "support"
    FINANCE = "finance"


class BookingStatus(str, PyEnum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def predecessors(self) -> frozenset["BookingStatus"]:
        """States a booking may legally move into this state from."""
        return _BOOKING_PREDECESSORS[self]

    @property
    def is_terminal(self) -> bool:
        return self in (BookingStatus.CANCELLED, BookingStatus.REFUNDED)


_BOOKING_PREDECESSORS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset(),
    BookingStatus.ASSIGNED: frozenset({BookingStatus.PENDING}),
    BookingStatus.IN_PROGRESS: frozenset({BookingStatus.ASSIGNED}),
    BookingStatus.COMPLETED: frozenset({BookingStatus.IN_PROGRESS}),
    BookingStatus.CANCELLED: frozenset({
        BookingStatus.PENDING, BookingStatus.ASSIGNED, BookingStatus.IN_PROGRESS,
    }),
    BookingStatus.REFUNDED: frozenset({BookingStatus.COMPLETED}),
}


class BookingPaymentStatus(str, PyEnum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    FAILED = "failed"


class PaymentStatus(str, PyEnum):
    CREATED = "created"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"


class AssignmentType(str, PyEnum):
    MANUAL = "manual"
    SELF_ACCEPT = "self_accept"


class BlacklistType(str, PyEnum):
    TEMPORARY = "temporary"
    PERMANENT = "permanent"


class NotificationType(str, PyEnum):
    BOOKING = "booking"
    PAYMENT = "payment"
    RATING = "rating"
    OFFER = "offer"
    SYSTEM = "system"


class EarningStatus(str, PyEnum):
    PENDING = "pending"
    PROCESSED = "processed"
    PAID = "paid"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """
    Platform account. One table for residents, sevaks, vendors and admins.
    Blacklist columns are only meaningful for sevaks.
    """
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        _enum_column(UserRole), nullable=False, default=UserRole.RESIDENT
    )
    admin_role: Mapped[Optional[AdminRole]] = mapped_column(
        _enum_column(AdminRole), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    profile_image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fcm_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Push notification token
    last_login: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Sevak blacklist state
    is_blacklisted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    blacklist_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    blacklist_type: Mapped[Optional[BlacklistType]] = mapped_column(
        _enum_column(BlacklistType), nullable=True
    )
    blacklisted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    blacklisted_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    blacklist_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    refresh_tokens: Mapped[List["RefreshToken"]] = relationship(back_populates="user")
    notification_settings: Mapped[Optional["NotificationSettings"]] = relationship(
        back_populates="user", uselist=False
    )

    __table_args__ = (
        Index("ix_users_role", "role"),
        Index("ix_users_blacklist", "is_blacklisted", "blacklist_expires_at"),
    )

    @property
    def is_assignable(self) -> bool:
        """A sevak can take new work only while active, verified and not blacklisted."""
        return (
            self.role == UserRole.SEVAK
            and self.is_active
            and self.is_verified
            and not self.is_blacklisted
        )

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class RefreshToken(Base):
    """Refresh tokens stored for rotation and revocation."""
    __tablename__ = "refresh_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token_hash: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)

    user: Mapped["User"] = relationship(back_populates="refresh_tokens")

    __table_args__ = (Index("ix_refresh_tokens_user_id", "user_id"),)


class Service(TimestampMixin, Base):
    """Catalog of bookable home services (plumbing, cleaning, ...)."""
    __tablename__ = "services"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    booking_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rating_avg: Mapped[Decimal] = mapped_column(Numeric(3, 2), default=Decimal("0.00"), nullable=False)
    rating_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    vendor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )

    __table_args__ = (Index("ix_services_category", "category"),)


class Booking(TimestampMixin, Base):
    """
    Core booking entity.
    Status transitions: pending → assigned → in-progress → completed → refunded,
    with pending | assigned | in-progress → cancelled. Resident and service never change.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    resident_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    service_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("services.id"), nullable=False
    )
    sevak_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    assigned_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    assignment_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Schedule
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    scheduled_time: Mapped[str] = mapped_column(String(5), nullable=False)  # "HH:MM"
    estimated_duration: Mapped[int] = mapped_column(Integer, default=60)    # minutes

    # Status
    status: Mapped[BookingStatus] = mapped_column(
        _enum_column(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )
    timeline: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    # Location
    address: Mapped[dict] = mapped_column(JSONType, nullable=False)
    special_instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Pricing
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    additional_charges: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    discount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    # Payment summary
    payment_status: Mapped[BookingPaymentStatus] = mapped_column(
        _enum_column(BookingPaymentStatus), nullable=False, default=BookingPaymentStatus.PENDING
    )
    payment_method: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Job execution
    check_in_otp: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    check_in_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    check_out_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    before_images: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    after_images: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    completion_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Cancellation / refund
    cancelled_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    refund_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    # Optimistic concurrency: every UPDATE is guarded by the version it read
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Relationships
    resident: Mapped["User"] = relationship(foreign_keys=[resident_id])
    sevak: Mapped[Optional["User"]] = relationship(foreign_keys=[sevak_id])
    service: Mapped["Service"] = relationship()

    __table_args__ = (
        Index("ix_bookings_resident_id", "resident_id"),
        Index("ix_bookings_sevak_id", "sevak_id"),
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_scheduled_date", "scheduled_date"),
    )
    __mapper_args__ = {"version_id_col": version}

    def recompute_total(self) -> Decimal:
        """total = base + additional charges - discount. Call on every pricing write."""
        self.total_amount = (
            Decimal(self.base_price or 0)
            + Decimal(self.additional_charges or 0)
            - Decimal(self.discount or 0)
        )
        return self.total_amount


class AssignmentHistory(Base):
    """Immutable log of every sevak assignment on a booking."""
    __tablename__ = "assignment_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    sevak_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    assigned_by_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    assignment_type: Mapped[AssignmentType] = mapped_column(
        _enum_column(AssignmentType), nullable=False, default=AssignmentType.MANUAL
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (Index("ix_assignment_history_booking_id", "booking_id"),)


class Payment(TimestampMixin, Base):
    """Gateway payment attempt for a booking. One row per created order."""
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)

    # Razorpay IDs
    razorpay_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    razorpay_payment_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    razorpay_signature: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Amounts (Razorpay works in paise, we store INR)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="INR")
    payment_method: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus), nullable=False, default=PaymentStatus.CREATED
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Refunds
    refund_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    refund_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    booking: Mapped["Booking"] = relationship()

    __table_args__ = (
        Index("ix_payments_booking_id", "booking_id"),
        Index("ix_payments_razorpay_order", "razorpay_order_id"),
        Index("ix_payments_razorpay_payment", "razorpay_payment_id"),
    )


class Invoice(Base):
    """Invoice issued once per successful payment."""
    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    booking_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("bookings.id"), nullable=False)
    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payments.id"), unique=True, nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    items: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    tax: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    discount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("ix_invoices_booking_id", "booking_id"),)


class BlacklistRecord(TimestampMixin, Base):
    """History of sevak blacklist actions. Active rows describe the current ban."""
    __tablename__ = "blacklist_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    sevak_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    blacklisted_by_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    type: Mapped[BlacklistType] = mapped_column(_enum_column(BlacklistType), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    reinstated_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    reinstatement_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reinstated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("ix_blacklist_records_sevak_active", "sevak_id", "is_active"),)


class Earning(TimestampMixin, Base):
    """Sevak payout line created when a job is completed. Platform keeps a commission."""
    __tablename__ = "earnings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    sevak_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    commission: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    net_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[EarningStatus] = mapped_column(
        _enum_column(EarningStatus), nullable=False, default=EarningStatus.PENDING
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("ix_earnings_sevak_status", "sevak_id", "status"),)


class Rating(TimestampMixin, Base):
    """Resident's rating of the sevak on a completed booking. One per booking."""
    __tablename__ = "ratings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    resident_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    sevak_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    service_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("services.id"), nullable=False)
    rating: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    is_reported: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    report_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    resident: Mapped["User"] = relationship(foreign_keys=[resident_id])

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_rating_range"),
        Index("ix_ratings_sevak_id", "sevak_id"),
        Index("ix_ratings_resident_id", "resident_id"),
    )


class Notification(TimestampMixin, Base):
    """In-app notification log. Delivered via FCM, SMS, or email by Celery."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    type: Mapped[NotificationType] = mapped_column(_enum_column(NotificationType), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sent_push: Mapped[bool] = mapped_column(Boolean, default=False)
    sent_sms: Mapped[bool] = mapped_column(Boolean, default=False)
    sent_email: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (Index("ix_notifications_user_id_read", "user_id", "is_read"),)


def default_enabled_types() -> dict:
    return {t.value: True for t in NotificationType}


class NotificationSettings(TimestampMixin, Base):
    """Per-user channel and type preferences for notifications."""
    __tablename__ = "notification_settings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    push_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sms_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    enabled_types: Mapped[dict] = mapped_column(
        JSONType, nullable=False, default=default_enabled_types
    )

    user: Mapped["User"] = relationship(back_populates="notification_settings")

    def allows(self, notification_type: NotificationType) -> bool:
        key = notification_type.value if isinstance(notification_type, PyEnum) else notification_type
        return bool((self.enabled_types or {}).get(key, True))


class AdminAuditLog(Base):
    """Immutable log of all admin actions."""
    __tablename__ = "admin_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_audit_admin_id", "admin_id"),
        Index("ix_admin_audit_created_at", "created_at"),
    )
