"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
Every endpoint answers with APIResponse: {"success", "message", "data"}.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from shared.models.models import BlacklistType, NotificationType, UserRole
from shared.utils.helpers import utcnow

T = TypeVar("T")

PHONE_PATTERN = r"^\+?[1-9]\d{9,14}$"
TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class APIResponse(BaseSchema, Generic[T]):
    success: bool = True
    message: str = ""
    data: Optional[T] = None


class PaginationMeta(BaseSchema):
    page: int
    limit: int
    total: int
    pages: int


class PaginatedData(BaseSchema, Generic[T]):
    items: List[T]
    pagination: PaginationMeta


# ── User ──────────────────────────────────────────────────────

class UserResponse(BaseSchema):
    id: uuid.UUID
    email: EmailStr
    phone_number: str
    full_name: str
    role: str
    admin_role: Optional[str] = None
    is_active: bool
    is_verified: bool
    profile_image: Optional[str] = None
    last_login: Optional[datetime] = None
    created_at: datetime


class ProfileResponse(UserResponse):
    fcm_token: Optional[str] = None


class ProfileUpdateRequest(BaseSchema):
    full_name: Optional[str] = Field(None, min_length=2, max_length=255)
    profile_image: Optional[str] = Field(None, max_length=500)
    fcm_token: Optional[str] = Field(None, max_length=500)


class UserSummary(BaseSchema):
    id: uuid.UUID
    full_name: str
    phone_number: str
    email: EmailStr


# ── Auth ──────────────────────────────────────────────────────

class RegisterRequest(BaseSchema):
    full_name: str = Field(..., min_length=2, max_length=255)
    email: EmailStr
    phone_number: str = Field(..., pattern=PHONE_PATTERN)
    password: str = Field(..., min_length=8, max_length=72)
    role: UserRole = UserRole.RESIDENT

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: UserRole) -> UserRole:
        if v == UserRole.ADMIN:
            raise ValueError("Admin accounts cannot be self-registered")
        return v


class LoginRequest(BaseSchema):
    identifier: str = Field(..., min_length=3, description="Email or phone number")
    password: str = Field(..., min_length=1)


class RefreshRequest(BaseSchema):
    refresh_token: str


class LogoutRequest(BaseSchema):
    refresh_token: Optional[str] = None


class TokenResponse(BaseSchema):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


class AuthResponse(TokenResponse):
    user: UserResponse


# ── Service Catalog ───────────────────────────────────────────

class ServiceCreateRequest(BaseSchema):
    name: str = Field(..., min_length=2, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    category: str = Field(..., min_length=2, max_length=100)
    base_price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    duration_minutes: int = Field(60, ge=15, le=24 * 60)
    image_url: Optional[str] = None


class ServiceResponse(BaseSchema):
    id: uuid.UUID
    name: str
    description: Optional[str]
    category: str
    base_price: Decimal
    duration_minutes: int
    image_url: Optional[str]
    is_active: bool
    booking_count: int
    rating_avg: Decimal = Decimal("0.00")
    rating_count: int = 0


# ── Booking ───────────────────────────────────────────────────

class BookingAddressSchema(BaseSchema):
    flat_number: str = Field(..., min_length=1, max_length=50)
    building: Optional[str] = Field(None, max_length=100)
    society: Optional[str] = Field(None, max_length=255)
    street: Optional[str] = Field(None, max_length=255)
    city: Optional[str] = Field(None, max_length=100)
    pincode: Optional[str] = Field(None, pattern=r"^\d{6}$")
    landmark: Optional[str] = Field(None, max_length=255)


class BookingCreateRequest(BaseSchema):
    service_id: uuid.UUID
    scheduled_date: date
    scheduled_time: str = Field(..., pattern=TIME_PATTERN)
    address: BookingAddressSchema
    special_instructions: Optional[str] = Field(None, max_length=1000)

    @field_validator("scheduled_date")
    @classmethod
    def validate_scheduled_date(cls, v: date) -> date:
        if v < utcnow().date():
            raise ValueError("Scheduled date cannot be in the past")
        return v


class BookingRescheduleRequest(BaseSchema):
    new_date: date
    new_time: str = Field(..., pattern=TIME_PATTERN)

    @field_validator("new_date")
    @classmethod
    def validate_new_date(cls, v: date) -> date:
        if v < utcnow().date():
            raise ValueError("New date cannot be in the past")
        return v


class BookingCancelRequest(BaseSchema):
    reason: str = Field(..., min_length=5, max_length=500)


class TimelineEntry(BaseSchema):
    status: str
    timestamp: datetime
    notes: Optional[str] = None


class BookingResponse(BaseSchema):
    id: uuid.UUID
    booking_number: str
    resident_id: uuid.UUID
    service_id: uuid.UUID
    sevak_id: Optional[uuid.UUID]
    scheduled_date: date
    scheduled_time: str
    estimated_duration: int
    status: str
    address: Dict[str, Any]
    special_instructions: Optional[str]
    base_price: Decimal
    additional_charges: Decimal
    discount: Decimal
    total_amount: Decimal
    payment_status: str
    payment_method: Optional[str]
    paid_at: Optional[datetime]
    check_in_time: Optional[datetime]
    check_out_time: Optional[datetime]
    before_images: List[str]
    after_images: List[str]
    completion_notes: Optional[str]
    cancellation_reason: Optional[str]
    cancelled_at: Optional[datetime]
    refund_amount: Optional[Decimal]
    refund_status: Optional[str]
    timeline: List[TimelineEntry]
    created_at: datetime


class ResidentBookingResponse(BookingResponse):
    """Residents see the check-in OTP so they can hand it to the sevak on arrival."""
    check_in_otp: Optional[str] = None


class AvailableSlotsResponse(BaseSchema):
    scheduled_date: date
    slots: List[str]


# ── Sevak Jobs ────────────────────────────────────────────────

class CheckInRequest(BaseSchema):
    booking_id: uuid.UUID
    otp: str = Field(..., pattern=r"^\d{4,8}$")


class CheckOutRequest(BaseSchema):
    booking_id: uuid.UUID


class CheckOutResponse(BaseSchema):
    booking: BookingResponse
    checked_out_at: datetime
    duration_minutes: int


class SevakJobsData(BaseSchema):
    items: List[BookingResponse]
    pagination: PaginationMeta
    today_count: int
    upcoming_count: int


class EarningResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    amount: Decimal
    commission: Decimal
    net_amount: Decimal
    status: str
    created_at: datetime


class EarningsSummary(BaseSchema):
    total_earned: Decimal
    pending_payout: Decimal
    jobs_completed: int
    recent: List[EarningResponse]


# ── Assignment ────────────────────────────────────────────────

class AssignSevakRequest(BaseSchema):
    sevak_id: uuid.UUID
    notes: Optional[str] = Field(None, max_length=1000)


# ── Payment ───────────────────────────────────────────────────

class CreateOrderRequest(BaseSchema):
    booking_id: uuid.UUID
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=2)


class CreateOrderResponse(BaseSchema):
    order_id: str
    razorpay_key_id: str
    amount: int          # in paise
    currency: str
    booking_id: uuid.UUID
    payment_id: uuid.UUID


class PaymentVerifyRequest(BaseSchema):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class RefundRequest(BaseSchema):
    booking_id: uuid.UUID
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=2)
    reason: str = Field(..., min_length=5, max_length=500)


class PaymentResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    amount: Decimal
    currency: str
    status: str
    razorpay_order_id: Optional[str]
    razorpay_payment_id: Optional[str]
    payment_method: Optional[str]
    failure_reason: Optional[str]
    paid_at: Optional[datetime]
    refund_id: Optional[str]
    refund_amount: Optional[Decimal]
    refund_status: Optional[str]
    refunded_at: Optional[datetime]
    created_at: datetime


class InvoiceItem(BaseSchema):
    description: str
    quantity: int
    rate: Decimal
    amount: Decimal


class InvoiceResponse(BaseSchema):
    id: uuid.UUID
    invoice_number: str
    booking_id: uuid.UUID
    payment_id: uuid.UUID
    items: List[InvoiceItem]
    subtotal: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    issued_at: datetime
    paid_at: Optional[datetime]


class PaymentVerifyResponse(BaseSchema):
    payment: PaymentResponse
    booking: BookingResponse
    invoice: InvoiceResponse


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    type: str
    title: str
    body: str
    data: Optional[Dict[str, Any]]
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime


class NotificationListData(PaginatedData[NotificationResponse]):
    unread_count: int


class NotificationSettingsResponse(BaseSchema):
    push_enabled: bool
    email_enabled: bool
    sms_enabled: bool
    enabled_types: Dict[str, bool]


class NotificationSettingsUpdate(BaseSchema):
    push_enabled: Optional[bool] = None
    email_enabled: Optional[bool] = None
    sms_enabled: Optional[bool] = None
    enabled_types: Optional[Dict[NotificationType, bool]] = None


# ── Rating ────────────────────────────────────────────────────

class RatingCreateRequest(BaseSchema):
    booking_id: uuid.UUID
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)


class RatingUpdateRequest(BaseSchema):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)


class RatingReportRequest(BaseSchema):
    reason: str = Field(..., min_length=5, max_length=255)


class RatingResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    resident_id: uuid.UUID
    sevak_id: uuid.UUID
    service_id: uuid.UUID
    rating: int
    comment: Optional[str]
    is_reported: bool
    created_at: datetime
    updated_at: datetime


class SevakRatingsData(PaginatedData[RatingResponse]):
    average_rating: float
    total_ratings: int


# ── Admin ─────────────────────────────────────────────────────

class BlacklistRequest(BaseSchema):
    reason: str = Field(..., min_length=5, max_length=500)
    type: BlacklistType = BlacklistType.TEMPORARY
    duration_days: Optional[int] = Field(None, ge=1, le=3650)
    notes: Optional[str] = Field(None, max_length=2000)

    @model_validator(mode="after")
    def permanent_has_no_duration(self) -> "BlacklistRequest":
        if self.type == BlacklistType.PERMANENT.value and self.duration_days is not None:
            raise ValueError("Permanent blacklist cannot have a duration")
        return self


class ReinstateRequest(BaseSchema):
    reason: str = Field(..., min_length=5, max_length=500)


class BlacklistRecordResponse(BaseSchema):
    id: uuid.UUID
    type: str
    reason: str
    notes: Optional[str]
    duration_days: Optional[int]
    start_date: datetime
    end_date: Optional[datetime]
    is_active: bool
    reinstatement_reason: Optional[str]
    reinstated_at: Optional[datetime]


class SevakAdminResponse(UserResponse):
    is_blacklisted: bool
    blacklist_reason: Optional[str]
    blacklist_type: Optional[str]
    blacklisted_at: Optional[datetime]
    blacklist_expires_at: Optional[datetime]


class SevakDetailResponse(BaseSchema):
    sevak: SevakAdminResponse
    recent_bookings: List[BookingResponse]
    blacklist_history: List[BlacklistRecordResponse]
    completed_jobs: int
    total_earnings: Decimal


class DashboardOverview(BaseSchema):
    users: Dict[str, int]
    sevaks: Dict[str, int]
    bookings: Dict[str, int]
    revenue: Dict[str, Decimal]
    revenue_growth_percent: float


class AuditLogResponse(BaseSchema):
    id: uuid.UUID
    admin_id: uuid.UUID
    action: str
    entity_type: str
    entity_id: Optional[str]
    payload: Optional[Dict[str, Any]]
    created_at: datetime


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True
