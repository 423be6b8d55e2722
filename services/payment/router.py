"""
services/payment/router.py
Razorpay payment integration: order creation, signature verification,
invoice generation, refunds, and the gateway webhook.
"""

import json
import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.admin.audit import record_admin_action
from services.booking.lifecycle import append_timeline, transition
from services.booking.router import get_booking_or_404
from services.notification.dispatcher import (
    notify_payment_failed,
    notify_payment_success,
    notify_refund_processed,
    notify_status_change,
)
from services.notification.events import EventPublisher, get_event_publisher
from services.payment.gateway import RazorpayGateway, get_payment_gateway
from shared.middleware.auth import (
    AuthContext,
    Permission,
    PermissionRequired,
    get_auth_context,
    require_resident,
)
from shared.models.models import (
    Booking,
    BookingPaymentStatus,
    BookingStatus,
    Invoice,
    Payment,
    PaymentStatus,
)
from shared.schemas.schemas import (
    APIResponse,
    BookingResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    InvoiceResponse,
    MessageResponse,
    PaginatedData,
    PaymentResponse,
    PaymentVerifyRequest,
    PaymentVerifyResponse,
    RefundRequest,
)
from shared.utils.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PaymentVerificationError,
    ValidationError,
)
from shared.utils.helpers import generate_invoice_number, paginate, to_paise, utcnow
from shared.utils.security import verify_razorpay_signature, verify_razorpay_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])

PAYMENT_METHOD = "razorpay"
UNPAYABLE = {BookingStatus.CANCELLED, BookingStatus.REFUNDED}
REFUNDABLE = {BookingStatus.COMPLETED, BookingStatus.CANCELLED}


# ── Helpers ───────────────────────────────────────────────────

async def _get_payment_by_order(db: AsyncSession, order_id: str) -> Optional[Payment]:
    return await db.scalar(select(Payment).where(Payment.razorpay_order_id == order_id))


async def _invoice_for_payment(db: AsyncSession, payment: Payment) -> Optional[Invoice]:
    return await db.scalar(select(Invoice).where(Invoice.payment_id == payment.id))


def build_invoice(booking: Booking, payment: Payment) -> Invoice:
    """One line item for the service; totals mirror the booking."""
    base = Decimal(booking.base_price)
    return Invoice(
        invoice_number=generate_invoice_number(),
        booking_id=booking.id,
        payment_id=payment.id,
        user_id=payment.user_id,
        items=[{
            "description": "Service Booking",
            "quantity": 1,
            "rate": str(base),
            "amount": str(base),
        }],
        subtotal=base,
        tax=Decimal("0.00"),
        discount=Decimal(booking.discount or 0),
        total=Decimal(booking.total_amount),
        issued_at=utcnow(),
        paid_at=payment.paid_at,
    )


async def mark_payment_success(
    db: AsyncSession,
    publisher: EventPublisher,
    payment: Payment,
    booking: Booking,
    razorpay_payment_id: str,
    signature: Optional[str] = None,
) -> Invoice:
    """
    Record a verified payment: payment → success, booking → paid, one invoice.
    Already-successful payments return their existing invoice unchanged.
    """
    if payment.status == PaymentStatus.SUCCESS:
        invoice = await _invoice_for_payment(db, payment)
        if invoice:
            return invoice

    now = utcnow()
    payment.razorpay_payment_id = razorpay_payment_id
    if signature:
        payment.razorpay_signature = signature
    payment.status = PaymentStatus.SUCCESS
    payment.payment_method = PAYMENT_METHOD
    payment.failure_reason = None
    payment.paid_at = now

    booking.payment_status = BookingPaymentStatus.PAID
    booking.payment_method = PAYMENT_METHOD
    booking.paid_at = now
    append_timeline(booking, "paid", f"Payment {razorpay_payment_id} received")

    invoice = build_invoice(booking, payment)
    db.add(invoice)
    await db.flush()

    logger.info(
        "Payment %s verified for booking %s (invoice %s)",
        payment.id, booking.booking_number, invoice.invoice_number,
    )
    await notify_payment_success(db, publisher, payment)
    return invoice


async def mark_payment_failed(
    db: AsyncSession,
    publisher: EventPublisher,
    payment: Payment,
    reason: str,
    razorpay_payment_id: Optional[str] = None,
) -> None:
    """A successful payment is never downgraded."""
    if payment.status == PaymentStatus.SUCCESS:
        return
    payment.status = PaymentStatus.FAILED
    payment.failure_reason = reason
    if razorpay_payment_id:
        payment.razorpay_payment_id = razorpay_payment_id
    await db.flush()
    await notify_payment_failed(db, publisher, payment)


# ── Create Order ──────────────────────────────────────────────

@router.post("/create-order", response_model=APIResponse[CreateOrderResponse])
async def create_order(
    data: CreateOrderRequest,
    auth: AuthContext = Depends(require_resident),
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_payment_gateway),
):
    """
    Create a Razorpay order for a booking.
    Client uses order_id + key_id to open Razorpay checkout.
    """
    booking = await db.scalar(
        select(Booking).where(
            Booking.id == data.booking_id,
            Booking.resident_id == auth.user_id,
        )
    )
    if not booking:
        raise NotFoundError("Booking not found")
    if booking.payment_status == BookingPaymentStatus.PAID:
        raise ConflictError("Booking is already paid")
    if BookingStatus(booking.status) in UNPAYABLE:
        raise ConflictError(f"Cannot pay for a booking that is '{BookingStatus(booking.status).value}'")

    amount = Decimal(data.amount) if data.amount is not None else Decimal(booking.total_amount)
    if to_paise(amount) != to_paise(booking.total_amount):
        raise ValidationError("Amount does not match the booking total")

    payment = Payment(
        booking_id=booking.id,
        user_id=auth.user_id,
        amount=amount,
        currency=settings.PAYMENT_CURRENCY,
        status=PaymentStatus.CREATED,
    )
    db.add(payment)
    await db.flush()

    try:
        order = await gateway.create_order(
            amount,
            receipt=f"booking_{booking.id}",
            notes={"booking_number": booking.booking_number, "user_id": str(auth.user_id)},
        )
    except Exception as e:
        payment.status = PaymentStatus.FAILED
        payment.failure_reason = getattr(e, "message", str(e))
        await db.commit()
        raise

    payment.razorpay_order_id = order["id"]
    await db.commit()

    return APIResponse(
        message="Order created successfully",
        data=CreateOrderResponse(
            order_id=order["id"],
            razorpay_key_id=settings.RAZORPAY_KEY_ID,
            amount=order.get("amount", to_paise(amount)),
            currency=order.get("currency", settings.PAYMENT_CURRENCY),
            booking_id=booking.id,
            payment_id=payment.id,
        ),
    )


# ── Verify Payment (called from client after checkout) ────────

@router.post("/verify", response_model=APIResponse[PaymentVerifyResponse])
async def verify_payment(
    data: PaymentVerifyRequest,
    auth: AuthContext = Depends(require_resident),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    """
    Verify the checkout signature HMAC-SHA256(order_id|payment_id, key_secret).
    Mismatch marks the payment failed and leaves the booking untouched.
    """
    payment = await _get_payment_by_order(db, data.razorpay_order_id)
    if not payment or payment.user_id != auth.user_id:
        raise NotFoundError("Payment record not found")

    if not verify_razorpay_signature(
        data.razorpay_order_id, data.razorpay_payment_id, data.razorpay_signature
    ):
        logger.warning(
            "Signature mismatch for order %s (payment %s)",
            data.razorpay_order_id, payment.id,
        )
        await mark_payment_failed(
            db, publisher, payment, "Signature verification failed", data.razorpay_payment_id
        )
        await db.commit()
        raise PaymentVerificationError("Invalid payment signature")

    booking = await get_booking_or_404(payment.booking_id, db)
    invoice = await mark_payment_success(
        db, publisher, payment, booking, data.razorpay_payment_id, data.razorpay_signature
    )
    await db.commit()

    return APIResponse(
        message="Payment verified successfully",
        data=PaymentVerifyResponse(
            payment=PaymentResponse.model_validate(payment),
            booking=BookingResponse.model_validate(booking),
            invoice=InvoiceResponse.model_validate(invoice),
        ),
    )


# ── Refund ────────────────────────────────────────────────────

@router.post("/refund", response_model=APIResponse[PaymentResponse])
async def refund_payment(
    data: RefundRequest,
    auth: AuthContext = Depends(PermissionRequired(Permission.PAYMENTS_REFUND)),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_event_publisher),
    gateway: RazorpayGateway = Depends(get_payment_gateway),
):
    """
    Refund a successful payment on a completed or cancelled booking.
    No compensating action exists if the gateway refund succeeds but the
    local write fails; that case is logged for manual follow-up.
    """
    booking = await get_booking_or_404(data.booking_id, db)
    payment = await db.scalar(
        select(Payment)
        .where(Payment.booking_id == booking.id, Payment.status == PaymentStatus.SUCCESS)
        .order_by(Payment.created_at.desc())
    )
    if not payment or not payment.razorpay_payment_id:
        raise ConflictError("No successful payment to refund for this booking")
    if BookingStatus(booking.status) not in REFUNDABLE:
        raise ConflictError("Only completed or cancelled bookings can be refunded")

    amount = Decimal(data.amount) if data.amount is not None else Decimal(payment.amount)
    if amount > Decimal(payment.amount):
        raise ValidationError("Refund amount exceeds the amount paid")

    try:
        refund = await gateway.refund(
            payment.razorpay_payment_id,
            amount,
            notes={"booking_number": booking.booking_number, "reason": data.reason},
        )
    except Exception:
        payment.refund_status = "failed"
        await db.commit()
        raise

    try:
        now = utcnow()
        payment.status = PaymentStatus.REFUNDED
        payment.refund_id = refund.get("id")
        payment.refund_amount = amount
        payment.refund_status = refund.get("status", "processed")
        payment.refunded_at = now

        booking.payment_status = BookingPaymentStatus.REFUNDED
        booking.refund_amount = amount
        booking.refund_status = payment.refund_status
        if booking.status == BookingStatus.COMPLETED:
            transition(booking, BookingStatus.REFUNDED, f"Refunded ₹{amount}: {data.reason}")
        else:
            append_timeline(booking, "refund-processed", f"Refunded ₹{amount}: {data.reason}")

        record_admin_action(
            db, auth, "REFUND_PAYMENT", "payment", str(payment.id),
            {"booking_id": str(booking.id), "amount": str(amount), "reason": data.reason},
        )
        await db.flush()
    except Exception:
        logger.exception(
            "Gateway refund %s succeeded but local update failed for payment %s",
            refund.get("id"), payment.id,
        )
        raise

    await notify_refund_processed(db, publisher, payment)
    if booking.status == BookingStatus.REFUNDED:
        await notify_status_change(db, publisher, booking, booking.resident_id)
    await db.commit()

    logger.info("Refunded ₹%s on payment %s (booking %s)", amount, payment.id, booking.booking_number)
    return APIResponse(
        message=f"Refund of ₹{amount} initiated successfully",
        data=PaymentResponse.model_validate(payment),
    )


# ── Razorpay Webhook ──────────────────────────────────────────

@router.post("/webhook", include_in_schema=False, response_model=MessageResponse)
async def razorpay_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    """
    Razorpay webhook handler. Validates HMAC signature.
    Handles: payment.captured, payment.failed.
    """
    body = await request.body()
    signature = request.headers.get("X-Razorpay-Signature", "")
    if not verify_razorpay_webhook_signature(body, signature):
        raise PaymentVerificationError("Invalid webhook signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")

    event = payload.get("event")
    entity = payload.get("payload", {}).get("payment", {}).get("entity", {})
    order_id = entity.get("order_id")
    if not order_id:
        return MessageResponse(message="ignored")

    payment = await _get_payment_by_order(db, order_id)
    if not payment:
        logger.warning("Webhook %s for unknown order %s", event, order_id)
        return MessageResponse(message="not_found")

    if event == "payment.captured":
        booking = await get_booking_or_404(payment.booking_id, db)
        await mark_payment_success(db, publisher, payment, booking, entity.get("id"))
    elif event == "payment.failed":
        reason = entity.get("error_description") or "Payment failed at gateway"
        await mark_payment_failed(db, publisher, payment, reason, entity.get("id"))

    await db.commit()
    return MessageResponse(message="ok")


# ── Read Endpoints ────────────────────────────────────────────

@router.get("/invoice/{booking_id}", response_model=APIResponse[InvoiceResponse])
async def get_invoice(
    booking_id: UUID,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    booking = await get_booking_or_404(booking_id, db)
    if booking.resident_id != auth.user_id and not auth.has(Permission.PAYMENTS_VIEW):
        raise ForbiddenError("You do not have permission to view this invoice")

    invoice = await db.scalar(
        select(Invoice).where(Invoice.booking_id == booking.id).order_by(Invoice.issued_at.desc())
    )
    if not invoice:
        raise NotFoundError("Invoice not found")
    return APIResponse(message="Invoice retrieved successfully", data=InvoiceResponse.model_validate(invoice))


@router.get("/history", response_model=APIResponse[PaginatedData[PaymentResponse]])
async def payment_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Get the caller's completed (successful or refunded) payments."""
    query = (
        select(Payment)
        .where(
            Payment.user_id == auth.user_id,
            Payment.status.in_([PaymentStatus.SUCCESS, PaymentStatus.REFUNDED]),
        )
        .order_by(Payment.created_at.desc())
    )
    payments, meta = await paginate(db, query, page, limit)
    return APIResponse(
        message="Payment history retrieved successfully",
        data={"items": [PaymentResponse.model_validate(p) for p in payments], "pagination": meta},
    )
