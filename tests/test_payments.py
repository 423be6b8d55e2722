"""
tests/test_payments.py
Razorpay flow: order creation, checkout signature verification, invoices,
refunds and the webhook. The Razorpay SDK client is mocked throughout.
"""

import hashlib
import hmac
import json
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.models.models import (
    Booking,
    BookingPaymentStatus,
    BookingStatus,
    Invoice,
    Payment,
    PaymentStatus,
    User,
)
from shared.utils.helpers import to_paise
from shared.utils.security import compute_razorpay_signature
from tests.conftest import auth_headers

ORDER_ID = "order_TEST123"
PAYMENT_ID = "pay_TEST456"


@pytest.fixture
def razorpay_client():
    client = MagicMock()
    client.order.create.return_value = {"id": ORDER_ID, "amount": 50000, "currency": "INR"}
    client.payment.refund.return_value = {"id": "rfnd_TEST789", "status": "processed"}
    with patch("services.payment.gateway.get_razorpay_client", return_value=client):
        yield client


async def _create_order(client: AsyncClient, user: User, booking: Booking, **extra):
    return await client.post(
        "/payments/create-order",
        headers=auth_headers(user),
        json={"booking_id": str(booking.id), **extra},
    )


async def _paid(client: AsyncClient, user: User, booking: Booking) -> dict:
    await _create_order(client, user, booking)
    response = await client.post(
        "/payments/verify",
        headers=auth_headers(user),
        json={
            "razorpay_order_id": ORDER_ID,
            "razorpay_payment_id": PAYMENT_ID,
            "razorpay_signature": compute_razorpay_signature(ORDER_ID, PAYMENT_ID),
        },
    )
    assert response.status_code == 200
    return response.json()["data"]


def _webhook_signature(body: bytes) -> str:
    return hmac.new(settings.RAZORPAY_WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()


# ── Helpers ────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "amount,paise",
    [("500.00", 50000), (Decimal("0.01"), 1), (Decimal("199.995"), 20000), (249.5, 24950)],
)
def test_to_paise(amount, paise):
    assert to_paise(amount) == paise


# ── Create Order ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_order(
    client: AsyncClient, db: AsyncSession, resident_user: User, booking: Booking, razorpay_client
):
    response = await _create_order(client, resident_user, booking)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["order_id"] == ORDER_ID
    assert data["amount"] == 50000
    assert data["razorpay_key_id"] == settings.RAZORPAY_KEY_ID

    payload = razorpay_client.order.create.call_args.args[0]
    assert payload["amount"] == 50000
    assert payload["currency"] == "INR"
    assert payload["receipt"] == f"booking_{booking.id}"

    payment = await db.scalar(select(Payment).where(Payment.booking_id == booking.id))
    assert payment.status == PaymentStatus.CREATED
    assert payment.razorpay_order_id == ORDER_ID


@pytest.mark.asyncio
async def test_create_order_amount_mismatch(
    client: AsyncClient, resident_user: User, booking: Booking, razorpay_client
):
    response = await _create_order(client, resident_user, booking, amount="450.00")
    assert response.status_code == 400
    razorpay_client.order.create.assert_not_called()


@pytest.mark.asyncio
async def test_create_order_for_other_residents_booking(
    client: AsyncClient, other_resident: User, booking: Booking, razorpay_client
):
    response = await _create_order(client, other_resident, booking)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_create_order_gateway_failure(
    client: AsyncClient, db: AsyncSession, resident_user: User, booking: Booking, razorpay_client
):
    razorpay_client.order.create.side_effect = RuntimeError("gateway down")

    response = await _create_order(client, resident_user, booking)
    assert response.status_code == 502

    payment = await db.scalar(select(Payment).where(Payment.booking_id == booking.id))
    assert payment.status == PaymentStatus.FAILED


@pytest.mark.asyncio
async def test_create_order_for_cancelled_booking(
    client: AsyncClient, db: AsyncSession, resident_user: User, booking: Booking, razorpay_client
):
    booking.status = BookingStatus.CANCELLED
    await db.commit()

    response = await _create_order(client, resident_user, booking)
    assert response.status_code == 409


# ── Verify ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_verify_valid_signature_marks_paid_with_one_invoice(
    client: AsyncClient, db: AsyncSession, resident_user: User, booking: Booking, razorpay_client, publisher
):
    data = await _paid(client, resident_user, booking)

    assert data["payment"]["status"] == "success"
    assert data["booking"]["payment_status"] == "paid"
    assert Decimal(data["invoice"]["total"]) == Decimal(data["booking"]["total_amount"])
    assert data["invoice"]["invoice_number"].startswith("INV-")
    assert "Payment Successful" in [e.title for e in publisher.events]

    # Replaying the same verification does not issue a second invoice
    again = await client.post(
        "/payments/verify",
        headers=auth_headers(resident_user),
        json={
            "razorpay_order_id": ORDER_ID,
            "razorpay_payment_id": PAYMENT_ID,
            "razorpay_signature": compute_razorpay_signature(ORDER_ID, PAYMENT_ID),
        },
    )
    assert again.status_code == 200
    assert again.json()["data"]["invoice"]["id"] == data["invoice"]["id"]

    count = await db.scalar(select(func.count(Invoice.id)).where(Invoice.booking_id == booking.id))
    assert count == 1


@pytest.mark.asyncio
async def test_verify_bad_signature_never_succeeds(
    client: AsyncClient, db: AsyncSession, resident_user: User, booking: Booking, razorpay_client
):
    await _create_order(client, resident_user, booking)

    for _ in range(2):
        response = await client.post(
            "/payments/verify",
            headers=auth_headers(resident_user),
            json={
                "razorpay_order_id": ORDER_ID,
                "razorpay_payment_id": PAYMENT_ID,
                "razorpay_signature": "0" * 64,
            },
        )
        assert response.status_code == 400
        assert response.json()["success"] is False

    payment = await db.scalar(select(Payment).where(Payment.booking_id == booking.id))
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "Signature verification failed"

    await db.refresh(booking)
    assert booking.payment_status == BookingPaymentStatus.PENDING
    assert await db.scalar(select(func.count(Invoice.id))) == 0


@pytest.mark.asyncio
async def test_create_order_after_payment_conflicts(
    client: AsyncClient, resident_user: User, booking: Booking, razorpay_client
):
    await _paid(client, resident_user, booking)

    response = await _create_order(client, resident_user, booking)
    assert response.status_code == 409


# ── Invoice / History ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_get_invoice(
    client: AsyncClient,
    resident_user: User,
    other_resident: User,
    finance_admin: User,
    booking: Booking,
    razorpay_client,
):
    paid = await _paid(client, resident_user, booking)

    own = await client.get(f"/payments/invoice/{booking.id}", headers=auth_headers(resident_user))
    assert own.status_code == 200
    assert own.json()["data"]["id"] == paid["invoice"]["id"]
    assert own.json()["data"]["items"][0]["description"] == "Service Booking"

    finance = await client.get(f"/payments/invoice/{booking.id}", headers=auth_headers(finance_admin))
    assert finance.status_code == 200

    stranger = await client.get(f"/payments/invoice/{booking.id}", headers=auth_headers(other_resident))
    assert stranger.status_code == 403


@pytest.mark.asyncio
async def test_invoice_missing_before_payment(client: AsyncClient, resident_user: User, booking: Booking):
    response = await client.get(f"/payments/invoice/{booking.id}", headers=auth_headers(resident_user))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_payment_history(
    client: AsyncClient, resident_user: User, booking: Booking, razorpay_client
):
    await _paid(client, resident_user, booking)

    response = await client.get("/payments/history", headers=auth_headers(resident_user))
    assert response.status_code == 200
    items = response.json()["data"]["items"]
    assert len(items) == 1
    assert items[0]["razorpay_payment_id"] == PAYMENT_ID


# ── Refund ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_refund_completed_booking(
    client: AsyncClient,
    db: AsyncSession,
    resident_user: User,
    finance_admin: User,
    booking: Booking,
    razorpay_client,
):
    await _paid(client, resident_user, booking)
    await db.refresh(booking)
    booking.status = BookingStatus.COMPLETED
    await db.commit()

    response = await client.post(
        "/payments/refund",
        headers=auth_headers(finance_admin),
        json={"booking_id": str(booking.id), "reason": "Service quality complaint"},
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "refunded"
    assert data["refund_id"] == "rfnd_TEST789"
    assert Decimal(data["refund_amount"]) == Decimal("500.00")

    razorpay_client.payment.refund.assert_called_once()
    assert razorpay_client.payment.refund.call_args.args[0] == PAYMENT_ID
    assert razorpay_client.payment.refund.call_args.args[1]["amount"] == 50000

    await db.refresh(booking)
    assert booking.status == BookingStatus.REFUNDED
    assert booking.payment_status == BookingPaymentStatus.REFUNDED


@pytest.mark.asyncio
async def test_refund_exceeding_amount_rejected(
    client: AsyncClient,
    db: AsyncSession,
    resident_user: User,
    finance_admin: User,
    booking: Booking,
    razorpay_client,
):
    await _paid(client, resident_user, booking)
    await db.refresh(booking)
    booking.status = BookingStatus.COMPLETED
    await db.commit()

    response = await client.post(
        "/payments/refund",
        headers=auth_headers(finance_admin),
        json={"booking_id": str(booking.id), "amount": "900.00", "reason": "Service quality complaint"},
    )
    assert response.status_code == 400
    razorpay_client.payment.refund.assert_not_called()


@pytest.mark.asyncio
async def test_refund_requires_payments_permission(
    client: AsyncClient, support_admin: User, resident_user: User, booking: Booking
):
    for user in (support_admin, resident_user):
        response = await client.post(
            "/payments/refund",
            headers=auth_headers(user),
            json={"booking_id": str(booking.id), "reason": "Service quality complaint"},
        )
        assert response.status_code == 403


@pytest.mark.asyncio
async def test_refund_unpaid_booking_conflicts(
    client: AsyncClient, finance_admin: User, booking: Booking, razorpay_client
):
    response = await client.post(
        "/payments/refund",
        headers=auth_headers(finance_admin),
        json={"booking_id": str(booking.id), "reason": "Service quality complaint"},
    )
    assert response.status_code == 409


# ── Webhook ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_webhook_payment_captured(
    client: AsyncClient, db: AsyncSession, resident_user: User, booking: Booking, razorpay_client
):
    await _create_order(client, resident_user, booking)
    body = json.dumps({
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": PAYMENT_ID, "order_id": ORDER_ID}}},
    }).encode()

    response = await client.post(
        "/payments/webhook",
        content=body,
        headers={"X-Razorpay-Signature": _webhook_signature(body), "Content-Type": "application/json"},
    )
    assert response.status_code == 200
    assert response.json()["message"] == "ok"

    await db.refresh(booking)
    assert booking.payment_status == BookingPaymentStatus.PAID
    assert await db.scalar(select(func.count(Invoice.id))) == 1


@pytest.mark.asyncio
async def test_webhook_failed_does_not_downgrade_success(
    client: AsyncClient, db: AsyncSession, resident_user: User, booking: Booking, razorpay_client
):
    await _paid(client, resident_user, booking)
    body = json.dumps({
        "event": "payment.failed",
        "payload": {"payment": {"entity": {"id": PAYMENT_ID, "order_id": ORDER_ID, "error_description": "late"}}},
    }).encode()

    response = await client.post(
        "/payments/webhook",
        content=body,
        headers={"X-Razorpay-Signature": _webhook_signature(body), "Content-Type": "application/json"},
    )
    assert response.status_code == 200

    payment = await db.scalar(select(Payment).where(Payment.razorpay_order_id == ORDER_ID))
    assert payment.status == PaymentStatus.SUCCESS


@pytest.mark.asyncio
async def test_webhook_bad_signature(client: AsyncClient):
    response = await client.post(
        "/payments/webhook",
        content=b'{"event": "payment.captured"}',
        headers={"X-Razorpay-Signature": "bogus"},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [b"event=payment.captured", b'["payment.captured"]'])
async def test_webhook_signed_but_malformed_body(client: AsyncClient, body: bytes):
    response = await client.post(
        "/payments/webhook",
        content=body,
        headers={"X-Razorpay-Signature": _webhook_signature(body)},
    )
    assert response.status_code == 400
    assert response.json()["success"] is False
