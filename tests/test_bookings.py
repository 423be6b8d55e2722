"""
tests/test_bookings.py
Resident booking flows (create, list, reschedule, cancel, slots) and the
status transition rules enforced by services/booking/lifecycle.py.
"""

import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from httpx import AsyncClient
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.booking.lifecycle import can_transition, transition
from shared.models.models import Booking, BookingPaymentStatus, BookingStatus, Service, User
from shared.schemas.schemas import BookingCreateRequest, BookingRescheduleRequest
from shared.utils.errors import InvalidTransitionError
from shared.utils.helpers import utcnow
from tests.conftest import auth_headers, make_booking


def _create_payload(service: Service, days_ahead: int = 3, time: str = "11:00") -> dict:
    return {
        "service_id": str(service.id),
        "scheduled_date": (utcnow().date() + timedelta(days=days_ahead)).isoformat(),
        "scheduled_time": time,
        "address": {"flat_number": "B-204", "society": "Lake View Residency", "pincode": "560001"},
        "special_instructions": "Ring the bell twice",
    }


# ── Create ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_booking_success(
    client: AsyncClient,
    db: AsyncSession,
    resident_user: User,
    service: Service,
    publisher,
):
    response = await client.post(
        "/bookings", headers=auth_headers(resident_user), json=_create_payload(service)
    )
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["status"] == "pending"
    assert data["booking_number"].startswith("BK-")
    assert Decimal(data["total_amount"]) == Decimal("500.00")
    assert len(data["check_in_otp"]) == 6
    assert data["timeline"][0]["status"] == "pending"

    await db.refresh(service)
    assert service.booking_count == 1
    assert [e.title for e in publisher.events] == ["Booking Confirmed"]


@pytest.mark.asyncio
async def test_create_booking_past_date_rejected(
    client: AsyncClient, resident_user: User, service: Service
):
    response = await client.post(
        "/bookings", headers=auth_headers(resident_user), json=_create_payload(service, days_ahead=-1)
    )
    assert response.status_code == 400
    assert response.json()["message"] == "Validation failed"


@pytest.mark.asyncio
async def test_create_booking_unknown_service(client: AsyncClient, resident_user: User, service: Service):
    payload = {**_create_payload(service), "service_id": str(uuid.uuid4())}
    response = await client.post("/bookings", headers=auth_headers(resident_user), json=payload)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_sevak_cannot_create_booking(client: AsyncClient, sevak_user: User, service: Service):
    response = await client.post(
        "/bookings", headers=auth_headers(sevak_user), json=_create_payload(service)
    )
    assert response.status_code == 403


# ── Read ───────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_my_bookings_only_lists_own(
    client: AsyncClient,
    db: AsyncSession,
    resident_user: User,
    other_resident: User,
    service: Service,
    booking: Booking,
):
    await make_booking(db, other_resident, service)

    response = await client.get("/bookings/my-bookings", headers=auth_headers(resident_user))
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["pagination"]["total"] == 1
    assert data["items"][0]["id"] == str(booking.id)


@pytest.mark.asyncio
async def test_my_bookings_status_filter(
    client: AsyncClient, resident_user: User, booking: Booking
):
    response = await client.get(
        "/bookings/my-bookings", headers=auth_headers(resident_user), params={"status": "completed"}
    )
    assert response.status_code == 200
    assert response.json()["data"]["items"] == []


@pytest.mark.asyncio
async def test_get_booking_hides_otp_from_sevak(
    client: AsyncClient,
    db: AsyncSession,
    resident_user: User,
    sevak_user: User,
    booking: Booking,
):
    booking.sevak_id = sevak_user.id
    booking.status = BookingStatus.ASSIGNED
    await db.commit()

    as_resident = await client.get(f"/bookings/{booking.id}", headers=auth_headers(resident_user))
    assert as_resident.json()["data"]["check_in_otp"] == "123456"

    as_sevak = await client.get(f"/bookings/{booking.id}", headers=auth_headers(sevak_user))
    assert as_sevak.status_code == 200
    assert as_sevak.json()["data"].get("check_in_otp") is None


@pytest.mark.asyncio
async def test_get_booking_forbidden_for_stranger(
    client: AsyncClient, other_resident: User, support_admin: User, booking: Booking
):
    response = await client.get(f"/bookings/{booking.id}", headers=auth_headers(other_resident))
    assert response.status_code == 403

    as_admin = await client.get(f"/bookings/{booking.id}", headers=auth_headers(support_admin))
    assert as_admin.status_code == 200


@pytest.mark.asyncio
async def test_available_slots_exclude_booked(client: AsyncClient, booking: Booking, service: Service):
    response = await client.get(
        "/bookings/available-slots",
        params={"service_id": str(service.id), "date": booking.scheduled_date.isoformat()},
    )
    assert response.status_code == 200
    slots = response.json()["data"]["slots"]
    assert "10:00" not in slots
    assert "09:00" in slots


# ── Reschedule / Cancel ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reschedule_keeps_total_consistent(
    client: AsyncClient, db: AsyncSession, resident_user: User, booking: Booking
):
    new_date = (utcnow().date() + timedelta(days=5)).isoformat()
    response = await client.patch(
        f"/bookings/{booking.id}/reschedule",
        headers=auth_headers(resident_user),
        json={"new_date": new_date, "new_time": "15:00"},
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["scheduled_date"] == new_date
    assert data["scheduled_time"] == "15:00"
    assert data["timeline"][-1]["status"] == "rescheduled"

    await db.refresh(booking)
    assert booking.total_amount == booking.base_price + booking.additional_charges - booking.discount


@pytest.mark.asyncio
async def test_reschedule_in_progress_rejected(
    client: AsyncClient, db: AsyncSession, resident_user: User, booking: Booking
):
    booking.status = BookingStatus.IN_PROGRESS
    await db.commit()

    response = await client.patch(
        f"/bookings/{booking.id}/reschedule",
        headers=auth_headers(resident_user),
        json={"new_date": (utcnow().date() + timedelta(days=5)).isoformat(), "new_time": "15:00"},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_cancel_pending_booking(
    client: AsyncClient, db: AsyncSession, resident_user: User, booking: Booking
):
    response = await client.patch(
        f"/bookings/{booking.id}/cancel",
        headers=auth_headers(resident_user),
        json={"reason": "Plans changed, not at home"},
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "cancelled"
    assert data["cancelled_at"] is not None
    assert data["refund_status"] is None


@pytest.mark.asyncio
async def test_cancel_paid_booking_records_pending_refund(
    client: AsyncClient, db: AsyncSession, resident_user: User, booking: Booking
):
    booking.payment_status = BookingPaymentStatus.PAID
    await db.commit()

    response = await client.patch(
        f"/bookings/{booking.id}/cancel",
        headers=auth_headers(resident_user),
        json={"reason": "Plans changed, not at home"},
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["refund_status"] == "pending"
    assert Decimal(data["refund_amount"]) == Decimal("500.00")


@pytest.mark.asyncio
async def test_cancel_completed_booking_rejected(
    client: AsyncClient, db: AsyncSession, resident_user: User, booking: Booking
):
    booking.status = BookingStatus.COMPLETED
    await db.commit()

    response = await client.patch(
        f"/bookings/{booking.id}/cancel",
        headers=auth_headers(resident_user),
        json={"reason": "Too late to cancel this"},
    )
    assert response.status_code == 409

    await db.refresh(booking)
    assert booking.status == BookingStatus.COMPLETED


@pytest.mark.asyncio
async def test_cancel_in_progress_booking_notifies_sevak(
    client: AsyncClient, db: AsyncSession, resident_user: User, sevak_user: User, booking: Booking, publisher
):
    booking.status = BookingStatus.IN_PROGRESS
    booking.sevak_id = sevak_user.id
    await db.commit()

    response = await client.patch(
        f"/bookings/{booking.id}/cancel",
        headers=auth_headers(resident_user),
        json={"reason": "Sevak arrived without tools"},
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "cancelled"

    await db.refresh(booking)
    assert booking.status == BookingStatus.CANCELLED
    assert booking.cancellation_reason == "Sevak arrived without tools"
    assert sevak_user.id in [e.user_id for e in publisher.events]


@pytest.mark.asyncio
async def test_cannot_cancel_someone_elses_booking(
    client: AsyncClient, other_resident: User, booking: Booking
):
    response = await client.patch(
        f"/bookings/{booking.id}/cancel",
        headers=auth_headers(other_resident),
        json={"reason": "Not my booking at all"},
    )
    assert response.status_code == 403


# ── Lifecycle Rules ────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "current,target,allowed",
    [
        (BookingStatus.PENDING, BookingStatus.ASSIGNED, True),
        (BookingStatus.ASSIGNED, BookingStatus.IN_PROGRESS, True),
        (BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED, True),
        (BookingStatus.COMPLETED, BookingStatus.REFUNDED, True),
        (BookingStatus.ASSIGNED, BookingStatus.CANCELLED, True),
        (BookingStatus.PENDING, BookingStatus.IN_PROGRESS, False),
        (BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED, True),
        (BookingStatus.CANCELLED, BookingStatus.ASSIGNED, False),
        (BookingStatus.REFUNDED, BookingStatus.COMPLETED, False),
        (BookingStatus.PENDING, BookingStatus.REFUNDED, False),
    ],
)
def test_can_transition(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_transition_sets_timestamps_and_timeline():
    booking = Booking(booking_number="BK-TEST", status=BookingStatus.ASSIGNED, timeline=[])

    transition(booking, BookingStatus.IN_PROGRESS, "Sevak checked in")
    assert booking.status == BookingStatus.IN_PROGRESS
    assert booking.check_in_time is not None
    assert booking.timeline[-1]["status"] == "in-progress"
    assert booking.timeline[-1]["notes"] == "Sevak checked in"


def test_invalid_transition_leaves_booking_unchanged():
    booking = Booking(booking_number="BK-TEST", status=BookingStatus.PENDING, timeline=[])

    with pytest.raises(InvalidTransitionError):
        transition(booking, BookingStatus.COMPLETED)
    assert booking.status == BookingStatus.PENDING
    assert booking.timeline == []
    assert booking.completed_at is None


def test_recompute_total():
    booking = Booking(
        base_price=Decimal("500.00"),
        additional_charges=Decimal("120.50"),
        discount=Decimal("20.50"),
    )
    assert booking.recompute_total() == Decimal("600.00")
    assert booking.total_amount == Decimal("600.00")


def test_past_date_check_uses_utc_clock():
    # 23:30 UTC on Jan 10 is already Jan 11 in IST
    late_evening_utc = datetime(2030, 1, 10, 23, 30, tzinfo=timezone.utc)
    address = {"flat_number": "B-204"}

    with patch("shared.schemas.schemas.utcnow", return_value=late_evening_utc):
        same_day = BookingCreateRequest(
            service_id=uuid.uuid4(), scheduled_date=date(2030, 1, 10), scheduled_time="10:00", address=address
        )
        assert same_day.scheduled_date == date(2030, 1, 10)

        with pytest.raises(PydanticValidationError):
            BookingCreateRequest(
                service_id=uuid.uuid4(), scheduled_date=date(2030, 1, 9), scheduled_time="10:00", address=address
            )
        with pytest.raises(PydanticValidationError):
            BookingRescheduleRequest(new_date=date(2030, 1, 9), new_time="10:00")
