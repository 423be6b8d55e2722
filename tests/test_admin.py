"""
tests/test_admin.py
Admin permissions, sevak moderation (verify, activate, blacklist, reinstate),
manual assignment, dashboard and audit log.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.middleware.auth import Permission, permissions_for
from shared.models.models import (
    AdminAuditLog,
    AdminRole,
    BlacklistRecord,
    BlacklistType,
    Booking,
    BookingStatus,
    Payment,
    PaymentStatus,
    User,
    UserRole,
)
from shared.utils.helpers import ensure_utc, utcnow
from tests.conftest import auth_headers, make_user


# ── Permissions ────────────────────────────────────────────────────────────────

def test_role_permission_sets():
    assert permissions_for(AdminRole.SUPER_ADMIN) == frozenset(Permission)
    assert Permission.PAYMENTS_REFUND in permissions_for(AdminRole.FINANCE)
    assert Permission.USERS_EDIT not in permissions_for(AdminRole.FINANCE)
    assert Permission.USERS_APPROVE in permissions_for(AdminRole.OPERATIONS)
    assert Permission.PAYMENTS_VIEW not in permissions_for(AdminRole.OPERATIONS)
    assert permissions_for(AdminRole.SUPPORT) == {
        Permission.USERS_VIEW, Permission.BOOKINGS_VIEW, Permission.BOOKINGS_EDIT,
    }
    assert permissions_for(None) == frozenset()


@pytest.mark.asyncio
async def test_non_admin_cannot_access_admin(client: AsyncClient, resident_user: User):
    response = await client.get("/admin/dashboard/overview", headers=auth_headers(resident_user))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_support_admin_lacks_analytics(client: AsyncClient, support_admin: User):
    response = await client.get("/admin/dashboard/overview", headers=auth_headers(support_admin))
    assert response.status_code == 403
    assert "analytics:view" in response.json()["message"]


@pytest.mark.asyncio
async def test_finance_admin_cannot_blacklist(
    client: AsyncClient, finance_admin: User, sevak_user: User
):
    response = await client.post(
        f"/admin/sevaks/{sevak_user.id}/blacklist",
        headers=auth_headers(finance_admin),
        json={"reason": "Repeated no-shows"},
    )
    assert response.status_code == 403


# ── Dashboard ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_dashboard_overview(
    client: AsyncClient,
    db: AsyncSession,
    admin_user: User,
    resident_user: User,
    sevak_user: User,
    booking: Booking,
):
    db.add(Payment(
        booking_id=booking.id,
        user_id=resident_user.id,
        amount=Decimal("500.00"),
        status=PaymentStatus.SUCCESS,
        paid_at=utcnow(),
    ))
    await db.commit()

    response = await client.get("/admin/dashboard/overview", headers=auth_headers(admin_user))
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["users"]["residents"] == 1
    assert data["sevaks"]["total"] == 1
    assert data["bookings"]["total"] == 1
    assert data["bookings"]["pending"] == 1
    assert Decimal(data["revenue"]["this_month"]) == Decimal("500.00")


# ── Sevak Moderation ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_sevaks_filters(
    client: AsyncClient, db: AsyncSession, support_admin: User, sevak_user: User
):
    await make_user(db, UserRole.SEVAK, is_verified=False)

    response = await client.get(
        "/admin/sevaks", headers=auth_headers(support_admin), params={"is_verified": "false"}
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["pagination"]["total"] == 1
    assert data["items"][0]["is_verified"] is False


@pytest.mark.asyncio
async def test_assignable_sevaks_excludes_blacklisted(
    client: AsyncClient, db: AsyncSession, support_admin: User, sevak_user: User
):
    await make_user(db, UserRole.SEVAK, is_blacklisted=True)

    response = await client.get("/admin/sevaks/assignable", headers=auth_headers(support_admin))
    assert response.status_code == 200
    assert [s["id"] for s in response.json()["data"]] == [str(sevak_user.id)]


@pytest.mark.asyncio
async def test_verify_sevak(client: AsyncClient, db: AsyncSession, admin_user: User):
    sevak = await make_user(db, UserRole.SEVAK, is_verified=False)

    response = await client.put(f"/admin/sevaks/{sevak.id}/verify", headers=auth_headers(admin_user))
    assert response.status_code == 200
    assert response.json()["data"]["is_verified"] is True

    again = await client.put(f"/admin/sevaks/{sevak.id}/verify", headers=auth_headers(admin_user))
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_toggle_active(client: AsyncClient, admin_user: User, sevak_user: User):
    response = await client.put(
        f"/admin/sevaks/{sevak_user.id}/toggle-active", headers=auth_headers(admin_user)
    )
    assert response.status_code == 200
    assert response.json()["data"]["is_active"] is False


@pytest.mark.asyncio
async def test_blacklist_temporary_defaults_to_thirty_days(
    client: AsyncClient, db: AsyncSession, admin_user: User, sevak_user: User, publisher
):
    response = await client.post(
        f"/admin/sevaks/{sevak_user.id}/blacklist",
        headers=auth_headers(admin_user),
        json={"reason": "Repeated no-shows", "type": "temporary"},
    )
    assert response.status_code == 200
    record = response.json()["data"]
    assert record["type"] == "temporary"
    assert record["duration_days"] == 30
    assert record["is_active"] is True

    await db.refresh(sevak_user)
    assert sevak_user.is_blacklisted is True
    assert sevak_user.blacklist_type == BlacklistType.TEMPORARY
    expires = ensure_utc(sevak_user.blacklist_expires_at)
    started = ensure_utc(sevak_user.blacklisted_at)
    assert expires - started == timedelta(days=30)

    audit = await db.scalar(select(AdminAuditLog).where(AdminAuditLog.action == "BLACKLIST_SEVAK"))
    assert audit.entity_id == str(sevak_user.id)
    assert "Account Suspended" in [e.title for e in publisher.events]


@pytest.mark.asyncio
async def test_blacklist_permanent_has_no_expiry(
    client: AsyncClient, db: AsyncSession, admin_user: User, sevak_user: User
):
    response = await client.post(
        f"/admin/sevaks/{sevak_user.id}/blacklist",
        headers=auth_headers(admin_user),
        json={"reason": "Fraudulent conduct", "type": "permanent"},
    )
    assert response.status_code == 200
    assert response.json()["data"]["end_date"] is None

    await db.refresh(sevak_user)
    assert sevak_user.blacklist_expires_at is None


@pytest.mark.asyncio
async def test_blacklist_permanent_with_duration_rejected(
    client: AsyncClient, admin_user: User, sevak_user: User
):
    response = await client.post(
        f"/admin/sevaks/{sevak_user.id}/blacklist",
        headers=auth_headers(admin_user),
        json={"reason": "Fraudulent conduct", "type": "permanent", "duration_days": 10},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_blacklist_twice_conflicts(client: AsyncClient, admin_user: User, sevak_user: User):
    payload = {"reason": "Repeated no-shows", "duration_days": 7}
    first = await client.post(
        f"/admin/sevaks/{sevak_user.id}/blacklist", headers=auth_headers(admin_user), json=payload
    )
    assert first.status_code == 200
    second = await client.post(
        f"/admin/sevaks/{sevak_user.id}/blacklist", headers=auth_headers(admin_user), json=payload
    )
    assert second.status_code == 409


@pytest.mark.asyncio
async def test_reinstate_clears_blacklist(
    client: AsyncClient, db: AsyncSession, admin_user: User, sevak_user: User
):
    await client.post(
        f"/admin/sevaks/{sevak_user.id}/blacklist",
        headers=auth_headers(admin_user),
        json={"reason": "Repeated no-shows", "duration_days": 7},
    )

    response = await client.put(
        f"/admin/sevaks/{sevak_user.id}/reinstate",
        headers=auth_headers(admin_user),
        json={"reason": "Appeal accepted after review"},
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["is_blacklisted"] is False
    assert data["blacklist_reason"] is None
    assert data["blacklist_expires_at"] is None

    record = await db.scalar(select(BlacklistRecord).where(BlacklistRecord.sevak_id == sevak_user.id))
    assert record.is_active is False
    assert record.reinstated_by_id == admin_user.id
    assert record.reinstatement_reason == "Appeal accepted after review"


@pytest.mark.asyncio
async def test_reinstate_not_blacklisted_conflicts(client: AsyncClient, admin_user: User, sevak_user: User):
    response = await client.put(
        f"/admin/sevaks/{sevak_user.id}/reinstate",
        headers=auth_headers(admin_user),
        json={"reason": "Nothing to reinstate"},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_sevak_detail(client: AsyncClient, admin_user: User, sevak_user: User):
    response = await client.get(f"/admin/sevaks/{sevak_user.id}", headers=auth_headers(admin_user))
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["sevak"]["id"] == str(sevak_user.id)
    assert data["completed_jobs"] == 0
    assert data["blacklist_history"] == []


# ── Bookings ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_admin_assign_sevak(
    client: AsyncClient, db: AsyncSession, support_admin: User, sevak_user: User, booking: Booking
):
    response = await client.put(
        f"/admin/bookings/{booking.id}/assign-sevak",
        headers=auth_headers(support_admin),
        json={"sevak_id": str(sevak_user.id), "notes": "Nearest available sevak"},
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "assigned"
    assert data["sevak_id"] == str(sevak_user.id)

    audit = await db.scalar(select(AdminAuditLog).where(AdminAuditLog.action == "ASSIGN_SEVAK"))
    assert audit.entity_id == str(booking.id)


@pytest.mark.asyncio
async def test_admin_assign_blacklisted_sevak_rejected(
    client: AsyncClient, db: AsyncSession, admin_user: User, booking: Booking
):
    sevak = await make_user(db, UserRole.SEVAK, is_blacklisted=True)

    response = await client.put(
        f"/admin/bookings/{booking.id}/assign-sevak",
        headers=auth_headers(admin_user),
        json={"sevak_id": str(sevak.id)},
    )
    assert response.status_code == 422

    await db.refresh(booking)
    assert booking.status == BookingStatus.PENDING
    assert await db.scalar(select(AdminAuditLog)) is None


@pytest.mark.asyncio
async def test_list_unassigned_bookings(
    client: AsyncClient, db: AsyncSession, admin_user: User, sevak_user: User, booking: Booking
):
    response = await client.get(
        "/admin/bookings", headers=auth_headers(admin_user), params={"unassigned": "true"}
    )
    assert response.status_code == 200
    assert response.json()["data"]["pagination"]["total"] == 1

    booking.sevak_id = sevak_user.id
    booking.status = BookingStatus.ASSIGNED
    await db.commit()

    response = await client.get(
        "/admin/bookings", headers=auth_headers(admin_user), params={"unassigned": "true"}
    )
    assert response.json()["data"]["pagination"]["total"] == 0


@pytest.mark.asyncio
async def test_audit_logs_require_settings_permission(
    client: AsyncClient, admin_user: User, support_admin: User, sevak_user: User
):
    await client.put(f"/admin/sevaks/{sevak_user.id}/toggle-active", headers=auth_headers(admin_user))

    denied = await client.get("/admin/audit-logs", headers=auth_headers(support_admin))
    assert denied.status_code == 403

    response = await client.get("/admin/audit-logs", headers=auth_headers(admin_user))
    assert response.status_code == 200
    assert response.json()["data"]["items"][0]["entity_id"] == str(sevak_user.id)
