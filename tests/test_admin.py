"""
tests/test_admin.py
Tests for admin-only endpoints: application queue, approval, rejection,
registered shops, dashboard counters, audit log.
"""

import json
import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.models.models import (
    AdminAuditLog,
    ApplicationStatus,
    Profile,
    SellerApplication,
    Shop,
    User,
    UserRole,
)
from tests.conftest import TEST_PASSWORD, auth_headers, make_application, make_user, next_message


# ── Access Control ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_buyer_cannot_access_admin_endpoints(client: AsyncClient, user: User):
    response = await client.get("/admin/applications", headers=auth_headers(user))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_seller_cannot_access_admin_endpoints(client: AsyncClient, seller_user: User):
    response = await client.get("/admin/stats", headers=auth_headers(seller_user))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_unauthenticated_cannot_access_admin(client: AsyncClient):
    response = await client.get("/admin/applications/pending")
    assert response.status_code == 401


# ── Application Queue ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_pending_queue_empty(client: AsyncClient, admin_user: User):
    response = await client.get("/admin/applications/pending", headers=auth_headers(admin_user))
    assert response.status_code == 200
    assert response.json() == []


@pytest.mark.asyncio
async def test_list_applications_filtered_by_status(
    client: AsyncClient, admin_user: User, user: User, db: AsyncSession,
):
    pending = await make_application(db, user, "Cafe Cafe")
    other = await make_user(db, "other@example.com")
    rejected = await make_application(db, other, "Ukay Corner")
    rejected.status = ApplicationStatus.REJECTED
    await db.commit()

    headers = auth_headers(admin_user)
    response = await client.get("/admin/applications", headers=headers)
    assert response.status_code == 200
    assert {a["business_name"] for a in response.json()} == {"Cafe Cafe", "Ukay Corner"}

    response = await client.get("/admin/applications?status=pending", headers=headers)
    assert [a["id"] for a in response.json()] == [str(pending.id)]

    response = await client.get("/admin/applications/pending", headers=headers)
    assert [a["id"] for a in response.json()] == [str(pending.id)]


@pytest.mark.asyncio
async def test_list_applications_invalid_status(client: AsyncClient, admin_user: User):
    response = await client.get("/admin/applications?status=archived", headers=auth_headers(admin_user))
    assert response.status_code == 400


# ── Approval ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_approve_creates_shop_and_promotes_applicant(
    client: AsyncClient, admin_user: User, user: User, db: AsyncSession,
):
    """Cafe Cafe: pending → approved, shop at the default location, applicant becomes seller."""
    application = await make_application(db, user, "Cafe Cafe")

    response = await client.post(
        f"/admin/applications/{application.id}/approve", headers=auth_headers(admin_user),
    )
    assert response.status_code == 200
    data = response.json()
    assert data["application"]["status"] == "approved"
    assert data["application"]["reviewed_by_id"] == str(admin_user.id)

    shop = await db.scalar(select(Shop).where(Shop.id == uuid.UUID(data["shop_id"])))
    assert shop.owner_id == user.id
    assert shop.name == "Cafe Cafe"
    assert float(shop.rating) == 0
    assert shop.latitude == 10.745
    assert shop.longitude == 124.79
    assert shop.description == "Welcome to our new shop!"
    assert shop.category == "Food"
    assert shop.address == application.address

    role = await db.scalar(select(Profile.role).where(Profile.id == user.id))
    assert role == UserRole.SELLER


@pytest.mark.asyncio
async def test_approved_applicant_can_enter_seller_portal(
    client: AsyncClient, admin_user: User, user: User, db: AsyncSession,
):
    application = await make_application(db, user)
    await client.post(f"/admin/applications/{application.id}/approve", headers=auth_headers(admin_user))

    response = await client.post(
        "/auth/seller/login", json={"email": user.email, "password": TEST_PASSWORD},
    )
    assert response.status_code == 200
    assert response.json()["role"] == "seller"


@pytest.mark.asyncio
async def test_approve_twice_returns_409(
    client: AsyncClient, admin_user: User, user: User, db: AsyncSession,
):
    application = await make_application(db, user)
    headers = auth_headers(admin_user)

    first = await client.post(f"/admin/applications/{application.id}/approve", headers=headers)
    assert first.status_code == 200
    second = await client.post(f"/admin/applications/{application.id}/approve", headers=headers)
    assert second.status_code == 409

    assert await db.scalar(select(func.count(Shop.id))) == 1


@pytest.mark.asyncio
async def test_approve_unknown_application_returns_404(client: AsyncClient, admin_user: User):
    response = await client.post(
        f"/admin/applications/{uuid.uuid4()}/approve", headers=auth_headers(admin_user),
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_approve_writes_audit_log(
    client: AsyncClient, admin_user: User, user: User, db: AsyncSession,
):
    application = await make_application(db, user)
    headers = auth_headers(admin_user)
    await client.post(f"/admin/applications/{application.id}/approve", headers=headers)

    log = await db.scalar(select(AdminAuditLog).where(AdminAuditLog.entity_id == str(application.id)))
    assert log.action == "APPROVE_APPLICATION"
    assert log.admin_id == admin_user.id
    assert log.payload["business_name"] == "Cafe Cafe"

    response = await client.get("/admin/audit-logs?action=approve_application", headers=headers)
    assert response.status_code == 200
    assert response.json()["total"] == 1


@pytest.mark.asyncio
async def test_approve_publishes_update(
    client: AsyncClient, admin_user: User, user: User, db: AsyncSession, redis,
):
    application = await make_application(db, user)
    pubsub = redis.pubsub()
    await pubsub.subscribe(settings.APPLICATIONS_CHANNEL)

    await client.post(f"/admin/applications/{application.id}/approve", headers=auth_headers(admin_user))

    message = await next_message(pubsub)
    assert json.loads(message["data"]) == {
        "event": "UPDATE",
        "table": "seller_applications",
        "id": str(application.id),
    }
    await pubsub.aclose()


# ── Rejection ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reject_creates_no_shop(
    client: AsyncClient, admin_user: User, user: User, db: AsyncSession,
):
    application = await make_application(db, user)
    response = await client.post(
        f"/admin/applications/{application.id}/reject",
        headers=auth_headers(admin_user),
        json={"reason": "Permit is unreadable"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "rejected"

    assert await db.scalar(select(func.count(Shop.id))) == 0
    role = await db.scalar(select(Profile.role).where(Profile.id == user.id))
    assert role == UserRole.BUYER

    log = await db.scalar(select(AdminAuditLog).where(AdminAuditLog.action == "REJECT_APPLICATION"))
    assert log.payload["reason"] == "Permit is unreadable"


@pytest.mark.asyncio
async def test_reject_without_body(
    client: AsyncClient, admin_user: User, user: User, db: AsyncSession,
):
    application = await make_application(db, user)
    response = await client.post(
        f"/admin/applications/{application.id}/reject", headers=auth_headers(admin_user),
    )
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_cannot_approve_rejected_application(
    client: AsyncClient, admin_user: User, user: User, db: AsyncSession,
):
    application = await make_application(db, user)
    headers = auth_headers(admin_user)
    await client.post(f"/admin/applications/{application.id}/reject", headers=headers)

    response = await client.post(f"/admin/applications/{application.id}/approve", headers=headers)
    assert response.status_code == 409
    assert await db.scalar(select(func.count(Shop.id))) == 0


# ── Shops & Stats ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_registered_shops_include_owner(
    client: AsyncClient, admin_user: User, shop: Shop,
):
    response = await client.get("/admin/shops", headers=auth_headers(admin_user))
    assert response.status_code == 200
    items = response.json()
    assert len(items) == 1
    assert items[0]["name"] == "Santos Bakery"
    assert items[0]["owner_name"] == "Maria Santos"
    assert items[0]["owner_email"] == "seller@example.com"


@pytest.mark.asyncio
async def test_stats_counts_pending_and_active(
    client: AsyncClient, admin_user: User, user: User, shop: Shop, db: AsyncSession,
):
    await make_application(db, user)
    response = await client.get("/admin/stats", headers=auth_headers(admin_user))
    assert response.status_code == 200
    assert response.json() == {"pending": 1, "active": 1}
