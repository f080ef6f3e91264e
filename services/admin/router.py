"""
services/admin/router.py
Admin-only endpoints: seller application queue, approval/rejection,
registered shops, dashboard counters, immutable audit log, and the
live application queue over WebSocket.

ALL mutations are logged to AdminAuditLog in the same transaction.
"""

import asyncio
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db, get_db_context
from config.redis_client import get_redis
from services.admin.approval import ApprovalWorkflow
from services.realtime.bridge import ApplicationChangeFeed, RealtimeSyncBridge
from shared.middleware.auth import (
    Portal,
    SessionContext,
    check_portal_access,
    decode_session_token,
    require_admin,
)
from shared.models.models import (
    AdminAuditLog,
    ApplicationStatus,
    Profile,
    SellerApplication,
    Shop,
)
from shared.schemas.schemas import (
    AdminRejectRequest,
    AdminShopResponse,
    AdminStatsResponse,
    ApplicationResponse,
    ApprovalResponse,
    AuditLogResponse,
    PaginatedResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


# ── Queries ────────────────────────────────────────────────────────────────────

async def _fetch_applications(db: AsyncSession, status_filter: ApplicationStatus | None = None) -> list:
    query = select(SellerApplication).order_by(SellerApplication.created_at.desc())
    if status_filter:
        query = query.where(SellerApplication.status == status_filter)
    result = await db.execute(query.execution_options(populate_existing=True))
    return [ApplicationResponse.model_validate(a) for a in result.scalars().all()]


async def _fetch_shops(db: AsyncSession) -> list:
    result = await db.execute(
        select(Shop, Profile)
        .outerjoin(Profile, Profile.id == Shop.owner_id)
        .order_by(Shop.created_at.desc())
        .execution_options(populate_existing=True)
    )
    items = []
    for shop, owner in result.all():
        item = AdminShopResponse.model_validate(shop)
        if owner:
            item.owner_name = owner.full_name
            item.owner_email = owner.email
        items.append(item)
    return items


async def fetch_queue_snapshot(db: AsyncSession) -> dict:
    """Full replacement of both collections the admin dashboard shows."""
    applications = await _fetch_applications(db)
    shops = await _fetch_shops(db)
    return {
        "type": "snapshot",
        "applications": [a.model_dump(mode="json") for a in applications],
        "shops": [s.model_dump(mode="json") for s in shops],
    }


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


# ── Application Queue ──────────────────────────────────────────────────────────

@router.get("/applications", response_model=list[ApplicationResponse])
async def list_applications(
    status_filter: str = Query(None, alias="status", description="pending | approved | rejected"),
    session: SessionContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """All seller applications, newest first."""
    parsed = None
    if status_filter:
        try:
            parsed = ApplicationStatus(status_filter)
        except ValueError:
            valid = [s.value for s in ApplicationStatus]
            raise HTTPException(status_code=400, detail=f"Invalid status. Valid: {valid}")
    try:
        return await _fetch_applications(db, parsed)
    except SQLAlchemyError as e:
        logger.error(f"Error fetching applications: {e}")
        return []


@router.get("/applications/pending", response_model=list[ApplicationResponse])
async def list_pending_applications(
    session: SessionContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Applications awaiting a decision."""
    try:
        return await _fetch_applications(db, ApplicationStatus.PENDING)
    except SQLAlchemyError as e:
        logger.error(f"Error fetching pending applications: {e}")
        return []


@router.post("/applications/{application_id}/approve", response_model=ApprovalResponse)
async def approve_application(
    application_id: UUID,
    request: Request,
    session: SessionContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Approve a pending application:
    - Creates the shop with default coordinates (seller corrects them later)
    - Marks the application approved
    - Promotes the applicant to seller
    All in one transaction. A failure returns 500 naming the failed step.
    """
    workflow = ApprovalWorkflow(db, session.user, ApplicationChangeFeed(redis), _client_ip(request))
    application, shop = await workflow.approve(application_id)
    return ApprovalResponse(
        application=ApplicationResponse.model_validate(application),
        shop_id=shop.id,
        message="Seller approved! Shop is now live.",
    )


@router.post("/applications/{application_id}/reject", response_model=ApplicationResponse)
async def reject_application(
    application_id: UUID,
    request: Request,
    data: AdminRejectRequest | None = None,
    session: SessionContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Reject a pending application. No shop is created."""
    workflow = ApprovalWorkflow(db, session.user, ApplicationChangeFeed(redis), _client_ip(request))
    application = await workflow.reject(application_id, data.reason if data else None)
    return ApplicationResponse.model_validate(application)


# ── Shops & Stats ──────────────────────────────────────────────────────────────

@router.get("/shops", response_model=list[AdminShopResponse])
async def list_registered_shops(
    session: SessionContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Every registered shop with its owner's name and email."""
    try:
        return await _fetch_shops(db)
    except SQLAlchemyError as e:
        logger.error(f"Error fetching shops: {e}")
        return []


@router.get("/stats", response_model=AdminStatsResponse)
async def get_stats(
    session: SessionContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Dashboard counters: pending applications and active shops."""
    pending = await db.scalar(
        select(func.count(SellerApplication.id))
        .where(SellerApplication.status == ApplicationStatus.PENDING)
    )
    active = await db.scalar(select(func.count(Shop.id)))
    return AdminStatsResponse(pending=pending or 0, active=active or 0)


# ── Audit Log ─────────────────────────────────────────────────────────────────

@router.get("/audit-logs", response_model=PaginatedResponse)
async def get_audit_logs(
    action: str = Query(None, description="Filter by action type e.g. APPROVE_APPLICATION"),
    entity_type: str = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    session: SessionContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Append-only record of admin decisions, newest first."""
    query = select(AdminAuditLog).order_by(AdminAuditLog.created_at.desc())
    if action:
        query = query.where(AdminAuditLog.action == action.upper())
    if entity_type:
        query = query.where(AdminAuditLog.entity_type == entity_type)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))

    return PaginatedResponse.build(
        [AuditLogResponse.model_validate(log) for log in result.scalars().all()],
        total or 0, page, page_size,
    )


# ── Live Queue ────────────────────────────────────────────────────────────────

@router.websocket("/ws/applications")
async def applications_feed(
    websocket: WebSocket,
    token: str = Query(None),
    redis=Depends(get_redis),
):
    """
    Sends a snapshot {applications, shops} on connect and again after every
    application insert or update. Admin session required (token query param).
    """
    token_data = await decode_session_token(token, redis)
    async with get_db_context() as db:
        decision = await check_portal_access(Portal.ADMIN, token_data, db, redis)
    if not decision.granted:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=decision.detail)
        return

    await websocket.accept()

    async def fetch():
        # Fresh session per snapshot so no row is served from a stale identity map
        async with get_db_context() as snapshot_db:
            return await fetch_queue_snapshot(snapshot_db)

    async def drain():
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info(f"Admin {decision.context.user_id} left the live queue")

    bridge = RealtimeSyncBridge(ApplicationChangeFeed(redis), fetch, websocket.send_json)
    bridge_task = asyncio.create_task(bridge.run())
    receiver_task = asyncio.create_task(drain())
    done, pending = await asyncio.wait(
        {bridge_task, receiver_task}, return_when=asyncio.FIRST_COMPLETED
    )
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    if bridge_task in done and bridge_task.exception() is not None:
        logger.error(
            f"Live queue for admin {decision.context.user_id} stopped: {bridge_task.exception()!r}"
        )
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
