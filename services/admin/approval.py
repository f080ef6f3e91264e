"""
services/admin/approval.py
Seller application approval and rejection.

Approval promotes a pending application to a live shop in ONE transaction:
    1. insert the Shop (owner = applicant, default coordinates)
    2. mark the application approved
    3. promote the applicant's profile to seller
    4. append the admin audit entry
Either every write is committed or none is. A failed step rolls the
session back and surfaces as ApprovalError naming the step.

The status change is conditional on the row still being pending, so of
two concurrent decisions on one application only the first commits; the
other rolls back and gets 409.
"""

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from fastapi import HTTPException
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.realtime.bridge import ApplicationChangeFeed
from shared.models.models import (
    AdminAuditLog,
    ApplicationStatus,
    Profile,
    SellerApplication,
    Shop,
    User,
    UserRole,
)

logger = logging.getLogger(__name__)


class ApprovalStep(str, Enum):
    LOAD = "load_application"
    CREATE_SHOP = "create_shop"
    MARK_APPROVED = "mark_application_approved"
    MARK_REJECTED = "mark_application_rejected"
    PROMOTE_ROLE = "promote_applicant_role"
    AUDIT = "write_audit_log"
    COMMIT = "commit"


class ApprovalError(Exception):
    """A workflow step failed; nothing was committed."""

    def __init__(self, step: ApprovalStep, application_id: uuid.UUID, cause: Optional[Exception] = None):
        self.step = step
        self.application_id = application_id
        self.cause = cause
        super().__init__(f"Approval of application {application_id} failed at step '{step.value}'")


class ApprovalWorkflow:
    def __init__(
        self,
        db: AsyncSession,
        admin: User,
        feed: Optional[ApplicationChangeFeed] = None,
        ip_address: Optional[str] = None,
    ):
        self.db = db
        self.admin = admin
        self.feed = feed
        self.ip_address = ip_address

    # ── Preconditions ─────────────────────────────────────────

    async def _get_pending(self, application_id: uuid.UUID) -> SellerApplication:
        result = await self.db.execute(
            select(SellerApplication)
            .where(SellerApplication.id == application_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        application = result.scalar_one_or_none()
        if not application:
            raise HTTPException(status_code=404, detail="Application not found")
        if application.status != ApplicationStatus.PENDING:
            raise HTTPException(
                status_code=409,
                detail=f"Application is already {application.status.value}",
            )
        return application

    # ── Steps ─────────────────────────────────────────────────

    async def _create_shop(self, application: SellerApplication) -> Shop:
        shop = Shop(
            owner_id=application.user_id,
            name=application.business_name,
            address=application.address,
            category=application.category,
            contact_number=application.contact_number,
            description=settings.DEFAULT_SHOP_DESCRIPTION,
            rating=0,
            rating_count=0,
            latitude=settings.DEFAULT_SHOP_LATITUDE,
            longitude=settings.DEFAULT_SHOP_LONGITUDE,
        )
        self.db.add(shop)
        await self.db.flush()
        return shop

    async def _mark_reviewed(self, application: SellerApplication, new_status: ApplicationStatus) -> None:
        application_id = application.id
        result = await self.db.execute(
            update(SellerApplication)
            .where(
                SellerApplication.id == application_id,
                SellerApplication.status == ApplicationStatus.PENDING,
            )
            .values(
                status=new_status,
                reviewed_at=datetime.now(timezone.utc),
                reviewed_by_id=self.admin.id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            logger.warning(f"Application {application_id} was reviewed concurrently, rolled back")
            raise HTTPException(status_code=409, detail="Application has already been reviewed")
        await self.db.refresh(application)

    async def _promote_applicant(self, application: SellerApplication) -> None:
        result = await self.db.execute(
            select(Profile).where(Profile.id == application.user_id)
        )
        # scalar_one raises NoResultFound when the applicant has no profile
        profile = result.scalar_one()
        profile.role = UserRole.SELLER
        await self.db.flush()

    def _audit(self, action: str, application: SellerApplication, payload: dict) -> None:
        self.db.add(AdminAuditLog(
            admin_id=self.admin.id,
            action=action,
            entity_type="SellerApplication",
            entity_id=str(application.id),
            payload=payload,
            ip_address=self.ip_address,
        ))

    async def _fail(self, step: ApprovalStep, application_id: uuid.UUID, exc: Exception):
        await self.db.rollback()
        logger.error(f"Application {application_id}: step '{step.value}' failed, rolled back: {exc}")
        raise ApprovalError(step, application_id, exc) from exc

    # ── Operations ────────────────────────────────────────────

    async def approve(self, application_id: uuid.UUID) -> tuple[SellerApplication, Shop]:
        """Returns (application, shop) once all writes are committed."""
        application = await self._get_pending(application_id)

        step = ApprovalStep.CREATE_SHOP
        try:
            shop = await self._create_shop(application)
            logger.info(f"Application {application_id}: shop {shop.id} staged")

            step = ApprovalStep.MARK_APPROVED
            await self._mark_reviewed(application, ApplicationStatus.APPROVED)

            step = ApprovalStep.PROMOTE_ROLE
            await self._promote_applicant(application)

            step = ApprovalStep.AUDIT
            self._audit("APPROVE_APPLICATION", application, {
                "shop_id": str(shop.id),
                "business_name": application.business_name,
                "user_id": str(application.user_id),
            })

            step = ApprovalStep.COMMIT
            await self.db.commit()
        except SQLAlchemyError as e:
            await self._fail(step, application_id, e)

        logger.info(
            f"Application {application_id} approved by {self.admin.id}: "
            f"shop {shop.id} created, user {application.user_id} promoted to seller"
        )
        await self._announce(application.id)
        return application, shop

    async def reject(self, application_id: uuid.UUID, reason: Optional[str] = None) -> SellerApplication:
        application = await self._get_pending(application_id)

        step = ApprovalStep.MARK_REJECTED
        try:
            await self._mark_reviewed(application, ApplicationStatus.REJECTED)

            step = ApprovalStep.AUDIT
            self._audit("REJECT_APPLICATION", application, {
                "business_name": application.business_name,
                "reason": reason,
            })

            step = ApprovalStep.COMMIT
            await self.db.commit()
        except SQLAlchemyError as e:
            await self._fail(step, application_id, e)

        logger.info(f"Application {application_id} rejected by {self.admin.id}")
        await self._announce(application.id)
        return application

    async def _announce(self, application_id: uuid.UUID) -> None:
        if self.feed is not None:
            await self.feed.publish("UPDATE", application_id)
