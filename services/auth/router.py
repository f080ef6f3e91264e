"""
services/auth/router.py
Email/password authentication and portal entry.
Implements: Sign-up → Login (per portal) → Guard → JWT issue → Logout
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import EmailStr
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from config.settings import settings
from services.realtime.bridge import ApplicationChangeFeed
from shared.middleware.auth import (
    Portal,
    SessionContext,
    TokenData,
    check_portal_access,
    decode_session_token,
    get_current_session,
    security,
)
from shared.models.models import (
    ApplicationStatus,
    Profile,
    SellerApplication,
    ShopCategory,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    LoginRequest,
    MessageResponse,
    PortalSessionResponse,
    ProfileResponse,
    SellerSignupResponse,
    SignupRequest,
    TokenResponse,
)
from shared.utils.security import (
    create_access_token,
    hash_password,
    verify_access_token,
    verify_password,
)
from shared.utils.storage import ObjectStorage, StorageError, get_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


# ── Helpers ───────────────────────────────────────────────────

async def _create_account(
    db: AsyncSession,
    email: str,
    password: str,
    full_name: Optional[str],
) -> tuple[User, Profile]:
    """Create identity + buyer profile. Flushed, not committed."""
    email = email.lower()
    existing = await db.execute(select(User.id).where(User.email == email))
    if existing.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="An account with this email already exists",
        )

    user = User(email=email, password_hash=hash_password(password))
    db.add(user)
    await db.flush()

    profile = Profile(
        id=user.id,
        email=email,
        full_name=full_name or email.split("@")[0],
        location=settings.DEFAULT_PROFILE_LOCATION,
        role=UserRole.BUYER,
    )
    db.add(profile)
    await db.flush()
    return user, profile


async def _portal_login(
    portal: Portal,
    data: LoginRequest,
    db: AsyncSession,
    redis,
) -> TokenResponse:
    """
    Authenticate, open a session, then run the portal guard against it.
    A denied session is revoked before the error is returned.
    """
    result = await db.execute(select(User).where(User.email == data.email.lower()))
    user = result.scalar_one_or_none()
    if not user or not verify_password(data.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid login credentials",
        )
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is deactivated")

    access_token, _ = create_access_token(user_id=str(user.id), email=user.email)
    token = TokenData(verify_access_token(access_token))

    decision = await check_portal_access(portal, token, db, redis)
    if not decision.granted:
        logger.info(f"Login to {portal.value} portal denied for {user.email}: {decision.state.value}")
        raise decision.to_http_exception()

    session = decision.context
    logger.info(f"User {user.id} signed in to {portal.value} portal")
    return TokenResponse(
        access_token=access_token,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        portal=portal.value,
        role=session.role.value,
        redirect_to=decision.redirect_to,
        header=session.header,
    )


# ── Sign-up ───────────────────────────────────────────────────

@router.post(
    "/signup",
    response_model=ProfileResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a buyer account",
)
async def signup(data: SignupRequest, db: AsyncSession = Depends(get_db)):
    user, profile = await _create_account(db, data.email, data.password, data.full_name)
    await db.commit()
    logger.info(f"Buyer account created: {user.id}")
    return ProfileResponse.model_validate(profile)


@router.post(
    "/seller/signup",
    response_model=SellerSignupResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an account and submit a seller application",
)
async def seller_signup(
    email: EmailStr = Form(...),
    password: str = Form(..., min_length=6, max_length=128),
    business_name: str = Form(..., min_length=1, max_length=255),
    owner_name: str = Form(..., min_length=1, max_length=255),
    contact_number: str = Form(..., min_length=1, max_length=30),
    category: str = Form(...),
    address: str = Form(..., min_length=1, max_length=255),
    proof: Optional[UploadFile] = File(None),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    storage: ObjectStorage = Depends(get_storage),
):
    """
    The account starts as a buyer; the role becomes seller only when an
    admin approves the application. The proof document is uploaded before
    the application row is written. An upload failure writes nothing.
    """
    if category not in {c.value for c in ShopCategory}:
        raise HTTPException(status_code=422, detail=f"Unknown category: {category}")
    user, _ = await _create_account(db, email, password, owner_name)

    proof_url = None
    if proof is not None and proof.filename:
        try:
            proof_url = await storage.upload_file(
                proof, settings.BUCKET_SELLER_PROOFS, folder=str(user.id)
            )
        except (StorageError, HTTPException):
            await db.rollback()
            raise

    application = SellerApplication(
        user_id=user.id,
        business_name=business_name,
        owner_name=owner_name,
        contact_number=contact_number,
        category=category,
        address=address,
        proof_url=proof_url,
        status=ApplicationStatus.PENDING,
    )
    db.add(application)
    await db.commit()

    logger.info(f"Seller application {application.id} submitted by {user.id}")
    await ApplicationChangeFeed(redis).publish("INSERT", application.id)

    return SellerSignupResponse(
        user_id=user.id,
        application_id=application.id,
        status=application.status.value,
        message="Application submitted. You can sign in to the seller portal once an admin approves it.",
    )


# ── Portal Login ──────────────────────────────────────────────

@router.post("/login", response_model=TokenResponse, summary="Buyer portal login")
async def login(data: LoginRequest, db: AsyncSession = Depends(get_db), redis=Depends(get_redis)):
    return await _portal_login(Portal.BUYER, data, db, redis)


@router.post("/seller/login", response_model=TokenResponse, summary="Seller portal login")
async def seller_login(data: LoginRequest, db: AsyncSession = Depends(get_db), redis=Depends(get_redis)):
    return await _portal_login(Portal.SELLER, data, db, redis)


@router.post("/admin/login", response_model=TokenResponse, summary="Admin portal login")
async def admin_login(data: LoginRequest, db: AsyncSession = Depends(get_db), redis=Depends(get_redis)):
    return await _portal_login(Portal.ADMIN, data, db, redis)


# ── Session ───────────────────────────────────────────────────

@router.get(
    "/portals/{portal}/session",
    response_model=PortalSessionResponse,
    summary="Evaluate the current session against a portal",
    responses={401: {"model": PortalSessionResponse}, 403: {"model": PortalSessionResponse}},
)
async def portal_session(
    portal: Portal,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Runs the portal guard and reports its decision with the header cache.
    Denials carry the portal's login route in `redirect_to`.
    """
    token = await decode_session_token(credentials.credentials if credentials else None, redis)
    decision = await check_portal_access(portal, token, db, redis)

    body = PortalSessionResponse(
        portal=portal.value,
        state=decision.state.value,
        granted=decision.granted,
        redirect_to=decision.redirect_to,
        detail=decision.detail,
        header=decision.context.header if decision.granted else None,
    )
    if decision.granted:
        return body
    return JSONResponse(status_code=decision.status_code, content=body.model_dump(mode="json"))


@router.post("/logout", response_model=MessageResponse, summary="Sign out")
async def logout(session: SessionContext = Depends(get_current_session)):
    """Adds the session's JWT to the Redis deny-list."""
    await session.invalidate()
    logger.info(f"User {session.user_id} signed out")
    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=ProfileResponse, summary="Get current profile")
async def get_me(session: SessionContext = Depends(get_current_session)):
    """Returns the authenticated user's profile."""
    return ProfileResponse.model_validate(session.profile)
