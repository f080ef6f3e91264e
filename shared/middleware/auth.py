"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and portal authorization.

Three disjoint portals (buyer, seller, admin) each admit a fixed set of
profile roles. Every portal entry re-reads the profile and fails closed:
a session whose identity has no profile, or whose role does not belong
to the portal, is signed out before the request is rejected.
"""

import logging
import uuid
from enum import Enum
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import SessionDenyList, get_redis
from shared.models.models import Profile, User, UserRole
from shared.utils.security import get_token_remaining_ttl, verify_access_token

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


# ── Portals ───────────────────────────────────────────────────

class Portal(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


PORTAL_ROLES: dict[Portal, tuple[UserRole, ...]] = {
    Portal.BUYER: (UserRole.BUYER, UserRole.SELLER),
    Portal.SELLER: (UserRole.SELLER,),
    Portal.ADMIN: (UserRole.ADMIN,),
}

PORTAL_LOGIN_ROUTES = {
    Portal.BUYER: "/auth/login",
    Portal.SELLER: "/auth/seller/login",
    Portal.ADMIN: "/auth/admin/login",
}

PORTAL_HOME_ROUTES = {
    Portal.BUYER: "/protected/dashboard",
    Portal.SELLER: "/seller/dashboard",
    Portal.ADMIN: "/admin/dashboard",
}

WRONG_ROLE_MESSAGES = {
    Portal.BUYER: "Access Denied: Admins are restricted from this portal. Please use the Admin Login.",
    Portal.SELLER: "Access Denied: This portal is for verified Sellers only.",
    Portal.ADMIN: "Access Denied: You do not have admin privileges.",
}

NO_PROFILE_MESSAGE = "Account setup incomplete. Please contact support."


class GuardState(str, Enum):
    UNCHECKED = "unchecked"
    CHECKING = "checking"
    GRANTED = "granted"
    DENIED_NO_SESSION = "denied_no_session"
    DENIED_WRONG_ROLE = "denied_wrong_role"
    DENIED_NO_PROFILE = "denied_no_profile"


# ── Session ───────────────────────────────────────────────────

class TokenData:
    def __init__(self, payload: dict):
        self.user_id: str = payload["sub"]
        self.email: str = payload["email"]
        self.jti: str = payload["jti"]
        self.payload = payload


class SessionContext:
    """
    Per-request session state: the authenticated identity, its profile and
    the header fields derived from it. Replaces any process-wide cache.
    """

    def __init__(self, token: TokenData, user: User, profile: Profile, redis):
        self.token = token
        self.user = user
        self.profile = profile
        self._redis = redis
        self.invalidated = False

    @property
    def user_id(self):
        return self.user.id

    @property
    def role(self) -> UserRole:
        return self.profile.role

    @property
    def header(self) -> dict:
        """Display-only cache for the portal header. Never a source of truth."""
        name = self.profile.full_name or (self.user.email or "").split("@")[0]
        return {"name": name, "avatar_url": self.profile.avatar_url}

    async def invalidate(self) -> None:
        """Sign this session out."""
        await revoke_session(self._redis, self.token)
        self.invalidated = True


async def revoke_session(redis, token: TokenData) -> None:
    ttl = get_token_remaining_ttl(token.payload)
    await SessionDenyList(redis).revoke(token.jti, ttl)


class GuardDecision:
    def __init__(
        self,
        portal: Portal,
        state: GuardState,
        detail: Optional[str] = None,
        context: Optional[SessionContext] = None,
    ):
        self.portal = portal
        self.state = state
        self.detail = detail
        self.context = context

    @property
    def granted(self) -> bool:
        return self.state == GuardState.GRANTED

    @property
    def status_code(self) -> int:
        if self.state == GuardState.DENIED_WRONG_ROLE:
            return status.HTTP_403_FORBIDDEN
        if self.granted:
            return status.HTTP_200_OK
        return status.HTTP_401_UNAUTHORIZED

    @property
    def redirect_to(self) -> str:
        if self.granted:
            return PORTAL_HOME_ROUTES[self.portal]
        return PORTAL_LOGIN_ROUTES[self.portal]

    def to_http_exception(self) -> HTTPException:
        headers = None
        if self.status_code == status.HTTP_401_UNAUTHORIZED:
            headers = {"WWW-Authenticate": "Bearer"}
        return HTTPException(status_code=self.status_code, detail=self.detail, headers=headers)


# ── Token extraction ──────────────────────────────────────────

async def decode_session_token(raw_token: Optional[str], redis) -> Optional[TokenData]:
    """Returns None for a missing, invalid, expired or signed-out token."""
    if not raw_token:
        return None
    try:
        payload = verify_access_token(raw_token)
    except JWTError:
        return None
    token = TokenData(payload)
    if await SessionDenyList(redis).is_revoked(token.jti):
        return None
    return token


async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_redis),
) -> TokenData:
    """
    Extract and validate JWT from Authorization header.
    Checks deny-list in Redis to handle signed-out sessions.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    token = await decode_session_token(credentials.credentials, redis)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token


# ── Guard ─────────────────────────────────────────────────────

async def check_portal_access(
    portal: Portal,
    token: Optional[TokenData],
    db: AsyncSession,
    redis,
) -> GuardDecision:
    """
    Unchecked → Checking → {Granted, DeniedNoSession, DeniedWrongRole, DeniedNoProfile}.
    Both profile-level denials sign the session out before returning.
    """
    if token is None:
        return GuardDecision(portal, GuardState.DENIED_NO_SESSION, "Authentication required")

    try:
        result = await db.execute(
            select(User, Profile)
            .outerjoin(Profile, Profile.id == User.id)
            .where(User.id == _as_uuid(token.user_id))
        )
        row = result.one_or_none()
    except (SQLAlchemyError, ValueError) as exc:
        logger.error(f"Profile lookup failed for {token.user_id}: {exc}")
        row = None

    user, profile = (row[0], row[1]) if row else (None, None)

    if user is None or profile is None or not user.is_active:
        await revoke_session(redis, token)
        logger.warning(f"Portal {portal.value}: no profile for {token.user_id}, session revoked")
        return GuardDecision(portal, GuardState.DENIED_NO_PROFILE, NO_PROFILE_MESSAGE)

    if profile.role not in PORTAL_ROLES[portal]:
        await revoke_session(redis, token)
        logger.warning(
            f"Portal {portal.value}: role {profile.role.value} denied for {token.user_id}, "
            f"session revoked"
        )
        return GuardDecision(portal, GuardState.DENIED_WRONG_ROLE, WRONG_ROLE_MESSAGES[portal])

    context = SessionContext(token, user, profile, redis)
    return GuardDecision(portal, GuardState.GRANTED, context=context)


def _as_uuid(value) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


class PortalGuard:
    """Dependency factory: grants a SessionContext for one portal or raises."""

    def __init__(self, portal: Portal):
        self.portal = portal

    async def __call__(
        self,
        token: TokenData = Depends(get_token_data),
        db: AsyncSession = Depends(get_db),
        redis=Depends(get_redis),
    ) -> SessionContext:
        decision = await check_portal_access(self.portal, token, db, redis)
        if not decision.granted:
            raise decision.to_http_exception()
        return decision.context


async def get_current_session(
    token: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
) -> SessionContext:
    """Any active signed-in identity with a profile, regardless of portal."""
    result = await db.execute(
        select(User, Profile)
        .join(Profile, Profile.id == User.id)
        .where(User.id == _as_uuid(token.user_id))
    )
    row = result.one_or_none()
    if not row or not row[0].is_active:
        await revoke_session(redis, token)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=NO_PROFILE_MESSAGE)
    return SessionContext(token, row[0], row[1], redis)


# Convenience portal dependencies
require_buyer = PortalGuard(Portal.BUYER)
require_seller = PortalGuard(Portal.SELLER)
require_admin = PortalGuard(Portal.ADMIN)


async def get_optional_session(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
) -> Optional[SessionContext]:
    """Returns the session if one is present and valid, None otherwise. For public endpoints."""
    token = await decode_session_token(credentials.credentials if credentials else None, redis)
    if token is None:
        return None
    result = await db.execute(
        select(User, Profile)
        .join(Profile, Profile.id == User.id)
        .where(User.id == _as_uuid(token.user_id))
    )
    row = result.one_or_none()
    if not row or not row[0].is_active:
        return None
    return SessionContext(token, row[0], row[1], redis)
