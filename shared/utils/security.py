"""
shared/utils/security.py
Session tokens and password hashing.

A session is one signed JWT identified by its `jti`. It names the account
(`sub`, `email`) but never its role: portals read the role from the
profile row each time, so a promotion or demotion takes effect immediately.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from config.settings import settings

SESSION_TOKEN_TYPE = "access"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def create_access_token(
    user_id: str,
    email: str,
    extra: Optional[dict] = None,
) -> tuple[str, str]:
    """Start a session. Returns (token, jti); the jti is what sign-out revokes."""
    jti = uuid.uuid4().hex
    issued_at = datetime.now(timezone.utc)
    claims = {
        **(extra or {}),
        "sub": str(user_id),
        "email": email,
        "jti": jti,
        "type": SESSION_TOKEN_TYPE,
        "iat": issued_at,
        "exp": issued_at + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES),
    }
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM), jti


def verify_access_token(token: str) -> dict:
    """Signature, expiry and token type. Raises JWTError on any mismatch."""
    claims = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    if claims.get("type") != SESSION_TOKEN_TYPE or not claims.get("jti"):
        raise JWTError("Not a session token")
    return claims


def get_token_remaining_ttl(claims: dict) -> int:
    """Seconds the token would stay valid; sizes its deny-list entry."""
    return max(0, int(claims.get("exp", 0) - datetime.now(timezone.utc).timestamp()))


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)
