"""
main.py
Neighborhood Marketplace API: app factory, middleware, error mapping,
health check and the development admin seeder.
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from logging import LogRecord
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from jose import JWTError
from prometheus_fastapi_instrumentator import Instrumentator
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

import config.redis_client as redis_state
from config.database import AsyncSessionLocal, close_db, init_db, ping_db
from config.redis_client import RateLimiter, close_redis, init_redis
from config.settings import settings
from services.admin.approval import ApprovalError
from services.admin.router import router as admin_router
from services.auth.router import router as auth_router
from services.review.router import router as review_router
from services.shop.router import router as shop_router
from services.user.router import router as user_router
from shared.models.models import Profile, User, UserRole
from shared.utils.security import hash_password, verify_access_token
from shared.utils.storage import StorageError

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

RATE_LIMIT_EXEMPT_PATHS = {"/health", "/docs", "/redoc", "/openapi.json", "/metrics"}


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """One JSON object per line; carries the request id when inside a request."""

    def format(self, record: LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        request_id = _request_id.get()
        if request_id:
            entry["request_id"] = request_id
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)


# ── Lifespan ─────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.APP_NAME} ({settings.APP_ENV})")
    await init_db()
    await init_redis()
    logger.info("Database and Redis connected")

    if settings.APP_ENV == "development":
        await seed_admin()

    yield

    await close_redis()
    await close_db()
    logger.info("Shutdown complete")


def _error_body(request: Request, detail: str, **extra) -> dict:
    return {"detail": detail, "request_id": getattr(request.state, "request_id", None), **extra}


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Neighborhood Marketplace API

- **Auth**: email + password, JWT sessions, one login per portal
- **Shops**: directory, top rated, seller shop settings, products, events
- **Reviews**: star ratings with photos, live shop rating
- **Users**: profile, privacy, favourites, recent activity
- **Admin**: live seller application queue, approval, audit log

Send `Authorization: Bearer <access_token>` from the login endpoint of the
portal you are entering. The `buyer` portal admits buyers and sellers,
`seller` admits approved sellers, `admin` admits admins. A session refused
by a portal is signed out.
        """,
        lifespan=lifespan,
    )

    # Outermost first
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        """Request id for tracing plus the processing time header."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        reset = _request_id.set(request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            _request_id.reset(reset)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{round((time.perf_counter() - start) * 1000, 2)}ms"
        return response

    def _has_valid_session(request: Request) -> bool:
        scheme, _, raw_token = request.headers.get("Authorization", "").partition(" ")
        if scheme.lower() != "bearer" or not raw_token:
            return False
        try:
            verify_access_token(raw_token)
        except JWTError:
            return False
        return True

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """
        Per-IP limit for anonymous traffic.
        Requests carrying a valid session token are not counted; a malformed
        or forged token is counted like no token. Fails open if Redis is down.
        """
        client = redis_state.redis_client
        if (
            client is None
            or request.url.path in RATE_LIMIT_EXEMPT_PATHS
            or _has_valid_session(request)
        ):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        limiter = RateLimiter(client, settings.RATE_LIMIT_UNAUTH_PER_MINUTE)
        try:
            allowed = await limiter.allow(f"rate:unauth:{client_ip}")
        except RedisError as e:
            logger.error(f"Rate limit check failed: {e}")
            allowed = True

        if not allowed:
            logger.warning(f"Rate limit exceeded for IP {client_ip}")
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Please slow down."},
                headers={"Retry-After": str(limiter.window_seconds)},
            )
        return await call_next(request)

    # ── Error mapping ──────────────────────────────────────────────

    @app.exception_handler(StorageError)
    async def storage_exception_handler(request: Request, exc: StorageError):
        logger.error(f"Upload failed: {exc}")
        return JSONResponse(status_code=502, content=_error_body(request, "Failed to upload image"))

    @app.exception_handler(ApprovalError)
    async def approval_exception_handler(request: Request, exc: ApprovalError):
        logger.error(str(exc))
        return JSONResponse(
            status_code=500,
            content=_error_body(request, str(exc), step=exc.step.value),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Never expose stack traces outside DEBUG."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        detail = str(exc) if settings.DEBUG else "An internal server error occurred"
        return JSONResponse(status_code=500, content=_error_body(request, detail))

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        checks = {"status": "ok", "version": settings.APP_VERSION}

        try:
            await ping_db()
            checks["database"] = "ok"
        except SQLAlchemyError:
            checks["database"] = "error"
            checks["status"] = "degraded"

        try:
            if redis_state.redis_client:
                await redis_state.redis_client.ping()
            checks["redis"] = "ok"
        except RedisError:
            checks["redis"] = "error"
            checks["status"] = "degraded"

        return JSONResponse(content=checks, status_code=200 if checks["status"] == "ok" else 503)

    @app.get("/", include_in_schema=False)
    async def root():
        return {"name": settings.APP_NAME, "version": settings.APP_VERSION, "docs": "/docs"}

    for router in (auth_router, user_router, shop_router, review_router, admin_router):
        app.include_router(router)

    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])
    return app


# ── Dev Admin Seeder ──────────────────────────────────────────

async def seed_admin() -> None:
    """Create the bootstrap admin from ADMIN_EMAIL / ADMIN_PASSWORD if missing."""
    if not settings.ADMIN_EMAIL or not settings.ADMIN_PASSWORD:
        return

    email = settings.ADMIN_EMAIL.lower()
    async with AsyncSessionLocal() as db:
        if await db.scalar(select(User.id).where(User.email == email)):
            return

        user = User(email=email, password_hash=hash_password(settings.ADMIN_PASSWORD))
        db.add(user)
        await db.flush()
        db.add(Profile(id=user.id, email=email, full_name="Administrator", role=UserRole.ADMIN))
        await db.commit()
        logger.info(f"Seeded admin account {email}")


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
    )
