"""
tests/conftest.py
Shared fixtures: in-memory SQLite session shared with the app, fakeredis,
an in-memory object store, and one account per role.
"""

import os

os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret-key"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["APP_ENV"] = "test"

import uuid
from typing import Optional

import pytest_asyncio
from fakeredis import aioredis as fake_aioredis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config.database import Base, get_db
from config.redis_client import get_redis
from main import app
from shared.models.models import Profile, SellerApplication, Shop, User, UserRole
from shared.utils.security import create_access_token, hash_password
from shared.utils.storage import ObjectStorage, StorageError, get_storage

TEST_PASSWORD = "password123"
TEST_PASSWORD_HASH = hash_password(TEST_PASSWORD)


# ── Helpers ────────────────────────────────────────────────────────────────────

def auth_headers(user: User) -> dict:
    token, _ = create_access_token(user_id=str(user.id), email=user.email)
    return {"Authorization": f"Bearer {token}"}


async def make_user(
    db: AsyncSession,
    email: str,
    role: UserRole = UserRole.BUYER,
    full_name: Optional[str] = None,
    with_profile: bool = True,
) -> User:
    user = User(id=uuid.uuid4(), email=email, password_hash=TEST_PASSWORD_HASH)
    db.add(user)
    await db.flush()
    if with_profile:
        db.add(Profile(
            id=user.id,
            email=email,
            full_name=full_name or email.split("@")[0],
            role=role,
        ))
    await db.commit()
    return user


async def make_application(db: AsyncSession, user: User, business_name: str = "Cafe Cafe") -> SellerApplication:
    application = SellerApplication(
        user_id=user.id,
        business_name=business_name,
        owner_name="Maria Santos",
        contact_number="09171234567",
        category="Food",
        address="Real St, Tacloban City",
        proof_url="https://storage.test/seller-proofs/permit.pdf",
    )
    db.add(application)
    await db.commit()
    return application


async def next_message(pubsub, attempts: int = 10) -> Optional[dict]:
    """First data message on a subscription, skipping subscribe confirmations."""
    for _ in range(attempts):
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.2)
        if message:
            return message
    return None


class FakeStorage(ObjectStorage):
    """Keeps uploads in memory. Set `fail = True` to simulate an outage."""

    def __init__(self):
        super().__init__(client=object(), public_base_url="https://storage.test")
        self.objects: dict[str, bytes] = {}
        self.fail = False

    async def upload(self, bucket, path, data, content_type=None):
        if self.fail:
            raise StorageError("Simulated storage outage")
        self.objects[f"{bucket}/{path}"] = data


# ── Infrastructure ─────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture
async def redis():
    client = fake_aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def storage():
    return FakeStorage()


@pytest_asyncio.fixture
async def client(db: AsyncSession, redis, storage: FakeStorage):
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: redis
    app.dependency_overrides[get_storage] = lambda: storage

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Accounts ───────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def user(db: AsyncSession) -> User:
    """A buyer."""
    return await make_user(db, "buyer@example.com", UserRole.BUYER, "Juan Dela Cruz")


@pytest_asyncio.fixture
async def seller_user(db: AsyncSession) -> User:
    return await make_user(db, "seller@example.com", UserRole.SELLER, "Maria Santos")


@pytest_asyncio.fixture
async def admin_user(db: AsyncSession) -> User:
    return await make_user(db, "admin@example.com", UserRole.ADMIN, "Admin")


@pytest_asyncio.fixture
async def shop(db: AsyncSession, seller_user: User) -> Shop:
    shop = Shop(
        owner_id=seller_user.id,
        name="Santos Bakery",
        description="Fresh bread daily",
        address="Real St, Tacloban City",
        category="Food",
        contact_number="09171234567",
        rating=0,
        rating_count=0,
        latitude=11.24,
        longitude=125.0,
    )
    db.add(shop)
    await db.commit()
    return shop
