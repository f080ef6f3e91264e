"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

from functools import lru_cache
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "Neighborhood Marketplace"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30

    # ── Redis ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_CACHE_TTL: int = 300          # 5 minutes
    REDIS_MAX_CONNECTIONS: int = 50
    APPLICATIONS_CHANNEL: str = "changes:seller_applications"

    # ── JWT ──────────────────────────────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # ── CORS ─────────────────────────────────────────────────
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    # ── Object Storage (S3 / R2 / Supabase S3 gateway) ──────
    S3_ACCESS_KEY_ID: str = ""
    S3_SECRET_ACCESS_KEY: str = ""
    S3_ENDPOINT_URL: Optional[str] = None
    S3_REGION: str = "auto"
    S3_PUBLIC_BASE_URL: str = "http://localhost:9000"
    S3_CACHE_CONTROL: str = "max-age=3600"
    BUCKET_IMAGES: str = "neighborhood-images"
    BUCKET_SELLER_PROOFS: str = "seller-proofs"
    MAX_UPLOAD_BYTES: int = 5 * 1024 * 1024

    # ── Rate Limiting ────────────────────────────────────────
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 60

    # ── Bootstrap Admin (development only) ──────────────────
    ADMIN_EMAIL: Optional[str] = None
    ADMIN_PASSWORD: Optional[str] = None

    # ── Business Config ──────────────────────────────────────
    # New shops are pinned here until the seller moves the marker.
    DEFAULT_SHOP_LATITUDE: float = 10.745
    DEFAULT_SHOP_LONGITUDE: float = 124.79
    DEFAULT_SHOP_DESCRIPTION: str = "Welcome to our new shop!"
    DEFAULT_PROFILE_LOCATION: str = "Leyte, Philippines"
    ACTIVITY_FEED_LIMIT: int = 15
    ACTIVITY_FETCH_PER_TYPE: int = 10
    TOP_RATED_LIMIT: int = 6

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance, shared by every module."""
    return Settings()


settings = get_settings()
