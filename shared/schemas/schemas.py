"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the marketplace.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from shared.models.models import ShopCategory


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int

    @classmethod
    def build(cls, items: list, total: int, page: int, page_size: int) -> "PaginatedResponse":
        return cls(items=items, total=total, page=page, page_size=page_size, pages=-(-total // page_size))


# ── Auth ──────────────────────────────────────────────────────

class SignupRequest(BaseSchema):
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)
    full_name: Optional[str] = Field(None, max_length=255)


class LoginRequest(BaseSchema):
    email: EmailStr
    password: str = Field(..., min_length=1)


class HeaderCache(BaseSchema):
    name: str
    avatar_url: Optional[str] = None


class TokenResponse(BaseSchema):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    portal: str
    role: str
    redirect_to: str
    header: HeaderCache


class PortalSessionResponse(BaseSchema):
    portal: str
    state: str
    granted: bool
    redirect_to: str
    detail: Optional[str] = None
    header: Optional[HeaderCache] = None


class SellerSignupResponse(BaseSchema):
    user_id: uuid.UUID
    application_id: uuid.UUID
    status: str
    message: str


# ── Profile ───────────────────────────────────────────────────

class ProfileResponse(BaseSchema):
    id: uuid.UUID
    email: Optional[str]
    full_name: Optional[str]
    avatar_url: Optional[str]
    bio: Optional[str]
    location: Optional[str]
    role: str
    is_public: bool
    show_email: bool
    show_activity: bool
    created_at: datetime


class PrivacyUpdateRequest(BaseSchema):
    is_public: Optional[bool] = None
    show_email: Optional[bool] = None
    show_activity: Optional[bool] = None


class ActivityItem(BaseSchema):
    id: uuid.UUID
    type: str  # review | favorite
    content: str
    date: datetime
    shop_name: str
    image_url: Optional[str] = None


class ProfileStats(BaseSchema):
    reviews_count: int
    favorites_count: int


class FullProfileResponse(BaseSchema):
    profile: ProfileResponse
    stats: ProfileStats
    activity: List[ActivityItem]


class PublicProfileResponse(BaseSchema):
    id: uuid.UUID
    full_name: Optional[str]
    avatar_url: Optional[str]
    bio: Optional[str]
    location: Optional[str]
    email: Optional[str] = None
    stats: ProfileStats
    activity: Optional[List[ActivityItem]] = None


# ── Seller Application ────────────────────────────────────────

class ApplicationResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    business_name: str
    owner_name: str
    contact_number: str
    category: str
    address: str
    proof_url: Optional[str]
    status: str
    created_at: datetime
    reviewed_at: Optional[datetime] = None
    reviewed_by_id: Optional[uuid.UUID] = None


class ApprovalResponse(BaseSchema):
    application: ApplicationResponse
    shop_id: uuid.UUID
    message: str


# ── Shop ──────────────────────────────────────────────────────

class ShopResponse(BaseSchema):
    id: uuid.UUID
    owner_id: uuid.UUID
    name: str
    description: Optional[str]
    address: Optional[str]
    contact_number: Optional[str]
    category: Optional[str]
    image_url: Optional[str]
    rating: Decimal
    rating_count: int
    latitude: float
    longitude: float
    created_at: datetime


class ShopUpsertRequest(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    address: Optional[str] = Field(None, max_length=255)
    contact_number: Optional[str] = Field(None, max_length=30)
    category: Optional[str] = Field(None, max_length=50)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)

    @field_validator("category")
    @classmethod
    def validate_category(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in {c.value for c in ShopCategory}:
            raise ValueError(f"category must be one of {', '.join(c.value for c in ShopCategory)}")
        return v


class AdminShopResponse(ShopResponse):
    owner_name: Optional[str] = None
    owner_email: Optional[str] = None


# ── Product ───────────────────────────────────────────────────

class ProductResponse(BaseSchema):
    id: uuid.UUID
    shop_id: uuid.UUID
    name: str
    price: Decimal
    image_url: Optional[str]
    stock: Optional[int]
    created_at: datetime


# ── Event ─────────────────────────────────────────────────────

class EventCreateRequest(BaseSchema):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    start_date: date
    end_date: date
    status: str = "Active"

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in ("Active", "Upcoming", "Ended"):
            raise ValueError("status must be one of Active, Upcoming, Ended")
        return v

    @model_validator(mode="after")
    def validate_dates(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class EventResponse(BaseSchema):
    id: uuid.UUID
    shop_id: uuid.UUID
    title: str
    description: Optional[str]
    start_date: date
    end_date: date
    status: str
    created_at: datetime


class ShopDetailResponse(BaseSchema):
    shop: ShopResponse
    products: List[ProductResponse]
    events: List[EventResponse]
    is_favorite: bool = False


# ── Review ────────────────────────────────────────────────────

class ReviewResponse(BaseSchema):
    id: uuid.UUID
    shop_id: uuid.UUID
    user_id: uuid.UUID
    rating: int
    comment: str
    image_url: Optional[str]
    created_at: datetime
    reviewer_name: Optional[str] = None
    reviewer_avatar_url: Optional[str] = None


class ReviewCreatedResponse(BaseSchema):
    review: ReviewResponse
    shop_rating: Decimal
    shop_rating_count: int


# ── Favorite ──────────────────────────────────────────────────

class FavoriteResponse(BaseSchema):
    id: uuid.UUID
    shop_id: uuid.UUID
    created_at: datetime
    shop: ShopResponse


class FavoriteToggleResponse(BaseSchema):
    shop_id: uuid.UUID
    is_favorite: bool


class MyReviewResponse(ReviewResponse):
    shop: Optional[ShopResponse] = None


class UploadedPhotoResponse(BaseSchema):
    review_id: uuid.UUID
    url: str
    shop_name: str
    created_at: datetime


# ── Admin ─────────────────────────────────────────────────────

class AdminRejectRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class AdminStatsResponse(BaseSchema):
    pending: int
    active: int


class AuditLogResponse(BaseSchema):
    id: uuid.UUID
    admin_id: uuid.UUID
    action: str
    entity_type: str
    entity_id: Optional[str]
    payload: Optional[dict]
    ip_address: Optional[str]
    created_at: datetime


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


