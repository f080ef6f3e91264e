"""
services/user/router.py
Profile management, privacy settings, favourite shops, the
recent-activity feed, and the user's own reviews and visited shops.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from shared.middleware.auth import SessionContext, get_current_session, require_buyer
from shared.models.models import Favorite, Profile, Review, Shop
from shared.schemas.schemas import (
    ActivityItem,
    FavoriteResponse,
    FavoriteToggleResponse,
    FullProfileResponse,
    MessageResponse,
    MyReviewResponse,
    PrivacyUpdateRequest,
    ProfileResponse,
    ProfileStats,
    PublicProfileResponse,
    ReviewResponse,
    ShopResponse,
    UploadedPhotoResponse,
)
from shared.utils.storage import ObjectStorage, get_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["Users"])

UNKNOWN_SHOP = "Unknown shop"


# ── Activity Feed ─────────────────────────────────────────────

def describe_review(shop_name: str, rating: int, comment: Optional[str], image_url: Optional[str]) -> str:
    text = f"Rated {shop_name} {rating} stars"
    if image_url:
        text += " and uploaded an image"
    if comment:
        text += f': "{comment[:50]}{"..." if len(comment) > 50 else ""}"'
    return text


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive UTC timestamps
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


async def fetch_recent_activity(db: AsyncSession, user_id: UUID) -> list[ActivityItem]:
    """Reviews and favourites merged newest first, capped at ACTIVITY_FEED_LIMIT."""
    per_type = settings.ACTIVITY_FETCH_PER_TYPE
    try:
        reviews = await db.execute(
            select(Review, Shop.name)
            .outerjoin(Shop, Shop.id == Review.shop_id)
            .where(Review.user_id == user_id)
            .order_by(Review.created_at.desc())
            .limit(per_type)
        )
        favorites = await db.execute(
            select(Favorite, Shop.name)
            .outerjoin(Shop, Shop.id == Favorite.shop_id)
            .where(Favorite.user_id == user_id)
            .order_by(Favorite.created_at.desc())
            .limit(per_type)
        )
    except SQLAlchemyError as e:
        logger.error(f"Error fetching activity for {user_id}: {e}")
        return []

    activities = [
        ActivityItem(
            id=review.id,
            type="review",
            content=describe_review(shop_name or UNKNOWN_SHOP, review.rating, review.comment, review.image_url),
            date=review.created_at,
            shop_name=shop_name or UNKNOWN_SHOP,
            image_url=review.image_url,
        )
        for review, shop_name in reviews.all()
    ]
    activities += [
        ActivityItem(
            id=favorite.id,
            type="favorite",
            content=f"Favorited the shop: {shop_name or UNKNOWN_SHOP}",
            date=favorite.created_at,
            shop_name=shop_name or UNKNOWN_SHOP,
        )
        for favorite, shop_name in favorites.all()
    ]
    activities.sort(key=lambda a: _aware(a.date), reverse=True)
    return activities[:settings.ACTIVITY_FEED_LIMIT]


async def _profile_stats(db: AsyncSession, user_id: UUID) -> ProfileStats:
    reviews_count = await db.scalar(select(func.count(Review.id)).where(Review.user_id == user_id))
    favorites_count = await db.scalar(select(func.count(Favorite.id)).where(Favorite.user_id == user_id))
    return ProfileStats(reviews_count=reviews_count or 0, favorites_count=favorites_count or 0)


# ── Profile ───────────────────────────────────────────────────

@router.get("/me", response_model=FullProfileResponse)
async def get_me(
    session: SessionContext = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
):
    """Profile row, review/favourite counts, and the recent-activity feed."""
    return FullProfileResponse(
        profile=ProfileResponse.model_validate(session.profile),
        stats=await _profile_stats(db, session.user_id),
        activity=await fetch_recent_activity(db, session.user_id),
    )


@router.put("/me", response_model=ProfileResponse)
async def update_me(
    full_name: Optional[str] = Form(None, max_length=255),
    bio: Optional[str] = Form(None, max_length=1000),
    location: Optional[str] = Form(None, max_length=255),
    avatar: Optional[UploadFile] = File(None),
    session: SessionContext = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
):
    """
    Update profile fields. Only provided fields are changed.
    A new avatar is uploaded before the profile row is touched.
    """
    profile = session.profile
    if avatar is not None and avatar.filename:
        profile.avatar_url = await storage.upload_file(avatar, settings.BUCKET_IMAGES, folder="avatars")

    updates = {"full_name": full_name, "bio": bio, "location": location}
    for field, value in updates.items():
        if value is not None:
            setattr(profile, field, value)

    await db.commit()
    return ProfileResponse.model_validate(profile)


@router.patch("/me/privacy", response_model=ProfileResponse)
async def update_privacy(
    data: PrivacyUpdateRequest,
    session: SessionContext = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
):
    """Toggle profile visibility, email visibility and activity visibility."""
    profile = session.profile
    for field, value in data.model_dump(exclude_none=True).items():
        setattr(profile, field, value)
    await db.commit()
    return ProfileResponse.model_validate(profile)


# ── Favourite Shops ───────────────────────────────────────────

@router.get("/me/favorites", response_model=list[FavoriteResponse])
async def get_favorites(
    session: SessionContext = Depends(require_buyer),
    db: AsyncSession = Depends(get_db),
):
    """Shops favourited by the current user, most recent first."""
    try:
        result = await db.execute(
            select(Favorite, Shop)
            .join(Shop, Shop.id == Favorite.shop_id)
            .where(Favorite.user_id == session.user_id)
            .order_by(Favorite.created_at.desc())
        )
        rows = result.all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching favorites for {session.user_id}: {e}")
        return []

    return [
        FavoriteResponse(
            id=favorite.id,
            shop_id=favorite.shop_id,
            created_at=favorite.created_at,
            shop=ShopResponse.model_validate(shop),
        )
        for favorite, shop in rows
    ]


async def _find_favorite(db: AsyncSession, user_id: UUID, shop_id: UUID) -> Optional[Favorite]:
    return await db.scalar(
        select(Favorite).where(Favorite.user_id == user_id, Favorite.shop_id == shop_id)
    )


async def _require_shop(db: AsyncSession, shop_id: UUID) -> None:
    if not await db.scalar(select(Shop.id).where(Shop.id == shop_id)):
        raise HTTPException(status_code=404, detail="Shop not found")


@router.post("/me/favorites/{shop_id}", response_model=MessageResponse)
async def add_favorite(
    shop_id: UUID,
    session: SessionContext = Depends(require_buyer),
    db: AsyncSession = Depends(get_db),
):
    """Favourite a shop. Saving twice is not an error."""
    await _require_shop(db, shop_id)
    if await _find_favorite(db, session.user_id, shop_id):
        return MessageResponse(message="Already saved")

    db.add(Favorite(user_id=session.user_id, shop_id=shop_id))
    try:
        await db.commit()
    except IntegrityError:
        # a concurrent request saved the same pair first
        await db.rollback()
        return MessageResponse(message="Already saved")
    return MessageResponse(message="Shop saved to favourites")


@router.delete("/me/favorites/{shop_id}", response_model=MessageResponse)
async def remove_favorite(
    shop_id: UUID,
    session: SessionContext = Depends(require_buyer),
    db: AsyncSession = Depends(get_db),
):
    """Remove a shop from favourites."""
    await db.execute(
        delete(Favorite).where(Favorite.user_id == session.user_id, Favorite.shop_id == shop_id)
    )
    await db.commit()
    return MessageResponse(message="Removed from favourites")


@router.post("/me/favorites/{shop_id}/toggle", response_model=FavoriteToggleResponse)
async def toggle_favorite(
    shop_id: UUID,
    session: SessionContext = Depends(require_buyer),
    db: AsyncSession = Depends(get_db),
):
    """Flip the favourite state for a shop and return the new state."""
    await _require_shop(db, shop_id)
    user_id = session.user_id
    existing = await _find_favorite(db, user_id, shop_id)
    if existing:
        await db.execute(delete(Favorite).where(Favorite.id == existing.id))
        is_favorite = False
    else:
        db.add(Favorite(user_id=user_id, shop_id=shop_id))
        is_favorite = True
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info(f"Favourite {user_id}/{shop_id} already saved by a concurrent request")
    return FavoriteToggleResponse(shop_id=shop_id, is_favorite=is_favorite)


# ── My Reviews, Photos & Visited Shops ────────────────────────

async def _reviews_with_shops(db: AsyncSession, user_id: UUID) -> list[tuple[Review, Shop]]:
    result = await db.execute(
        select(Review, Shop)
        .join(Shop, Shop.id == Review.shop_id)
        .where(Review.user_id == user_id)
        .order_by(Review.created_at.desc())
    )
    return result.all()


@router.get("/me/reviews", response_model=list[MyReviewResponse])
async def get_my_reviews(
    session: SessionContext = Depends(require_buyer),
    db: AsyncSession = Depends(get_db),
):
    """Every review the current user has written, newest first, with the shop it is about."""
    try:
        rows = await _reviews_with_shops(db, session.user_id)
    except SQLAlchemyError as e:
        logger.error(f"Error fetching reviews for {session.user_id}: {e}")
        return []

    return [
        MyReviewResponse(
            **ReviewResponse.model_validate(review).model_dump(),
            shop=ShopResponse.model_validate(shop),
        )
        for review, shop in rows
    ]


@router.get("/me/photos", response_model=list[UploadedPhotoResponse])
async def get_my_photos(
    session: SessionContext = Depends(require_buyer),
    db: AsyncSession = Depends(get_db),
):
    """Images attached to the current user's reviews."""
    try:
        rows = await _reviews_with_shops(db, session.user_id)
    except SQLAlchemyError as e:
        logger.error(f"Error fetching photos for {session.user_id}: {e}")
        return []

    return [
        UploadedPhotoResponse(
            review_id=review.id,
            url=review.image_url,
            shop_name=shop.name,
            created_at=review.created_at,
        )
        for review, shop in rows
        if review.image_url
    ]


@router.get("/me/visited-shops", response_model=list[ShopResponse])
async def get_visited_shops(
    session: SessionContext = Depends(require_buyer),
    db: AsyncSession = Depends(get_db),
):
    """
    Shops the user has reviewed or favourited, each listed once.
    Reviewed shops come first (newest review first), then favourites.
    """
    try:
        reviewed = [shop for _, shop in await _reviews_with_shops(db, session.user_id)]
        favorites = await db.execute(
            select(Shop)
            .join(Favorite, Favorite.shop_id == Shop.id)
            .where(Favorite.user_id == session.user_id)
            .order_by(Favorite.created_at.desc())
        )
        favorited = list(favorites.scalars().all())
    except SQLAlchemyError as e:
        logger.error(f"Error fetching visited shops for {session.user_id}: {e}")
        return []

    visited: dict[UUID, Shop] = {}
    for shop in reviewed + favorited:
        visited.setdefault(shop.id, shop)
    return [ShopResponse.model_validate(shop) for shop in visited.values()]


# ── Public Profiles ───────────────────────────────────────────

@router.get("/{user_id}", response_model=PublicProfileResponse)
async def get_public_profile(user_id: UUID, db: AsyncSession = Depends(get_db)):
    """Another user's profile, as far as their privacy settings allow."""
    profile = await db.scalar(select(Profile).where(Profile.id == user_id))
    if not profile or not profile.is_public:
        raise HTTPException(status_code=404, detail="Profile not found")

    return PublicProfileResponse(
        id=profile.id,
        full_name=profile.full_name,
        avatar_url=profile.avatar_url,
        bio=profile.bio,
        location=profile.location,
        email=profile.email if profile.show_email else None,
        stats=await _profile_stats(db, profile.id),
        activity=await fetch_recent_activity(db, profile.id) if profile.show_activity else None,
    )
