"""
services/review/router.py
Shop reviews and the denormalized shop rating.
"""

import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from config.settings import settings
from services.shop.router import invalidate_top_rated
from shared.middleware.auth import SessionContext, require_buyer
from shared.models.models import Profile, Review, Shop
from shared.schemas.schemas import ReviewCreatedResponse, ReviewResponse
from shared.utils.storage import ObjectStorage, get_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reviews", tags=["Reviews"])


async def recompute_shop_rating(db: AsyncSession, shop_id: UUID) -> tuple[Decimal, int]:
    """Recalculate and denormalize the aggregate rating on Shop. Not committed."""
    avg_result = await db.execute(
        select(func.avg(Review.rating), func.count(Review.id)).where(Review.shop_id == shop_id)
    )
    avg, count = avg_result.one()
    rating = Decimal(str(round(float(avg or 0), 2)))

    await db.execute(
        update(Shop)
        .where(Shop.id == shop_id)
        .values(rating=rating, rating_count=count)
    )
    return rating, count


@router.post("", response_model=ReviewCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_review(
    shop_id: UUID = Form(...),
    rating: int = Form(..., ge=1, le=5),
    comment: str = Form(..., min_length=1, max_length=2000),
    image: Optional[UploadFile] = File(None),
    session: SessionContext = Depends(require_buyer),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    storage: ObjectStorage = Depends(get_storage),
):
    """
    Submit a review for a shop.
    - Owners cannot review their own shop
    - The optional photo is uploaded before the review row is written
    - Shop rating/count are recomputed in the same transaction
    """
    if not comment.strip():
        raise HTTPException(status_code=422, detail="Comment must not be empty")

    result = await db.execute(select(Shop).where(Shop.id == shop_id))
    shop = result.scalar_one_or_none()
    if not shop:
        raise HTTPException(status_code=404, detail="Shop not found")
    if shop.owner_id == session.user_id:
        raise HTTPException(status_code=403, detail="You cannot review your own shop")

    image_url = None
    if image is not None and image.filename:
        image_url = await storage.upload_file(image, settings.BUCKET_IMAGES, folder="reviews")

    review = Review(
        shop_id=shop.id,
        user_id=session.user_id,
        rating=rating,
        comment=comment.strip(),
        image_url=image_url,
    )
    db.add(review)
    await db.flush()

    new_rating, new_count = await recompute_shop_rating(db, shop.id)
    await db.commit()
    await invalidate_top_rated(redis)

    logger.info(f"Review {review.id} on shop {shop.id}: rating now {new_rating} ({new_count})")
    response = ReviewResponse.model_validate(review)
    response.reviewer_name = session.header["name"]
    response.reviewer_avatar_url = session.profile.avatar_url
    return ReviewCreatedResponse(review=response, shop_rating=new_rating, shop_rating_count=new_count)


@router.get("/shop/{shop_id}", response_model=list[ReviewResponse])
async def get_shop_reviews(
    shop_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Public: reviews for a shop, newest first, with reviewer name and avatar."""
    try:
        result = await db.execute(
            select(Review, Profile)
            .outerjoin(Profile, Profile.id == Review.user_id)
            .where(Review.shop_id == shop_id)
            .order_by(Review.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        rows = result.all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching reviews for shop {shop_id}: {e}")
        return []

    reviews = []
    for review, profile in rows:
        item = ReviewResponse.model_validate(review)
        if profile:
            item.reviewer_name = profile.full_name
            item.reviewer_avatar_url = profile.avatar_url
        reviews.append(item)
    return reviews
