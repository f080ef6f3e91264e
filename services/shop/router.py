"""
services/shop/router.py
Shop directory (public) and shop management for sellers:
listing settings, cover image, products and events.
"""

import logging
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from shared.middleware.auth import SessionContext, get_optional_session, require_seller
from shared.models.models import Event, EventStatus, Favorite, Product, Shop
from shared.schemas.schemas import (
    EventCreateRequest,
    EventResponse,
    MessageResponse,
    PaginatedResponse,
    ProductResponse,
    ShopDetailResponse,
    ShopResponse,
    ShopUpsertRequest,
)
from shared.utils.storage import ObjectStorage, get_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shops", tags=["Shops"])

TOP_RATED_CACHE_KEY = "shops:top_rated"
NO_SHOP_MESSAGE = "Please save your Shop Settings first."


# ── Helpers ───────────────────────────────────────────────────

async def _get_shop_or_404(shop_id: UUID, db: AsyncSession) -> Shop:
    result = await db.execute(select(Shop).where(Shop.id == shop_id))
    shop = result.scalar_one_or_none()
    if not shop:
        raise HTTPException(status_code=404, detail="Shop not found")
    return shop


async def _get_owned_shop(session: SessionContext, db: AsyncSession) -> Optional[Shop]:
    result = await db.execute(select(Shop).where(Shop.owner_id == session.user_id))
    return result.scalars().first()


async def _require_owned_shop(session: SessionContext, db: AsyncSession) -> Shop:
    shop = await _get_owned_shop(session, db)
    if not shop:
        raise HTTPException(status_code=400, detail=NO_SHOP_MESSAGE)
    return shop


async def _shop_detail(shop: Shop, db: AsyncSession, is_favorite: bool = False) -> ShopDetailResponse:
    products = await db.execute(
        select(Product).where(Product.shop_id == shop.id).order_by(Product.created_at.desc())
    )
    events = await db.execute(
        select(Event).where(Event.shop_id == shop.id).order_by(Event.start_date.asc())
    )
    return ShopDetailResponse(
        shop=ShopResponse.model_validate(shop),
        products=[ProductResponse.model_validate(p) for p in products.scalars().all()],
        events=[EventResponse.model_validate(e) for e in events.scalars().all()],
        is_favorite=is_favorite,
    )


async def invalidate_top_rated(redis) -> None:
    await RedisCache(redis).delete(TOP_RATED_CACHE_KEY)


# ── Public Directory ──────────────────────────────────────────

@router.get("", response_model=PaginatedResponse)
async def list_shops(
    category: Optional[str] = Query(None, description='Exact category; "All" disables the filter'),
    town: Optional[str] = Query(None, description="Case-insensitive match within the address"),
    q: Optional[str] = Query(None, description="Search by shop name"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Browse shops, newest first."""
    query = select(Shop).order_by(Shop.created_at.desc())
    if category and category != "All":
        query = query.where(Shop.category == category)
    if town:
        query = query.where(Shop.address.ilike(f"%{town}%"))
    if q:
        query = query.where(Shop.name.ilike(f"%{q}%"))

    try:
        total = await db.scalar(select(func.count()).select_from(query.subquery()))
        result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
        shops = result.scalars().all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching shops: {e}")
        total, shops = 0, []

    return PaginatedResponse.build(
        [ShopResponse.model_validate(s) for s in shops], total or 0, page, page_size,
    )


@router.get("/top-rated", response_model=List[ShopResponse])
async def top_rated_shops(
    limit: int = Query(settings.TOP_RATED_LIMIT, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Highest-rated shops. The default-size list is cached until the next review."""
    cache = RedisCache(redis)
    use_cache = limit == settings.TOP_RATED_LIMIT
    if use_cache:
        cached = await cache.get(TOP_RATED_CACHE_KEY)
        if cached is not None:
            return [ShopResponse(**s) for s in cached]

    try:
        result = await db.execute(
            select(Shop).order_by(Shop.rating.desc(), Shop.rating_count.desc()).limit(limit)
        )
        shops = [ShopResponse.model_validate(s) for s in result.scalars().all()]
    except SQLAlchemyError as e:
        logger.error(f"Error fetching top rated shops: {e}")
        return []

    if use_cache:
        await cache.set(TOP_RATED_CACHE_KEY, [s.model_dump(mode="json") for s in shops])
    return shops


# ── Seller: Shop Settings ─────────────────────────────────────

@router.get("/mine", response_model=ShopDetailResponse)
async def get_my_shop(
    session: SessionContext = Depends(require_seller),
    db: AsyncSession = Depends(get_db),
):
    shop = await _get_owned_shop(session, db)
    if not shop:
        raise HTTPException(status_code=404, detail="You have not set up a shop yet")
    return await _shop_detail(shop, db)


@router.put("/mine", response_model=ShopResponse)
async def upsert_my_shop(
    data: ShopUpsertRequest,
    session: SessionContext = Depends(require_seller),
    db: AsyncSession = Depends(get_db),
):
    """Create-or-update the seller's shop, keyed by owner."""
    shop = await _get_owned_shop(session, db)
    updates = data.model_dump(exclude_unset=True)

    if shop is None:
        shop = Shop(
            owner_id=session.user_id,
            latitude=settings.DEFAULT_SHOP_LATITUDE,
            longitude=settings.DEFAULT_SHOP_LONGITUDE,
            rating=0,
            rating_count=0,
        )
        db.add(shop)
        logger.info(f"Creating shop for seller {session.user_id}")

    for field, value in updates.items():
        if field in ("latitude", "longitude") and value is None:
            continue
        setattr(shop, field, value)

    await db.commit()
    await db.refresh(shop)
    return ShopResponse.model_validate(shop)


@router.post("/mine/image", response_model=ShopResponse)
async def upload_shop_image(
    file: UploadFile = File(...),
    session: SessionContext = Depends(require_seller),
    db: AsyncSession = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
):
    """Upload a new cover image. The shop row changes only after the upload succeeds."""
    shop = await _require_owned_shop(session, db)
    shop.image_url = await storage.upload_file(file, settings.BUCKET_IMAGES, folder="shops")
    await db.commit()
    return ShopResponse.model_validate(shop)


# ── Seller: Products ──────────────────────────────────────────

async def _get_owned_product(product_id: UUID, shop: Shop, db: AsyncSession) -> Product:
    result = await db.execute(
        select(Product).where(Product.id == product_id, Product.shop_id == shop.id)
    )
    product = result.scalar_one_or_none()
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@router.post("/mine/products", response_model=ProductResponse, status_code=status.HTTP_201_CREATED)
async def create_product(
    name: str = Form(..., min_length=1, max_length=255),
    price: Decimal = Form(..., ge=0),
    stock: Optional[int] = Form(None, ge=0),
    image: Optional[UploadFile] = File(None),
    session: SessionContext = Depends(require_seller),
    db: AsyncSession = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
):
    shop = await _require_owned_shop(session, db)

    image_url = None
    if image is not None and image.filename:
        image_url = await storage.upload_file(image, settings.BUCKET_IMAGES, folder="products")

    product = Product(shop_id=shop.id, name=name, price=price, stock=stock, image_url=image_url)
    db.add(product)
    await db.commit()
    await db.refresh(product)
    logger.info(f"Product {product.id} added to shop {shop.id}")
    return ProductResponse.model_validate(product)


@router.put("/mine/products/{product_id}", response_model=ProductResponse)
async def update_product(
    product_id: UUID,
    name: Optional[str] = Form(None, min_length=1, max_length=255),
    price: Optional[Decimal] = Form(None, ge=0),
    stock: Optional[int] = Form(None, ge=0),
    image: Optional[UploadFile] = File(None),
    session: SessionContext = Depends(require_seller),
    db: AsyncSession = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
):
    shop = await _require_owned_shop(session, db)
    product = await _get_owned_product(product_id, shop, db)

    if image is not None and image.filename:
        product.image_url = await storage.upload_file(image, settings.BUCKET_IMAGES, folder="products")
    if name is not None:
        product.name = name
    if price is not None:
        product.price = price
    if stock is not None:
        product.stock = stock

    await db.commit()
    return ProductResponse.model_validate(product)


@router.delete("/mine/products/{product_id}", response_model=MessageResponse)
async def delete_product(
    product_id: UUID,
    session: SessionContext = Depends(require_seller),
    db: AsyncSession = Depends(get_db),
):
    shop = await _require_owned_shop(session, db)
    await _get_owned_product(product_id, shop, db)
    await db.execute(delete(Product).where(Product.id == product_id))
    await db.commit()
    return MessageResponse(message="Product deleted")


# ── Seller: Events ────────────────────────────────────────────

async def _get_owned_event(event_id: UUID, shop: Shop, db: AsyncSession) -> Event:
    result = await db.execute(
        select(Event).where(Event.id == event_id, Event.shop_id == shop.id)
    )
    event = result.scalar_one_or_none()
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


@router.post("/mine/events", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def create_event(
    data: EventCreateRequest,
    session: SessionContext = Depends(require_seller),
    db: AsyncSession = Depends(get_db),
):
    shop = await _require_owned_shop(session, db)
    event = Event(
        shop_id=shop.id,
        title=data.title,
        description=data.description,
        start_date=data.start_date,
        end_date=data.end_date,
        status=EventStatus(data.status),
    )
    db.add(event)
    await db.commit()
    await db.refresh(event)
    return EventResponse.model_validate(event)


@router.put("/mine/events/{event_id}", response_model=EventResponse)
async def update_event(
    event_id: UUID,
    data: EventCreateRequest,
    session: SessionContext = Depends(require_seller),
    db: AsyncSession = Depends(get_db),
):
    shop = await _require_owned_shop(session, db)
    event = await _get_owned_event(event_id, shop, db)

    event.title = data.title
    event.description = data.description
    event.start_date = data.start_date
    event.end_date = data.end_date
    event.status = EventStatus(data.status)

    await db.commit()
    return EventResponse.model_validate(event)


@router.delete("/mine/events/{event_id}", response_model=MessageResponse)
async def delete_event(
    event_id: UUID,
    session: SessionContext = Depends(require_seller),
    db: AsyncSession = Depends(get_db),
):
    shop = await _require_owned_shop(session, db)
    await _get_owned_event(event_id, shop, db)
    await db.execute(delete(Event).where(Event.id == event_id))
    await db.commit()
    return MessageResponse(message="Event deleted")


# ── Public Shop Page ──────────────────────────────────────────

@router.get("/{shop_id}", response_model=ShopDetailResponse)
async def get_shop(
    shop_id: UUID,
    session: Optional[SessionContext] = Depends(get_optional_session),
    db: AsyncSession = Depends(get_db),
):
    """Shop page with products, events, and whether the caller has favorited it."""
    shop = await _get_shop_or_404(shop_id, db)

    is_favorite = False
    if session is not None:
        is_favorite = bool(await db.scalar(
            select(func.count(Favorite.id)).where(
                Favorite.shop_id == shop.id, Favorite.user_id == session.user_id
            )
        ))
    return await _shop_detail(shop, db, is_favorite)
