"""
services/catalog/router.py
Public service catalog plus service creation for admins and vendors.
"""

import logging
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from shared.middleware.auth import AuthContext, Permission, get_auth_context
from shared.models.models import Service, UserRole
from shared.schemas.schemas import (
    APIResponse,
    PaginatedData,
    ServiceCreateRequest,
    ServiceResponse,
)
from shared.utils.errors import ForbiddenError, NotFoundError
from shared.utils.helpers import paginate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/services", tags=["Services"])

CATEGORIES_CACHE_KEY = "catalog:categories"


@router.get("", response_model=APIResponse[PaginatedData[ServiceResponse]])
async def list_services(
    category: Optional[str] = None,
    search: Optional[str] = Query(None, min_length=2),
    min_price: Optional[Decimal] = Query(None, ge=0),
    max_price: Optional[Decimal] = Query(None, ge=0),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    query = (
        select(Service)
        .where(Service.is_active.is_(True))
        .order_by(Service.booking_count.desc(), Service.name.asc())
    )
    if category:
        query = query.where(Service.category == category)
    if search:
        query = query.where(Service.name.ilike(f"%{search}%"))
    if min_price is not None:
        query = query.where(Service.base_price >= min_price)
    if max_price is not None:
        query = query.where(Service.base_price <= max_price)

    services, meta = await paginate(db, query, page, limit)
    return APIResponse(
        message="Services retrieved successfully",
        data={"items": [ServiceResponse.model_validate(s) for s in services], "pagination": meta},
    )


@router.get("/categories", response_model=APIResponse[List[str]])
async def list_categories(db: AsyncSession = Depends(get_db), redis=Depends(get_redis)):
    cache = RedisCache(redis)
    categories = await cache.get(CATEGORIES_CACHE_KEY)
    if categories is None:
        result = await db.execute(
            select(Service.category)
            .where(Service.is_active.is_(True))
            .distinct()
            .order_by(Service.category)
        )
        categories = list(result.scalars().all())
        await cache.set(CATEGORIES_CACHE_KEY, categories)
    return APIResponse(message="Categories retrieved successfully", data=categories)


@router.get("/{service_id}", response_model=APIResponse[ServiceResponse])
async def get_service(service_id: UUID, db: AsyncSession = Depends(get_db)):
    service = await db.scalar(select(Service).where(Service.id == service_id))
    if not service or not service.is_active:
        raise NotFoundError("Service not found")
    return APIResponse(message="Service retrieved successfully", data=ServiceResponse.model_validate(service))


@router.post("", response_model=APIResponse[ServiceResponse], status_code=status.HTTP_201_CREATED)
async def create_service(
    data: ServiceCreateRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Vendors add services they offer; admins need settings:manage."""
    if auth.role == UserRole.VENDOR:
        vendor_id = auth.user_id
    elif auth.has(Permission.SETTINGS_MANAGE):
        vendor_id = None
    else:
        raise ForbiddenError("Only vendors or catalog admins can create services")

    service = Service(**data.model_dump(), vendor_id=vendor_id)
    db.add(service)
    await db.commit()
    await RedisCache(redis).delete(CATEGORIES_CACHE_KEY)

    logger.info("Service '%s' created by %s", service.name, auth.user_id)
    return APIResponse(message="Service created successfully", data=ServiceResponse.model_validate(service))
