"""
services/catalog/router.py
Service catalog (Plumber, Electrician, ...). Public read, cached in Redis;
admin-only writes invalidate the cache.

A service's name is the key providers are matched on, so renaming one
changes which providers are eligible for its future bookings.

Deleting a service with booking history retires it (soft delete): it leaves
the catalog and search but old bookings keep pointing at it. Creating a
service under a retired name brings the retired row back.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from shared.exceptions import ConflictError, NotFoundError, ValidationFailure
from shared.middleware.auth import require_admin
from services.booking.state_machine import TERMINAL_STATUSES
from shared.models.models import Booking, Service, User, utcnow
from shared.schemas.schemas import (
    MessageResponse,
    ServiceCreateRequest,
    ServiceResponse,
    ServiceUpdateRequest,
)
from shared.utils.audit import log_admin_action

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/services", tags=["Services"])

CACHE_KEY = "catalog:services"


async def _invalidate(redis) -> None:
    try:
        await RedisCache(redis).delete(CACHE_KEY)
    except Exception as e:
        logger.warning("Service cache invalidation failed: %s", e)


def live_service_filter():
    return or_(Service.is_deleted.is_(None), Service.is_deleted == False)  # noqa: E712


async def _get_service_or_404(db: AsyncSession, service_id: UUID) -> Service:
    service = await db.scalar(
        select(Service).where(Service.id == service_id, live_service_filter())
    )
    if not service:
        raise NotFoundError("Service not found")
    return service


async def _ensure_name_free(db: AsyncSession, name: str, exclude_id: UUID = None) -> None:
    query = select(Service.id).where(func.lower(Service.name) == name.lower())
    if exclude_id:
        query = query.where(Service.id != exclude_id)
    if await db.scalar(query):
        raise ConflictError(f"A service named '{name}' already exists")


def _check_price_range(base_price, max_price) -> None:
    if max_price is not None and max_price < base_price:
        raise ValidationFailure("max_price cannot be lower than base_price")


@router.get("", response_model=list[ServiceResponse])
async def list_services(
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Public catalog, alphabetical."""
    cache = RedisCache(redis)
    try:
        cached = await cache.get(CACHE_KEY)
        if cached is not None:
            return cached
    except Exception as e:
        logger.warning("Service cache read failed: %s", e)

    result = await db.execute(select(Service).where(live_service_filter()).order_by(Service.name))
    services = [ServiceResponse.model_validate(s) for s in result.scalars()]

    try:
        await cache.set(CACHE_KEY, [s.model_dump(mode="json") for s in services])
    except Exception as e:
        logger.warning("Service cache write failed: %s", e)
    return services


@router.get("/{service_id}", response_model=ServiceResponse)
async def get_service(service_id: UUID, db: AsyncSession = Depends(get_db)):
    return ServiceResponse.model_validate(await _get_service_or_404(db, service_id))


@router.post("", response_model=ServiceResponse, status_code=status.HTTP_201_CREATED)
async def create_service(
    data: ServiceCreateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    name = data.name.strip()
    _check_price_range(data.base_price, data.max_price)
    retired = await db.scalar(
        select(Service).where(func.lower(Service.name) == name.lower(), Service.is_deleted == True)  # noqa: E712
    )
    if retired:
        service = retired
        service.is_deleted = False
        service.deleted_at = None
        action = "RESTORE_SERVICE"
    else:
        await _ensure_name_free(db, name)
        service = Service(name=name)
        db.add(service)
        action = "CREATE_SERVICE"

    service.description = data.description
    service.base_price = data.base_price
    service.max_price = data.max_price
    service.icon = data.icon
    await db.flush()
    log_admin_action(db, current_user, action, "Service", str(service.id),
                     {"name": name}, request)
    await db.commit()
    await db.refresh(service)
    await _invalidate(redis)
    return ServiceResponse.model_validate(service)


@router.put("/{service_id}", response_model=ServiceResponse)
async def update_service(
    service_id: UUID,
    data: ServiceUpdateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    service = await _get_service_or_404(db, service_id)
    updates = data.model_dump(exclude_unset=True)
    # Only max_price and icon may be cleared
    for required in ("name", "description", "base_price"):
        if required in updates and updates[required] is None:
            del updates[required]

    if updates.get("name"):
        updates["name"] = updates["name"].strip()
        await _ensure_name_free(db, updates["name"], exclude_id=service_id)
    _check_price_range(
        updates.get("base_price", service.base_price),
        updates.get("max_price", service.max_price),
    )

    for field, value in updates.items():
        setattr(service, field, value)

    log_admin_action(db, current_user, "UPDATE_SERVICE", "Service", str(service_id),
                     {k: str(v) for k, v in updates.items()}, request)
    await db.commit()
    await db.refresh(service)
    await _invalidate(redis)
    return ServiceResponse.model_validate(service)


@router.delete("/{service_id}", response_model=MessageResponse)
async def delete_service(
    service_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Refused while open bookings use the service. With only finished bookings
    the service is retired (soft delete); with none it is removed.
    """
    service = await _get_service_or_404(db, service_id)
    open_bookings = await db.scalar(
        select(func.count(Booking.id)).where(
            Booking.service_id == service_id,
            Booking.status.not_in(TERMINAL_STATUSES),
        )
    )
    if open_bookings:
        raise ConflictError(
            f"Service has {open_bookings} open booking(s) and cannot be deleted"
        )

    has_history = await db.scalar(
        select(Booking.id).where(Booking.service_id == service_id).limit(1)
    )
    mode = "soft" if has_history else "hard"
    if has_history:
        service.is_deleted = True
        service.deleted_at = utcnow()
    else:
        await db.delete(service)

    log_admin_action(db, current_user, "DELETE_SERVICE", "Service", str(service_id),
                     {"name": service.name, "mode": mode}, request)
    await db.commit()
    await _invalidate(redis)
    logger.info("Service %s deleted (%s)", service_id, mode)
    return MessageResponse(message=f"Service deleted ({mode})")
