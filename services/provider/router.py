"""
services/provider/router.py
Provider management. Admins onboard providers (user account + profile);
providers read their own profile.

Deletion policy: a provider with booking history is soft-deleted so past
bookings keep their reference; a provider with none is removed outright.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.matching import not_deleted_filter
from shared.exceptions import ConflictError, NotFoundError
from shared.middleware.auth import get_provider_profile, require_admin
from shared.models.models import (
    ApprovalStatus,
    Booking,
    Notification,
    Provider,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    MessageResponse,
    ProviderCreateRequest,
    ProviderResponse,
    ProviderUpdateRequest,
)
from shared.utils.audit import log_admin_action
from shared.utils.security import hash_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/providers", tags=["Providers"])


def provider_to_response(provider: Provider, user: Optional[User]) -> ProviderResponse:
    response = ProviderResponse.model_validate(provider)
    if user:
        response.name = user.name
        response.email = user.email
        response.phone = user.phone
    return response


async def get_provider_or_404(db: AsyncSession, provider_id: UUID) -> tuple[Provider, User]:
    result = await db.execute(
        select(Provider, User)
        .join(User, User.id == Provider.user_id)
        .where(Provider.id == provider_id)
    )
    row = result.first()
    if not row:
        raise NotFoundError("Provider not found")
    return row[0], row[1]


@router.post("", response_model=ProviderResponse, status_code=status.HTTP_201_CREATED)
async def create_provider(
    data: ProviderCreateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Onboard a provider: creates the PROVIDER login and the profile.
    New providers start PENDING and inactive until approved.
    """
    email = data.email.lower()
    if await db.scalar(select(User.id).where(func.lower(User.email) == email)):
        raise ConflictError("Email is already registered")

    user = User(
        email=email,
        name=data.name.strip(),
        phone=data.phone,
        role=UserRole.PROVIDER,
        password_hash=hash_password(data.password),
    )
    db.add(user)
    await db.flush()

    provider = Provider(
        user_id=user.id,
        skill=data.skill.strip(),
        area=data.area.strip(),
        approval_status=ApprovalStatus.PENDING,
        is_active=False,
        is_deleted=False,
    )
    db.add(provider)
    await db.flush()

    log_admin_action(db, current_user, "CREATE_PROVIDER", "Provider", str(provider.id),
                     {"skill": provider.skill, "area": provider.area}, request)
    await db.commit()
    await db.refresh(provider)
    return provider_to_response(provider, user)


@router.get("", response_model=list[ProviderResponse])
async def list_providers(
    skill: Optional[str] = Query(None),
    approval_status: Optional[ApprovalStatus] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Admin: all providers except soft-deleted ones."""
    query = (
        select(Provider, User)
        .join(User, User.id == Provider.user_id)
        .where(not_deleted_filter())
    )
    if skill:
        query = query.where(Provider.skill == skill)
    if approval_status == ApprovalStatus.ACTIVE:
        query = query.where(
            (Provider.approval_status == ApprovalStatus.ACTIVE) | Provider.approval_status.is_(None)
        )
    elif approval_status:
        query = query.where(Provider.approval_status == approval_status)

    result = await db.execute(
        query.order_by(Provider.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    )
    return [provider_to_response(p, u) for p, u in result.all()]


@router.get("/me", response_model=ProviderResponse)
async def get_my_profile(
    provider: Provider = Depends(get_provider_profile),
    db: AsyncSession = Depends(get_db),
):
    user = await db.get(User, provider.user_id)
    return provider_to_response(provider, user)


@router.get("/{provider_id}", response_model=ProviderResponse)
async def get_provider_detail(
    provider_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    provider, user = await get_provider_or_404(db, provider_id)
    return provider_to_response(provider, user)


@router.put("/{provider_id}", response_model=ProviderResponse)
async def update_provider(
    provider_id: UUID,
    data: ProviderUpdateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Admin: change skill, area or the active flag."""
    provider, user = await get_provider_or_404(db, provider_id)
    if provider.effectively_deleted:
        raise NotFoundError("Provider not found")

    updates = data.model_dump(exclude_none=True)
    for field, value in updates.items():
        setattr(provider, field, value.strip() if isinstance(value, str) else value)

    log_admin_action(db, current_user, "UPDATE_PROVIDER", "Provider", str(provider_id),
                     updates, request)
    await db.commit()
    await db.refresh(provider)
    return provider_to_response(provider, user)


@router.delete("/{provider_id}", response_model=MessageResponse)
async def delete_provider(
    provider_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Admin: soft delete when bookings reference the provider, hard delete otherwise."""
    provider, user = await get_provider_or_404(db, provider_id)
    if provider.effectively_deleted:
        raise NotFoundError("Provider not found")

    booking_count = await db.scalar(
        select(func.count(Booking.id)).where(Booking.provider_id == provider_id)
    ) or 0

    if booking_count:
        provider.is_deleted = True
        provider.is_active = False
        provider.deleted_at = datetime.now(timezone.utc)
        mode = "soft"
    else:
        user_id = user.id
        await db.execute(delete(Notification).where(Notification.user_id == user_id))
        await db.execute(delete(Provider).where(Provider.id == provider_id))
        await db.execute(delete(User).where(User.id == user_id))
        mode = "hard"

    log_admin_action(db, current_user, "DELETE_PROVIDER", "Provider", str(provider_id),
                     {"mode": mode, "bookings": booking_count}, request)
    await db.commit()
    logger.info("Provider %s deleted (%s)", provider_id, mode)
    return MessageResponse(message=f"Provider deleted ({mode})")
