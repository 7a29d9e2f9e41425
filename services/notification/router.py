"""
services/notification/router.py
In-app notifications: the best-effort dispatcher used by the booking engine,
plus the REST endpoints clients poll.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import get_current_user
from shared.models.models import Notification, NotificationType, User
from shared.schemas.schemas import MessageResponse, NotificationResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


# ── Notification Templates ────────────────────────────────────

TEMPLATES = {
    "BOOKING_ASSIGNED_CUSTOMER": (
        NotificationType.SUCCESS,
        "Your booking #{booking_number} for {service_name} has been assigned to {provider_name}.",
    ),
    "BOOKING_ASSIGNED_PROVIDER": (
        NotificationType.INFO,
        "New job #{booking_number}: {service_name} in {area} on {scheduled_date} at {scheduled_time}.",
    ),
    "BOOKING_CONFIRMED": (
        NotificationType.INFO,
        "Your booking #{booking_number} has been confirmed. A provider will be assigned shortly.",
    ),
    "BOOKING_STARTED": (
        NotificationType.INFO,
        "Work on booking #{booking_number} has started.",
    ),
    "BOOKING_COMPLETED": (
        NotificationType.SUCCESS,
        "Booking #{booking_number} is complete. Please rate your experience.",
    ),
    "BOOKING_CANCELLED": (
        NotificationType.WARNING,
        "Booking #{booking_number} was cancelled. Reason: {reason}",
    ),
    "REVIEW_RECEIVED": (
        NotificationType.INFO,
        "You received a {rating}-star rating for booking #{booking_number}.",
    ),
    "PROVIDER_APPROVED": (
        NotificationType.SUCCESS,
        "Your provider profile has been approved. You can now receive jobs.",
    ),
    "PROVIDER_REJECTED": (
        NotificationType.ERROR,
        "Your provider application was rejected. Reason: {reason}",
    ),
}


async def dispatch_notification(
    db: AsyncSession,
    user_id: UUID,
    template_key: str,
    template_vars: dict = None,
    booking_id: Optional[UUID] = None,
) -> Optional[Notification]:
    """
    Insert an in-app notification inside a savepoint.
    A failure is logged and swallowed; the caller's transaction is left intact.
    """
    try:
        notif_type, template = TEMPLATES[template_key]
        notif = Notification(
            user_id=user_id,
            booking_id=booking_id,
            type=notif_type,
            message=template.format(**(template_vars or {})),
        )
        async with db.begin_nested():
            db.add(notif)
        return notif
    except Exception as e:
        logger.warning(
            "Notification %s for user %s failed: %s", template_key, user_id, e
        )
        return None


# ── REST Endpoints ────────────────────────────────────────────

@router.get("", response_model=list[NotificationResponse])
async def get_my_notifications(
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get authenticated user's in-app notifications, newest first."""
    query = (
        select(Notification)
        .where(Notification.user_id == current_user.id)
        .order_by(Notification.created_at.desc())
    )

    if unread_only:
        query = query.where(Notification.is_read == False)  # noqa: E712

    query = query.offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(query)
    return [NotificationResponse.model_validate(n) for n in result.scalars()]


@router.get("/unread-count")
async def unread_count(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    count = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == current_user.id,
            Notification.is_read == False,  # noqa: E712
        )
    )
    return {"unread_count": count or 0}


@router.post("/read-all", response_model=MessageResponse)
async def mark_all_read(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await db.execute(
        update(Notification)
        .where(Notification.user_id == current_user.id, Notification.is_read == False)  # noqa: E712
        .values(is_read=True, read_at=datetime.now(timezone.utc))
    )
    await db.commit()
    return MessageResponse(message="All notifications marked as read")


@router.post("/{notification_id}/read", response_model=MessageResponse)
async def mark_read(
    notification_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await db.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.user_id == current_user.id)
        .values(is_read=True, read_at=datetime.now(timezone.utc))
    )
    await db.commit()
    return MessageResponse(message="Marked as read")
