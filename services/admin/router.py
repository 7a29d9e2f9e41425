"""
services/admin/router.py
Admin-only endpoints: provider approval queue, user moderation, booking
oversight, auto-assignment control, platform analytics, and the audit logs.

ALL mutations are logged to AdminAuditLog before returning.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from services.booking.assignment import run_assignment_scan
from services.booking.matching import approved_filter, not_deleted_filter
from services.booking.router import enrich_bookings, schedule_assignment_scan
from services.notification.router import dispatch_notification
from services.provider.router import get_provider_or_404, provider_to_response
from shared.middleware.auth import require_admin
from shared.models.models import (
    AdminAuditLog,
    ApprovalStatus,
    Booking,
    BookingAuditLog,
    BookingStatus,
    Provider,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    AdminAnalyticsResponse,
    AdminSuspendRequest,
    MessageResponse,
    PaginatedResponse,
    ProviderRejectRequest,
    ProviderResponse,
    ScanResultResponse,
)
from shared.utils.audit import log_admin_action

router = APIRouter(prefix="/admin", tags=["Admin"])


# ── Provider Approval Queue ────────────────────────────────────────────────────

@router.get("/providers/pending", response_model=list[ProviderResponse])
async def get_pending_providers(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Providers awaiting approval, oldest first (FIFO queue)."""
    result = await db.execute(
        select(Provider, User)
        .join(User, User.id == Provider.user_id)
        .where(Provider.approval_status == ApprovalStatus.PENDING, not_deleted_filter())
        .order_by(Provider.created_at.asc())
    )
    return [provider_to_response(p, u) for p, u in result.all()]


@router.post("/providers/{provider_id}/approve", response_model=ProviderResponse)
async def approve_provider(
    provider_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Approve a provider: ACTIVE and active, so matching and search can pick them."""
    provider, user = await get_provider_or_404(db, provider_id)
    if provider.effectively_deleted:
        raise HTTPException(status_code=404, detail="Provider not found")
    if provider.approval_status == ApprovalStatus.ACTIVE and provider.is_active:
        raise HTTPException(status_code=409, detail="Provider is already approved")

    provider.approval_status = ApprovalStatus.ACTIVE
    provider.is_active = True

    await dispatch_notification(db, provider.user_id, "PROVIDER_APPROVED")
    log_admin_action(db, current_user, "APPROVE_PROVIDER", "Provider", str(provider_id), {}, request)
    await db.commit()
    await db.refresh(provider)
    return provider_to_response(provider, user)


@router.post("/providers/{provider_id}/reject", response_model=ProviderResponse)
async def reject_provider(
    provider_id: UUID,
    data: ProviderRejectRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Reject a provider application with a reason."""
    provider, user = await get_provider_or_404(db, provider_id)
    if provider.effectively_deleted:
        raise HTTPException(status_code=404, detail="Provider not found")

    provider.approval_status = ApprovalStatus.REJECTED
    provider.is_active = False

    await dispatch_notification(db, provider.user_id, "PROVIDER_REJECTED", {"reason": data.reason})
    log_admin_action(db, current_user, "REJECT_PROVIDER", "Provider", str(provider_id),
                     {"reason": data.reason}, request)
    await db.commit()
    await db.refresh(provider)
    return provider_to_response(provider, user)


# ── User Moderation ────────────────────────────────────────────────────────────

@router.post("/users/{user_id}/suspend", response_model=MessageResponse)
async def suspend_user(
    user_id: UUID,
    data: AdminSuspendRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Deactivate a user account. Admins cannot be suspended."""
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user.role == UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Cannot suspend admin users")
    if not user.is_active:
        raise HTTPException(status_code=409, detail="User is already suspended")

    user.is_active = False
    log_admin_action(db, current_user, "SUSPEND_USER", "User", str(user_id),
                     {"reason": data.reason}, request)
    await db.commit()
    return MessageResponse(message="User suspended")


@router.post("/users/{user_id}/reactivate", response_model=MessageResponse)
async def reactivate_user(
    user_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Re-activate a suspended user account."""
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    user.is_active = True
    log_admin_action(db, current_user, "REACTIVATE_USER", "User", str(user_id), {}, request)
    await db.commit()
    return MessageResponse(message="User reactivated")


# ── Booking Oversight ──────────────────────────────────────────────────────────

@router.get("/bookings", response_model=PaginatedResponse)
async def list_all_bookings(
    background_tasks: BackgroundTasks,
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    customer_id: Optional[UUID] = Query(None),
    provider_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Admin: all bookings with status, customer, or provider filter."""
    schedule_assignment_scan(background_tasks, redis)

    query = select(Booking)
    if status_filter:
        query = query.where(Booking.status == status_filter)
    if customer_id:
        query = query.where(Booking.customer_id == customer_id)
    if provider_id:
        query = query.where(Booking.provider_id == provider_id)

    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
    result = await db.execute(
        query.order_by(Booking.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    )
    return PaginatedResponse(
        items=await enrich_bookings(db, result.scalars().all()),
        total=total,
        page=page,
        page_size=page_size,
        pages=-(-total // page_size),
    )


@router.get("/bookings/{booking_id}/history")
async def get_booking_history(
    booking_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Status transitions of one booking, oldest first."""
    result = await db.execute(
        select(BookingAuditLog)
        .where(BookingAuditLog.booking_id == booking_id)
        .order_by(BookingAuditLog.created_at.asc())
    )
    return [
        {
            "from_status": log.from_status,
            "to_status": log.to_status,
            "changed_by_id": str(log.changed_by_id) if log.changed_by_id else None,
            "reason": log.reason,
            "metadata": log.audit_metadata,
            "created_at": log.created_at.isoformat(),
        }
        for log in result.scalars()
    ]


@router.post("/auto-assign/run", response_model=ScanResultResponse)
async def run_auto_assignment(
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Run the stale-booking scan now instead of waiting for the next tick."""
    summary = await run_assignment_scan(db)
    await db.refresh(current_user)
    log_admin_action(db, current_user, "RUN_AUTO_ASSIGN", "Booking", None, summary.as_dict(), request)
    await db.commit()
    return ScanResultResponse(**summary.as_dict())


# ── Analytics ─────────────────────────────────────────────────────────────────

@router.get("/analytics", response_model=AdminAnalyticsResponse)
async def get_analytics(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Platform-wide metrics dashboard."""
    today_start = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)

    total_customers = await db.scalar(
        select(func.count(User.id)).where(User.role == UserRole.CUSTOMER)
    )
    total_providers = await db.scalar(
        select(func.count(Provider.id)).where(not_deleted_filter())
    )
    active_providers = await db.scalar(
        select(func.count(Provider.id)).where(
            Provider.is_active == True,  # noqa: E712
            approved_filter(),
            not_deleted_filter(),
        )
    )
    pending_approval = await db.scalar(
        select(func.count(Provider.id)).where(
            Provider.approval_status == ApprovalStatus.PENDING,
            not_deleted_filter(),
        )
    )
    total_bookings = await db.scalar(select(func.count(Booking.id)))
    bookings_today = await db.scalar(
        select(func.count(Booking.id)).where(Booking.created_at >= today_start)
    )
    by_status = await db.execute(
        select(Booking.status, func.count(Booking.id)).group_by(Booking.status)
    )
    completed_revenue = await db.scalar(
        select(func.sum(Booking.amount)).where(Booking.status == BookingStatus.COMPLETED)
    )
    avg_rating = await db.scalar(
        select(func.avg(Booking.rating)).where(Booking.rating.is_not(None))
    )

    return AdminAnalyticsResponse(
        total_customers=total_customers or 0,
        total_providers=total_providers or 0,
        active_providers=active_providers or 0,
        pending_approval=pending_approval or 0,
        total_bookings=total_bookings or 0,
        bookings_today=bookings_today or 0,
        bookings_by_status={BookingStatus(s).value: c for s, c in by_status.all()},
        completed_revenue=Decimal(str(completed_revenue or 0)),
        avg_rating=round(float(avg_rating or 0), 1),
    )


# ── Audit Log ─────────────────────────────────────────────────────────────────

@router.get("/audit-logs")
async def get_audit_logs(
    action: Optional[str] = Query(None, description="Filter by action type e.g. APPROVE_PROVIDER"),
    entity_type: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Immutable admin audit log, append-only."""
    query = (
        select(AdminAuditLog, User)
        .join(User, User.id == AdminAuditLog.admin_id)
        .order_by(AdminAuditLog.created_at.desc())
    )
    if action:
        query = query.where(AdminAuditLog.action == action.upper())
    if entity_type:
        query = query.where(AdminAuditLog.entity_type == entity_type)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))

    return {
        "items": [
            {
                "id": str(log.id),
                "admin_name": admin.name,
                "admin_email": admin.email,
                "action": log.action,
                "entity_type": log.entity_type,
                "entity_id": log.entity_id,
                "payload": log.payload,
                "ip_address": log.ip_address,
                "created_at": log.created_at.isoformat(),
            }
            for log, admin in result.all()
        ],
        "total": total or 0,
        "page": page,
        "page_size": page_size,
    }
