"""
services/booking/router.py
Booking lifecycle endpoints.
States: PENDING → (WAITING | CONFIRMED) → ASSIGNED → IN_PROGRESS → COMPLETED,
        CANCELLED from any non-terminal state.
Transitions are delegated to services.booking.state_machine.
"""

import logging
import random
import string
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import AsyncSessionLocal, get_db
from config.redis_client import get_redis
from config.settings import settings
from services.booking import state_machine
from services.booking.assignment import run_assignment_scan_safely
from services.booking.matching import get_provider, is_assignable, is_eligible, list_assignable_providers
from services.booking.pin import derive_pin
from services.provider.router import provider_to_response
from shared.exceptions import NotFoundError, PermissionDenied, ValidationFailure
from shared.middleware.auth import (
    get_current_user,
    require_admin,
    require_customer,
    require_provider_or_admin,
)
from shared.models.models import (
    AssignmentSource,
    Booking,
    BookingStatus,
    Provider,
    Service,
    User,
    UserRole,
    utcnow,
)
from shared.schemas.schemas import (
    BookingAssignRequest,
    BookingCancelRequest,
    BookingCompleteRequest,
    BookingCreateRequest,
    BookingResponse,
    CompletionPinResponse,
    MessageResponse,
    ProviderResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


# ── Helpers ───────────────────────────────────────────────────

def _generate_booking_number() -> str:
    """Generate a human-readable booking number like LS-2024-X7K9M."""
    year = datetime.now().year
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=5))
    return f"LS-{year}-{suffix}"


async def _get_service_or_404(db: AsyncSession, service_id: UUID) -> Service:
    service = await db.scalar(select(Service).where(Service.id == service_id))
    if not service:
        raise NotFoundError("Service not found")
    return service


async def _provider_for_user(db: AsyncSession, user: User) -> Optional[Provider]:
    return await db.scalar(select(Provider).where(Provider.user_id == user.id))


async def _authorize_view(db: AsyncSession, booking: Booking, user: User) -> None:
    """Customer sees own, provider sees jobs assigned to them, admin sees all."""
    if user.role == UserRole.ADMIN:
        return
    if user.role == UserRole.CUSTOMER and booking.customer_id == user.id:
        return
    if user.role == UserRole.PROVIDER:
        provider = await _provider_for_user(db, user)
        if provider and booking.provider_id == provider.id:
            return
    raise PermissionDenied("Not authorized to access this booking")


async def enrich_bookings(db: AsyncSession, bookings: Iterable[Booking]) -> list[BookingResponse]:
    """Attach customer, service and provider names with one query per table."""
    bookings = list(bookings)
    if not bookings:
        return []

    customer_ids = {b.customer_id for b in bookings}
    service_ids = {b.service_id for b in bookings}
    provider_ids = {b.provider_id for b in bookings if b.provider_id}

    customers = {
        u.id: u for u in (await db.execute(select(User).where(User.id.in_(customer_ids)))).scalars()
    }
    services = dict(
        (await db.execute(select(Service.id, Service.name).where(Service.id.in_(service_ids)))).all()
    )
    provider_names = {}
    if provider_ids:
        provider_names = dict(
            (
                await db.execute(
                    select(Provider.id, User.name)
                    .join(User, User.id == Provider.user_id)
                    .where(Provider.id.in_(provider_ids))
                )
            ).all()
        )

    responses = []
    for booking in bookings:
        customer = customers.get(booking.customer_id)
        responses.append(BookingResponse(
            **{col.name: getattr(booking, col.name) for col in Booking.__table__.columns
               if col.name in BookingResponse.model_fields},
            customer_name=customer.name if customer else None,
            customer_phone=customer.phone if customer else None,
            service_name=services.get(booking.service_id),
            provider_name=provider_names.get(booking.provider_id),
        ))
    return responses


async def _enrich_booking(db: AsyncSession, booking: Booking) -> BookingResponse:
    return (await enrich_bookings(db, [booking]))[0]


def schedule_assignment_scan(background_tasks: BackgroundTasks, redis) -> None:
    """Piggy-back a stale-booking scan on a list read."""
    if settings.AUTO_ASSIGN_ON_READ:
        background_tasks.add_task(run_assignment_scan_safely, AsyncSessionLocal, redis)


# ── Booking Creation ──────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    current_user: User = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
):
    """
    Create a booking.
    - Without provider_id: PENDING, picked up by auto-assignment once stale
    - With provider_id (search-and-book): the provider must be eligible for
      the service and area; the booking starts ASSIGNED
    Amount defaults to the service base price and must stay within its range.
    """
    service = await _get_service_or_404(db, data.service_id)
    if service.effectively_deleted:
        raise NotFoundError("Service not found")

    amount = data.amount if data.amount is not None else service.base_price
    if amount < service.base_price:
        raise ValidationFailure(f"Amount cannot be below the base price of {service.base_price}")
    if service.max_price is not None and amount > service.max_price:
        raise ValidationFailure(f"Amount cannot exceed the maximum price of {service.max_price}")

    provider = None
    if data.provider_id:
        provider = await get_provider(db, data.provider_id)
        if not provider:
            raise NotFoundError("Provider not found")
        if not is_eligible(provider, service.name, data.area):
            raise ValidationFailure("This provider is not available for the selected service and area")

    booking = Booking(
        booking_number=_generate_booking_number(),
        customer_id=current_user.id,
        service_id=service.id,
        description=data.description,
        address=data.address,
        area=data.area,
        scheduled_date=data.scheduled_date,
        scheduled_time=data.scheduled_time,
        amount=amount,
        status=BookingStatus.PENDING,
        created_at=utcnow(),
    )
    if provider:
        booking.provider_id = provider.id
        booking.status = BookingStatus.ASSIGNED
        booking.assignment_source = AssignmentSource.DIRECT
        booking.assigned_at = utcnow()

    db.add(booking)
    await db.flush()
    state_machine.log_status_change(
        db,
        booking,
        None,
        booking.status,
        current_user,
        metadata={"provider_id": str(provider.id), "source": AssignmentSource.DIRECT.value}
        if provider else None,
    )
    await db.commit()
    logger.info("Booking %s created (%s)", booking.booking_number, booking.status.value)

    if provider:
        await state_machine.announce_assignment(db, booking, provider)

    return await _enrich_booking(db, booking)


# ── Read Endpoints ────────────────────────────────────────────

@router.get("", response_model=list[BookingResponse])
async def list_bookings(
    background_tasks: BackgroundTasks,
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Customers see their own bookings, providers the jobs assigned to them
    (cancelled ones hidden), admins everything.
    """
    schedule_assignment_scan(background_tasks, redis)

    query = select(Booking)
    if current_user.role == UserRole.CUSTOMER:
        query = query.where(Booking.customer_id == current_user.id)
    elif current_user.role == UserRole.PROVIDER:
        provider = await _provider_for_user(db, current_user)
        if not provider:
            return []
        query = query.where(
            Booking.provider_id == provider.id,
            Booking.status != BookingStatus.CANCELLED,
        )

    if status_filter:
        query = query.where(Booking.status == status_filter)

    query = query.order_by(Booking.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(query)
    return await enrich_bookings(db, result.scalars().all())


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking_detail(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    booking = await state_machine.get_booking(db, booking_id)
    await _authorize_view(db, booking, current_user)
    return await _enrich_booking(db, booking)


@router.get("/{booking_id}/pin", response_model=CompletionPinResponse)
async def get_completion_pin(
    booking_id: UUID,
    current_user: User = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
):
    """The customer's completion PIN, shown once a provider is on the job."""
    booking = await state_machine.get_booking(db, booking_id)
    if booking.customer_id != current_user.id:
        raise PermissionDenied("Not authorized to access this booking")
    if booking.status not in state_machine.COMPLETABLE_STATUSES:
        raise ValidationFailure("A completion PIN is only available while a provider is assigned")
    return CompletionPinResponse(booking_id=booking.id, pin=derive_pin(booking.id, booking.created_at))


@router.get("/{booking_id}/eligible-providers", response_model=list[ProviderResponse])
async def get_eligible_providers(
    booking_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Admin: providers that can be assigned manually (skill match, active)."""
    booking = await state_machine.get_booking(db, booking_id)
    service = await _get_service_or_404(db, booking.service_id)
    providers = await list_assignable_providers(db, service.name)
    users = {}
    if providers:
        users = {
            u.id: u
            for u in (
                await db.execute(select(User).where(User.id.in_({p.user_id for p in providers})))
            ).scalars()
        }
    return [provider_to_response(p, users.get(p.user_id)) for p in providers]


# ── Transitions ───────────────────────────────────────────────

@router.post("/{booking_id}/confirm", response_model=BookingResponse)
async def confirm_booking(
    booking_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Admin: PENDING → CONFIRMED."""
    booking = await state_machine.get_booking(db, booking_id)
    await state_machine.confirm(db, booking, current_user)
    return await _enrich_booking(db, booking)


@router.post("/{booking_id}/assign", response_model=BookingResponse)
async def assign_booking(
    booking_id: UUID,
    data: BookingAssignRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Admin: attach a provider to a booking that has none yet."""
    booking = await state_machine.get_booking(db, booking_id)
    provider = await get_provider(db, data.provider_id)
    if not provider:
        raise NotFoundError("Provider not found")

    service = await _get_service_or_404(db, booking.service_id)
    if not is_assignable(provider, service.name):
        raise ValidationFailure("Provider cannot take this service")

    await state_machine.assign_provider(
        db, booking, provider, AssignmentSource.MANUAL, actor=current_user
    )
    return await _enrich_booking(db, booking)


@router.post("/{booking_id}/start", response_model=BookingResponse)
async def start_booking(
    booking_id: UUID,
    current_user: User = Depends(require_provider_or_admin),
    db: AsyncSession = Depends(get_db),
):
    """Assigned provider starts the job: ASSIGNED → IN_PROGRESS."""
    booking = await state_machine.get_booking(db, booking_id)
    if current_user.role == UserRole.PROVIDER:
        provider = await _provider_for_user(db, current_user)
        if not provider or booking.provider_id != provider.id:
            raise PermissionDenied("Only the assigned provider can start this job")
    await state_machine.start(db, booking, current_user)
    return await _enrich_booking(db, booking)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: UUID,
    data: BookingCompleteRequest,
    current_user: User = Depends(require_provider_or_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Complete with the customer's PIN. A wrong PIN returns 400 and leaves the
    booking as it was.
    """
    booking = await state_machine.get_booking(db, booking_id)
    if current_user.role == UserRole.PROVIDER:
        provider = await _provider_for_user(db, current_user)
        if not provider or booking.provider_id != provider.id:
            raise PermissionDenied("Only the assigned provider can complete this job")
    await state_machine.complete_with_pin(db, booking, data.pin.strip(), current_user)
    return await _enrich_booking(db, booking)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: UUID,
    data: BookingCancelRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Admin override: any non-terminal state → CANCELLED."""
    booking = await state_machine.get_booking(db, booking_id)
    await state_machine.cancel(db, booking, current_user, data.reason)
    return await _enrich_booking(db, booking)


@router.delete("/{booking_id}", response_model=MessageResponse)
async def delete_booking(
    booking_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Admin: remove a booking entered by mistake, with its audit trail."""
    booking = await state_machine.get_booking(db, booking_id)
    number = booking.booking_number
    await db.delete(booking)
    await db.commit()
    logger.info("Booking %s deleted by %s", number, current_user.email)
    return MessageResponse(message=f"Booking {number} deleted")
