"""
services/booking/state_machine.py
Booking lifecycle transitions.

    PENDING ──► CONFIRMED ──► ASSIGNED ──► IN_PROGRESS ──► COMPLETED
       │  └──► WAITING ────►    ▲   └────────────────────► COMPLETED (PIN)
       └────────────────────────┘
    Any non-terminal state ──► CANCELLED

Every write is a compare-and-set UPDATE guarded on the current status, so two
writers racing on the same booking cannot both succeed: the loser gets a
ConflictError. Notifications and emails run after the primary commit and
never undo it.
"""

import logging
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.booking.pin import verify_pin
from services.notification.router import dispatch_notification
from shared.exceptions import ConflictError, NotFoundError, ValidationFailure
from shared.models.models import (
    AssignmentSource,
    Booking,
    BookingAuditLog,
    BookingStatus,
    Provider,
    Service,
    User,
    utcnow,
)
from tasks import notification_tasks

logger = logging.getLogger(__name__)


TRANSITIONS: dict[BookingStatus, frozenset] = {
    BookingStatus.PENDING: frozenset({
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
        BookingStatus.WAITING,
        BookingStatus.ASSIGNED,
    }),
    BookingStatus.WAITING: frozenset({BookingStatus.ASSIGNED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.ASSIGNED, BookingStatus.CANCELLED}),
    BookingStatus.ASSIGNED: frozenset({
        BookingStatus.IN_PROGRESS,
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
    }),
    BookingStatus.IN_PROGRESS: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}

ASSIGNABLE_STATUSES = (BookingStatus.PENDING, BookingStatus.WAITING, BookingStatus.CONFIRMED)
AUTO_ASSIGNABLE_STATUSES = (BookingStatus.PENDING, BookingStatus.WAITING)
COMPLETABLE_STATUSES = (BookingStatus.ASSIGNED, BookingStatus.IN_PROGRESS)
TERMINAL_STATUSES = (BookingStatus.COMPLETED, BookingStatus.CANCELLED)


def can_transition(from_status: BookingStatus, to_status: BookingStatus) -> bool:
    return to_status in TRANSITIONS.get(BookingStatus(from_status), frozenset())


def allowed_sources(target: BookingStatus) -> tuple:
    """All statuses from which `target` is reachable in one step."""
    return tuple(s for s, targets in TRANSITIONS.items() if target in targets)


# ── Persistence helpers ───────────────────────────────────────

async def get_booking(db: AsyncSession, booking_id) -> Booking:
    result = await db.execute(select(Booking).where(Booking.id == booking_id))
    booking = result.scalar_one_or_none()
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


async def _compare_and_set(
    db: AsyncSession,
    booking: Booking,
    sources: Iterable[BookingStatus],
    values: dict,
    *extra_where,
) -> bool:
    result = await db.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status.in_(tuple(sources)), *extra_where)
        .values(updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def log_status_change(
    db: AsyncSession,
    booking: Booking,
    from_status: Optional[BookingStatus],
    to_status: BookingStatus,
    actor: Optional[User] = None,
    reason: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> None:
    """Append an immutable audit log entry for every status change."""
    db.add(BookingAuditLog(
        booking_id=booking.id,
        from_status=BookingStatus(from_status).value if from_status else None,
        to_status=BookingStatus(to_status).value,
        changed_by_id=actor.id if actor else None,
        reason=reason,
        audit_metadata=metadata,
    ))


async def transition(
    db: AsyncSession,
    booking: Booking,
    target: BookingStatus,
    actor: Optional[User] = None,
    reason: Optional[str] = None,
    values: Optional[dict] = None,
    sources: Optional[Iterable[BookingStatus]] = None,
    extra_where: tuple = (),
    metadata: Optional[dict] = None,
) -> Booking:
    """
    Move `booking` to `target` if, and only if, it is still in one of `sources`
    (default: every status with an edge to `target`). Commits on success.
    """
    sources = tuple(sources) if sources is not None else allowed_sources(target)
    previous = booking.status
    if previous not in sources:
        raise ConflictError(
            f"Cannot move booking from {BookingStatus(previous).value} to {target.value}"
        )

    applied = await _compare_and_set(
        db, booking, sources, {"status": target, **(values or {})}, *extra_where
    )
    if not applied:
        raise ConflictError("Booking was changed by another request; reload and retry")

    log_status_change(db, booking, previous, target, actor, reason, metadata)
    await db.commit()
    await db.refresh(booking)
    logger.info("Booking %s: %s -> %s", booking.id, BookingStatus(previous).value, target.value)
    return booking


# ── Side effects (best-effort, after commit) ──────────────────

async def _booking_context(db: AsyncSession, booking: Booking) -> dict:
    service_name = await db.scalar(select(Service.name).where(Service.id == booking.service_id))
    return {
        "booking_number": booking.booking_number,
        "service_name": service_name or "service",
        "area": booking.area,
        "scheduled_date": booking.scheduled_date.isoformat() if booking.scheduled_date else "",
        "scheduled_time": booking.scheduled_time.strftime("%H:%M") if booking.scheduled_time else "",
    }


async def _notify_customer(db: AsyncSession, booking: Booking, template_key: str, **extra) -> None:
    try:
        context = await _booking_context(db, booking)
        await dispatch_notification(
            db, booking.customer_id, template_key, {**context, **extra}, booking_id=booking.id
        )
        await db.commit()
    except Exception as e:
        logger.warning("Post-commit notification for booking %s failed: %s", booking.id, e)
        await db.rollback()
        await db.refresh(booking)


async def announce_assignment(db: AsyncSession, booking: Booking, provider: Provider) -> None:
    """Notify the customer and the provider, then queue the provider's email."""
    try:
        context = await _booking_context(db, booking)
        customer = await db.get(User, booking.customer_id)
        provider_user = await db.get(User, provider.user_id)
        provider_name = provider_user.name if provider_user else "a provider"

        await dispatch_notification(
            db,
            booking.customer_id,
            "BOOKING_ASSIGNED_CUSTOMER",
            {**context, "provider_name": provider_name},
            booking_id=booking.id,
        )
        if provider_user:
            await dispatch_notification(
                db, provider_user.id, "BOOKING_ASSIGNED_PROVIDER", context, booking_id=booking.id
            )
        await db.commit()
    except Exception as e:
        logger.warning("Assignment notifications for booking %s failed: %s", booking.id, e)
        await db.rollback()
        await db.refresh(booking)
        return

    if not (provider_user and provider_user.email):
        return
    try:
        notification_tasks.queue_assignment_email(
            notification_tasks.AssignmentEmail(
                to_name=provider_user.name,
                to_email=provider_user.email,
                customer_name=customer.name if customer else "",
                customer_phone=(customer.phone or "") if customer else "",
                service_name=context["service_name"],
                scheduled_date=context["scheduled_date"],
                scheduled_time=context["scheduled_time"],
                location=f"{booking.address}, {booking.area}",
                amount=str(booking.amount),
                booking_number=booking.booking_number,
            )
        )
    except Exception as e:
        logger.warning("Assignment email for booking %s not queued: %s", booking.id, e)


# ── Operations ────────────────────────────────────────────────

async def assign_provider(
    db: AsyncSession,
    booking: Booking,
    provider: Provider,
    source: AssignmentSource,
    actor: Optional[User] = None,
) -> Booking:
    """
    Attach `provider` to a booking that has none yet.
    Auto-assignment claims PENDING and WAITING rows; manual assignment also
    takes CONFIRMED.
    """
    sources = AUTO_ASSIGNABLE_STATUSES if source == AssignmentSource.AUTO else ASSIGNABLE_STATUSES
    if booking.provider_id is not None:
        raise ConflictError("Booking already has a provider")

    await transition(
        db,
        booking,
        BookingStatus.ASSIGNED,
        actor=actor,
        values={
            "provider_id": provider.id,
            "assignment_source": source,
            "assigned_at": utcnow(),
        },
        sources=sources,
        extra_where=(Booking.provider_id.is_(None),),
        metadata={"provider_id": str(provider.id), "source": source.value},
    )
    await announce_assignment(db, booking, provider)
    return booking


async def mark_waiting(db: AsyncSession, booking: Booking) -> Booking:
    """No eligible provider yet. Only ever applied to PENDING bookings."""
    return await transition(
        db,
        booking,
        BookingStatus.WAITING,
        reason="No eligible provider",
        sources=(BookingStatus.PENDING,),
    )


async def confirm(db: AsyncSession, booking: Booking, actor: User) -> Booking:
    await transition(db, booking, BookingStatus.CONFIRMED, actor=actor)
    await _notify_customer(db, booking, "BOOKING_CONFIRMED")
    return booking


async def start(db: AsyncSession, booking: Booking, actor: User) -> Booking:
    await transition(
        db, booking, BookingStatus.IN_PROGRESS, actor=actor, values={"started_at": utcnow()}
    )
    await _notify_customer(db, booking, "BOOKING_STARTED")
    return booking


async def cancel(db: AsyncSession, booking: Booking, actor: User, reason: str) -> Booking:
    await transition(
        db,
        booking,
        BookingStatus.CANCELLED,
        actor=actor,
        reason=reason,
        values={"cancelled_at": utcnow(), "cancellation_reason": reason},
    )
    await _notify_customer(db, booking, "BOOKING_CANCELLED", reason=reason)
    return booking


async def complete_with_pin(db: AsyncSession, booking: Booking, pin: str, actor: User) -> Booking:
    """
    Complete the job if `pin` matches the one derived from the booking.
    A wrong PIN leaves the booking untouched.
    """
    if booking.status not in COMPLETABLE_STATUSES:
        raise ConflictError(
            f"Cannot complete booking in {BookingStatus(booking.status).value} state"
        )
    if not verify_pin(booking.id, booking.created_at, pin):
        logger.info("Rejected completion PIN for booking %s", booking.id)
        raise ValidationFailure("Invalid completion PIN")

    await transition(
        db,
        booking,
        BookingStatus.COMPLETED,
        actor=actor,
        values={"completed_at": utcnow()},
        sources=COMPLETABLE_STATUSES,
    )
    await _notify_customer(db, booking, "BOOKING_COMPLETED")
    return booking
