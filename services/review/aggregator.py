"""
services/review/aggregator.py
One-time booking ratings and the provider's running mean.

The booking write is the primary operation and is committed first. The
provider mean is recomputed afterwards from every rated booking, under a
row lock on the provider, inside a savepoint: if that step fails the rating
still stands and the failure is only logged.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.notification.router import dispatch_notification
from shared.exceptions import ConflictError, PermissionDenied, ValidationFailure
from shared.models.models import Booking, BookingStatus, Provider, User, utcnow

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5
ONE_DECIMAL = Decimal("0.1")


def mean_rating(ratings: Iterable[int]) -> Optional[Decimal]:
    """Arithmetic mean rounded half-up to one decimal. None for no ratings."""
    values = [Decimal(r) for r in ratings if r is not None]
    if not values:
        return None
    return (sum(values) / Decimal(len(values))).quantize(ONE_DECIMAL, rounding=ROUND_HALF_UP)


async def recompute_provider_rating(db: AsyncSession, provider_id: UUID) -> Optional[Decimal]:
    """
    Rewrite providers.rating from the provider's rated bookings.
    Leaves the stored value alone when there is nothing to average.
    """
    locked = await db.scalar(
        select(Provider.id).where(Provider.id == provider_id).with_for_update()
    )
    if locked is None:
        logger.warning("Rating recompute skipped: provider %s not found", provider_id)
        return None

    result = await db.execute(
        select(Booking.rating).where(
            Booking.provider_id == provider_id,
            Booking.rating.is_not(None),
        )
    )
    mean = mean_rating(result.scalars().all())
    if mean is None:
        return None

    await db.execute(
        update(Provider)
        .where(Provider.id == provider_id)
        .values(rating=mean)
        .execution_options(synchronize_session=False)
    )
    return mean


async def attach_rating(
    db: AsyncSession,
    booking: Booking,
    rating: int,
    review: Optional[str] = None,
    actor: Optional[User] = None,
) -> tuple[Booking, Optional[Decimal]]:
    """
    Rate a COMPLETED booking once. Returns the booking and the provider's
    new mean (None when there was no provider or the recompute failed).
    """
    if not isinstance(rating, int) or not MIN_RATING <= rating <= MAX_RATING:
        raise ValidationFailure(f"Rating must be between {MIN_RATING} and {MAX_RATING}")
    if actor is not None and booking.customer_id != actor.id:
        raise PermissionDenied("You can only rate your own bookings")
    if booking.status != BookingStatus.COMPLETED:
        raise ConflictError("Only completed bookings can be rated")
    if booking.rating is not None:
        raise ConflictError("This booking has already been rated")

    result = await db.execute(
        update(Booking)
        .where(
            Booking.id == booking.id,
            Booking.status == BookingStatus.COMPLETED,
            Booking.rating.is_(None),
        )
        .values(rating=rating, review=review, rated_at=utcnow(), updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError("This booking has already been rated")
    await db.commit()
    await db.refresh(booking)

    if booking.provider_id is None:
        return booking, None

    provider_id = booking.provider_id
    provider_rating = None
    try:
        async with db.begin_nested():
            provider_rating = await recompute_provider_rating(db, provider_id)
        await db.commit()
    except Exception as e:
        logger.warning("Rating recompute for provider %s failed: %s", provider_id, e)
        await db.rollback()
        await db.refresh(booking)
        return booking, None

    try:
        provider_user_id = await db.scalar(select(Provider.user_id).where(Provider.id == provider_id))
        if provider_user_id:
            await dispatch_notification(
                db,
                provider_user_id,
                "REVIEW_RECEIVED",
                {"rating": rating, "booking_number": booking.booking_number},
                booking_id=booking.id,
            )
            await db.commit()
    except Exception as e:
        logger.warning("Review notification for booking %s failed: %s", booking.id, e)
        await db.rollback()
        await db.refresh(booking)

    return booking, provider_rating
