"""
services/review/router.py
Ratings: customers rate completed bookings once; anyone can read a
provider's rated jobs.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.state_machine import get_booking
from services.review.aggregator import attach_rating
from shared.exceptions import NotFoundError
from shared.middleware.auth import require_customer
from shared.models.models import Booking, Provider, User
from shared.schemas.schemas import RatingCreateRequest, RatingResponse

router = APIRouter(prefix="/reviews", tags=["Reviews"])


@router.post("", response_model=RatingResponse, status_code=status.HTTP_201_CREATED)
async def create_review(
    data: RatingCreateRequest,
    current_user: User = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
):
    """
    Rate a completed booking.
    - Only the customer who made the booking can rate it
    - One rating per booking; it cannot be changed afterwards
    """
    booking = await get_booking(db, data.booking_id)
    booking, provider_rating = await attach_rating(
        db, booking, data.rating, data.review, actor=current_user
    )
    return RatingResponse(
        booking_id=booking.id,
        provider_id=booking.provider_id,
        rating=booking.rating,
        review=booking.review,
        rated_at=booking.rated_at,
        provider_rating=provider_rating,
        customer_name=current_user.name,
    )


@router.get("/provider/{provider_id}", response_model=list[RatingResponse])
async def get_provider_reviews(
    provider_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Public: rated bookings for a provider, newest first."""
    provider = await db.scalar(select(Provider).where(Provider.id == provider_id))
    if not provider:
        raise NotFoundError("Provider not found")

    result = await db.execute(
        select(Booking, User.name)
        .join(User, User.id == Booking.customer_id)
        .where(Booking.provider_id == provider_id, Booking.rating.is_not(None))
        .order_by(Booking.rated_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [
        RatingResponse(
            booking_id=booking.id,
            provider_id=booking.provider_id,
            rating=booking.rating,
            review=booking.review,
            rated_at=booking.rated_at,
            provider_rating=provider.rating,
            customer_name=customer_name,
        )
        for booking, customer_name in result.all()
    ]
