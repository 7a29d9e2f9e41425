"""
tests/test_reviews.py
One-time booking ratings and the provider's running mean.
"""

from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.review import aggregator
from services.review.aggregator import attach_rating, mean_rating, recompute_provider_rating
from shared.exceptions import ConflictError, PermissionDenied, ValidationFailure
from shared.models.models import Booking, BookingStatus, Notification, Provider, Service, User
from tests.conftest import auth_headers, make_booking, make_user


async def _rated_booking(db: AsyncSession, customer: User, service: Service, provider: Provider, rating: int):
    booking = await make_booking(db, customer, service, status=BookingStatus.COMPLETED, provider=provider)
    booking.rating = rating
    await db.commit()
    return booking


# ── Mean ───────────────────────────────────────────────────────────────────────

def test_mean_rounds_half_up_to_one_decimal():
    assert mean_rating([5, 3, 4]) == Decimal("4.0")
    assert mean_rating([5, 4]) == Decimal("4.5")
    assert mean_rating([5, 5, 4]) == Decimal("4.7")
    assert mean_rating([4, 4, 4, 5]) == Decimal("4.3")
    assert mean_rating([]) is None


@pytest.mark.asyncio
async def test_recompute_is_stable_for_unchanged_ratings(
    db: AsyncSession, customer: User, provider: Provider, service: Service
):
    await _rated_booking(db, customer, service, provider, 5)
    await _rated_booking(db, customer, service, provider, 4)

    first = await recompute_provider_rating(db, provider.id)
    second = await recompute_provider_rating(db, provider.id)
    await db.commit()

    assert first == second == Decimal("4.5")


# ── Attaching Ratings ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_third_rating_updates_provider_mean(
    db: AsyncSession, customer: User, provider: Provider, service: Service
):
    """Prior ratings 5 and 3, new rating 4: the provider lands on 4.0."""
    await _rated_booking(db, customer, service, provider, 5)
    await _rated_booking(db, customer, service, provider, 3)
    booking = await make_booking(db, customer, service, status=BookingStatus.COMPLETED, provider=provider)

    booking, new_mean = await attach_rating(db, booking, 4, "Quick and tidy", actor=customer)

    assert new_mean == Decimal("4.0")
    assert booking.rating == 4
    assert booking.rated_at is not None
    await db.refresh(provider)
    assert provider.rating == Decimal("4.0")


@pytest.mark.asyncio
@pytest.mark.parametrize("rating", [0, 6, -1])
async def test_out_of_range_rating_rejected(
    db: AsyncSession, customer: User, provider: Provider, service: Service, rating: int
):
    booking = await make_booking(db, customer, service, status=BookingStatus.COMPLETED, provider=provider)
    with pytest.raises(ValidationFailure):
        await attach_rating(db, booking, rating, actor=customer)
    assert booking.rating is None


@pytest.mark.asyncio
async def test_only_completed_bookings_can_be_rated(
    db: AsyncSession, customer: User, provider: Provider, service: Service
):
    booking = await make_booking(db, customer, service, status=BookingStatus.IN_PROGRESS, provider=provider)
    with pytest.raises(ConflictError):
        await attach_rating(db, booking, 5, actor=customer)


@pytest.mark.asyncio
async def test_rating_is_one_time(
    db: AsyncSession, customer: User, provider: Provider, service: Service
):
    booking = await make_booking(db, customer, service, status=BookingStatus.COMPLETED, provider=provider)
    await attach_rating(db, booking, 5, actor=customer)

    with pytest.raises(ConflictError):
        await attach_rating(db, booking, 1, actor=customer)

    await db.refresh(booking)
    assert booking.rating == 5


@pytest.mark.asyncio
async def test_stale_second_rating_loses(
    db: AsyncSession, customer: User, provider: Provider, service: Service
):
    """A writer that read the booking before it was rated still cannot overwrite it."""
    booking = await make_booking(db, customer, service, status=BookingStatus.COMPLETED, provider=provider)
    stale = Booking(**{c.name: getattr(booking, c.name) for c in Booking.__table__.columns})

    await attach_rating(db, booking, 5, actor=customer)
    with pytest.raises(ConflictError):
        await attach_rating(db, stale, 2, actor=customer)


@pytest.mark.asyncio
async def test_only_booking_customer_can_rate(
    db: AsyncSession, customer: User, provider: Provider, service: Service
):
    booking = await make_booking(db, customer, service, status=BookingStatus.COMPLETED, provider=provider)
    stranger = await make_user(db, "stranger@demo.com", "Stranger", customer.role)
    with pytest.raises(PermissionDenied):
        await attach_rating(db, booking, 5, actor=stranger)


@pytest.mark.asyncio
async def test_rating_survives_failed_recompute(
    monkeypatch, db: AsyncSession, customer: User, provider: Provider, service: Service
):
    async def _fail(*args, **kwargs):
        raise RuntimeError("lock timeout")

    monkeypatch.setattr(aggregator, "recompute_provider_rating", _fail)
    booking = await make_booking(db, customer, service, status=BookingStatus.COMPLETED, provider=provider)

    rated, mean = await attach_rating(db, booking, 2, "Late and messy", actor=customer)

    assert mean is None
    stored = await db.get(Booking, booking.id, populate_existing=True)
    assert (stored.rating, stored.review) == (2, "Late and messy")
    await db.refresh(provider)
    assert provider.rating == Decimal("4.5")


@pytest.mark.asyncio
async def test_rating_survives_failed_review_notification(
    monkeypatch, db: AsyncSession, customer: User, provider: Provider, service: Service
):
    async def _fail(*args, **kwargs):
        raise RuntimeError("notifications table unavailable")

    monkeypatch.setattr(aggregator, "dispatch_notification", _fail)
    booking = await make_booking(db, customer, service, status=BookingStatus.COMPLETED, provider=provider)

    rated, mean = await attach_rating(db, booking, 3, actor=customer)

    assert mean == Decimal("3.0")
    assert rated.rating == 3
    await db.refresh(provider)
    assert provider.rating == Decimal("3.0")



# ── API ────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_review_endpoint(
    client: AsyncClient, db: AsyncSession, customer: User, provider: Provider, service: Service
):
    booking = await make_booking(db, customer, service, status=BookingStatus.COMPLETED, provider=provider)

    response = await client.post(
        "/reviews",
        headers=auth_headers(customer),
        json={"booking_id": str(booking.id), "rating": 4, "review": "Good work"},
    )
    assert response.status_code == 201
    data = response.json()
    assert data["rating"] == 4
    assert data["review"] == "Good work"
    assert Decimal(data["provider_rating"]) == Decimal("4.0")

    note = await db.scalar(select(Notification).where(Notification.user_id == provider.user_id))
    assert note is not None

    response = await client.post(
        "/reviews",
        headers=auth_headers(customer),
        json={"booking_id": str(booking.id), "rating": 2},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_review_rating_out_of_range_is_422(
    client: AsyncClient, db: AsyncSession, customer: User, provider: Provider, service: Service
):
    booking = await make_booking(db, customer, service, status=BookingStatus.COMPLETED, provider=provider)
    response = await client.post(
        "/reviews", headers=auth_headers(customer), json={"booking_id": str(booking.id), "rating": 6}
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_list_provider_reviews(
    client: AsyncClient, db: AsyncSession, customer: User, provider: Provider, service: Service
):
    booking = await make_booking(db, customer, service, status=BookingStatus.COMPLETED, provider=provider)
    await attach_rating(db, booking, 5, "Excellent", actor=customer)

    response = await client.get(f"/reviews/provider/{provider.id}")
    assert response.status_code == 200
    reviews = response.json()
    assert len(reviews) == 1
    assert reviews[0]["customer_name"] == customer.name
    assert reviews[0]["review"] == "Excellent"


@pytest.mark.asyncio
async def test_reviews_for_unknown_provider_404(client: AsyncClient):
    response = await client.get("/reviews/provider/00000000-0000-0000-0000-000000000000")
    assert response.status_code == 404
