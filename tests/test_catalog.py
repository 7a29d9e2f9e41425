"""
tests/test_catalog.py
Service catalog: public reads with Redis caching, admin writes.
"""

from datetime import date, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from services.catalog.router import CACHE_KEY
from shared.models.models import BookingStatus, Provider, Service, User
from tests.conftest import auth_headers, make_booking


@pytest.mark.asyncio
async def test_list_services_is_public_and_cached(client: AsyncClient, redis, service: Service):
    response = await client.get("/services")
    assert response.status_code == 200
    assert [s["name"] for s in response.json()] == ["Electrician"]
    assert await redis.get(CACHE_KEY) is not None


@pytest.mark.asyncio
async def test_get_single_service(client: AsyncClient, service: Service):
    response = await client.get(f"/services/{service.id}")
    assert response.status_code == 200
    assert response.json()["name"] == "Electrician"

    response = await client.get("/services/00000000-0000-0000-0000-000000000000")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_admin_creates_service_and_cache_is_invalidated(
    client: AsyncClient, redis, admin_user: User, service: Service
):
    await client.get("/services")

    response = await client.post(
        "/services",
        headers=auth_headers(admin_user),
        json={"name": "Plumber", "description": "Pipes", "base_price": "300", "max_price": "1500"},
    )
    assert response.status_code == 201
    assert await redis.get(CACHE_KEY) is None

    response = await client.get("/services")
    assert [s["name"] for s in response.json()] == ["Electrician", "Plumber"]


@pytest.mark.asyncio
async def test_duplicate_service_name_conflicts(client: AsyncClient, admin_user: User, service: Service):
    response = await client.post(
        "/services",
        headers=auth_headers(admin_user),
        json={"name": "electrician", "base_price": "100"},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_max_price_below_base_rejected(client: AsyncClient, admin_user: User, service: Service):
    response = await client.post(
        "/services",
        headers=auth_headers(admin_user),
        json={"name": "Tutor", "base_price": "500", "max_price": "100"},
    )
    assert response.status_code == 400

    response = await client.put(
        f"/services/{service.id}", headers=auth_headers(admin_user), json={"max_price": "10"}
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_update_service(client: AsyncClient, admin_user: User, service: Service):
    response = await client.put(
        f"/services/{service.id}",
        headers=auth_headers(admin_user),
        json={"description": "All electrical work", "icon": "zap"},
    )
    assert response.status_code == 200
    assert response.json()["description"] == "All electrical work"
    assert response.json()["icon"] == "zap"


@pytest.mark.asyncio
async def test_customer_cannot_write_catalog(client: AsyncClient, customer: User):
    response = await client.post(
        "/services", headers=auth_headers(customer), json={"name": "Cleaner", "base_price": "100"}
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_delete_unused_service(client: AsyncClient, admin_user: User, service: Service):
    response = await client.delete(f"/services/{service.id}", headers=auth_headers(admin_user))
    assert response.status_code == 200
    assert response.json()["message"] == "Service deleted (hard)"
    response = await client.get(f"/services/{service.id}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_delete_service_with_open_bookings_conflicts(
    client: AsyncClient, db: AsyncSession, admin_user: User, customer: User, service: Service
):
    await make_booking(db, customer, service, status=BookingStatus.WAITING)
    response = await client.delete(f"/services/{service.id}", headers=auth_headers(admin_user))
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_delete_service_with_finished_bookings_retires_it(
    client: AsyncClient, db: AsyncSession, admin_user: User, customer: User,
    provider: Provider, service: Service,
):
    done = await make_booking(db, customer, service, status=BookingStatus.COMPLETED, provider=provider)
    await make_booking(db, customer, service, status=BookingStatus.CANCELLED)

    response = await client.delete(f"/services/{service.id}", headers=auth_headers(admin_user))
    assert response.status_code == 200
    assert response.json()["message"] == "Service deleted (soft)"

    await db.refresh(service)
    assert service.is_deleted is True
    await db.refresh(done)
    assert done.service_id == service.id

    # Gone from the catalog, search and new bookings; history still shows the name
    assert (await client.get("/services")).json() == []
    assert (await client.get(f"/services/{service.id}")).status_code == 404
    search = await client.get("/search/providers", params={"service": "Electrician"})
    assert search.json()["total"] == 0
    response = await client.post(
        "/bookings",
        headers=auth_headers(customer),
        json={
            "service_id": str(service.id),
            "address": "Plot 7, Sector 2",
            "area": "Cidco",
            "scheduled_date": (date.today() + timedelta(days=2)).isoformat(),
            "scheduled_time": "10:30:00",
        },
    )
    assert response.status_code == 404
    response = await client.get(f"/bookings/{done.id}", headers=auth_headers(customer))
    assert response.json()["service_name"] == "Electrician"


@pytest.mark.asyncio
async def test_recreating_a_retired_service_restores_it(
    client: AsyncClient, db: AsyncSession, admin_user: User, customer: User, service: Service
):
    await make_booking(db, customer, service, status=BookingStatus.CANCELLED)
    await client.delete(f"/services/{service.id}", headers=auth_headers(admin_user))

    response = await client.post(
        "/services",
        headers=auth_headers(admin_user),
        json={"name": "Electrician", "description": "Back again", "base_price": "300"},
    )
    assert response.status_code == 201
    assert response.json()["id"] == str(service.id)
    assert response.json()["description"] == "Back again"
    assert [s["name"] for s in (await client.get("/services")).json()] == ["Electrician"]
