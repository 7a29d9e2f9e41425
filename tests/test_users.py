"""
tests/test_users.py
Tests for profile read/update and the admin user list.
"""

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import User, UserRole
from tests.conftest import auth_headers, make_user


@pytest.mark.asyncio
async def test_get_my_profile(client: AsyncClient, customer: User):
    response = await client.get("/users/me", headers=auth_headers(customer))
    assert response.status_code == 200
    assert response.json()["name"] == "Test Customer"


@pytest.mark.asyncio
async def test_update_name_and_phone(client: AsyncClient, customer: User):
    response = await client.put(
        "/users/me",
        headers=auth_headers(customer),
        json={"name": "Renamed Customer", "phone": "+919812345678"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["name"] == "Renamed Customer"
    assert data["phone"] == "+919812345678"


@pytest.mark.asyncio
async def test_phone_already_used_conflicts(client: AsyncClient, db: AsyncSession, customer: User):
    await make_user(db, "taken@demo.com", "Phone Owner", UserRole.CUSTOMER, phone="9000000001")
    response = await client.put(
        "/users/me", headers=auth_headers(customer), json={"phone": "9000000001"}
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_invalid_phone_rejected(client: AsyncClient, customer: User):
    response = await client.put("/users/me", headers=auth_headers(customer), json={"phone": "12ab"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_admin_lists_users_by_role(
    client: AsyncClient, customer: User, provider_user: User, admin_user: User
):
    response = await client.get("/users?role=PROVIDER", headers=auth_headers(admin_user))
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    assert data["items"][0]["email"] == provider_user.email


@pytest.mark.asyncio
async def test_customer_cannot_list_users(client: AsyncClient, customer: User):
    response = await client.get("/users", headers=auth_headers(customer))
    assert response.status_code == 403
