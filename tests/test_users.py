"""
tests/test_users.py
Tests for profile management and the admin user directory.
"""

import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import User
from tests.conftest import auth_headers, make_user


@pytest.mark.asyncio
async def test_get_my_profile(client: AsyncClient, user: User):
    response = await client.get("/users/me", headers=auth_headers(user))
    assert response.status_code == 200
    assert response.json()["id"] == str(user.id)


@pytest.mark.asyncio
async def test_update_profile(client: AsyncClient, user: User):
    response = await client.put(
        "/users/profile",
        headers=auth_headers(user),
        json={"first_name": "Layla", "phone": "+971551112233"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["first_name"] == "Layla"
    assert data["phone"] == "+971551112233"
    assert data["last_name"] == user.last_name


@pytest.mark.asyncio
async def test_update_profile_invalid_phone(client: AsyncClient, user: User):
    response = await client.put(
        "/users/profile", headers=auth_headers(user), json={"phone": "not-a-phone"}
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_update_profile_phone_taken(client: AsyncClient, db: AsyncSession, user: User):
    await make_user(db, "taken@example.com", phone="+971559998877")
    response = await client.put(
        "/users/profile", headers=auth_headers(user), json={"phone": "+971559998877"}
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_update_profile_email_is_not_editable(client: AsyncClient, user: User):
    response = await client.put(
        "/users/profile", headers=auth_headers(user), json={"email": "hijack@example.com"}
    )
    assert response.status_code == 200
    assert response.json()["email"] == user.email


# ── Admin directory ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_users_requires_admin(client: AsyncClient, user: User):
    response = await client.get("/users", headers=auth_headers(user))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_lists_users(
    client: AsyncClient, admin_user: User, user: User, landlord_user: User
):
    response = await client.get("/users", headers=auth_headers(admin_user))
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 3
    assert data["pages"] == 1
    assert {u["email"] for u in data["items"]} == {
        admin_user.email, user.email, landlord_user.email
    }


@pytest.mark.asyncio
async def test_admin_filters_users_by_role(
    client: AsyncClient, admin_user: User, user: User, landlord_user: User
):
    response = await client.get("/users?role=LANDLORD", headers=auth_headers(admin_user))
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    assert data["items"][0]["id"] == str(landlord_user.id)


@pytest.mark.asyncio
async def test_admin_gets_user_by_id(client: AsyncClient, admin_user: User, user: User):
    response = await client.get(f"/users/{user.id}", headers=auth_headers(admin_user))
    assert response.status_code == 200
    assert response.json()["email"] == user.email


@pytest.mark.asyncio
async def test_admin_get_unknown_user(client: AsyncClient, admin_user: User):
    response = await client.get(f"/users/{uuid.uuid4()}", headers=auth_headers(admin_user))
    assert response.status_code == 404
