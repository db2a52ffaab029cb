"""
tests/test_properties.py
Tests for listings: public browse and filters, owner CRUD,
geocoding on write and search-index sync.
"""

import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient
from kombu.exceptions import OperationalError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import BookingStatus, Property, User
from tests.conftest import auth_headers, make_booking, make_property


NEW_LISTING = {
    "title": "Palm Villa",
    "description": "Private pool and beach access",
    "address": "Frond K, Palm Jumeirah",
    "city": "Dubai",
    "country": "UAE",
    "price": "950.00",
    "bedrooms": 4,
    "bathrooms": 5,
    "amenities": ["Pool", "Beach Access"],
}

DUBAI_MARINA = {"latitude": 25.08, "longitude": 55.14, "formatted_address": "Dubai Marina", "place_id": "x"}


# ── Public browse ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_properties_only_available(
    client: AsyncClient, db: AsyncSession, landlord_user: User, property_: Property
):
    await make_property(db, landlord_user, title="Hidden Flat", available=False)
    response = await client.get("/properties")
    assert response.status_code == 200
    titles = [p["title"] for p in response.json()]
    assert titles == [property_.title]


@pytest.mark.asyncio
async def test_list_properties_skip_take(client: AsyncClient, db: AsyncSession, landlord_user: User):
    for i in range(3):
        await make_property(db, landlord_user, title=f"Flat {i}")
    response = await client.get("/properties?skip=1&take=1")
    assert response.status_code == 200
    assert len(response.json()) == 1


@pytest.mark.asyncio
async def test_get_property(client: AsyncClient, property_: Property):
    response = await client.get(f"/properties/{property_.id}")
    assert response.status_code == 200
    data = response.json()
    assert data["title"] == property_.title
    assert Decimal(data["price"]) == property_.price


@pytest.mark.asyncio
async def test_get_property_not_found(client: AsyncClient):
    response = await client.get(f"/properties/{uuid.uuid4()}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_search_properties_filters(client: AsyncClient, db: AsyncSession, landlord_user: User):
    await make_property(db, landlord_user, title="Cheap Studio", city="Sharjah", price=Decimal("80"), bedrooms=0)
    await make_property(db, landlord_user, title="Family Villa", city="Dubai", price=Decimal("900"), bedrooms=4,
                        amenities=["Garden"])
    await make_property(db, landlord_user, title="City Flat", city="Dubai", price=Decimal("300"), bedrooms=2,
                        amenities=["Gym"])

    response = await client.get("/properties/search?city=dub&min_price=200&bedrooms=2")
    assert {p["title"] for p in response.json()} == {"Family Villa", "City Flat"}

    response = await client.get("/properties/search?max_price=100")
    assert [p["title"] for p in response.json()] == ["Cheap Studio"]

    response = await client.get("/properties/search?amenities=Garden,Sauna")
    assert [p["title"] for p in response.json()] == ["Family Villa"]


@pytest.mark.asyncio
async def test_search_properties_amenities_with_paging(
    client: AsyncClient, db: AsyncSession, landlord_user: User
):
    for i in range(3):
        await make_property(db, landlord_user, title=f"Pool Flat {i}", amenities=["Pool"])
    await make_property(db, landlord_user, title="Plain Flat", amenities=["WiFi"])

    response = await client.get("/properties/search?amenities=Pool&skip=1&take=1")
    data = response.json()
    assert len(data) == 1
    assert data[0]["title"].startswith("Pool Flat")

    response = await client.get("/properties/search?amenities=Pool&skip=3&take=5")
    assert response.json() == []


@pytest.mark.asyncio
async def test_my_properties(
    client: AsyncClient, db: AsyncSession, landlord_user: User, agent_user: User, property_: Property
):
    await make_property(db, agent_user, title="Agent Listing")
    response = await client.get("/properties/my-properties", headers=auth_headers(landlord_user))
    assert response.status_code == 200
    assert [p["id"] for p in response.json()] == [str(property_.id)]


# ── Create ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_landlord_creates_property_with_geocode(
    client: AsyncClient, landlord_user: User, search_disabled
):
    with patch("services.property.router.geocode_address", AsyncMock(return_value=DUBAI_MARINA)) as geo, \
         patch("services.property.router.search.index_property", AsyncMock(return_value={"success": True})) as idx:
        response = await client.post("/properties", headers=auth_headers(landlord_user), json=NEW_LISTING)

    assert response.status_code == 201
    data = response.json()
    assert data["owner_id"] == str(landlord_user.id)
    assert data["latitude"] == 25.08
    assert data["longitude"] == 55.14
    assert geo.await_args.args[0] == "Frond K, Palm Jumeirah, Dubai, UAE"
    idx.assert_awaited_once()


@pytest.mark.asyncio
async def test_create_property_geocode_failure_keeps_listing(client: AsyncClient, agent_user: User):
    with patch("services.property.router.geocode_address", AsyncMock(return_value=None)):
        response = await client.post("/properties", headers=auth_headers(agent_user), json=NEW_LISTING)
    assert response.status_code == 201
    assert response.json()["latitude"] is None
    assert response.json()["longitude"] is None


@pytest.mark.asyncio
async def test_guest_cannot_create_property(client: AsyncClient, user: User):
    response = await client.post("/properties", headers=auth_headers(user), json=NEW_LISTING)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_create_property_negative_price_rejected(client: AsyncClient, landlord_user: User):
    response = await client.post(
        "/properties", headers=auth_headers(landlord_user), json={**NEW_LISTING, "price": "-1"}
    )
    assert response.status_code == 422


# ── Update ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_owner_updates_price_without_regeocoding(
    client: AsyncClient, landlord_user: User, property_: Property
):
    with patch("services.property.router.geocode_address", AsyncMock()) as geo:
        response = await client.put(
            f"/properties/{property_.id}",
            headers=auth_headers(landlord_user),
            json={"price": "310.00"},
        )
    assert response.status_code == 200
    assert Decimal(response.json()["price"]) == Decimal("310.00")
    geo.assert_not_awaited()


@pytest.mark.asyncio
async def test_address_change_regeocodes(client: AsyncClient, landlord_user: User, property_: Property):
    new_coords = {**DUBAI_MARINA, "latitude": 25.2, "longitude": 55.27}
    with patch("services.property.router.geocode_address", AsyncMock(return_value=new_coords)) as geo:
        response = await client.put(
            f"/properties/{property_.id}",
            headers=auth_headers(landlord_user),
            json={"address": "Sheikh Mohammed bin Rashid Blvd"},
        )
    assert response.status_code == 200
    geo.assert_awaited_once()
    assert response.json()["latitude"] == 25.2


@pytest.mark.asyncio
async def test_non_owner_cannot_update(client: AsyncClient, agent_user: User, property_: Property):
    response = await client.put(
        f"/properties/{property_.id}", headers=auth_headers(agent_user), json={"title": "Mine now"}
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_can_update_any_property(client: AsyncClient, admin_user: User, property_: Property):
    response = await client.put(
        f"/properties/{property_.id}", headers=auth_headers(admin_user), json={"available": False}
    )
    assert response.status_code == 200
    assert response.json()["available"] is False


# ── Delete ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_owner_deletes_property(
    client: AsyncClient, db: AsyncSession, landlord_user: User, property_: Property
):
    with patch("services.property.router.search.delete_property", AsyncMock(return_value={"success": True})) as rm:
        response = await client.delete(f"/properties/{property_.id}", headers=auth_headers(landlord_user))
    assert response.status_code == 200
    rm.assert_awaited_once_with(property_.id)
    assert await db.scalar(select(Property.id).where(Property.id == property_.id)) is None


@pytest.mark.asyncio
async def test_delete_blocked_by_active_booking(
    client: AsyncClient, db: AsyncSession, user: User, landlord_user: User, property_: Property
):
    await make_booking(db, user, property_, status=BookingStatus.CONFIRMED)
    response = await client.delete(f"/properties/{property_.id}", headers=auth_headers(landlord_user))
    assert response.status_code == 400
    assert response.json()["detail"] == "Cannot delete a property with active bookings"


@pytest.mark.asyncio
async def test_delete_allowed_with_only_past_bookings(
    client: AsyncClient, db: AsyncSession, user: User, landlord_user: User, property_: Property
):
    await make_booking(db, user, property_, status=BookingStatus.COMPLETED)
    await make_booking(db, user, property_, status=BookingStatus.CANCELLED)
    response = await client.delete(f"/properties/{property_.id}", headers=auth_headers(landlord_user))
    assert response.status_code == 200


# ── Search index ──────────────────────────────────────────────

INDEX_DOWN = {"success": False, "error": "ConnectionTimeout", "retry": True}


@pytest.mark.asyncio
async def test_failed_index_write_is_queued_for_worker(client: AsyncClient, landlord_user: User):
    with patch("services.property.router.geocode_address", AsyncMock(return_value=DUBAI_MARINA)), \
         patch("services.property.router.search.index_property", AsyncMock(return_value=INDEX_DOWN)), \
         patch("services.property.router.reindex_property") as task:
        response = await client.post("/properties", headers=auth_headers(landlord_user), json=NEW_LISTING)

    assert response.status_code == 201
    task.delay.assert_called_once_with(response.json()["id"])


@pytest.mark.asyncio
async def test_failed_update_and_delete_are_queued(
    client: AsyncClient, landlord_user: User, property_: Property
):
    with patch("services.property.router.search.update_property", AsyncMock(return_value=INDEX_DOWN)), \
         patch("services.property.router.search.delete_property", AsyncMock(return_value=INDEX_DOWN)), \
         patch("services.property.router.reindex_property") as task:
        updated = await client.put(
            f"/properties/{property_.id}", headers=auth_headers(landlord_user), json={"price": "210.00"}
        )
        deleted = await client.delete(f"/properties/{property_.id}", headers=auth_headers(landlord_user))

    assert updated.status_code == 200
    assert deleted.status_code == 200
    assert [c.args for c in task.delay.call_args_list] == [(str(property_.id),), (str(property_.id),)]


@pytest.mark.asyncio
async def test_unconfigured_search_is_not_queued(client: AsyncClient, landlord_user: User):
    with patch("services.property.router.geocode_address", AsyncMock(return_value=None)), \
         patch("services.property.router.reindex_property") as task:
        response = await client.post("/properties", headers=auth_headers(landlord_user), json=NEW_LISTING)

    assert response.status_code == 201
    task.delay.assert_not_called()


@pytest.mark.asyncio
async def test_broker_down_does_not_fail_the_write(client: AsyncClient, landlord_user: User):
    with patch("services.property.router.geocode_address", AsyncMock(return_value=None)), \
         patch("services.property.router.search.index_property", AsyncMock(return_value=INDEX_DOWN)), \
         patch("services.property.router.reindex_property") as task:
        task.delay.side_effect = OperationalError("connection refused")
        response = await client.post("/properties", headers=auth_headers(landlord_user), json=NEW_LISTING)

    assert response.status_code == 201
