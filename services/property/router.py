"""
services/property/router.py
Listings: public browse/search, owner CRUD.
Writes geocode the address and keep the search index current;
neither provider can fail the request.
"""

import logging
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from kombu.exceptions import OperationalError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.geocoding.client import geocode_address
from services.search import router as search
from shared.middleware.auth import get_current_user, is_admin, require_lister
from shared.models.models import ACTIVE_BOOKING_STATUSES, Booking, Property, User
from shared.schemas.schemas import (
    PropertyCreateRequest,
    PropertyResponse,
    PropertyUpdateRequest,
    StatusMessage,
)
from tasks.search_tasks import reindex_property

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/properties", tags=["Properties"])

ADDRESS_FIELDS = ("address", "city", "zip_code", "country")


# ── Helpers ───────────────────────────────────────────────────

async def _get_property_or_404(db: AsyncSession, property_id: UUID) -> Property:
    prop = await db.scalar(select(Property).where(Property.id == property_id))
    if not prop:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Property not found")
    return prop


def _assert_can_manage(prop: Property, user: User) -> None:
    if prop.owner_id != user.id and not is_admin(user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have permission to modify this property",
        )


def full_address(prop: Property) -> str:
    parts = [prop.address, prop.city, prop.zip_code, prop.country]
    return ", ".join(p for p in parts if p)


async def _apply_geocode(prop: Property) -> None:
    """Set coordinates from the address; on failure they stay NULL."""
    result = await geocode_address(full_address(prop))
    if result:
        prop.latitude = result["latitude"]
        prop.longitude = result["longitude"]
    else:
        logger.warning(f"Geocoding failed for property address '{full_address(prop)}'")
        prop.latitude = None
        prop.longitude = None


def _reindex_later(property_id: UUID, result: dict) -> None:
    """Hand a failed inline index write to the search worker."""
    if not result.get("retry"):
        return
    try:
        reindex_property.delay(str(property_id))
        logger.info(f"Queued reindex of property {property_id}")
    except OperationalError as e:
        logger.error(f"Failed to queue reindex of property {property_id}: {e}")


# ── Public Endpoints ──────────────────────────────────────────

@router.get("", response_model=List[PropertyResponse])
async def list_properties(
    skip: int = Query(0, ge=0),
    take: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Available properties, newest first."""
    result = await db.execute(
        select(Property)
        .where(Property.available == True)  # noqa: E712
        .order_by(Property.created_at.desc())
        .offset(skip)
        .limit(take)
    )
    return [PropertyResponse.model_validate(p) for p in result.scalars()]


@router.get("/search", response_model=List[PropertyResponse])
async def search_properties(
    city: Optional[str] = Query(None, description="Case-insensitive substring"),
    min_price: Optional[Decimal] = Query(None, ge=0),
    max_price: Optional[Decimal] = Query(None, ge=0),
    bedrooms: Optional[int] = Query(None, ge=0, description="Minimum bedrooms"),
    bathrooms: Optional[int] = Query(None, ge=0, description="Minimum bathrooms"),
    amenities: Optional[str] = Query(None, description="Comma-separated, matches any"),
    skip: int = Query(0, ge=0),
    take: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Database filter over available properties."""
    query = select(Property).where(Property.available == True)  # noqa: E712

    if city:
        query = query.where(func.lower(Property.city).contains(city.lower()))
    if min_price is not None:
        query = query.where(Property.price >= min_price)
    if max_price is not None:
        query = query.where(Property.price <= max_price)
    if bedrooms is not None:
        query = query.where(Property.bedrooms >= bedrooms)
    if bathrooms is not None:
        query = query.where(Property.bathrooms >= bathrooms)

    wanted = [a.strip() for a in amenities.split(",") if a.strip()] if amenities else []
    if wanted:
        query = query.where(search.has_any_amenity(db, wanted))

    result = await db.execute(query.order_by(Property.created_at.desc()).offset(skip).limit(take))
    return [PropertyResponse.model_validate(p) for p in result.scalars()]


@router.get("/my-properties", response_model=List[PropertyResponse])
async def my_properties(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Property)
        .where(Property.owner_id == current_user.id)
        .order_by(Property.created_at.desc())
    )
    return [PropertyResponse.model_validate(p) for p in result.scalars()]


@router.get("/{property_id}", response_model=PropertyResponse)
async def get_property(property_id: UUID, db: AsyncSession = Depends(get_db)):
    return PropertyResponse.model_validate(await _get_property_or_404(db, property_id))


# ── Owner Endpoints ───────────────────────────────────────────

@router.post("", response_model=PropertyResponse, status_code=status.HTTP_201_CREATED)
async def create_property(
    data: PropertyCreateRequest,
    current_user: User = Depends(require_lister),
    db: AsyncSession = Depends(get_db),
):
    """
    Create a listing owned by the caller (LANDLORD, AGENT or ADMIN).
    The address is geocoded and the listing indexed for search.
    """
    prop = Property(owner_id=current_user.id, **data.model_dump())
    await _apply_geocode(prop)

    db.add(prop)
    await db.commit()
    await db.refresh(prop)

    _reindex_later(prop.id, await search.index_property(prop))
    await search.invalidate_suggestions()
    return PropertyResponse.model_validate(prop)


@router.put("/{property_id}", response_model=PropertyResponse)
async def update_property(
    property_id: UUID,
    data: PropertyUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Partial update by the owner or an admin. Re-geocodes when the address changes."""
    prop = await _get_property_or_404(db, property_id)
    _assert_can_manage(prop, current_user)

    updates = data.model_dump(exclude_unset=True)
    # Required columns cannot be cleared
    updates = {k: v for k, v in updates.items() if v is not None or k in ("description", "zip_code", "size")}

    address_changed = any(
        field in updates and updates[field] != getattr(prop, field) for field in ADDRESS_FIELDS
    )
    for field, value in updates.items():
        setattr(prop, field, value)

    if address_changed:
        await _apply_geocode(prop)

    await db.commit()
    await db.refresh(prop)

    _reindex_later(prop.id, await search.update_property(prop))
    await search.invalidate_suggestions()
    return PropertyResponse.model_validate(prop)


@router.delete("/{property_id}", response_model=StatusMessage)
async def delete_property(
    property_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Delete a listing. Refused while it has PENDING or CONFIRMED bookings."""
    prop = await _get_property_or_404(db, property_id)
    _assert_can_manage(prop, current_user)

    active = await db.scalar(
        select(func.count(Booking.id)).where(
            Booking.property_id == prop.id,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        )
    )
    if active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot delete a property with active bookings",
        )

    await db.delete(prop)
    await db.commit()

    _reindex_later(property_id, await search.delete_property(property_id))
    await search.invalidate_suggestions()
    return StatusMessage(message="Property deleted")
