"""
services/geocoding/router.py
Thin authenticated proxy over the Google Maps client.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from services.geocoding import client
from shared.middleware.auth import get_current_user
from shared.models.models import User
from shared.schemas.schemas import (
    GeocodeResponse,
    PlaceDetailsResponse,
    PlacePrediction,
    ReverseGeocodeResponse,
)

router = APIRouter(prefix="/geocoding", tags=["Geocoding"])


@router.get("/geocode", response_model=GeocodeResponse)
async def geocode(
    address: str = Query(..., min_length=3),
    current_user: User = Depends(get_current_user),
):
    result = await client.geocode_address(address)
    if not result:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Address not found")
    return GeocodeResponse(**result)


@router.get("/reverse", response_model=ReverseGeocodeResponse)
async def reverse(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    current_user: User = Depends(get_current_user),
):
    formatted = await client.reverse_geocode(lat, lng)
    if not formatted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Location not found")
    return ReverseGeocodeResponse(formatted_address=formatted)


@router.get("/autocomplete", response_model=List[PlacePrediction])
async def autocomplete(
    input: str = Query(..., min_length=1),
    session_token: Optional[str] = Query(None),
    current_user: User = Depends(get_current_user),
):
    """Address suggestions while the user types."""
    return await client.get_place_predictions(input, session_token)


@router.get("/places/{place_id}", response_model=PlaceDetailsResponse)
async def place_details(
    place_id: str,
    session_token: Optional[str] = Query(None),
    current_user: User = Depends(get_current_user),
):
    details = await client.get_place_details(place_id, session_token)
    if not details:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Place not found")
    return PlaceDetailsResponse(**details)
