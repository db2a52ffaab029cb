"""
services/geocoding/client.py
Google Maps Geocoding and Places client.

Maps failures never raise: a missing key, a non-OK status or a transport
error (after retries) is logged and reported as None / []. Successful
forward geocodes are cached in redis.
"""

import logging
from typing import Optional

import httpx
from redis.exceptions import RedisError
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.redis_client import RedisCache, get_redis
from config.settings import settings

logger = logging.getLogger(__name__)

GEOCODE_CACHE_TTL = 7 * 24 * 3600


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.25, max=2),
    retry=retry_if_exception_type(httpx.TransportError),
)
async def _maps_get(path: str, params: dict) -> dict:
    async with httpx.AsyncClient(timeout=settings.GEOCODING_TIMEOUT_SECONDS) as client:
        resp = await client.get(
            f"{settings.GOOGLE_MAPS_BASE_URL}/{path}",
            params={**params, "key": settings.GOOGLE_MAPS_API_KEY},
        )
        resp.raise_for_status()
        return resp.json()


async def _call(path: str, params: dict, op: str) -> Optional[dict]:
    """Run one Maps request. Returns the payload when status is OK, else None."""
    if not settings.GOOGLE_MAPS_API_KEY:
        logger.warning(f"GOOGLE_MAPS_API_KEY not configured, skipping {op}")
        return None

    try:
        data = await _maps_get(path, params)
    except (RetryError, httpx.HTTPError, ValueError) as e:
        logger.error(f"Maps {op} request failed: {e}")
        return None

    if data.get("status") != "OK":
        logger.warning(f"Maps {op} returned status {data.get('status')}: {data.get('error_message', '')}")
        return None
    return data


async def geocode_address(address: str) -> Optional[dict]:
    """Forward geocode. Returns {latitude, longitude, formatted_address, place_id} or None."""
    cache = RedisCache(get_redis())
    cache_key = f"geocode:{address.strip().lower()}"
    try:
        cached = await cache.get(cache_key)
    except RedisError as e:
        logger.warning(f"Geocode cache read failed: {e}")
        cached = None
    if cached:
        return cached

    data = await _call("geocode/json", {"address": address}, "geocode")
    if not data or not data.get("results"):
        return None

    result = data["results"][0]
    try:
        location = result["geometry"]["location"]
        geocoded = {
            "latitude": location["lat"],
            "longitude": location["lng"],
            "formatted_address": result.get("formatted_address", address),
            "place_id": result.get("place_id"),
        }
    except (KeyError, TypeError) as e:
        logger.error(f"Maps geocode returned a result without a location: {e}")
        return None

    # Only successful lookups are cached
    try:
        await cache.set(cache_key, geocoded, ttl=GEOCODE_CACHE_TTL)
    except RedisError as e:
        logger.warning(f"Geocode cache write failed: {e}")
    return geocoded


async def reverse_geocode(lat: float, lng: float) -> Optional[str]:
    data = await _call("geocode/json", {"latlng": f"{lat},{lng}"}, "reverse geocode")
    if not data or not data.get("results"):
        return None
    return data["results"][0].get("formatted_address")


async def get_place_predictions(input_text: str, session_token: Optional[str] = None) -> list[dict]:
    """Places autocomplete, restricted to addresses."""
    params = {"input": input_text, "types": "address"}
    if session_token:
        params["sessiontoken"] = session_token

    data = await _call("place/autocomplete/json", params, "autocomplete")
    if not data:
        return []

    predictions = []
    for p in data.get("predictions", []):
        formatting = p.get("structured_formatting", {})
        predictions.append({
            "place_id": p["place_id"],
            "description": p.get("description", ""),
            "main_text": formatting.get("main_text"),
            "secondary_text": formatting.get("secondary_text"),
        })
    return predictions


async def get_place_details(place_id: str, session_token: Optional[str] = None) -> Optional[dict]:
    params = {
        "place_id": place_id,
        "fields": "geometry,formatted_address,address_components",
    }
    if session_token:
        params["sessiontoken"] = session_token

    data = await _call("place/details/json", params, "place details")
    if not data or not data.get("result"):
        return None

    result = data["result"]
    try:
        location = result["geometry"]["location"]
        return {
            "latitude": location["lat"],
            "longitude": location["lng"],
            "formatted_address": result.get("formatted_address", ""),
            "address_components": result.get("address_components", []),
        }
    except (KeyError, TypeError) as e:
        logger.error(f"Maps place details without a location for {place_id}: {e}")
        return None
