"""
services/search/router.py
Property search using Elasticsearch: full-text, price/room filters,
amenities, geo_distance and distance sorting.
Falls back to a database query when Elasticsearch is unreachable.

The index helpers (index/update/delete/sync) never raise; they return
{"success": bool, ...} and log failures so listing writes are not blocked.
Failed writes against a configured engine carry "retry": True.
"""

import logging
import math
from typing import Any, Iterable, List, Optional

from elasticsearch import ApiError, AsyncElasticsearch, NotFoundError, TransportError, helpers
from fastapi import APIRouter, Depends, HTTPException, Query, status
from redis.exceptions import RedisError
from sqlalchemy import ARRAY, Text, exists, func, literal, or_, select, type_coerce
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from shared.middleware.auth import require_admin
from shared.models.models import Property, User
from shared.schemas.schemas import PropertySearchResponse, SuggestionResponse, SyncResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/search", tags=["Search"])

EARTH_RADIUS_KM = 6371.0
SUGGESTIONS_CACHE_PREFIX = "search:suggestions:"


# ── Elasticsearch Client ──────────────────────────────────────

_es_client: Optional[AsyncElasticsearch] = None


def create_es_client() -> AsyncElasticsearch:
    """New client instance. Workers create one per run, the API shares one."""
    return AsyncElasticsearch(
        settings.ELASTICSEARCH_URL,
        basic_auth=(
            settings.ELASTICSEARCH_USERNAME or "elastic",
            settings.ELASTICSEARCH_PASSWORD,
        ) if settings.ELASTICSEARCH_PASSWORD else None,
        request_timeout=5,
    )


async def get_es_client() -> Optional[AsyncElasticsearch]:
    """Lazy shared Elasticsearch client. Returns None if not configured."""
    global _es_client
    if not settings.ELASTICSEARCH_URL:
        return None
    if _es_client is None:
        _es_client = create_es_client()
    return _es_client


async def close_es_client() -> None:
    global _es_client
    if _es_client is not None:
        await _es_client.close()
        _es_client = None


# ── Elasticsearch Index Mapping ───────────────────────────────

PROPERTY_INDEX_MAPPING = {
    "mappings": {
        "properties": {
            "id": {"type": "keyword"},
            "title": {"type": "text", "analyzer": "standard"},
            "description": {"type": "text", "analyzer": "standard"},
            "address": {"type": "text"},
            "city": {"type": "keyword"},
            "country": {"type": "keyword"},
            "zip_code": {"type": "keyword"},
            "price": {"type": "float"},
            "bedrooms": {"type": "integer"},
            "bathrooms": {"type": "integer"},
            "size": {"type": "float"},
            "available": {"type": "boolean"},
            "amenities": {"type": "keyword"},
            "images": {"type": "keyword", "index": False},
            "location": {"type": "geo_point"},
            "owner_id": {"type": "keyword"},
            "created_at": {"type": "date"},
            "updated_at": {"type": "date"},
        }
    },
    "settings": {
        "number_of_shards": 1,
        "number_of_replicas": 1,
    },
}


async def ensure_property_index(es: Optional[AsyncElasticsearch] = None) -> bool:
    """Create the properties index if it doesn't exist."""
    es = es or await get_es_client()
    if es is None:
        return False
    index = settings.ELASTICSEARCH_INDEX_PROPERTIES
    if not await es.indices.exists(index=index):
        await es.indices.create(
            index=index,
            mappings=PROPERTY_INDEX_MAPPING["mappings"],
            settings=PROPERTY_INDEX_MAPPING["settings"],
        )
        logger.info(f"Created Elasticsearch index '{index}'")
    return True


def property_document(prop: Property) -> dict:
    """Flatten a Property row into its search document."""
    doc = {
        "id": str(prop.id),
        "title": prop.title,
        "description": prop.description or "",
        "address": prop.address,
        "city": prop.city,
        "country": prop.country,
        "zip_code": prop.zip_code,
        "price": float(prop.price),
        "bedrooms": prop.bedrooms,
        "bathrooms": prop.bathrooms,
        "size": prop.size,
        "available": prop.available,
        "amenities": list(prop.amenities or []),
        "images": list(prop.images or []),
        "owner_id": str(prop.owner_id),
        "created_at": prop.created_at.isoformat() if prop.created_at else None,
        "updated_at": prop.updated_at.isoformat() if prop.updated_at else None,
    }
    if prop.latitude is not None and prop.longitude is not None:
        doc["location"] = {"lat": prop.latitude, "lon": prop.longitude}
    return doc


async def index_property(prop: Property, es: Optional[AsyncElasticsearch] = None) -> dict:
    es = es or await get_es_client()
    if es is None:
        return {"success": False, "error": "Search engine not configured"}
    try:
        await es.index(
            index=settings.ELASTICSEARCH_INDEX_PROPERTIES,
            id=str(prop.id),
            document=property_document(prop),
            refresh="wait_for",
        )
        return {"success": True, "id": str(prop.id)}
    except (ApiError, TransportError) as e:
        logger.error(f"Failed to index property {prop.id}: {e}")
        return {"success": False, "error": str(e), "retry": True}


async def update_property(prop: Property, es: Optional[AsyncElasticsearch] = None) -> dict:
    """Partial update; upserts when the document is missing from the index."""
    es = es or await get_es_client()
    if es is None:
        return {"success": False, "error": "Search engine not configured"}
    try:
        await es.update(
            index=settings.ELASTICSEARCH_INDEX_PROPERTIES,
            id=str(prop.id),
            doc=property_document(prop),
            doc_as_upsert=True,
            refresh="wait_for",
        )
        return {"success": True, "id": str(prop.id)}
    except (ApiError, TransportError) as e:
        logger.error(f"Failed to update property {prop.id} in index: {e}")
        return {"success": False, "error": str(e), "retry": True}


async def delete_property(property_id: Any, es: Optional[AsyncElasticsearch] = None) -> dict:
    es = es or await get_es_client()
    if es is None:
        return {"success": False, "error": "Search engine not configured"}
    try:
        await es.delete(
            index=settings.ELASTICSEARCH_INDEX_PROPERTIES,
            id=str(property_id),
            refresh="wait_for",
        )
        return {"success": True, "id": str(property_id)}
    except NotFoundError:
        # Already absent from the index
        return {"success": True, "id": str(property_id)}
    except (ApiError, TransportError) as e:
        logger.error(f"Failed to delete property {property_id} from index: {e}")
        return {"success": False, "error": str(e), "retry": True}


async def sync_all_properties(
    properties: Iterable[Property],
    es: Optional[AsyncElasticsearch] = None,
) -> dict:
    """Bulk (re)index every given property."""
    es = es or await get_es_client()
    if es is None:
        return {"success": False, "indexed": 0, "errors": ["Search engine not configured"]}

    actions = [
        {
            "_index": settings.ELASTICSEARCH_INDEX_PROPERTIES,
            "_id": str(p.id),
            "_source": property_document(p),
        }
        for p in properties
    ]
    try:
        await ensure_property_index(es)
        indexed, errors = await helpers.async_bulk(es, actions, raise_on_error=False, refresh=True)
    except (ApiError, TransportError) as e:
        logger.error(f"Bulk sync failed: {e}")
        return {"success": False, "indexed": 0, "errors": [str(e)]}

    if errors:
        logger.warning(f"Bulk sync indexed {indexed} properties with {len(errors)} errors")
    else:
        logger.info(f"Bulk sync indexed {indexed} properties")
    return {"success": not errors, "indexed": indexed, "errors": errors or None}


# ── Query Building ────────────────────────────────────────────

def _split_csv(value: Optional[str]) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()] if value else []


def has_any_amenity(db: AsyncSession, wanted: List[str]):
    """SQL predicate: the listing has at least one of the wanted amenities."""
    if db.get_bind().dialect.name == "postgresql":
        return type_coerce(Property.amenities, JSONB).has_any(literal(list(wanted), ARRAY(Text)))
    each = func.json_each(Property.amenities).table_valued("value")
    return exists(select(1).select_from(each).where(each.c.value.in_(list(wanted))))


def _haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def build_search_query(
    q: Optional[str],
    min_price: Optional[float],
    max_price: Optional[float],
    min_bedrooms: Optional[int],
    min_bathrooms: Optional[int],
    city: Optional[str],
    country: Optional[str],
    amenities: List[str],
    lat: Optional[float],
    lng: Optional[float],
    distance: Optional[float],
    sort: str,
) -> tuple[dict, list]:
    """Returns (query, sort) for the properties index."""
    filters: list = [{"term": {"available": True}}]

    price_range = {}
    if min_price is not None:
        price_range["gte"] = min_price
    if max_price is not None:
        price_range["lte"] = max_price
    if price_range:
        filters.append({"range": {"price": price_range}})

    if min_bedrooms is not None:
        filters.append({"range": {"bedrooms": {"gte": min_bedrooms}}})
    if min_bathrooms is not None:
        filters.append({"range": {"bathrooms": {"gte": min_bathrooms}}})
    if city:
        filters.append({"term": {"city": city}})
    if country:
        filters.append({"term": {"country": country}})
    if amenities:
        filters.append({"terms": {"amenities": amenities}})

    has_geo = lat is not None and lng is not None
    if has_geo and distance is not None:
        filters.append({
            "geo_distance": {
                "distance": f"{distance}km",
                "location": {"lat": lat, "lon": lng},
            }
        })

    must = []
    if q:
        must.append({
            "multi_match": {
                "query": q,
                "fields": ["title^3", "description", "address^2", "city^2", "country"],
                "fuzziness": "AUTO",
            }
        })

    query = {"bool": {"must": must or [{"match_all": {}}], "filter": filters}}

    sort_clauses: list = [{"_score": {"order": "desc"}}, {"created_at": {"order": "desc"}}]
    if sort == "distance" and has_geo:
        sort_clauses.insert(0, {
            "_geo_distance": {
                "location": {"lat": lat, "lon": lng},
                "order": "asc",
                "unit": "km",
            }
        })
    return query, sort_clauses


# ── Search Endpoints ──────────────────────────────────────────

@router.get("/properties", response_model=PropertySearchResponse)
async def search_properties(
    q: Optional[str] = Query(None, description="Full-text query"),
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    min_bedrooms: Optional[int] = Query(None, ge=0),
    min_bathrooms: Optional[int] = Query(None, ge=0),
    city: Optional[str] = Query(None),
    country: Optional[str] = Query(None),
    amenities: Optional[str] = Query(None, description="Comma-separated, matches any"),
    lat: Optional[float] = Query(None, ge=-90, le=90),
    lng: Optional[float] = Query(None, ge=-180, le=180),
    distance: Optional[float] = Query(None, gt=0, description="Radius in km"),
    sort: str = Query("relevance", pattern="^(relevance|distance)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """
    Search available properties.
    Tries Elasticsearch first; falls back to the database if it is unreachable.
    """
    amenity_list = _split_csv(amenities)
    params = dict(
        q=q, min_price=min_price, max_price=max_price,
        min_bedrooms=min_bedrooms, min_bathrooms=min_bathrooms,
        city=city, country=country, amenities=amenity_list,
        lat=lat, lng=lng, distance=distance, sort=sort,
    )

    es = await get_es_client()
    if es is not None:
        try:
            return await _search_elasticsearch(es, page=page, limit=limit, **params)
        except TransportError as e:
            logger.warning(f"Elasticsearch unavailable, falling back to database search: {e}")
        except ApiError as e:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Search failed: {e.message}",
            )

    return await _search_database(db, page=page, limit=limit, **params)


async def _search_elasticsearch(es: AsyncElasticsearch, page: int, limit: int, **params) -> PropertySearchResponse:
    query, sort_clauses = build_search_query(**params)
    response = await es.search(
        index=settings.ELASTICSEARCH_INDEX_PROPERTIES,
        query=query,
        sort=sort_clauses,
        from_=(page - 1) * limit,
        size=limit,
        track_scores=True,
    )

    total = response["hits"]["total"]["value"]
    with_distance = params["sort"] == "distance" and params["lat"] is not None and params["lng"] is not None

    results = []
    for hit in response["hits"]["hits"]:
        item = dict(hit["_source"])
        item["score"] = hit.get("_score")
        if with_distance and hit.get("sort"):
            item["distance"] = round(hit["sort"][0], 2)
        results.append(item)

    return PropertySearchResponse(
        total=total,
        results=results,
        page=page,
        limit=limit,
        total_pages=math.ceil(total / limit) if total else 0,
    )


async def _search_database(
    db: AsyncSession,
    page: int,
    limit: int,
    q: Optional[str],
    min_price: Optional[float],
    max_price: Optional[float],
    min_bedrooms: Optional[int],
    min_bathrooms: Optional[int],
    city: Optional[str],
    country: Optional[str],
    amenities: List[str],
    lat: Optional[float],
    lng: Optional[float],
    distance: Optional[float],
    sort: str,
) -> PropertySearchResponse:
    """
    Same filters against the database. Without coordinates the page is
    cut in SQL; geo queries apply exact distance in Python after a
    bounding-box prefilter, over at most SEARCH_FALLBACK_MAX_ROWS rows.
    """
    query = select(Property).where(Property.available == True)  # noqa: E712

    if q:
        term = f"%{q}%"
        query = query.where(or_(
            Property.title.ilike(term),
            Property.description.ilike(term),
            Property.address.ilike(term),
            Property.city.ilike(term),
            Property.country.ilike(term),
        ))
    if min_price is not None:
        query = query.where(Property.price >= min_price)
    if max_price is not None:
        query = query.where(Property.price <= max_price)
    if min_bedrooms is not None:
        query = query.where(Property.bedrooms >= min_bedrooms)
    if min_bathrooms is not None:
        query = query.where(Property.bathrooms >= min_bathrooms)
    if city:
        query = query.where(func.lower(Property.city) == city.lower())
    if country:
        query = query.where(func.lower(Property.country) == country.lower())
    if amenities:
        query = query.where(has_any_amenity(db, amenities))

    start = (page - 1) * limit
    has_geo = lat is not None and lng is not None

    if not has_geo:
        total = await db.scalar(select(func.count()).select_from(query.subquery()))
        rows = (await db.execute(
            query.order_by(Property.created_at.desc()).offset(start).limit(limit)
        )).scalars().all()
        results = []
        for prop in rows:
            item = property_document(prop)
            item["score"] = None
            results.append(item)
        return PropertySearchResponse(
            total=total,
            results=results,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )

    if distance is not None:
        d_lat = distance / 111.0
        d_lng = distance / (111.0 * max(math.cos(math.radians(lat)), 0.01))
        query = query.where(
            Property.latitude.between(lat - d_lat, lat + d_lat),
            Property.longitude.between(lng - d_lng, lng + d_lng),
        )

    rows = (await db.execute(
        query.order_by(Property.created_at.desc()).limit(settings.SEARCH_FALLBACK_MAX_ROWS)
    )).scalars().all()

    results = []
    for prop in rows:
        item = property_document(prop)
        item["score"] = None
        if prop.latitude is not None and prop.longitude is not None:
            km = _haversine_km(lat, lng, prop.latitude, prop.longitude)
            if distance is not None and km > distance:
                continue
            item["distance"] = round(km, 2)
        results.append(item)

    if sort == "distance":
        results.sort(key=lambda r: r.get("distance", float("inf")))

    total = len(results)
    return PropertySearchResponse(
        total=total,
        results=results[start:start + limit],
        page=page,
        limit=limit,
        total_pages=math.ceil(total / limit) if total else 0,
    )


@router.get("/suggestions", response_model=SuggestionResponse)
async def suggestions(
    q: str = Query(..., min_length=1, description="Autocomplete query"),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Spelling suggestions for titles and cities, plus the most listed cities/countries."""
    cache = RedisCache(redis)
    cache_key = f"{SUGGESTIONS_CACHE_PREFIX}{q.strip().lower()}"
    cached = await cache.get(cache_key)
    if cached:
        return SuggestionResponse(**cached)

    result = await _compute_suggestions(db, q)
    await cache.set(cache_key, result.model_dump())
    return result


async def invalidate_suggestions() -> None:
    """Drop cached suggestions after a listing write."""
    try:
        await RedisCache(get_redis()).delete_pattern(f"{SUGGESTIONS_CACHE_PREFIX}*")
    except RedisError as e:
        logger.warning(f"Could not invalidate cached suggestions: {e}")


async def _compute_suggestions(db: AsyncSession, q: str) -> SuggestionResponse:
    es = await get_es_client()
    if es is not None:
        try:
            response = await es.search(
                index=settings.ELASTICSEARCH_INDEX_PROPERTIES,
                size=0,
                suggest={
                    "title_suggestions": {"text": q, "term": {"field": "title"}},
                    "city_suggestions": {"text": q, "term": {"field": "city"}},
                },
                aggs={
                    "popular_cities": {"terms": {"field": "city", "size": 5}},
                    "popular_countries": {"terms": {"field": "country", "size": 5}},
                },
            )
            return SuggestionResponse(
                title_suggestions=_suggest_options(response, "title_suggestions"),
                city_suggestions=_suggest_options(response, "city_suggestions"),
                popular_cities=_bucket_keys(response, "popular_cities"),
                popular_countries=_bucket_keys(response, "popular_countries"),
            )
        except TransportError as e:
            logger.warning(f"Elasticsearch unavailable, falling back to database suggestions: {e}")
        except ApiError as e:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Suggestions failed: {e.message}",
            )

    return await _suggestions_database(db, q)


def _suggest_options(response: dict, name: str) -> List[str]:
    options = []
    entries = response["suggest"].get(name, []) if "suggest" in response else []
    for entry in entries:
        for option in entry.get("options", []):
            if option["text"] not in options:
                options.append(option["text"])
    return options


def _bucket_keys(response: dict, name: str) -> List[str]:
    if "aggregations" not in response:
        return []
    return [b["key"] for b in response["aggregations"].get(name, {}).get("buckets", [])]


async def _suggestions_database(db: AsyncSession, q: str) -> SuggestionResponse:
    term = f"%{q}%"
    titles = await db.scalars(
        select(Property.title).where(Property.title.ilike(term)).distinct().limit(5)
    )
    cities = await db.scalars(
        select(Property.city).where(Property.city.ilike(term)).distinct().limit(5)
    )

    async def _popular(column) -> List[str]:
        rows = await db.execute(
            select(column, func.count(Property.id).label("n"))
            .group_by(column)
            .order_by(func.count(Property.id).desc())
            .limit(5)
        )
        return [r[0] for r in rows]

    return SuggestionResponse(
        title_suggestions=list(titles),
        city_suggestions=list(cities),
        popular_cities=await _popular(Property.city),
        popular_countries=await _popular(Property.country),
    )


@router.post("/sync", response_model=SyncResponse)
async def sync_index(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Bulk-index every property (admin)."""
    properties = (await db.execute(select(Property))).scalars().all()
    result = await sync_all_properties(properties)
    await invalidate_suggestions()
    return SyncResponse(**result)
