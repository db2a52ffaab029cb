"""
main.py
FastAPI application entry point.
Registers all routers, middleware, startup/shutdown events.

Production-ready features:
- Multiple instances behind a load balancer (redis-backed socket fan-out)
- Circuit breakers on downstream providers
- Rate limiting for anonymous clients
- Request tracing via X-Request-ID
- Prometheus metrics
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal
from logging import LogRecord

from elasticsearch import ApiError, TransportError
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from pybreaker import CircuitBreakerError
from redis.exceptions import RedisError
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError

from config import redis_client as redis_module
from config.database import AsyncSessionLocal, close_db, init_db
from config.redis_client import RedisCache, close_redis, init_redis
from config.settings import settings

# Service routers
from services.auth.router import router as auth_router
from services.booking.router import router as booking_router
from services.geocoding.router import router as geocoding_router
from services.messaging.gateway import manager as messaging_manager
from services.messaging.gateway import router as messaging_ws_router
from services.messaging.router import router as messaging_router
from services.notification.router import router as notification_router
from services.payment.router import router as payment_router
from services.property.router import router as property_router
from services.search.router import close_es_client, ensure_property_index
from services.search.router import router as search_router
from services.upload.router import router as upload_router
from services.user.router import router as user_router


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


# Configure structured logging for every module logger
handler = logging.StreamHandler()
handler.setFormatter(JSONFormatter())
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    handlers=[handler],
)
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME} API...")

    await init_db()
    logger.info("Database connected")

    await init_redis()
    logger.info("Redis connected")

    try:
        if await ensure_property_index():
            logger.info("Search index ready")
    except (ApiError, TransportError) as e:
        logger.warning(f"Search index unavailable, search will use the database: {e}")

    messaging_manager.start_listener()

    if settings.APP_ENV == "development":
        await seed_initial_data()

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} is ready!")
    yield

    # Cleanup
    await messaging_manager.stop_listener()
    await close_es_client()
    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## AirUAE Rentals API

REST API for the property rental marketplace:
- **Auth**: email/password + JWT access tokens + rotating refresh tokens
- **Properties**: listings with geocoded addresses
- **Bookings**: availability checks and a guarded status lifecycle
- **Payments**: Stripe payment intents, checkout sessions, webhooks, refunds
- **Search**: Elasticsearch full-text and geo search with a database fallback
- **Messaging**: conversations over REST and a WebSocket at `/messaging/ws`
- **Uploads**: listing images on S3

### Authentication
Protected endpoints require an `Authorization: Bearer <access_token>` header.
Get a token from `/auth/login`.

### Roles
- `USER`: book properties, pay, message hosts
- `LANDLORD` / `AGENT`: manage listings and their bookings
- `ADMIN`: full platform access
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (outermost first) ───────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )

    app.add_middleware(GZipMiddleware, minimum_size=500)

    # ── Custom Middleware ──────────────────────────────────────────

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for distributed tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """
        Fixed-window limit for unauthenticated clients, per IP.
        Authenticated traffic, health, docs, metrics and the Stripe
        webhook are not limited. Fails open when redis is unavailable.
        """
        skip_paths = {"/health", "/payments/webhooks", "/docs", "/redoc", "/openapi.json", "/metrics"}
        if request.url.path in skip_paths:
            return await call_next(request)
        if request.headers.get("Authorization", "").startswith("Bearer "):
            return await call_next(request)

        client = redis_module.redis_client
        if client:
            client_ip = request.client.host if request.client else "unknown"
            try:
                allowed = await RedisCache(client).check_rate_limit(
                    f"rate:unauth:{client_ip}", settings.RATE_LIMIT_UNAUTH_PER_MINUTE
                )
            except RedisError as e:
                logger.error(f"Rate limit check failed: {e}")
                allowed = True

            if not allowed:
                logger.warning(f"Rate limit exceeded for IP {client_ip}")
                return JSONResponse(
                    status_code=429,
                    content={"detail": "Rate limit exceeded. Please slow down."},
                    headers={"Retry-After": "60"},
                )

        return await call_next(request)

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(CircuitBreakerError)
    async def circuit_open_handler(request: Request, exc: CircuitBreakerError):
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Service degraded - Circuit breaker open: {exc}")
        return JSONResponse(
            status_code=503,
            content={
                "detail": "Service temporarily unavailable. Please try again later.",
                "request_id": request_id,
                "status": "degraded",
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Exception: {exc}", exc_info=True)

        detail = str(exc) if settings.DEBUG else "An internal server error occurred"
        return JSONResponse(
            status_code=500,
            content={
                "detail": detail,
                "request_id": request_id,
            },
        )

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        checks = {"status": "ok", "version": settings.APP_VERSION}

        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Health check: database unavailable: {e}")
            checks["database"] = "error"
            checks["status"] = "degraded"

        try:
            if redis_module.redis_client is None:
                raise RedisError("not initialized")
            await redis_module.redis_client.ping()
            checks["redis"] = "ok"
        except (RedisError, OSError) as e:
            logger.error(f"Health check: redis unavailable: {e}")
            checks["redis"] = "error"
            checks["status"] = "degraded"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    # Register all service routers
    app.include_router(auth_router)
    app.include_router(user_router)
    app.include_router(property_router)
    app.include_router(booking_router)
    app.include_router(payment_router)
    app.include_router(search_router)
    app.include_router(geocoding_router)
    app.include_router(upload_router)
    app.include_router(messaging_router)
    app.include_router(messaging_ws_router)
    app.include_router(notification_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Dev Data Seeder ───────────────────────────────────────────

SEED_PASSWORD = "password123"

SEED_USERS = [
    {"email": "admin@airuae.com", "first_name": "Admin", "last_name": "User", "role": "ADMIN"},
    {"email": "landlord@airuae.com", "first_name": "Landlord", "last_name": "User", "role": "LANDLORD"},
    {"email": "agent@airuae.com", "first_name": "Agent", "last_name": "User", "role": "AGENT"},
    {"email": "user@airuae.com", "first_name": "Regular", "last_name": "User", "role": "USER"},
]

SEED_PROPERTIES = [
    {
        "owner": "landlord@airuae.com",
        "title": "Luxury Apartment in Dubai Marina",
        "description": "Beautiful 2-bedroom apartment with stunning sea views in the heart of Dubai Marina.",
        "address": "Dubai Marina, Dubai",
        "latitude": 25.0805, "longitude": 55.1403,
        "price": Decimal("250"), "bedrooms": 2, "bathrooms": 2, "size": 120,
        "amenities": ["WiFi", "Pool", "Gym", "Parking"],
        "images": [
            "https://images.unsplash.com/photo-1522708323590-d24dbb6b0267",
            "https://images.unsplash.com/photo-1502672260266-1c1ef2d93688",
        ],
    },
    {
        "owner": "landlord@airuae.com",
        "title": "Modern Villa in Palm Jumeirah",
        "description": "Spacious 4-bedroom villa with private pool and direct beach access in Palm Jumeirah.",
        "address": "Palm Jumeirah, Dubai",
        "latitude": 25.1124, "longitude": 55.1390,
        "price": Decimal("1000"), "bedrooms": 4, "bathrooms": 5, "size": 350,
        "amenities": ["WiFi", "Pool", "Garden", "Parking", "Beach Access"],
        "images": [
            "https://images.unsplash.com/photo-1580587771525-78b9dba3b914",
            "https://images.unsplash.com/photo-1512917774080-9991f1c4c750",
        ],
    },
    {
        "owner": "agent@airuae.com",
        "title": "Cozy Studio in Downtown Dubai",
        "description": "Modern studio apartment with Burj Khalifa views in Downtown Dubai.",
        "address": "Downtown Dubai, Dubai",
        "latitude": 25.1972, "longitude": 55.2744,
        "price": Decimal("150"), "bedrooms": 0, "bathrooms": 1, "size": 50,
        "amenities": ["WiFi", "Gym", "Parking"],
        "images": [
            "https://images.unsplash.com/photo-1560448204-e02f11c3d0e2",
            "https://images.unsplash.com/photo-1522771739844-6a9f6d5f14af",
        ],
    },
]


async def seed_initial_data():
    """Seed demo users and listings on first run (development only)."""
    from shared.models.models import Property, User, UserRole
    from shared.utils.security import hash_password

    async with AsyncSessionLocal() as db:
        count = await db.scalar(select(func.count(User.id)))
        if count and count > 0:
            return  # Already seeded

        password_hash = hash_password(SEED_PASSWORD)
        users = {}
        for u in SEED_USERS:
            user = User(
                email=u["email"],
                password_hash=password_hash,
                first_name=u["first_name"],
                last_name=u["last_name"],
                role=UserRole(u["role"]),
                is_verified=True,
            )
            db.add(user)
            users[u["email"]] = user
        await db.flush()

        for p in SEED_PROPERTIES:
            data = {k: v for k, v in p.items() if k != "owner"}
            db.add(
                Property(
                    owner_id=users[p["owner"]].id,
                    city="Dubai",
                    country="UAE",
                    zip_code="00000",
                    available=True,
                    **data,
                )
            )

        await db.commit()
        logger.info(f"Seeded {len(SEED_USERS)} users and {len(SEED_PROPERTIES)} properties")


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )
