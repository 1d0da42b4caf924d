"""
main.py
FastAPI application entry point.
Registers all routers, middleware, startup/shutdown events.

- Geo search over providers and agencies
- Availability checks and the booking ledger (no double-booking)
- Service request lifecycle
- Reviews with denormalized rating aggregates
- Server-sent events for live schedule changes
- Prometheus metrics
"""

import hashlib
import time
import uuid
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from redis.exceptions import RedisError

from config.database import close_db, init_db
from config.redis_client import RedisCache, close_redis, init_redis
from config.settings import settings
from services.realtime.notifier import Notifier, SubscriberRegistry
from shared.errors import DomainError, StoreTimeoutError
from shared.schemas.schemas import ErrorResponse

# Service routers
from services.search.router import router as search_router
from services.availability.router import router as availability_router
from services.requests.router import router as requests_router
from services.booking.router import router as booking_router
from services.review.router import router as review_router, ratings_router
from services.resources.router import router as resources_router
from services.realtime.router import router as realtime_router


# ── Logging ──────────────────────────────────────────────────

import logging
import json
from logging import LogRecord

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
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    handlers=[handler],
)
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME}...")

    await init_db()
    logger.info("Database connected")

    await init_redis()
    logger.info("Redis connected")

    # Fan realtime events out across instances
    from config.redis_client import redis_client
    notifier: Notifier = app.state.notifier
    notifier.redis = redis_client
    notifier.start_bridge()

    # Seed the service catalog, only in dev
    if settings.APP_ENV == "development":
        await seed_initial_data()

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} is ready")
    yield

    # Cleanup
    await notifier.stop_bridge()
    notifier.redis = None
    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Local Services Scheduling API

Booking and scheduling core of a local-services marketplace:
- **Search**: providers and agencies near a point, nearest first (PostGIS geography)
- **Availability**: which resources are free for a service in a time window
- **Requests**: pending → matched → accepted → in_progress → completed, or cancelled
- **Bookings**: per-resource reservations that never overlap
- **Reviews**: one per finished request, feeding each resource's rating
- **Realtime**: server-sent events for schedule changes

### Authentication
All protected endpoints require `Authorization: Bearer <access_token>` header.

### Roles
- `USER`: create and cancel requests, write reviews
- `PROVIDER`: accept requests, advance bookings, toggle availability
- `ADMIN`: full platform access, pairing, moderation
        """,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Process-wide subscriber registry for the SSE stream
    app.state.notifier = Notifier(
        SubscriberRegistry(settings.REALTIME_QUEUE_SIZE),
        instance_id=os.getenv("INSTANCE_NAME") or uuid.uuid4().hex,
    )

    # ── Middleware (outermost first) ─────────────────
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=["*"]
    )
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
        Per-token limit for authenticated traffic, per-IP for everyone else.
        Fails open if Redis is down.
        """
        skip_paths = {"/health", "/docs", "/redoc", "/openapi.json", "/metrics", "/realtime/stream"}
        if request.url.path in skip_paths:
            return await call_next(request)

        from config.redis_client import redis_client
        if redis_client:
            auth_header = request.headers.get("Authorization", "")
            if auth_header.startswith("Bearer "):
                # Raw tokens never land in Redis
                digest = hashlib.sha256(auth_header[7:].encode()).hexdigest()[:32]
                key, limit = f"rate:auth:{digest}", settings.RATE_LIMIT_PER_MINUTE
                who = "token"
            else:
                client_ip = request.client.host if request.client else "unknown"
                key, limit = f"rate:unauth:{client_ip}", settings.RATE_LIMIT_UNAUTH_PER_MINUTE
                who = f"IP {client_ip}"
            try:
                allowed = await RedisCache(redis_client).check_rate_limit(key, limit)
            except RedisError as e:
                logger.error(f"Rate limit check failed: {str(e)}")
                allowed = True
            if not allowed:
                logger.warning(f"Rate limit exceeded for {who}")
                return JSONResponse(
                    status_code=429,
                    content={"detail": "Rate limit exceeded. Please slow down."},
                    headers={"Retry-After": "60"},
                )

        return await call_next(request)

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError):
        request_id = getattr(request.state, "request_id", None)
        headers = None
        if isinstance(exc, StoreTimeoutError):
            headers = {"Retry-After": str(exc.retry_after_seconds)}
            logger.warning(f"[{request_id}] {exc.code}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "code": exc.code, "request_id": request_id},
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        detail = str(exc) if settings.DEBUG else "An internal server error occurred"

        logger.error(f"[{request_id}] Exception: {str(exc)}", exc_info=True)

        return JSONResponse(
            status_code=500,
            content={
                "detail": detail,
                "code": "internal_error",
                "request_id": request_id,
            },
        )

    # ── Routes ────────────────────────────────────────────────────

    # Health check (public)
    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        from config.redis_client import redis_client
        from sqlalchemy import text
        from config.database import AsyncSessionLocal

        checks = {"status": "ok", "version": settings.APP_VERSION}

        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception:
            checks["database"] = "error"
            checks["status"] = "degraded"

        try:
            if redis_client:
                await redis_client.ping()
            checks["redis"] = "ok"
        except Exception:
            checks["redis"] = "error"
            checks["status"] = "degraded"

        checks["realtime_subscribers"] = len(app.state.notifier.registry)
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

    # Register all service routers; domain errors share one envelope
    error_responses = {code: {"model": ErrorResponse} for code in (400, 403, 404, 409, 503)}
    for router in (
        search_router,
        availability_router,
        requests_router,
        booking_router,
        review_router,
        ratings_router,
        resources_router,
        realtime_router,
    ):
        app.include_router(router, responses=error_responses)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Dev Data Seeder ───────────────────────────────────────────

async def seed_initial_data():
    """Seed service types on first run (development only)."""
    from config.database import get_db_context
    from shared.models.models import ServiceType
    from sqlalchemy import select, func

    async with get_db_context() as db:
        count = await db.scalar(select(func.count(ServiceType.id)))
        if count and count > 0:
            return  # Already seeded

        seed_service_types = [
            {"name": "Plumbing", "slug": "plumbing", "default_duration_minutes": 60},
            {"name": "Electrical", "slug": "electrical", "default_duration_minutes": 60},
            {"name": "House Cleaning", "slug": "house-cleaning", "default_duration_minutes": 120},
            {"name": "Deep Cleaning", "slug": "deep-cleaning", "default_duration_minutes": 240},
            {"name": "Carpentry", "slug": "carpentry", "default_duration_minutes": 90},
            {"name": "Painting", "slug": "painting", "default_duration_minutes": 240},
            {"name": "Appliance Repair", "slug": "appliance-repair", "default_duration_minutes": 60},
            {"name": "Gardening", "slug": "gardening", "default_duration_minutes": 120},
            {"name": "Pest Control", "slug": "pest-control", "default_duration_minutes": 90},
            {"name": "Moving Help", "slug": "moving-help", "default_duration_minutes": 180},
        ]

        for s in seed_service_types:
            db.add(ServiceType(**s))

        logger.info(f"Seeded {len(seed_service_types)} service types")


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
