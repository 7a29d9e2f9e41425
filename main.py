"""
main.py
FastAPI application entry point.
Registers all routers, middleware, startup/shutdown events.

Production features:
- Request IDs and processing time on every response
- Redis-backed rate limiting for unauthenticated callers (fails open)
- Domain errors mapped to HTTP status codes in one place
- Prometheus metrics on /metrics
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from config.database import close_db, init_db
from config.redis_client import close_redis, init_redis
from config.settings import settings
from shared.exceptions import DomainError

# Service routers
from services.admin.router import router as admin_router
from services.auth.router import router as auth_router
from services.booking.router import router as booking_router
from services.catalog.router import router as catalog_router
from services.notification.router import router as notification_router
from services.provider.router import router as provider_router
from services.review.router import router as review_router
from services.search.router import router as search_router
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


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info("Starting %s...", settings.APP_NAME)

    await init_db()
    logger.info("Database connected")

    await init_redis()
    logger.info("Redis connected")

    if settings.APP_ENV == "development":
        await seed_initial_data()

    logger.info("%s v%s is ready", settings.APP_NAME, settings.APP_VERSION)
    yield

    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Local Services Marketplace API

- **Catalog**: services customers can book (Plumber, Electrician, ...)
- **Providers**: admin onboarding, approval queue, soft delete
- **Bookings**: lifecycle from PENDING to COMPLETED, completion PIN, auto-assignment
- **Reviews**: one rating per completed booking, provider average kept current
- **Notifications**: in-app feed plus assignment emails

### Authentication
All protected endpoints require `Authorization: Bearer <access_token>`.
Get a token from `/auth/login`.

### Roles
- `CUSTOMER`: book services, read the completion PIN, rate finished jobs
- `PROVIDER`: start and complete assigned jobs
- `ADMIN`: catalog, providers, assignment, analytics
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

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for tracing."""
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
        Per-IP limit for unauthenticated requests.
        Authenticated traffic is limited upstream (NGINX).
        """
        skip_paths = {"/health", "/docs", "/redoc", "/openapi.json", "/metrics"}
        if request.url.path in skip_paths:
            return await call_next(request)
        if request.headers.get("Authorization", "").startswith("Bearer "):
            return await call_next(request)

        from config.redis_client import RedisCache, redis_client
        if redis_client:
            client_ip = request.client.host if request.client else "unknown"
            try:
                allowed = await RedisCache(redis_client).check_rate_limit(
                    f"rate:unauth:{client_ip}", settings.RATE_LIMIT_UNAUTH_PER_MINUTE
                )
            except Exception as e:
                # Redis down: fail open
                logger.error("Rate limit check failed: %s", e)
                allowed = True
            if not allowed:
                logger.warning("Rate limit exceeded for IP %s", client_ip)
                return JSONResponse(
                    status_code=429,
                    content={"detail": "Rate limit exceeded. Please slow down."},
                    headers={"Retry-After": "60"},
                )

        return await call_next(request)

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        logger.error("[%s] Unhandled exception: %s", request_id, exc, exc_info=True)
        detail = str(exc) if settings.DEBUG else "An internal server error occurred"
        return JSONResponse(
            status_code=500,
            content={"detail": detail, "request_id": request_id},
        )

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        from sqlalchemy import text

        from config.database import AsyncSessionLocal
        from config.redis_client import redis_client

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

    app.include_router(auth_router)
    app.include_router(user_router)
    app.include_router(catalog_router)
    app.include_router(provider_router)
    app.include_router(booking_router)
    app.include_router(review_router)
    app.include_router(search_router)
    app.include_router(notification_router)
    app.include_router(admin_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Dev Data Seeder ───────────────────────────────────────────

SEED_SERVICES = [
    {"name": "Plumber", "description": "Leaks, fittings and pipe work", "base_price": "299", "max_price": "1999", "icon": "wrench"},
    {"name": "Electrician", "description": "Wiring, switches and appliance fitting", "base_price": "249", "max_price": "1999", "icon": "zap"},
    {"name": "Cleaner", "description": "Home and office cleaning", "base_price": "399", "max_price": "2999", "icon": "sparkles"},
    {"name": "Tutor", "description": "Home tuition, per session", "base_price": "499", "max_price": "1499", "icon": "book-open"},
]


async def seed_initial_data():
    """Seed the service catalog and the first admin (development only)."""
    from decimal import Decimal

    from sqlalchemy import func, select

    from config.database import AsyncSessionLocal
    from shared.models.models import Service, User, UserRole
    from shared.utils.security import hash_password

    async with AsyncSessionLocal() as db:
        if not await db.scalar(select(func.count(Service.id))):
            for s in SEED_SERVICES:
                db.add(Service(
                    name=s["name"],
                    description=s["description"],
                    base_price=Decimal(s["base_price"]),
                    max_price=Decimal(s["max_price"]),
                    icon=s["icon"],
                ))
            logger.info("Seeded %d services", len(SEED_SERVICES))

        admin_email = settings.SEED_ADMIN_EMAIL.lower()
        if settings.SEED_ADMIN_PASSWORD and not await db.scalar(
            select(User.id).where(User.email == admin_email)
        ):
            db.add(User(
                email=admin_email,
                name=settings.SEED_ADMIN_NAME,
                role=UserRole.ADMIN,
                password_hash=hash_password(settings.SEED_ADMIN_PASSWORD),
            ))
            logger.info("Seeded admin %s", admin_email)

        await db.commit()


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
