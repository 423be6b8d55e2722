"""
main.py
FastAPI application entry point.
Registers all routers, middleware, exception handlers, startup/shutdown events.

Production-ready features:
- Structured JSON logging with request ids
- Circuit breaker around the payment gateway (shared/utils/resilience.py)
- Redis-backed rate limiting
- Prometheus metrics
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from decimal import Decimal
from logging import LogRecord
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from starlette.exceptions import HTTPException as StarletteHTTPException

from config.database import close_db, init_db
from config.redis_client import RedisCache, close_redis, init_redis
from config.settings import settings

# Service routers
from services.admin.router import router as admin_router
from services.auth.router import router as auth_router
from services.booking.router import router as booking_router
from services.catalog.router import router as catalog_router
from services.notification.router import router as notification_router
from services.payment.router import router as payment_router
from services.rating.router import router as rating_router
from services.sevak.router import router as sevak_router
from services.user.router import router as user_router
from shared.utils.errors import AppError


# ── Logging ──────────────────────────────────────────────────

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class RequestIdFilter(logging.Filter):
    """Stamps each record with the id of the request being served, if any."""

    def filter(self, record: LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_var.get()
        return True


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
        request_id = getattr(record, "request_id", None)
        if request_id:
            log_data["request_id"] = request_id
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    handler.addFilter(RequestIdFilter())
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

    # Seed the service catalog, only in dev
    if settings.APP_ENV == "development":
        await seed_initial_data()

    logger.info("%s v%s is ready", settings.APP_NAME, settings.APP_VERSION)
    yield

    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── Error Envelope ────────────────────────────────────────────

def error_response(request: Request, status_code: int, message: str, errors=None) -> JSONResponse:
    body = {
        "success": False,
        "message": message,
        "request_id": getattr(request.state, "request_id", None),
    }
    if errors is not None:
        body["errors"] = jsonable_encoder(errors)
    return JSONResponse(status_code=status_code, content=body)


def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        request_id = getattr(request.state, "request_id", None)
        log = logger.warning if exc.status_code < 500 else logger.error
        log("[%s] %s %s → %d %s", request_id, request.method, request.url.path, exc.status_code, exc.message)
        return error_response(request, exc.status_code, exc.message, exc.errors)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return error_response(request, exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err["loc"][1:]) or str(err["loc"][0]), "message": err["msg"]}
            for err in exc.errors()
        ]
        return error_response(request, status.HTTP_400_BAD_REQUEST, "Validation failed", errors)

    @app.exception_handler(StaleDataError)
    async def stale_data_handler(request: Request, exc: StaleDataError):
        logger.warning("[%s] Concurrent update lost: %s", getattr(request.state, "request_id", None), exc)
        return error_response(request, status.HTTP_409_CONFLICT, "Resource was modified by another request")

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError):
        logger.warning("[%s] Integrity error: %s", getattr(request.state, "request_id", None), exc.orig)
        return error_response(request, status.HTTP_409_CONFLICT, "Duplicate or conflicting record")

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        logger.error("[%s] Unhandled exception: %s", request_id, exc, exc_info=True)
        message = str(exc) if settings.DEBUG else "An internal server error occurred"
        return error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, message)


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Seva Booking Platform API

REST API for booking household services in residential communities:
- **Auth**: email/phone + password, JWT (15min) + rotating refresh tokens
- **Bookings**: create, reschedule, cancel; status lifecycle with a check-in OTP
- **Sevaks**: self-accept jobs, check in/out, complete with photos, earnings
- **Ratings**: residents rate completed jobs; public sevak ratings with averages
- **Profile**: name, avatar and push device token
- **Payments**: Razorpay orders, signature verification, invoices, refunds
- **Notifications**: in-app + FCM push + SMS + email
- **Admin**: dashboard, sevak moderation and blacklisting, manual assignment

### Authentication
All protected endpoints require `Authorization: Bearer <access_token>` header.

### Roles
- `resident`: Book services, pay, track bookings
- `sevak`: Accept and perform jobs
- `vendor`: List services in the catalog
- `admin`: Platform operations, scoped by admin role permissions
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (order matters: outermost first) ───────────────
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=["*"])
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
    async def rate_limit_middleware(request: Request, call_next):
        """
        Fixed-window limit of RATE_LIMIT_PER_MINUTE per client IP.
        Skips health checks, docs, metrics and the payment webhook.
        """
        skip_paths = {"/health", "/payments/webhook", "/docs", "/redoc", "/openapi.json", "/metrics"}
        if request.url.path in skip_paths:
            return await call_next(request)

        from config.redis_client import redis_client
        if redis_client:
            client_ip = request.client.host if request.client else "unknown"
            try:
                allowed = await RedisCache(redis_client).check_rate_limit(
                    f"rate:{client_ip}", settings.RATE_LIMIT_PER_MINUTE
                )
            except Exception as e:
                # Fail open when Redis is down
                logger.error("Rate limit check failed: %s", e)
                allowed = True
            if not allowed:
                logger.warning("Rate limit exceeded for IP %s", client_ip)
                response = error_response(
                    request, status.HTTP_429_TOO_MANY_REQUESTS, "Rate limit exceeded. Please slow down."
                )
                response.headers["Retry-After"] = "60"
                return response

        return await call_next(request)

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for distributed tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response

    register_exception_handlers(app)

    # ── Routes ────────────────────────────────────────────────────

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
            else:
                checks["redis"] = "not_initialized"
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
    app.include_router(booking_router)
    app.include_router(sevak_router)
    app.include_router(payment_router)
    app.include_router(notification_router)
    app.include_router(rating_router)
    app.include_router(admin_router)

    # Job photos stored by shared/utils/media.py
    Path(settings.UPLOAD_DIR).mkdir(parents=True, exist_ok=True)
    app.mount(settings.UPLOAD_URL_PREFIX, StaticFiles(directory=settings.UPLOAD_DIR), name="uploads")

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Dev Data Seeder ───────────────────────────────────────────

async def seed_initial_data():
    """Seed the service catalog on first run (development only)."""
    from config.database import AsyncSessionLocal
    from shared.models.models import Service
    from sqlalchemy import select, func

    async with AsyncSessionLocal() as db:
        count = await db.scalar(select(func.count(Service.id)))
        if count and count > 0:
            return  # Already seeded

        seed_services = [
            {"name": "Tap Repair & Installation", "category": "Plumbing", "base_price": Decimal("250"), "duration_minutes": 60},
            {"name": "Toilet Repair & Maintenance", "category": "Plumbing", "base_price": Decimal("350"), "duration_minutes": 90},
            {"name": "Pipe Leak Repair", "category": "Plumbing", "base_price": Decimal("450"), "duration_minutes": 120},
            {"name": "Switch & Socket Repair", "category": "Electrical", "base_price": Decimal("200"), "duration_minutes": 45},
            {"name": "Fan Installation & Repair", "category": "Electrical", "base_price": Decimal("300"), "duration_minutes": 60},
            {"name": "Wiring & Rewiring", "category": "Electrical", "base_price": Decimal("150"), "duration_minutes": 180},
            {"name": "Deep Home Cleaning", "category": "Cleaning", "base_price": Decimal("2500"), "duration_minutes": 240},
        ]

        for s in seed_services:
            db.add(Service(**s))

        await db.commit()
        logger.info("Seeded %d services", len(seed_services))


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
