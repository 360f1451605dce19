"""
TMS Transport Fee Payments — FastAPI Application Entry Point

Aggregates routers, configures middleware and error handling, and
initializes the database on startup.
"""
import logging
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tms_payments.config import get_settings
from tms_payments.database import init_db
from tms_payments.exceptions import PaymentError
from tms_payments.logging_config import configure_logging
from tms_payments.routes import admin_router, payment_router

settings = get_settings()
logger = logging.getLogger("tms_payments")

# ─── Application Instance ───────────────────────────────────────────
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=(
        "Semester transport fee payments: gateway order creation, checkout "
        "verification and webhook reconciliation with exactly-once settlement."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

# ─── Startup ─────────────────────────────────────────────────────────
BOOT_TIME = time.time()


@app.on_event("startup")
def on_startup():
    """Initialize logging and database tables, report gateway configuration."""
    configure_logging(settings.LOG_DIR, settings.LOG_LEVEL)
    init_db()

    logger.info(
        f"{settings.APP_NAME} v{settings.APP_VERSION} | env={settings.ENVIRONMENT} | "
        f"gateway={'demo' if settings.DEMO_MODE else 'razorpay'} | db={settings.DATABASE_URL}"
    )
    if not settings.DEMO_MODE and not (settings.RAZORPAY_KEY_ID and settings.RAZORPAY_KEY_SECRET):
        logger.error("Razorpay API keys missing: order creation and verification will fail")
    if settings.is_production and not settings.RAZORPAY_WEBHOOK_SECRET:
        logger.error("RAZORPAY_WEBHOOK_SECRET missing in production: every webhook will be rejected")
    elif not settings.webhook_signature_required:
        logger.warning("Webhook signature verification disabled (non-production, no secret)")


# ─── Middleware ──────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every payments API request with timing."""
    start = time.time()
    response = await call_next(request)
    duration = round((time.time() - start) * 1000, 1)

    if request.url.path.startswith("/payments"):
        logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({duration}ms)")

    return response


# ─── Error Handling ──────────────────────────────────────────────────
@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} -> {exc.status_code} {exc.error_code}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ─── API Routers ─────────────────────────────────────────────────────
app.include_router(admin_router)
app.include_router(payment_router)


@app.get("/health", tags=["Health"])
def deep_health():
    """Health check including database connectivity and gateway mode."""
    from tms_payments.database import SessionLocal
    from sqlalchemy import text
    from sqlalchemy.exc import SQLAlchemyError

    db_ok = False
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        db_ok = True
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
    finally:
        db.close()

    return {
        "status": "healthy" if db_ok else "degraded",
        "database": "connected" if db_ok else "disconnected",
        "gateway": "demo" if settings.DEMO_MODE else "razorpay",
        "webhook_signature_required": settings.webhook_signature_required,
        "uptime_seconds": round(time.time() - BOOT_TIME, 1),
        "version": settings.APP_VERSION,
    }
