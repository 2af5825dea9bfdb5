import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

from . import __version__
from .config import settings
from .database import SessionLocal, create_tables
from .errors import BookingError
from .routers import auth, bookings, health, webhooks
from .services.reconciliation_worker import ReconciliationWorker
from .utils.dependencies import build_reconciliation_services, get_notifier
from .utils.logging_config import clear_request_context, set_request_context, setup_logging
from .utils.rate_limiter import limiter

logger = logging.getLogger(__name__)
worker_logger = logging.getLogger("reconciliation_worker")


def run_reconciliation_cycle() -> dict:
    """One worker pass on its own session."""
    db = SessionLocal()
    try:
        payments, reconciler = build_reconciliation_services(db)
        return ReconciliationWorker(db, payments, reconciler).run_cycle()
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    setup_logging(level=settings.log_level, json_format=settings.log_json)
    logger.info(f"Starting booking service {__version__} ({settings.environment})")

    create_tables()

    worker_running = True

    async def run_worker():
        poll_interval = settings.worker_poll_interval
        worker_logger.info(
            f"Reconciliation worker started (interval: {poll_interval}s, batch: {settings.worker_batch_size})"
        )
        while worker_running:
            try:
                results = await asyncio.to_thread(run_reconciliation_cycle)
                if any(results[key] for key in ("completed_count", "stale_count", "refunded_count",
                                                 "payments_resolved", "cancellation_refunds",
                                                 "webhooks_recovered")):
                    worker_logger.info(
                        f"Worker: {results['completed_count']} completed | {results['stale_count']} stale | "
                        f"{results['payments_resolved']} payments resolved | "
                        f"{results['refunded_count']} refunded | {results['cancellation_refunds']} cancellation refunds | "
                        f"{results['webhooks_recovered']} webhooks recovered"
                    )
            except Exception:
                worker_logger.exception("Reconciliation cycle failed")

            await asyncio.sleep(poll_interval)

    worker_task = None
    if settings.worker_enabled:
        worker_task = asyncio.create_task(run_worker())
    else:
        logger.info("Reconciliation worker disabled")

    yield

    logger.info("Shutting down booking service")
    worker_running = False
    if worker_task:
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            worker_logger.info("Reconciliation worker stopped")
    get_notifier().shutdown()


app = FastAPI(
    title="Desti Booking Service",
    description="Hotel and flight booking orchestration with Stripe payments",
    version=__version__,
    lifespan=lifespan
)

# Rate limiter state
app.state.limiter = limiter


# ================================
# CORS MIDDLEWARE - MUST BE FIRST!
# ================================
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request.state.request_id = request_id
        set_request_context(request_id)
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers["X-Request-ID"] = request_id
        return response


app.add_middleware(RequestIdMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": "Too many requests, try again later", "code": "rate_limited"}
    )


app.include_router(health.router)
app.include_router(auth.router)
app.include_router(bookings.router)
app.include_router(webhooks.router)


@app.get("/")
async def root():
    return {
        "message": "Desti Booking Service",
        "version": __version__,
        "docs": "/docs",
        "status": "running",
    }
