"""
FastAPI application entry point for the analyst marketplace billing service.
"""
import logging
import multiprocessing
import time
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from app.config import settings
from app.logging_config import setup_logging
from app.routers import subscriptions, payments, discounts, webhooks
from app.services.exceptions import BillingError
from app.services.scheduler import scheduler, start_scheduler, stop_scheduler

logger = logging.getLogger(__name__)

setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the billing scheduler with the app and stop it on shutdown."""
    logger.info(f"Starting billing API on {multiprocessing.current_process().name} ({settings.ENVIRONMENT})")
    if not settings.RAZORPAY_WEBHOOK_SECRET:
        logger.warning("RAZORPAY_WEBHOOK_SECRET is not set; every webhook will be rejected")

    # Only the master worker schedules jobs; see start_scheduler
    start_scheduler()

    yield

    logger.info("Shutting down billing API...")
    stop_scheduler()


app = FastAPI(
    title="Analyst Marketplace Billing API",
    description="Subscription lifecycle, Razorpay reconciliation and analyst payouts",
    version="0.1.0",
    lifespan=lifespan
)

limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    """Render domain errors raised by services as {"detail": message}."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Development accepts any origin
if settings.ENVIRONMENT == "development" or settings.DEBUG:
    cors_origins = ["*"]
else:
    cors_origins = (
        ["*"] if settings.CORS_ORIGINS == "*"
        else [origin.strip() for origin in settings.CORS_ORIGINS.split(",")]
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every request with its status and duration."""
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f}ms)")
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


app.include_router(subscriptions.router, tags=["subscriptions"])
app.include_router(payments.router, tags=["payments"])
app.include_router(discounts.router, tags=["discounts"])
app.include_router(webhooks.router, tags=["webhooks"])


@app.get("/health")
async def health_check():
    """Liveness, plus whether this worker runs the billing jobs."""
    return {"status": "ok", "scheduler_running": scheduler.running}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
