"""
Routine Checkout Service - Main Application
FastAPI Entry Point with APScheduler for the stale reservation sweep
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import structlog

from app.config import settings
from app.database import init_db
from app.middleware import CorrelationIdMiddleware
from app.routers import checkout_router
from app.routers.checkout import checkout_error_response
from app.scheduler import start_scheduler, stop_scheduler
from app.services.checkout_errors import CheckoutError
from app.services.monitoring import breaker_stats, get_shopify_breaker, init_sentry, setup_logging

# Structured Logging Setup
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.JSONRenderer()
    ]
)
logger = structlog.get_logger()

# FastAPI App
app = FastAPI(
    title="Routine Checkout",
    description="Idempotent Shopify checkout creation for creator routines",
    version="1.0.0",
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None,
)

app.add_middleware(CorrelationIdMiddleware)

# APScheduler instance (set on startup)
scheduler = None

# Register routers
app.include_router(checkout_router)


@app.exception_handler(CheckoutError)
async def handle_checkout_error(request: Request, exc: CheckoutError):
    return checkout_error_response(exc)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    """Malformed bodies are rejected with 400, before any side effect"""
    fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid request body",
            "category": "invalid_request",
            "details": fields,
        }
    )


@app.on_event("startup")
async def startup_event():
    """Application Startup"""
    global scheduler

    if settings.environment != "testing":
        setup_logging()
    logger.info("startup", environment=settings.environment)

    init_sentry()

    # Initialize database connection
    init_db()
    logger.info("database_initialized")

    scheduler = start_scheduler(settings.environment)


@app.on_event("shutdown")
async def shutdown_event():
    """Application Shutdown"""
    logger.info("shutdown")
    stop_scheduler(scheduler)


@app.get("/")
async def root():
    """Root Endpoint"""
    return {
        "message": "Routine Checkout API",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/health")
async def health_check():
    """
    Health Check Endpoint
    Reports configuration and Shopify circuit state
    """
    health_status = {
        "status": "healthy",
        "environment": settings.environment,
        "services": {
            "api": "running",
            "scheduler": "running" if scheduler is not None and scheduler.running else "stopped",
            "database": "configured" if settings.database_url else "not_configured",
            "redis": "configured" if settings.redis_url else "not_configured",
        },
        "circuit_breakers": {
            "shopify": breaker_stats(get_shopify_breaker()),
        },
    }

    return JSONResponse(
        content=health_status,
        status_code=200
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development"
    )
