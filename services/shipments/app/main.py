"""
Shipments Microservice
Shipment lifecycle engine: booking, staff actions, carrier reconciliation
and a live timeline feed
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import subprocess
import os
import sys

# Add shared modules to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../../"))

from shared.core import ServiceHealth, setup_logging, RequestLoggingMiddleware, get_logger
from app.api.routes import router as shipments_router, cron_router
from app.core_settings import get_settings
from app.domain.errors import LifecycleError, RateLimited
from app.infrastructure.db import engine, init_models
from app.infrastructure.notifications import get_notifier
from app.workers.scheduler import build_scheduler

settings = get_settings()

# Service configuration
SERVICE_NAME = settings.SERVICE_NAME
SERVICE_VERSION = settings.SERVICE_VERSION
SERVICE_DESCRIPTION = "Shipment lifecycle microservice"

# Setup structured logging
setup_logging(
    service_name=SERVICE_NAME,
    level=settings.LOG_LEVEL
)

logger = get_logger(__name__)

scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    global scheduler
    logger.info(f"Starting {SERVICE_NAME} version {SERVICE_VERSION}")

    # Startup
    if settings.RUN_MIGRATIONS:
        try:
            logger.info("Running database migrations")
            result = subprocess.run(
                ["alembic", "upgrade", "head"],
                cwd=os.path.join(os.path.dirname(__file__), ".."),
                capture_output=True,
                text=True,
                check=False
            )
            if result.returncode != 0:
                logger.warning(f"Migration output: {result.stderr}")
            else:
                logger.info("Database migrations completed")
        except Exception as e:
            logger.error(f"Migration error: {e}")

    try:
        init_models()
        logger.info("Database models initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database models: {e}")
        raise

    if settings.SCHEDULER_ENABLED:
        scheduler = build_scheduler(settings)
        scheduler.start()
        logger.info("Worker scheduler started")

    logger.info(f"{SERVICE_NAME} started successfully")

    yield

    # Shutdown
    logger.info(f"Shutting down {SERVICE_NAME}")
    if scheduler is not None:
        scheduler.shutdown(wait=False)
        scheduler = None
    get_notifier().shutdown()


# Create FastAPI application
app = FastAPI(
    title=SERVICE_NAME,
    description=SERVICE_DESCRIPTION,
    version=SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    if exc.http_status >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(part) for part in err["loc"] if part != "body"), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Validation failed", "errorCode": "VALIDATION_ERROR", "details": details},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error", "errorCode": "INTERNAL_ERROR"},
    )


def _scheduler_check():
    if not settings.SCHEDULER_ENABLED:
        return {"status": "pass", "output": "disabled"}
    running = scheduler is not None and scheduler.running
    return {"status": "pass" if running else "warn", "output": "running" if running else "stopped"}


# Initialize health checks
health_service = ServiceHealth(
    SERVICE_NAME,
    SERVICE_VERSION,
    engine=engine,
    redis_url=settings.REDIS_URL if settings.RATE_LIMIT_BACKEND == "redis" else None,
    extra_checks={"scheduler": _scheduler_check},
)
health_router = health_service.create_health_router()
app.include_router(health_router)

# Include business logic routes
app.include_router(shipments_router)
app.include_router(cron_router)

@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "status": "running",
        "docs": "/api/docs"
    }

@app.get("/info")
async def info():
    """Service information endpoint"""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "description": SERVICE_DESCRIPTION,
        "environment": settings.ENVIRONMENT,
        "endpoints": {
            "health": "/health",
            "ready": "/health/ready",
            "live": "/health/live",
            "metrics": "/metrics",
            "docs": "/api/docs",
            "timeline_stream": "/shipments/{shipment_id}/timeline/stream"
        }
    }
