"""
AccessMonitor API - Main Application Entry Point
"""

import os
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

# Version from environment (set during Docker build) or default
__version__ = os.getenv("APP_VERSION", "0.1.0")
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from slowapi.errors import RateLimitExceeded

from app.config import settings
from app.database import create_db_engine, create_session_factory, init_db
from app.routers import auth_router, billing_router, monitoring_router, scans_router
from app.services.rate_limiter import limiter, rate_limit_exceeded_handler
from app.services.metrics import MetricsMiddleware, get_metrics
from app.middleware import CorrelationIdMiddleware
from app.middleware.correlation_id import setup_logging_with_correlation_id
from app.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    log_level = logging.DEBUG if settings.debug else logging.INFO
    use_json_logging = settings.app_env == "production"
    setup_logging_with_correlation_id(level=log_level, json_format=use_json_logging)
    logger.info("Starting AccessMonitor API...", extra={
        "environment": settings.app_env,
        "debug": settings.debug,
        "json_logging": use_json_logging,
    })

    engine = create_db_engine(settings.database_url, echo=settings.debug)
    init_db(engine)
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)
    logger.info("Database initialized")
    yield
    # Shutdown
    logger.info("Shutting down AccessMonitor API...")
    engine.dispose()


app = FastAPI(
    title="AccessMonitor API",
    description="""
## Website Accessibility Audits & Monitoring

- **Scan a page** against WCAG 2.1 A/AA with axe-core
- **Monitor pages** on a weekly or custom cadence
- **Get alerted** when a page gets worse
    """,
    version=__version__,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

# Add rate limiter
app.state.limiter = limiter

# Exception handlers for structured error responses
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# CORS Configuration
cors_origins = [origin.strip() for origin in settings.cors_origins.split(",")]

# Warn if using wildcard or localhost in production
if settings.app_env == "production":
    if "*" in cors_origins:
        logger.warning("CORS configured with wildcard (*) in production - this is insecure!")
    if any("localhost" in origin or "127.0.0.1" in origin for origin in cors_origins):
        logger.warning("CORS includes localhost in production - this may be unintended")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=[
        "Authorization",
        "Content-Type",
        "Accept",
        "Origin",
        "X-Requested-With",
        "X-Correlation-ID",
    ],
    expose_headers=[
        "X-Correlation-ID",
        "Retry-After",
    ],
)

# Correlation ID middleware for request tracing
app.add_middleware(CorrelationIdMiddleware)

# Metrics middleware for Prometheus
app.add_middleware(MetricsMiddleware)


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint - API information"""
    return {
        "name": "AccessMonitor API",
        "version": __version__,
        "docs": "/api/docs",
    }


# Health check endpoints
@app.get("/api/v1/health")
async def health_check():
    """
    Simple health check endpoint.

    Used for load balancer health checks. Only checks if the app is running.
    For detailed health status, use /api/v1/health/deep
    """
    from app.services.health import get_simple_health
    return await get_simple_health()


@app.get("/api/v1/health/deep")
async def health_check_deep(request: Request):
    """Database connectivity and monitoring backlog; 503 when unhealthy."""
    from app.services.health import get_system_health

    health = await get_system_health(request.app.state.session_factory)
    status_code = 200 if health["status"] != "unhealthy" else 503
    return JSONResponse(content=health, status_code=status_code)


# Prometheus metrics endpoint
@app.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus metrics endpoint."""
    return get_metrics()


# Include routers
app.include_router(auth_router, prefix="/api/v1/auth", tags=["Auth"])
app.include_router(scans_router, prefix="/api/v1/scans", tags=["Scans"])
app.include_router(monitoring_router, prefix="/api/v1/monitoring", tags=["Monitoring"])
app.include_router(billing_router, prefix="/api/v1/billing", tags=["Billing"])
