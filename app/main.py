"""
ShowSeek Entitlements API - Main Application
============================================

FastAPI application entry point with middleware configuration
and route registration.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import newrelic.agent

from app.config import settings

# Configure logging for the application (root logger defaults to WARNING)
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.v1 import billing, webhooks
from app.core.errors import setup_exception_handlers
from app.db.session import close_db, init_db

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


# =============================================================================
# New Relic Transaction Enrichment Middleware (Raw ASGI)
# =============================================================================

class NewRelicTransactionMiddleware:
    """
    Raw ASGI middleware that adds custom attributes to every New Relic
    transaction.

    Raw ASGI keeps the route handler in the same task, so New Relic's
    contextvars-based spans for database calls stay attached to the trace.

    Captures: response status, latency, HTTP method and route pattern.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500  # until the real one is seen

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000

            txn = newrelic.agent.current_transaction()
            if txn:
                route = scope.get("route")
                route_path = route.path if route else scope.get("path", "unknown")

                newrelic.agent.add_custom_attributes([
                    ("http.method", scope.get("method", "")),
                    ("http.route", route_path),
                    ("http.status_code", status_code),
                    ("http.duration_ms", round(duration_ms, 2)),
                    ("environment", settings.ENVIRONMENT),
                ])


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Checks the database on startup and disposes the pool on shutdown.
    """
    logger.info("Starting ShowSeek Entitlements API (%s)", settings.ENVIRONMENT)

    if not settings.REVENUECAT_WEBHOOK_SECRET:
        logger.warning("REVENUECAT_WEBHOOK_SECRET is not set; every webhook will be rejected")

    try:
        await init_db()
    except Exception as e:
        # Keep serving health checks without a database
        logger.warning("Database connection failed: %s", e)

    yield

    logger.info("Shutting down ShowSeek Entitlements API")
    await close_db()


# Create FastAPI application
app = FastAPI(
    title="ShowSeek Entitlements API",
    description="""
## Premium entitlement backend

- **Webhooks**: RevenueCat billing events reconciled into a per-user premium snapshot
- **Billing**: trial / standard offer selection and purchase prioritisation
    """,
    version=API_VERSION,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        400: {"description": "Malformed request"},
        401: {"description": "Not authenticated"},
        422: {"description": "Validation error"},
        500: {"description": "Internal server error"},
    },
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# New Relic transaction enrichment
app.add_middleware(NewRelicTransactionMiddleware)

# Setup exception handlers
setup_exception_handlers(app)


# =============================================================================
# Health Check Endpoints
# =============================================================================

@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """
    Health check endpoint.
    """
    return {
        "status": "healthy",
        "version": API_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@app.get("/", tags=["Health"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "ShowSeek Entitlements API",
        "version": API_VERSION,
        "docs": "/docs" if settings.is_development else "Disabled in production",
    }


# =============================================================================
# API Routes
# =============================================================================

app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["Webhooks"])
app.include_router(billing.router, prefix="/api/v1/billing", tags=["Billing"])
