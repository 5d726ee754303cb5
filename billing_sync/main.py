"""FastAPI application entry point and lifecycle management."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_sync.logging_config import configure_logging, get_logger
from billing_sync.middleware import ContextMiddleware, RequestLoggingMiddleware
from billing_sync.runtime import BillingRuntime, get_runtime

# Initialize logger
logger = get_logger(__name__)

VERSION = "0.1.0"


def _resolve_runtime(app: FastAPI) -> BillingRuntime:
    """Runtime used by the routes, honoring dependency overrides."""
    factory = app.dependency_overrides.get(get_runtime, get_runtime)
    return factory()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Starts the event workers (recovering pending events) and the
    reconciliation loop; stops both on shutdown.
    """
    logger.info("billing_sync_starting", version=VERSION)
    runtime = _resolve_runtime(app)
    runtime.start()
    try:
        logger.info("billing_sync_started", status="ready")
        yield
    finally:
        logger.info("billing_sync_shutting_down")
        runtime.stop()
        logger.info("billing_sync_stopped")


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    # Configure logging
    log_level = os.getenv("LOG_LEVEL", "INFO")
    json_format = os.getenv("LOG_FORMAT", "json").lower() == "json"
    configure_logging(log_level=log_level, json_format=json_format)

    app = FastAPI(
        title="Billing Sync",
        description="Payment provider webhook ingestion and subscription reconciliation",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ALLOW_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add logging middleware
    include_request_details = os.getenv("LOG_REQUEST_DETAILS", "true").lower() == "true"
    app.add_middleware(RequestLoggingMiddleware, include_request_details=include_request_details)
    app.add_middleware(ContextMiddleware)

    # Register routers
    from billing_sync.api.billing import router as billing_router
    from billing_sync.api.webhooks import router as webhooks_router

    app.include_router(webhooks_router)
    app.include_router(billing_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Service banner."""
        logger.debug("root_endpoint_called")
        return {
            "service": "billing-sync",
            "status": "running",
            "version": VERSION,
        }

    @app.get("/health")
    def health(runtime: BillingRuntime = Depends(get_runtime)) -> dict:
        """Detailed health check."""
        return runtime.health()

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    logger.info("app_created", endpoints=len(app.routes))
    return app


# Create app instance
app = create_app()
