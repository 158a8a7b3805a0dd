"""
Storefront Backend - FastAPI Application

Game store backend: PIX checkout, webhook-driven payment reconciliation,
grant fulfillment and delivery to the game server.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional
import logging

from .config import Settings, settings as default_settings
from .exceptions import StoreError
from .db.init_db import initialize_database
from .dependencies import ServiceContainer, build_container
from .api.admin import router as admin_router
from .api.payments import router as payments_router
from .api.server import router as server_router
from .api.webhooks import router as webhooks_router


# Configure logging
logging.basicConfig(
    level=getattr(logging, default_settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[ServiceContainer] = None
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Configuration (defaults to environment)
        container: Prebuilt services; when given, the lifespan neither builds
            nor closes them and background jobs are not scheduled
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        - Startup: build services, create tables, start background jobs
        - Shutdown: stop jobs, close HTTP clients and the engine
        """
        logger.info("Starting storefront backend server...")
        logger.info(f"Demo mode: {settings.demo_mode}")

        owns_container = container is None
        services = container or build_container(settings)
        app.state.container = services

        try:
            await initialize_database(services.engine)
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

        if owns_container and settings.scheduler_enabled:
            try:
                services.schedule_jobs()
                services.jobs.start()
                logger.info("Background jobs started")
            except Exception as e:
                logger.error(f"Failed to start scheduler: {e}")
                if not settings.demo_mode:
                    raise
                logger.warning("Continuing without scheduler in demo mode")

        logger.info("Server startup complete")

        yield

        logger.info("Shutting down storefront backend server...")
        if owns_container:
            try:
                await services.close()
                logger.info("Services closed")
            except Exception as e:
                logger.error(f"Error during shutdown: {e}")

    app = FastAPI(
        title="Storefront API",
        description="Game store payments, fulfillment and delivery",
        version="0.1.0",
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        """Render store errors as {"error_code", "message", "details"} with their HTTP status."""
        logger.warning(
            f"Store error: {exc.error_code} - {exc.message}",
            extra={"details": exc.details}
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        """Input validation failures not caught by request parsing."""
        logger.warning(f"Validation error: {str(exc)}")
        return JSONResponse(
            status_code=400,
            content={
                "error_code": "validation_error",
                "message": str(exc),
                "details": {}
            }
        )

    @app.exception_handler(Exception)
    async def general_error_handler(request: Request, exc: Exception):
        """
        Catch-all handler for unexpected errors.

        Logs full exception for debugging but returns generic message to client.
        """
        logger.error(f"Unexpected error: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error_code": "internal_error",
                "message": "An unexpected error occurred",
                "details": {"error_type": type(exc).__name__} if settings.demo_mode else {}
            }
        )

    @app.get("/api/health")
    async def health_check(request: Request):
        """Server status, integration modes and delivery backlog size."""
        services: ServiceContainer = request.app.state.container
        return {
            "status": "healthy",
            "version": "0.1.0",
            "demo_mode": settings.demo_mode,
            "integrations": {
                "payment_provider": "pix" if settings.pix_configured else "mock",
                "game_server": "live" if settings.game_server_configured else "mock",
            },
            "pending_deliveries": await services.ledger.count_pending_grants(),
        }

    app.include_router(payments_router, prefix="/api", tags=["Payments"])
    app.include_router(webhooks_router, prefix="/api", tags=["Webhooks"])
    app.include_router(admin_router, prefix="/api", tags=["Admin"])
    app.include_router(server_router, prefix="/api", tags=["Game Server"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "storefront.main:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.demo_mode,
        log_level=default_settings.log_level.lower()
    )
