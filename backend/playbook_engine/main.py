"""
Playbook Engine - Main FastAPI Application

Configures middleware, routes, the store adapter and the run scheduler.
"""

from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config.settings import settings
from .api.routes import api_router
from .api.middleware import CorrelationIdMiddleware, register_error_handlers
from .repositories.store import StoreAdapter
from .repositories.mongo_store import MongoStoreAdapter
from .repositories.async_mongo import create_indexes, close_async_connection, async_health_check
from .scheduler.run_scheduler import RunScheduler
from .utils.logger import setup_logging, get_logger

# Setup logging first
setup_logging()
logger = get_logger(__name__)


# =============================================================================
# Application Factory
# =============================================================================

def create_app(store: Optional[StoreAdapter] = None, start_scheduler: Optional[bool] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        store: Store adapter to serve from; MongoDB when omitted
        start_scheduler: Overrides settings.scheduler_enabled

    Returns:
        Configured FastAPI application instance
    """
    run_scheduler = start_scheduler if start_scheduler is not None else settings.scheduler_enabled

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup:
            - Connects the store adapter (creating MongoDB indexes)
            - Starts the run scheduler

        Shutdown:
            - Stops the scheduler
            - Closes database connections
        """
        logger.info("Starting Playbook Engine...")

        owns_store = store is None
        if owns_store:
            try:
                await create_indexes()
                logger.info("MongoDB indexes created")
            except Exception as e:
                logger.error(f"Failed to create indexes: {e}")
            app.state.store = MongoStoreAdapter()
        else:
            app.state.store = store

        scheduler = RunScheduler(app.state.store)
        if run_scheduler:
            try:
                scheduler.start()
            except Exception as e:
                logger.error(f"Failed to start scheduler: {e}")
        app.state.scheduler = scheduler

        logger.info("Application started successfully")

        yield

        logger.info("Shutting down...")
        scheduler.stop()
        if owns_store:
            await close_async_connection()
        logger.info("Application shutdown complete")

    application = FastAPI(
        title="Playbook Engine",
        description="Workflow orchestration engine over a generic entity/relationship/transaction store",
        version=__version__,
        lifespan=lifespan,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
    )
    # Usable before (or without) the lifespan running, e.g. under ASGITransport
    if store is not None:
        application.state.store = store

    _configure_middleware(application)
    register_error_handlers(application)
    _configure_routes(application)

    return application


def _configure_middleware(app: FastAPI) -> None:
    """Configure application middleware."""
    # allow_credentials must be False when allowing all origins
    allow_all = settings.cors_origins.strip() == "*"

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else settings.cors_origins_list,
        allow_credentials=not allow_all,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-Id", "Idempotent-Replayed"],
    )
    app.add_middleware(CorrelationIdMiddleware)


def _configure_routes(app: FastAPI) -> None:
    """Configure application routes."""
    app.include_router(api_router, prefix="/api/v1")

    # Health check endpoint (no auth required)
    @app.get("/health", tags=["Health"])
    async def health():
        """Application health including store connectivity"""
        if isinstance(getattr(app.state, "store", None), MongoStoreAdapter):
            store_health = await async_health_check()
        else:
            store_health = {"status": "healthy", "type": "in_memory"}
        return {
            "status": "healthy" if store_health.get("status") == "healthy" else "degraded",
            "version": __version__,
            "environment": settings.environment,
            "store": store_health,
        }


# =============================================================================
# Application Instance
# =============================================================================

app = create_app()
