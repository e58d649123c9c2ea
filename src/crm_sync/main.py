"""FastAPI application factory.

Creates the app with logging middleware, CORS, lifespan events for
database initialization and sync engine wiring, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.crm_sync.config import get_settings
from src.crm_sync.core.database import close_db, get_session, init_db
from src.crm_sync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.crm_sync.api.v1.router import router as v1_router

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and the sync engine on startup, close on shutdown."""
    settings = get_settings()
    configure_structlog()
    await init_db()

    try:
        from src.crm_sync.sync.orchestrator import SyncOrchestrator
        from src.crm_sync.sync.postgres import PostgresStore

        store = PostgresStore(session_factory=get_session)
        app.state.crm_store = store
        app.state.sync_orchestrator = SyncOrchestrator(store, settings=settings)
        logger.info("sync.orchestrator_initialized", provider=settings.RDSTATION_PROVIDER)
    except Exception:
        logger.warning("sync.orchestrator_init_failed", exc_info=True)
        app.state.crm_store = None
        app.state.sync_orchestrator = None

    yield

    await close_db()
    logger.info("application.shutdown")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CRM Sync API",
        version="0.1.0",
        description="Incremental RD Station CRM reconciliation into local companies, contacts and opportunities",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (outermost -- logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    app.include_router(v1_router)

    return app


# Module-level app for uvicorn
app = create_app()
