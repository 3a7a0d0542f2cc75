"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for database initialization and sync engine wiring, and the
v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.cms_bridge.config import get_settings
from src.cms_bridge.core.database import close_db, get_session_factory, init_db
from src.cms_bridge.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.cms_bridge.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.cms_bridge.api.v1.router import router as v1_router
from src.cms_bridge.sync.coordinator import build_coordinators
from src.cms_bridge.sync.entity_store import SqlEntityStore
from src.cms_bridge.sync.worker import SyncWorker


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and the sync engine; tear down on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Sync engine ─────────────────────────────────────────────────────
    session_factory = get_session_factory()
    store = SqlEntityStore(session_factory)
    coordinators = build_coordinators(settings, session_factory, store)
    app.state.entity_store = store
    app.state.coordinators = coordinators
    log.info("sync.initialized", platforms=coordinators.platforms())

    worker = None
    if settings.SYNC_WORKER_ENABLED:
        worker = SyncWorker(
            coordinators,
            interval_seconds=settings.SYNC_WORKER_INTERVAL_SECONDS,
            time_budget_seconds=settings.SYNC_QUEUE_TIME_BUDGET_SECONDS,
            claim_timeout_seconds=settings.SYNC_CLAIM_TIMEOUT_SECONDS,
        )
        worker.start()
    app.state.sync_worker = worker

    yield

    # Shutdown
    if worker is not None:
        worker.stop()

    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CMS Bridge API",
        version="0.1.0",
        description="Bidirectional content sync between a headless CMS and external platforms",
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

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
