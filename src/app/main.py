"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, lifespan
events for database initialization and service wiring, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1 import health
from src.app.api.v1.router import router as v1_router
from src.app.config import Settings, get_settings
from src.app.core.database import close_db, get_session, init_db
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response
from src.app.pipeline.board import PipelineAggregator
from src.app.pipeline.catalog import StageCatalogCache
from src.app.pipeline.reports import ReportEngine
from src.app.pipeline.repository import PipelineRepository
from src.app.pipeline.transitions import StageTransitionService
from src.app.search.engine import SearchEngine
from src.app.search.query_builder import SearchQueryBuilder
from src.app.search.repository import SearchRepository


def init_services(app: FastAPI, settings: Settings) -> None:
    """Build repositories and services and store them on app.state."""
    pipeline_repo = PipelineRepository(session_factory=get_session)
    catalog_cache = StageCatalogCache(
        loader=pipeline_repo.load_stage_catalog,
        ttl_seconds=settings.STAGE_CATALOG_TTL_SECONDS,
    )

    app.state.pipeline_repository = pipeline_repo
    app.state.stage_catalog_cache = catalog_cache
    app.state.transition_service = StageTransitionService(
        repository=pipeline_repo,
        catalog_cache=catalog_cache,
        history_max_page=settings.HISTORY_MAX_PAGE,
    )
    app.state.pipeline_aggregator = PipelineAggregator(
        repository=pipeline_repo,
        max_per_stage=settings.BOARD_MAX_PER_STAGE,
    )
    app.state.report_engine = ReportEngine(repository=pipeline_repo)

    search_repo = SearchRepository(
        session_factory=get_session,
        builder=SearchQueryBuilder(trgm_threshold=settings.SEARCH_TRGM_THRESHOLD),
    )
    app.state.search_engine = SearchEngine(
        repository=search_repo,
        enabled_kinds=settings.enabled_search_kinds(),
        default_limit=settings.SEARCH_DEFAULT_LIMIT,
        max_limit=settings.SEARCH_MAX_LIMIT,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and services on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    init_services(app, settings)
    log.info(
        "pipeline.services_initialized",
        search_kinds=settings.enabled_search_kinds(),
        catalog_ttl_seconds=settings.STAGE_CATALOG_TTL_SECONDS,
    )

    yield

    await close_db()
    log.info("pipeline.shutdown_complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CRM Pipeline API",
        version="0.1.0",
        description="Sales pipeline core: audited stage transitions, search, board and reports",
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

    app.include_router(health.router)
    app.include_router(v1_router, prefix="/api/v1")

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
