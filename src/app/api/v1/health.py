"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. Readiness
verifies database connectivity and that the stage catalog can be loaded.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from src.app.config import get_settings
from src.app.core.database import get_engine
from src.app.pipeline.errors import PipelineError

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check.

    No external dependencies are checked -- just that the server is running.
    """
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database connectivity and the stage catalog. Returns check results dict."""
    checks: dict = {"database": "ok", "stage_catalog": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    cache = getattr(request.app.state, "stage_catalog_cache", None)
    if cache is None:
        checks["stage_catalog"] = "not_initialized"
    else:
        try:
            catalog = await cache.get()
            checks["stage_catalog"] = "ok" if not catalog.is_empty else "empty"
        except PipelineError as e:
            checks["stage_catalog"] = "error"
            checks["stage_catalog_error"] = e.message

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: verifies DB connectivity and catalog availability.

    Returns 200 if all pass, 503 if any critical dependency fails. An empty
    catalog is reported but does not fail readiness.
    """
    checks = await _check_dependencies(request)
    all_healthy = checks.get("database") == "ok" and checks.get("stage_catalog") in (
        "ok",
        "empty",
    )

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
