"""REST API endpoints for relevance-ranked search.

GET /search returns ranked hits across kinds; the /search/{kind} variants
return full entity projections in rank order.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Request

from src.app.api.deps import get_state_service, to_http_exception
from src.app.api.v1.pipeline import DealResponse, deal_to_response
from src.app.pipeline.errors import PipelineError
from src.app.search.schemas import CompanyRead, ContactRead, SearchHit

router = APIRouter(prefix="/search", tags=["search"])


def _get_search_engine(request: Request) -> Any:
    return get_state_service(request, "search_engine", "Search")


@router.get("", response_model=list[SearchHit])
async def search(
    request: Request,
    q: str = Query(..., description="Free-text query"),
    kind: list[str] | None = Query(default=None, description="Kinds to search"),
    limit: int | None = Query(default=None),
    offset: int = Query(default=0),
) -> list[SearchHit]:
    """Ranked hits across companies, contacts and deals."""
    engine = _get_search_engine(request)
    try:
        return await engine.search(q, kinds=kind, limit=limit, offset=offset)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc


@router.get("/companies", response_model=list[CompanyRead])
async def suggest_companies(
    request: Request,
    q: str = Query(...),
    limit: int | None = Query(default=None),
) -> list[CompanyRead]:
    engine = _get_search_engine(request)
    try:
        return await engine.suggest_companies(q, limit)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc


@router.get("/contacts", response_model=list[ContactRead])
async def suggest_contacts(
    request: Request,
    q: str = Query(...),
    limit: int | None = Query(default=None),
) -> list[ContactRead]:
    engine = _get_search_engine(request)
    try:
        return await engine.suggest_contacts(q, limit)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc


@router.get("/deals", response_model=list[DealResponse])
async def suggest_deals(
    request: Request,
    q: str = Query(...),
    limit: int | None = Query(default=None),
) -> list[DealResponse]:
    engine = _get_search_engine(request)
    try:
        deals = await engine.suggest_deals(q, limit)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return [deal_to_response(d) for d in deals]
