"""REST API endpoints for the sales pipeline core.

Thin transport over StageTransitionService, PipelineAggregator and
ReportEngine. Arguments are passed through unchanged; the core validates them
and its errors are mapped to HTTP status codes by to_http_exception.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from src.app.api.deps import get_actor_id, get_state_service, to_http_exception
from src.app.config import get_settings
from src.app.core.monitoring import track_operation
from src.app.pipeline.errors import PipelineError
from src.app.pipeline.schemas import (
    DateRange,
    DealRead,
    PipelineBoard,
    PipelineReport,
    StageHistoryRead,
    StageMeta,
)
from src.app.pipeline.stages import DealStage, to_wire

router = APIRouter(prefix="/pipeline", tags=["pipeline"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class DealResponse(BaseModel):
    """Deal with its stage in wire form."""

    id: str
    title: str
    amount_cents: int | None = None
    currency: str | None = None
    stage: DealStage
    close_date: date | None = None
    company_id: str
    assigned_user_id: str | None = None
    updated_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class StageHistoryResponse(BaseModel):
    """One stage history entry with wire stages."""

    id: str
    deal_id: str
    from_stage: DealStage | None = None
    to_stage: DealStage
    changed_at: datetime
    note: str | None = None
    changed_by: str | None = None


# ── Request Schemas ──────────────────────────────────────────────────────────


class MoveStageRequest(BaseModel):
    """Request body for moving a deal to another stage."""

    stage: DealStage
    note: str | None = Field(default=None, max_length=4000)


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _get_catalog_cache(request: Request) -> Any:
    return get_state_service(request, "stage_catalog_cache", "Stage catalog")


def _get_transition_service(request: Request) -> Any:
    return get_state_service(request, "transition_service", "Stage transitions")


def _get_aggregator(request: Request) -> Any:
    return get_state_service(request, "pipeline_aggregator", "Pipeline board")


def _get_report_engine(request: Request) -> Any:
    return get_state_service(request, "report_engine", "Pipeline reports")


# ── Conversion Helpers ───────────────────────────────────────────────────────


def deal_to_response(deal: DealRead) -> DealResponse:
    return DealResponse(
        id=deal.id,
        title=deal.title,
        amount_cents=deal.amount_cents,
        currency=deal.currency,
        stage=deal.wire_stage,
        close_date=deal.close_date,
        company_id=deal.company_id,
        assigned_user_id=deal.assigned_user_id,
        updated_by=deal.updated_by,
        created_at=deal.created_at,
        updated_at=deal.updated_at,
    )


def _history_to_response(entry: StageHistoryRead) -> StageHistoryResponse:
    return StageHistoryResponse(
        id=entry.id,
        deal_id=entry.deal_id,
        from_stage=to_wire(entry.from_stage) if entry.from_stage else None,
        to_stage=to_wire(entry.to_stage),
        changed_at=entry.changed_at,
        note=entry.note,
        changed_by=entry.changed_by,
    )


# ── Stage Catalog Endpoints ──────────────────────────────────────────────────


@router.get("/stages", response_model=list[StageMeta])
async def list_stages(request: Request) -> list[StageMeta]:
    """Stage catalog in sort order."""
    service = _get_transition_service(request)
    try:
        return await service.list_stages()
    except PipelineError as exc:
        raise to_http_exception(exc) from exc


@router.post("/stages/refresh", response_model=list[StageMeta])
async def refresh_stages(request: Request) -> list[StageMeta]:
    """Reload the stage catalog cache immediately."""
    cache = _get_catalog_cache(request)
    try:
        catalog = await cache.refresh()
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return list(catalog.stages)


# ── Deal Stage Endpoints ─────────────────────────────────────────────────────


@router.post("/deals/{deal_id}/stage", response_model=DealResponse)
async def move_deal_stage(
    deal_id: str,
    body: MoveStageRequest,
    request: Request,
    actor_id: str | None = Depends(get_actor_id),
) -> DealResponse:
    """Move a deal to another stage (no-op when already there)."""
    service = _get_transition_service(request)
    try:
        async with track_operation("move_stage"):
            deal = await service.move_stage(deal_id, body.stage, body.note, actor_id)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return deal_to_response(deal)


@router.get("/deals/{deal_id}/history", response_model=list[StageHistoryResponse])
async def deal_stage_history(
    deal_id: str,
    request: Request,
    first: int = Query(default=20, description="Number of entries, newest first"),
) -> list[StageHistoryResponse]:
    """Stage history for a deal, newest first."""
    service = _get_transition_service(request)
    try:
        entries = await service.stage_history(deal_id, first)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return [_history_to_response(e) for e in entries]


# ── Board and Report Endpoints ───────────────────────────────────────────────


@router.get("/board", response_model=PipelineBoard)
async def pipeline_board(
    request: Request,
    first_per_stage: int | None = Query(default=None, description="Deals per column"),
    stage: list[str] | None = Query(default=None, description="Stage keys to include"),
    company_id: str | None = Query(default=None),
    text: str | None = Query(default=None, description="Deal title substring"),
    order_by_updated: bool = Query(default=True),
) -> PipelineBoard:
    """Board view: one column per stage with totals and recent deals."""
    cache = _get_catalog_cache(request)
    aggregator = _get_aggregator(request)
    if first_per_stage is None:
        first_per_stage = get_settings().BOARD_DEFAULT_PER_STAGE
    try:
        async with track_operation("board"):
            catalog = await cache.get()
            return await aggregator.board(
                catalog,
                first_per_stage=first_per_stage,
                stage_keys=stage,
                company_id=company_id,
                text=text,
                order_by_updated=order_by_updated,
            )
    except PipelineError as exc:
        raise to_http_exception(exc) from exc


@router.get("/report", response_model=PipelineReport)
async def pipeline_report(
    request: Request,
    start: date = Query(..., description="First close date (inclusive)"),
    end: date = Query(..., description="Last close date (inclusive)"),
    include_lost: bool = Query(default=False),
) -> PipelineReport:
    """Stage totals, monthly forecast and win velocity for a date range."""
    cache = _get_catalog_cache(request)
    engine = _get_report_engine(request)
    try:
        async with track_operation("report"):
            catalog = await cache.get()
            return await engine.report(
                catalog, DateRange(start=start, end=end), include_lost=include_lost
            )
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
