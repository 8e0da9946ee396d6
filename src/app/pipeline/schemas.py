"""Pydantic schemas for the sales pipeline core.

Defines the structured types that flow between repositories and services:
- Catalog: StageMeta
- Deals and audit: DealRead, StageHistoryRead, ActivityRead
- Board: BoardFilters, StageAmountRow, BoardDeal, PipelineColumn, PipelineBoard
- Reports: DateRange, ForecastRow, ReportStageTotal, ForecastPoint,
  VelocityStats, PipelineReport
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.app.pipeline.stages import DealStage, StoredStage, to_wire


# ── Catalog ─────────────────────────────────────────────────────────────────


class StageMeta(BaseModel):
    """One stage_meta row."""

    model_config = ConfigDict(frozen=True)

    key: str
    display_name: str
    sort_order: int
    probability: int = Field(ge=0, le=100)
    is_won: bool = False
    is_lost: bool = False


# ── Deals and Audit ─────────────────────────────────────────────────────────


class DealRead(BaseModel):
    """Schema for reading a deal (all persisted fields)."""

    id: str
    title: str
    amount_cents: int | None = None
    currency: str | None = None
    stage: StoredStage
    close_date: date | None = None
    company_id: str
    assigned_user_id: str | None = None
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def wire_stage(self) -> DealStage:
        return to_wire(self.stage)


class StageHistoryRead(BaseModel):
    """Schema for one deal_stage_history row."""

    id: str
    deal_id: str
    from_stage: StoredStage | None = None
    to_stage: StoredStage
    changed_at: datetime
    note: str | None = None
    changed_by: str | None = None


class ActivityRead(BaseModel):
    """Schema for one activity row."""

    id: str
    entity_type: str
    entity_id: str
    kind: str
    subject: str | None = None
    body_md: str | None = None
    meta_json: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    created_by: str | None = None


# ── Board ───────────────────────────────────────────────────────────────────


class BoardFilters(BaseModel):
    """Optional filters shared by the totals query and per-stage listings."""

    company_id: str | None = None
    text: str | None = None


class StageAmountRow(BaseModel):
    """Grouped aggregate row: deal count and summed amount for one stage."""

    stage_key: str
    count: int = 0
    amount_cents: int = 0


class BoardDeal(BaseModel):
    """Deal listed in a board column, enriched with its company's name."""

    id: str
    title: str
    amount_cents: int | None = None
    currency: str | None = None
    stage: StoredStage
    close_date: date | None = None
    company_id: str
    company_name: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PipelineColumn(BaseModel):
    """One board column: stage metadata, stage totals, capped deal list."""

    stage: StageMeta
    total_count: int = 0
    total_amount_cents: int = 0
    expected_value_cents: int = 0
    deals: list[BoardDeal] = Field(default_factory=list)


class PipelineBoard(BaseModel):
    """Board view: columns in catalog order plus board-level totals."""

    columns: list[PipelineColumn] = Field(default_factory=list)
    total_count: int = 0
    total_amount_cents: int = 0
    total_expected_cents: int = 0


# ── Reports ─────────────────────────────────────────────────────────────────


class DateRange(BaseModel):
    """Inclusive calendar date range. Ordering is validated by ReportEngine."""

    start: date
    end: date


class ForecastRow(BaseModel):
    """Grouped aggregate row keyed by (calendar month, stage)."""

    month: date
    stage_key: str
    count: int = 0
    amount_cents: int = 0


class ReportStageTotal(BaseModel):
    """Closing-deal totals for one stage within a report range."""

    stage: StageMeta
    count: int = 0
    amount_cents: int = 0
    expected_cents: int = 0


class ForecastPoint(BaseModel):
    """One calendar month of the densified forecast series."""

    period: str
    amount_cents: int = 0
    expected_cents: int = 0
    deals: int = 0


class VelocityStats(BaseModel):
    """Days from deal creation to first win."""

    deals_won: int = 0
    avg_days_to_win: float = 0.0
    p50_days_to_win: float = 0.0
    p90_days_to_win: float = 0.0


class PipelineReport(BaseModel):
    """Stage totals, month-bucketed forecast, and win velocity for a range."""

    stage_totals: list[ReportStageTotal] = Field(default_factory=list)
    forecast: list[ForecastPoint] = Field(default_factory=list)
    velocity: VelocityStats = Field(default_factory=VelocityStats)
