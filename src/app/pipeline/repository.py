"""Pipeline repository -- SQLAlchemy access for transitions, board and reports.

Provides PipelineRepository with the session_factory callable pattern. Every
read is a single statement; the stage transition runs inside one transaction
opened by transaction(), which yields a SqlTransitionUnit holding a row lock
on the deal being moved.

Any SQLAlchemyError is re-raised as PersistenceError after the transaction
has been rolled back, so callers can tell store failures apart from
NotFoundError and validation errors.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import Date, cast, extract, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.database import escape_like, open_session
from src.app.pipeline.errors import PersistenceError
from src.app.pipeline.models import (
    ActivityModel,
    CompanyModel,
    DealModel,
    DealStageHistoryModel,
    StageMetaModel,
)
from src.app.pipeline.schemas import (
    ActivityRead,
    BoardDeal,
    BoardFilters,
    DateRange,
    DealRead,
    ForecastRow,
    StageAmountRow,
    StageHistoryRead,
    StageMeta,
)
from src.app.pipeline.stages import StoredStage, parse_stage_key

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def model_to_deal(model: DealModel) -> DealRead:
    """Convert DealModel to DealRead schema."""
    return DealRead(
        id=str(model.id),
        title=model.title,
        amount_cents=model.amount_cents,
        currency=model.currency,
        stage=model.stage,
        close_date=model.close_date,
        company_id=str(model.company_id),
        assigned_user_id=(
            str(model.assigned_user_id) if model.assigned_user_id else None
        ),
        created_by=model.created_by,
        updated_by=model.updated_by,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_history(model: DealStageHistoryModel) -> StageHistoryRead:
    return StageHistoryRead(
        id=str(model.id),
        deal_id=str(model.deal_id),
        from_stage=model.from_stage,
        to_stage=model.to_stage,
        changed_at=model.changed_at,
        note=model.note,
        changed_by=model.changed_by,
    )


def _model_to_activity(model: ActivityModel) -> ActivityRead:
    return ActivityRead(
        id=str(model.id),
        entity_type=model.entity_type,
        entity_id=str(model.entity_id),
        kind=model.kind,
        subject=model.subject,
        body_md=model.body_md,
        meta_json=model.meta_json or {},
        created_at=model.created_at,
        created_by=model.created_by,
    )


def _stored_stages(keys: list[str]) -> list[StoredStage]:
    """Catalog keys that correspond to a storage enum variant."""
    stages = []
    for key in keys:
        stage = parse_stage_key(key)
        if stage is not None:
            stages.append(stage)
    return stages


# ── Transaction Unit ────────────────────────────────────────────────────────


class SqlTransitionUnit:
    """Writes for one stage transition, bound to an open transaction.

    Instances only exist inside PipelineRepository.transaction(); commit and
    rollback belong to that context manager.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._deal: DealModel | None = None

    async def lock_deal(self, deal_id: uuid.UUID) -> DealRead | None:
        """Load the deal with SELECT ... FOR UPDATE."""
        stmt = select(DealModel).where(DealModel.id == deal_id).with_for_update()
        result = await self._session.execute(stmt)
        self._deal = result.scalar_one_or_none()
        if self._deal is None:
            return None
        return model_to_deal(self._deal)

    def _locked(self) -> DealModel:
        if self._deal is None:
            raise RuntimeError("lock_deal() must succeed before writing the deal")
        return self._deal

    async def touch_deal(self, at: datetime, actor_id: str | None) -> DealRead:
        deal = self._locked()
        deal.updated_at = at
        deal.updated_by = actor_id
        await self._session.flush()
        return model_to_deal(deal)

    async def set_deal_stage(
        self, stage: StoredStage, at: datetime, actor_id: str | None
    ) -> DealRead:
        deal = self._locked()
        deal.stage = stage
        deal.updated_at = at
        deal.updated_by = actor_id
        await self._session.flush()
        return model_to_deal(deal)

    async def add_stage_history(
        self,
        deal_id: uuid.UUID,
        from_stage: StoredStage | None,
        to_stage: StoredStage,
        at: datetime,
        note: str | None,
        actor_id: str | None,
    ) -> StageHistoryRead:
        model = DealStageHistoryModel(
            id=uuid.uuid4(),
            deal_id=deal_id,
            from_stage=from_stage,
            to_stage=to_stage,
            changed_at=at,
            note=note,
            changed_by=actor_id,
        )
        self._session.add(model)
        await self._session.flush()
        return _model_to_history(model)

    async def add_activity(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        kind: str,
        subject: str | None,
        body_md: str | None,
        meta: dict[str, Any],
        at: datetime,
        actor_id: str | None,
    ) -> ActivityRead:
        model = ActivityModel(
            id=uuid.uuid4(),
            entity_type=entity_type,
            entity_id=entity_id,
            kind=kind,
            subject=subject,
            body_md=body_md,
            meta_json=meta,
            created_at=at,
            created_by=actor_id,
        )
        self._session.add(model)
        await self._session.flush()
        return _model_to_activity(model)


# ── Repository ──────────────────────────────────────────────────────────────


class PipelineRepository:
    """SQLAlchemy access for the pipeline core.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqlTransitionUnit]:
        """Open one transaction; commit on clean exit, roll back on any error."""
        async with open_session(self._session_factory) as session:
            try:
                async with session.begin():
                    yield SqlTransitionUnit(session)
            except SQLAlchemyError as exc:
                logger.error("pipeline.transaction_failed", error=str(exc))
                raise PersistenceError(f"transaction failed: {exc}") from exc

    async def _all(self, stmt: Any) -> list[Any]:
        async with open_session(self._session_factory) as session:
            try:
                result = await session.execute(stmt)
                return list(result.all())
            except SQLAlchemyError as exc:
                logger.error("pipeline.query_failed", error=str(exc))
                raise PersistenceError(f"query failed: {exc}") from exc

    # ── Catalog ─────────────────────────────────────────────────────────────

    async def load_stage_catalog(self) -> list[StageMeta]:
        rows = await self._all(
            select(StageMetaModel).order_by(StageMetaModel.sort_order)
        )
        return [
            StageMeta(
                key=m.key,
                display_name=m.display_name,
                sort_order=m.sort_order,
                probability=m.probability,
                is_won=m.is_won,
                is_lost=m.is_lost,
            )
            for (m,) in rows
        ]

    # ── Deals and History ───────────────────────────────────────────────────

    async def get_deal(self, deal_id: uuid.UUID) -> DealRead | None:
        rows = await self._all(select(DealModel).where(DealModel.id == deal_id))
        return model_to_deal(rows[0][0]) if rows else None

    async def stage_history(
        self, deal_id: uuid.UUID, limit: int
    ) -> list[StageHistoryRead]:
        """History rows for a deal, newest first."""
        stmt = (
            select(DealStageHistoryModel)
            .where(DealStageHistoryModel.deal_id == deal_id)
            .order_by(
                DealStageHistoryModel.changed_at.desc(),
                DealStageHistoryModel.id.desc(),
            )
            .limit(limit)
        )
        return [_model_to_history(m) for (m,) in await self._all(stmt)]

    # ── Board ───────────────────────────────────────────────────────────────

    def _board_conditions(self, filters: BoardFilters) -> list[Any]:
        conditions: list[Any] = []
        if filters.company_id is not None:
            conditions.append(DealModel.company_id == uuid.UUID(filters.company_id))
        if filters.text:
            pattern = f"%{escape_like(filters.text)}%"
            conditions.append(DealModel.title.ilike(pattern, escape="\\"))
        return conditions

    async def board_stage_totals(self, filters: BoardFilters) -> list[StageAmountRow]:
        """Count and summed amount per stage for deals matching filters."""
        stmt = (
            select(
                DealModel.stage,
                func.count(DealModel.id),
                func.coalesce(func.sum(DealModel.amount_cents), 0),
            )
            .join(CompanyModel, CompanyModel.id == DealModel.company_id)
            .where(*self._board_conditions(filters))
            .group_by(DealModel.stage)
        )
        return [
            StageAmountRow(stage_key=stage.value, count=count, amount_cents=int(amount))
            for stage, count, amount in await self._all(stmt)
        ]

    async def board_deals_in_stage(
        self,
        stage_key: str,
        filters: BoardFilters,
        limit: int,
        order_by_updated: bool,
    ) -> list[BoardDeal]:
        """Up to ``limit`` deals in one stage, newest first, with company name."""
        stage = parse_stage_key(stage_key)
        if stage is None:
            return []
        order_column = DealModel.updated_at if order_by_updated else DealModel.created_at
        stmt = (
            select(DealModel, CompanyModel.name)
            .join(CompanyModel, CompanyModel.id == DealModel.company_id)
            .where(DealModel.stage == stage, *self._board_conditions(filters))
            .order_by(order_column.desc(), DealModel.id)
            .limit(limit)
        )
        return [
            BoardDeal(
                id=str(deal.id),
                title=deal.title,
                amount_cents=deal.amount_cents,
                currency=deal.currency,
                stage=deal.stage,
                close_date=deal.close_date,
                company_id=str(deal.company_id),
                company_name=company_name,
                created_at=deal.created_at,
                updated_at=deal.updated_at,
            )
            for deal, company_name in await self._all(stmt)
        ]

    # ── Reports ─────────────────────────────────────────────────────────────

    def _closing_conditions(
        self, date_range: DateRange, excluded_keys: list[str]
    ) -> list[Any]:
        conditions: list[Any] = [
            DealModel.close_date >= date_range.start,
            DealModel.close_date <= date_range.end,
        ]
        excluded = _stored_stages(excluded_keys)
        if excluded:
            conditions.append(DealModel.stage.notin_(excluded))
        return conditions

    async def report_stage_totals(
        self, date_range: DateRange, excluded_keys: list[str]
    ) -> list[StageAmountRow]:
        stmt = (
            select(
                DealModel.stage,
                func.count(DealModel.id),
                func.coalesce(func.sum(DealModel.amount_cents), 0),
            )
            .where(*self._closing_conditions(date_range, excluded_keys))
            .group_by(DealModel.stage)
        )
        return [
            StageAmountRow(stage_key=stage.value, count=count, amount_cents=int(amount))
            for stage, count, amount in await self._all(stmt)
        ]

    async def report_forecast_rows(
        self, date_range: DateRange, excluded_keys: list[str]
    ) -> list[ForecastRow]:
        month = cast(func.date_trunc("month", DealModel.close_date), Date).label("month")
        stmt = (
            select(
                month,
                DealModel.stage,
                func.count(DealModel.id),
                func.coalesce(func.sum(DealModel.amount_cents), 0),
            )
            .where(*self._closing_conditions(date_range, excluded_keys))
            .group_by(month, DealModel.stage)
            .order_by(month)
        )
        return [
            ForecastRow(
                month=month_start,
                stage_key=stage.value,
                count=count,
                amount_cents=int(amount),
            )
            for month_start, stage, count, amount in await self._all(stmt)
        ]

    async def won_durations(
        self, won_key: str, start_at: datetime, end_at: datetime
    ) -> list[float]:
        """Days from creation to first win, for deals first won in [start_at, end_at)."""
        won_stage = parse_stage_key(won_key)
        if won_stage is None:
            return []
        first_won = (
            select(
                DealStageHistoryModel.deal_id.label("deal_id"),
                func.min(DealStageHistoryModel.changed_at).label("won_at"),
            )
            .where(DealStageHistoryModel.to_stage == won_stage)
            .group_by(DealStageHistoryModel.deal_id)
            .subquery()
        )
        days = extract("epoch", first_won.c.won_at - DealModel.created_at) / 86400.0
        stmt = (
            select(days)
            .select_from(DealModel)
            .join(first_won, first_won.c.deal_id == DealModel.id)
            .where(first_won.c.won_at >= start_at, first_won.c.won_at < end_at)
        )
        return [float(value) for (value,) in await self._all(stmt)]
