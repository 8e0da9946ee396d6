"""Pipeline board aggregation.

PipelineAggregator builds the kanban-style board: one column per catalog
stage with count, summed amount, expected value and a capped list of the most
recent deals. Totals come from one grouped query; the deal lists come from one
capped query per stage, so totals stay correct when the visible list is cut.

Totals and per-stage listings are separate statements. Under concurrent writes
a column's total_count can briefly disagree with the deals listed in it.
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog

from src.app.pipeline.catalog import StageCatalog, expected_value
from src.app.pipeline.errors import LimitExceededError, ValidationFailedError
from src.app.pipeline.schemas import (
    BoardFilters,
    PipelineBoard,
    PipelineColumn,
    StageMeta,
)

logger = structlog.get_logger(__name__)


def resolve_stage_sequence(
    catalog: StageCatalog, stage_keys: list[str] | None
) -> list[StageMeta]:
    """Stages to render, in catalog order.

    ``None`` means every catalog stage. A supplied filter must be non-empty
    and every entry must name a catalog stage (compared case-insensitively).

    Raises:
        ValidationFailedError: If the filter is empty or has a blank/unknown key.
    """
    if stage_keys is None:
        return list(catalog.stages)
    if not stage_keys:
        raise ValidationFailedError("stage filter must not be empty")

    by_normalized = {stage.key.upper(): stage for stage in catalog}
    wanted: set[str] = set()
    for raw in stage_keys:
        normalized = raw.strip().upper()
        if not normalized:
            raise ValidationFailedError("stage filter contains a blank key")
        if normalized not in by_normalized:
            raise ValidationFailedError(f"unknown stage key: {raw.strip()}")
        wanted.add(normalized)

    return [stage for stage in catalog if stage.key.upper() in wanted]


class PipelineAggregator:
    """Computes the pipeline board from a repository and a stage catalog.

    Args:
        repository: Provides board_stage_totals and board_deals_in_stage.
        max_per_stage: Ceiling for first_per_stage.
    """

    def __init__(self, repository: Any, max_per_stage: int = 100) -> None:
        self._repository = repository
        self._max_per_stage = max_per_stage

    def _validate_first(self, first_per_stage: int) -> None:
        if first_per_stage < 0:
            raise ValidationFailedError(
                f"first_per_stage must not be negative, got {first_per_stage}"
            )
        if first_per_stage > self._max_per_stage:
            raise LimitExceededError(
                "first_per_stage", first_per_stage, self._max_per_stage
            )

    async def board(
        self,
        catalog: StageCatalog,
        first_per_stage: int = 20,
        stage_keys: list[str] | None = None,
        company_id: str | None = None,
        text: str | None = None,
        order_by_updated: bool = True,
    ) -> PipelineBoard:
        """Build the board for the given catalog and filters.

        Args:
            catalog: Loaded stage catalog; defines column order.
            first_per_stage: Deals listed per column; 0 lists none.
            stage_keys: Optional subset of stage keys to render.
            company_id: Only deals owned by this company.
            text: Case-insensitive substring of the deal title.
            order_by_updated: Newest by updated_at when True, else created_at.

        Returns:
            PipelineBoard with columns in catalog order and summed totals.

        Raises:
            ValidationFailedError: Negative page size, malformed company id,
                or an empty/unknown stage filter.
            LimitExceededError: If first_per_stage is above the ceiling.
        """
        self._validate_first(first_per_stage)
        if stage_keys is not None and not stage_keys:
            raise ValidationFailedError("stage filter must not be empty")
        if company_id is not None:
            try:
                company_id = str(uuid.UUID(company_id.strip()))
            except ValueError as exc:
                raise ValidationFailedError(
                    f"invalid company id: {company_id!r}"
                ) from exc
        filters = BoardFilters(
            company_id=company_id,
            text=(text.strip() or None) if text else None,
        )

        if catalog.is_empty:
            return PipelineBoard()

        sequence = resolve_stage_sequence(catalog, stage_keys)

        totals = {
            row.stage_key: row
            for row in await self._repository.board_stage_totals(filters)
        }

        columns: list[PipelineColumn] = []
        for stage in sequence:
            row = totals.get(stage.key)
            count = row.count if row else 0
            amount = row.amount_cents if row else 0
            deals = []
            if first_per_stage > 0:
                deals = await self._repository.board_deals_in_stage(
                    stage.key, filters, first_per_stage, order_by_updated
                )
            columns.append(
                PipelineColumn(
                    stage=stage,
                    total_count=count,
                    total_amount_cents=amount,
                    expected_value_cents=expected_value(amount, stage.probability),
                    deals=deals,
                )
            )

        board = PipelineBoard(
            columns=columns,
            total_count=sum(c.total_count for c in columns),
            total_amount_cents=sum(c.total_amount_cents for c in columns),
            total_expected_cents=sum(c.expected_value_cents for c in columns),
        )
        logger.debug(
            "pipeline.board_built",
            columns=len(columns),
            total_count=board.total_count,
            first_per_stage=first_per_stage,
        )
        return board
