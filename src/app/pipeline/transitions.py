"""Deal stage transitions with an append-only audit trail.

StageTransitionService is the only writer of ``deal.stage``. A move runs in a
single transaction holding a row lock on the deal:

- unchanged stage: only updated_at/updated_by are touched, no audit rows
- changed stage: the deal, one DealStageHistory row and one Activity row are
  written with the same timestamp

Any failure rolls the whole transaction back. There is no transition guard;
any stage may move to any other stage, and business policy on which moves are
allowed stays with callers.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import structlog

from src.app.core.monitoring import pipeline_stage_transitions_total
from src.app.pipeline.catalog import StageCatalogCache
from src.app.pipeline.errors import (
    NotFoundError,
    PipelineError,
    ValidationFailedError,
    validate_page_size,
)
from src.app.pipeline.schemas import DealRead, StageHistoryRead, StageMeta
from src.app.pipeline.stages import DealStage, StoredStage, parse_stage_key, to_stored

logger = structlog.get_logger(__name__)

STAGE_CHANGE_KIND = "stage_change"
DEAL_ENTITY_TYPE = "deal"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_deal_id(deal_id: str | uuid.UUID) -> uuid.UUID:
    """Parse a deal identifier, raising ValidationFailedError when malformed."""
    if isinstance(deal_id, uuid.UUID):
        return deal_id
    try:
        return uuid.UUID(str(deal_id).strip())
    except ValueError as exc:
        raise ValidationFailedError(f"invalid deal id: {deal_id!r}") from exc


def resolve_target_stage(stage: StoredStage | DealStage | str) -> StoredStage:
    """Normalize a wire stage, storage stage or raw key to a StoredStage."""
    if isinstance(stage, StoredStage):
        return stage
    if isinstance(stage, DealStage):
        return to_stored(stage)
    resolved = parse_stage_key(stage)
    if resolved is None:
        raise ValidationFailedError(f"unknown stage: {stage!r}")
    return resolved


class StageTransitionService:
    """Moves deals between stages and reads their stage history.

    Args:
        repository: Provides ``transaction()`` yielding a unit of work with
            lock_deal/touch_deal/set_deal_stage/add_stage_history/add_activity,
            plus ``get_deal`` and ``stage_history`` reads.
        catalog_cache: Source of the stage catalog; move targets must be in it.
        history_max_page: Ceiling for stage_history page size.
        clock: Returns the current UTC time, injectable for tests.
    """

    def __init__(
        self,
        repository: Any,
        catalog_cache: StageCatalogCache,
        history_max_page: int = 100,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._catalog_cache = catalog_cache
        self._history_max_page = history_max_page
        self._clock = clock

    async def move_stage(
        self,
        deal_id: str | uuid.UUID,
        target_stage: StoredStage | DealStage | str,
        note: str | None = None,
        actor_id: str | None = None,
    ) -> DealRead:
        """Move a deal to ``target_stage``, auditing the change if it is one.

        Args:
            deal_id: Deal identifier.
            target_stage: Destination stage (wire, storage, or raw key).
            note: Free-text note stored on the history row and activity body.
            actor_id: Opaque identifier of whoever requested the move.

        Returns:
            The deal as committed.

        Raises:
            ValidationFailedError: If deal_id or target_stage is malformed, or
                the target stage is missing from the catalog.
            NotFoundError: If the deal does not exist.
            PersistenceError: If the store fails; nothing is committed.
        """
        parsed_id = parse_deal_id(deal_id)
        target = resolve_target_stage(target_stage)

        try:
            catalog = await self._catalog_cache.get()
            if catalog.get(target.value) is None:
                raise ValidationFailedError(f"stage not in catalog: {target.value}")

            async with self._repository.transaction() as unit:
                deal = await unit.lock_deal(parsed_id)
                if deal is None:
                    raise NotFoundError("deal", parsed_id)

                now = self._clock()
                if deal.stage == target:
                    updated = await unit.touch_deal(now, actor_id)
                    outcome = "noop"
                else:
                    from_stage = deal.stage
                    updated = await unit.set_deal_stage(target, now, actor_id)
                    await unit.add_stage_history(
                        parsed_id, from_stage, target, now, note, actor_id
                    )
                    await unit.add_activity(
                        DEAL_ENTITY_TYPE,
                        parsed_id,
                        STAGE_CHANGE_KIND,
                        f"{from_stage.value} -> {target.value}",
                        note,
                        {"from": from_stage.value, "to": target.value},
                        now,
                        actor_id,
                    )
                    outcome = "changed"
        except PipelineError as exc:
            pipeline_stage_transitions_total.labels(outcome=exc.code.lower()).inc()
            raise

        pipeline_stage_transitions_total.labels(outcome=outcome).inc()
        logger.info(
            "pipeline.stage_moved",
            deal_id=str(parsed_id),
            from_stage=deal.stage.value,
            to_stage=target.value,
            changed=outcome == "changed",
            actor_id=actor_id,
        )
        return updated

    async def stage_history(
        self, deal_id: str | uuid.UUID, first: int = 20
    ) -> list[StageHistoryRead]:
        """Stage history for a deal, newest first.

        Raises:
            ValidationFailedError: If deal_id is malformed or first <= 0.
            LimitExceededError: If first is above the page ceiling.
            NotFoundError: If the deal does not exist.
        """
        validate_page_size("first", first, self._history_max_page)
        parsed_id = parse_deal_id(deal_id)
        if await self._repository.get_deal(parsed_id) is None:
            raise NotFoundError("deal", parsed_id)
        return await self._repository.stage_history(parsed_id, first)

    async def list_stages(self) -> list[StageMeta]:
        """The stage catalog in sort order."""
        catalog = await self._catalog_cache.get()
        return list(catalog.stages)
