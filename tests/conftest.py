"""Shared test fixtures for the pipeline and search core.

Provides:
- InMemoryPipelineRepository: PipelineRepository double with snapshot/restore
  transactions and optional injected persistence failures
- InMemorySearchRepository: SearchRepository double serving preset ranked rows
- Default stage catalog fixtures and a fixed clock

No database is required; services are exercised through these doubles.
"""

from __future__ import annotations

import copy
import itertools
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Any

import pytest

from src.app.pipeline.catalog import StageCatalog, StageCatalogCache
from src.app.pipeline.errors import PersistenceError
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
from src.app.search.schemas import CompanyRead, ContactRead, ScoredRow, SearchKind

DEFAULT_STAGES = [
    StageMeta(key="NEW", display_name="New", sort_order=10, probability=10),
    StageMeta(key="QUALIFY", display_name="Qualify", sort_order=20, probability=25),
    StageMeta(key="PROPOSAL", display_name="Proposal", sort_order=30, probability=50),
    StageMeta(key="NEGOTIATE", display_name="Negotiate", sort_order=40, probability=70),
    StageMeta(key="WON", display_name="Won", sort_order=90, probability=100, is_won=True),
    StageMeta(key="LOST", display_name="Lost", sort_order=95, probability=0, is_lost=True),
]

BASE_TIME = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock advancing one minute per call."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self._ticks = itertools.count()
        self._start = start

    def __call__(self) -> datetime:
        return self._start + timedelta(minutes=next(self._ticks))


# ── Pipeline Repository Double ──────────────────────────────────────────────


class InMemoryTransitionUnit:
    """Unit of work over InMemoryPipelineRepository state."""

    def __init__(self, repo: InMemoryPipelineRepository) -> None:
        self._repo = repo
        self._deal_id: uuid.UUID | None = None

    async def lock_deal(self, deal_id: uuid.UUID) -> DealRead | None:
        self._repo.maybe_fail("lock_deal")
        deal = self._repo.deals.get(deal_id)
        self._deal_id = deal_id if deal else None
        return deal

    async def touch_deal(self, at: datetime, actor_id: str | None) -> DealRead:
        self._repo.maybe_fail("touch_deal")
        deal = self._repo.deals[self._deal_id].model_copy(
            update={"updated_at": at, "updated_by": actor_id}
        )
        self._repo.deals[self._deal_id] = deal
        return deal

    async def set_deal_stage(
        self, stage: StoredStage, at: datetime, actor_id: str | None
    ) -> DealRead:
        self._repo.maybe_fail("set_deal_stage")
        deal = self._repo.deals[self._deal_id].model_copy(
            update={"stage": stage, "updated_at": at, "updated_by": actor_id}
        )
        self._repo.deals[self._deal_id] = deal
        return deal

    async def add_stage_history(
        self,
        deal_id: uuid.UUID,
        from_stage: StoredStage | None,
        to_stage: StoredStage,
        at: datetime,
        note: str | None,
        actor_id: str | None,
    ) -> StageHistoryRead:
        self._repo.maybe_fail("add_stage_history")
        entry = StageHistoryRead(
            id=str(uuid.uuid4()),
            deal_id=str(deal_id),
            from_stage=from_stage,
            to_stage=to_stage,
            changed_at=at,
            note=note,
            changed_by=actor_id,
        )
        self._repo.history.append(entry)
        return entry

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
        self._repo.maybe_fail("add_activity")
        activity = ActivityRead(
            id=str(uuid.uuid4()),
            entity_type=entity_type,
            entity_id=str(entity_id),
            kind=kind,
            subject=subject,
            body_md=body_md,
            meta_json=meta,
            created_at=at,
            created_by=actor_id,
        )
        self._repo.activities.append(activity)
        return activity


class InMemoryPipelineRepository:
    """In-memory PipelineRepository for testing without database.

    ``fail_on`` names a unit-of-work step that raises PersistenceError, to
    exercise rollback. Query calls are recorded in ``calls``.
    """

    def __init__(self, stages: list[StageMeta] | None = None) -> None:
        self.stages: list[StageMeta] = list(stages or [])
        self.companies: dict[str, str] = {}
        self.deals: dict[uuid.UUID, DealRead] = {}
        self.history: list[StageHistoryRead] = []
        self.activities: list[ActivityRead] = []
        self.fail_on: str | None = None
        self.calls: list[str] = []
        self.catalog_loads = 0

    def maybe_fail(self, step: str) -> None:
        if self.fail_on == step:
            raise PersistenceError(f"simulated failure in {step}")

    # ── Seeding helpers ─────────────────────────────────────────────────

    def add_company(self, name: str) -> str:
        company_id = str(uuid.uuid4())
        self.companies[company_id] = name
        return company_id

    def add_deal(
        self,
        title: str,
        *,
        company_id: str,
        stage: StoredStage = StoredStage.NEW,
        amount_cents: int | None = None,
        close_date: date | None = None,
        created_at: datetime = BASE_TIME,
        updated_at: datetime | None = None,
    ) -> DealRead:
        deal = DealRead(
            id=str(uuid.uuid4()),
            title=title,
            amount_cents=amount_cents,
            currency="USD" if amount_cents is not None else None,
            stage=stage,
            close_date=close_date,
            company_id=company_id,
            created_at=created_at,
            updated_at=updated_at or created_at,
        )
        self.deals[uuid.UUID(deal.id)] = deal
        return deal

    def add_history(
        self,
        deal: DealRead,
        to_stage: StoredStage,
        changed_at: datetime,
        from_stage: StoredStage | None = None,
    ) -> None:
        self.history.append(
            StageHistoryRead(
                id=str(uuid.uuid4()),
                deal_id=deal.id,
                from_stage=from_stage,
                to_stage=to_stage,
                changed_at=changed_at,
            )
        )

    # ── Transactions ────────────────────────────────────────────────────

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryTransitionUnit]:
        snapshot = (
            copy.copy(self.deals),
            list(self.history),
            list(self.activities),
        )
        try:
            yield InMemoryTransitionUnit(self)
        except BaseException:
            self.deals, self.history, self.activities = snapshot
            raise

    # ── Reads ───────────────────────────────────────────────────────────

    async def load_stage_catalog(self) -> list[StageMeta]:
        self.catalog_loads += 1
        return list(self.stages)

    async def get_deal(self, deal_id: uuid.UUID) -> DealRead | None:
        return self.deals.get(deal_id)

    async def stage_history(
        self, deal_id: uuid.UUID, limit: int
    ) -> list[StageHistoryRead]:
        entries = [h for h in self.history if h.deal_id == str(deal_id)]
        entries.sort(key=lambda h: h.changed_at, reverse=True)
        return entries[:limit]

    def _matches(self, deal: DealRead, filters: BoardFilters) -> bool:
        if filters.company_id is not None and deal.company_id != filters.company_id:
            return False
        if filters.text and filters.text.lower() not in deal.title.lower():
            return False
        return True

    async def board_stage_totals(self, filters: BoardFilters) -> list[StageAmountRow]:
        self.calls.append("board_stage_totals")
        totals: dict[str, StageAmountRow] = {}
        for deal in self.deals.values():
            if not self._matches(deal, filters):
                continue
            row = totals.setdefault(
                deal.stage.value, StageAmountRow(stage_key=deal.stage.value)
            )
            row.count += 1
            row.amount_cents += deal.amount_cents or 0
        return list(totals.values())

    async def board_deals_in_stage(
        self,
        stage_key: str,
        filters: BoardFilters,
        limit: int,
        order_by_updated: bool,
    ) -> list[BoardDeal]:
        self.calls.append(f"board_deals_in_stage:{stage_key}")
        stage = parse_stage_key(stage_key)
        deals = [
            d for d in self.deals.values() if d.stage == stage and self._matches(d, filters)
        ]
        deals.sort(
            key=lambda d: d.updated_at if order_by_updated else d.created_at,
            reverse=True,
        )
        return [
            BoardDeal(
                id=d.id,
                title=d.title,
                amount_cents=d.amount_cents,
                currency=d.currency,
                stage=d.stage,
                close_date=d.close_date,
                company_id=d.company_id,
                company_name=self.companies.get(d.company_id),
                created_at=d.created_at,
                updated_at=d.updated_at,
            )
            for d in deals[:limit]
        ]

    def _closing(self, date_range: DateRange, excluded_keys: list[str]) -> list[DealRead]:
        return [
            d
            for d in self.deals.values()
            if d.close_date is not None
            and date_range.start <= d.close_date <= date_range.end
            and d.stage.value not in excluded_keys
        ]

    async def report_stage_totals(
        self, date_range: DateRange, excluded_keys: list[str]
    ) -> list[StageAmountRow]:
        self.calls.append("report_stage_totals")
        totals: dict[str, StageAmountRow] = {}
        for deal in self._closing(date_range, excluded_keys):
            row = totals.setdefault(
                deal.stage.value, StageAmountRow(stage_key=deal.stage.value)
            )
            row.count += 1
            row.amount_cents += deal.amount_cents or 0
        return list(totals.values())

    async def report_forecast_rows(
        self, date_range: DateRange, excluded_keys: list[str]
    ) -> list[ForecastRow]:
        self.calls.append("report_forecast_rows")
        rows: dict[tuple[date, str], ForecastRow] = {}
        for deal in self._closing(date_range, excluded_keys):
            month = deal.close_date.replace(day=1)
            row = rows.setdefault(
                (month, deal.stage.value),
                ForecastRow(month=month, stage_key=deal.stage.value),
            )
            row.count += 1
            row.amount_cents += deal.amount_cents or 0
        return sorted(rows.values(), key=lambda r: r.month)

    async def won_durations(
        self, won_key: str, start_at: datetime, end_at: datetime
    ) -> list[float]:
        self.calls.append("won_durations")
        first_won: dict[str, datetime] = {}
        for entry in self.history:
            if entry.to_stage.value != won_key:
                continue
            current = first_won.get(entry.deal_id)
            if current is None or entry.changed_at < current:
                first_won[entry.deal_id] = entry.changed_at
        durations = []
        for deal_id, won_at in first_won.items():
            if not (start_at <= won_at < end_at):
                continue
            deal = self.deals[uuid.UUID(deal_id)]
            durations.append((won_at - deal.created_at).total_seconds() / 86400)
        return durations


# ── Search Repository Double ────────────────────────────────────────────────


class InMemorySearchRepository:
    """In-memory SearchRepository serving preset ranked rows.

    ranked() returns the top ``cap`` rows of each requested kind, scrambling
    the cross-kind order so the engine's merge is what establishes ranking.
    Bulk lookups return rows in reverse id order to mimic an unordered fetch.
    """

    def __init__(self) -> None:
        self.rows: list[ScoredRow] = []
        self.companies: dict[str, CompanyRead] = {}
        self.contacts: dict[str, ContactRead] = {}
        self.deals: dict[str, DealRead] = {}
        self.ranked_calls: list[dict[str, Any]] = []

    def add_row(
        self, kind: SearchKind, title: str, score: float, subtitle: str | None = None
    ) -> str:
        row_id = str(uuid.uuid4())
        self.rows.append(
            ScoredRow(kind=kind, id=row_id, title=title, subtitle=subtitle, score=score)
        )
        if kind is SearchKind.COMPANY:
            self.companies[row_id] = CompanyRead(id=row_id, name=title)
        elif kind is SearchKind.CONTACT:
            self.contacts[row_id] = ContactRead(id=row_id, email=f"{title}@example.com")
        else:
            self.deals[row_id] = DealRead(
                id=row_id,
                title=title,
                stage=StoredStage.NEW,
                company_id=str(uuid.uuid4()),
            )
        return row_id

    async def ranked(self, query, kinds, strategy, cap) -> list[ScoredRow]:
        self.ranked_calls.append(
            {"query": query, "kinds": list(kinds), "strategy": strategy, "cap": cap}
        )
        result: list[ScoredRow] = []
        for kind in kinds:
            of_kind = [r for r in self.rows if r.kind is kind]
            of_kind.sort(key=lambda r: (-r.score, r.title))
            result.extend(of_kind[:cap])
        return list(reversed(result))

    async def companies_by_ids(self, ids: list[str]) -> list[CompanyRead]:
        return [self.companies[i] for i in sorted(ids, reverse=True) if i in self.companies]

    async def contacts_by_ids(self, ids: list[str]) -> list[ContactRead]:
        return [self.contacts[i] for i in sorted(ids, reverse=True) if i in self.contacts]

    async def deals_by_ids(self, ids: list[str]) -> list[DealRead]:
        return [self.deals[i] for i in sorted(ids, reverse=True) if i in self.deals]


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def default_stages() -> list[StageMeta]:
    return list(DEFAULT_STAGES)


@pytest.fixture
def catalog(default_stages: list[StageMeta]) -> StageCatalog:
    return StageCatalog(default_stages)


@pytest.fixture
def pipeline_repo(default_stages: list[StageMeta]) -> InMemoryPipelineRepository:
    return InMemoryPipelineRepository(stages=default_stages)


@pytest.fixture
def catalog_cache(pipeline_repo: InMemoryPipelineRepository) -> StageCatalogCache:
    return StageCatalogCache(loader=pipeline_repo.load_stage_catalog, ttl_seconds=300)


@pytest.fixture
def search_repo() -> InMemorySearchRepository:
    return InMemorySearchRepository()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
