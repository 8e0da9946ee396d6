"""Tests for ReportEngine and the report helpers.

Tests cover:
- Forecast densification: every month in range present, zero-filled gaps
- Lost-stage exclusion and include_lost
- Stage totals in catalog order with expected value
- Velocity: nearest-rank percentiles, first win only, empty cases
- Range validation
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from src.app.pipeline.catalog import StageCatalog
from src.app.pipeline.errors import ValidationFailedError
from src.app.pipeline.reports import (
    ReportEngine,
    month_starts,
    nearest_rank,
    velocity,
)
from src.app.pipeline.schemas import DateRange
from src.app.pipeline.stages import StoredStage

Q1 = DateRange(start=date(2025, 1, 1), end=date(2025, 3, 31))
CREATED = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def engine(pipeline_repo) -> ReportEngine:
    return ReportEngine(repository=pipeline_repo)


@pytest.fixture
def acme(pipeline_repo) -> str:
    return pipeline_repo.add_company("Acme Corp")


# ── Helpers ─────────────────────────────────────────────────────────────────


class TestMonthStarts:
    def test_spans_year_boundary(self) -> None:
        assert month_starts(date(2024, 11, 15), date(2025, 2, 1)) == [
            date(2024, 11, 1),
            date(2024, 12, 1),
            date(2025, 1, 1),
            date(2025, 2, 1),
        ]

    def test_single_day(self) -> None:
        assert month_starts(date(2025, 6, 30), date(2025, 6, 30)) == [date(2025, 6, 1)]


class TestNearestRank:
    def test_empty(self) -> None:
        assert nearest_rank([], 0.5) == 0.0

    def test_ten_samples(self) -> None:
        values = [float(v) for v in range(1, 11)]
        assert nearest_rank(values, 0.5) == 5.0
        assert nearest_rank(values, 0.9) == 9.0

    def test_single_sample(self) -> None:
        assert nearest_rank([7.5], 0.9) == 7.5


class TestVelocity:
    def test_no_samples_is_all_zero(self) -> None:
        stats = velocity([])
        assert stats.deals_won == 0
        assert stats.avg_days_to_win == 0.0
        assert stats.p50_days_to_win == 0.0
        assert stats.p90_days_to_win == 0.0

    def test_single_sample(self) -> None:
        stats = velocity([12.0])
        assert stats.deals_won == 1
        assert stats.avg_days_to_win == stats.p50_days_to_win == stats.p90_days_to_win == 12.0

    def test_percentiles_are_ordered(self) -> None:
        stats = velocity([30.0, 2.0, 9.0, 4.0, 60.0])
        assert stats.p50_days_to_win == 9.0
        assert stats.p90_days_to_win == 60.0
        assert stats.p50_days_to_win <= stats.p90_days_to_win
        assert stats.avg_days_to_win == pytest.approx(21.0)


# ── Forecast and totals ─────────────────────────────────────────────────────


class TestReport:
    @pytest.mark.asyncio
    async def test_forecast_is_densified(self, engine, catalog, pipeline_repo, acme) -> None:
        pipeline_repo.add_deal(
            "Jan", company_id=acme, stage=StoredStage.PROPOSAL,
            amount_cents=1_000, close_date=date(2025, 1, 20),
        )
        pipeline_repo.add_deal(
            "Mar", company_id=acme, stage=StoredStage.NEGOTIATE,
            amount_cents=2_000, close_date=date(2025, 3, 5),
        )

        report = await engine.report(catalog, Q1)

        assert [p.period for p in report.forecast] == ["2025-01", "2025-02", "2025-03"]
        jan, feb, mar = report.forecast
        assert (jan.deals, jan.amount_cents, jan.expected_cents) == (1, 1_000, 500)
        assert (feb.deals, feb.amount_cents, feb.expected_cents) == (0, 0, 0)
        assert (mar.deals, mar.amount_cents, mar.expected_cents) == (1, 2_000, 1_400)

    @pytest.mark.asyncio
    async def test_deals_outside_range_are_ignored(
        self, engine, catalog, pipeline_repo, acme
    ) -> None:
        pipeline_repo.add_deal(
            "April", company_id=acme, amount_cents=5_000, close_date=date(2025, 4, 1)
        )
        pipeline_repo.add_deal("No close date", company_id=acme, amount_cents=5_000)

        report = await engine.report(catalog, Q1)

        assert report.stage_totals == []
        assert sum(p.deals for p in report.forecast) == 0

    @pytest.mark.asyncio
    async def test_lost_excluded_unless_requested(
        self, engine, catalog, pipeline_repo, acme
    ) -> None:
        pipeline_repo.add_deal(
            "Lost", company_id=acme, stage=StoredStage.LOST,
            amount_cents=700, close_date=date(2025, 2, 10),
        )
        pipeline_repo.add_deal(
            "Open", company_id=acme, stage=StoredStage.NEW,
            amount_cents=300, close_date=date(2025, 2, 11),
        )

        report = await engine.report(catalog, Q1)
        assert [t.stage.key for t in report.stage_totals] == ["NEW"]
        assert report.forecast[1].amount_cents == 300

        report = await engine.report(catalog, Q1, include_lost=True)
        assert [t.stage.key for t in report.stage_totals] == ["NEW", "LOST"]
        assert report.forecast[1].amount_cents == 1_000
        # LOST carries probability 0
        assert report.forecast[1].expected_cents == 30

    @pytest.mark.asyncio
    async def test_stage_totals_in_catalog_order(
        self, engine, catalog, pipeline_repo, acme
    ) -> None:
        for stage, amount in [
            (StoredStage.WON, 800),
            (StoredStage.QUALIFY, 400),
            (StoredStage.QUALIFY, 400),
        ]:
            pipeline_repo.add_deal(
                stage.value, company_id=acme, stage=stage,
                amount_cents=amount, close_date=date(2025, 1, 15),
            )

        report = await engine.report(catalog, Q1)

        qualify, won = report.stage_totals
        assert (qualify.stage.key, qualify.count, qualify.amount_cents) == ("QUALIFY", 2, 800)
        assert qualify.expected_cents == 200
        assert (won.stage.key, won.count, won.expected_cents) == ("WON", 1, 800)

    @pytest.mark.asyncio
    async def test_inverted_range_rejected(self, engine, catalog, pipeline_repo) -> None:
        with pytest.raises(ValidationFailedError):
            await engine.report(
                catalog, DateRange(start=date(2025, 3, 1), end=date(2025, 1, 1))
            )
        assert pipeline_repo.calls == []

    @pytest.mark.asyncio
    async def test_single_day_range(self, engine, catalog) -> None:
        day = date(2025, 2, 14)
        report = await engine.report(catalog, DateRange(start=day, end=day))

        assert [p.period for p in report.forecast] == ["2025-02"]


# ── Velocity ────────────────────────────────────────────────────────────────


class TestReportVelocity:
    @pytest.mark.asyncio
    async def test_single_won_deal(self, engine, catalog, pipeline_repo, acme) -> None:
        deal = pipeline_repo.add_deal(
            "Won", company_id=acme, stage=StoredStage.WON, created_at=CREATED
        )
        pipeline_repo.add_history(
            deal, StoredStage.WON, CREATED + timedelta(days=10), StoredStage.NEW
        )

        stats = (await engine.report(catalog, Q1)).velocity

        assert stats.deals_won == 1
        assert stats.avg_days_to_win == pytest.approx(10.0)
        assert stats.p50_days_to_win == pytest.approx(10.0)
        assert stats.p90_days_to_win == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_counts_first_win_only(self, engine, catalog, pipeline_repo, acme) -> None:
        deal = pipeline_repo.add_deal(
            "Flip-flop", company_id=acme, stage=StoredStage.WON, created_at=CREATED
        )
        pipeline_repo.add_history(deal, StoredStage.WON, CREATED + timedelta(days=4))
        pipeline_repo.add_history(deal, StoredStage.NEW, CREATED + timedelta(days=6))
        pipeline_repo.add_history(deal, StoredStage.WON, CREATED + timedelta(days=20))

        stats = (await engine.report(catalog, Q1)).velocity

        assert stats.deals_won == 1
        assert stats.avg_days_to_win == pytest.approx(4.0)

    @pytest.mark.asyncio
    async def test_win_on_last_day_of_range_counts(
        self, engine, catalog, pipeline_repo, acme
    ) -> None:
        deal = pipeline_repo.add_deal("Late", company_id=acme, created_at=CREATED)
        pipeline_repo.add_history(
            deal, StoredStage.WON, datetime(2025, 3, 31, 23, 59, tzinfo=timezone.utc)
        )
        other = pipeline_repo.add_deal("Too late", company_id=acme, created_at=CREATED)
        pipeline_repo.add_history(
            other, StoredStage.WON, datetime(2025, 4, 1, tzinfo=timezone.utc)
        )

        stats = (await engine.report(catalog, Q1)).velocity

        assert stats.deals_won == 1

    @pytest.mark.asyncio
    async def test_no_wins_is_all_zero(self, engine, catalog) -> None:
        stats = (await engine.report(catalog, Q1)).velocity
        assert stats.deals_won == 0
        assert stats.p90_days_to_win == 0.0

    @pytest.mark.asyncio
    async def test_catalog_without_won_stage(
        self, engine, default_stages, pipeline_repo, acme
    ) -> None:
        catalog = StageCatalog([s for s in default_stages if not s.is_won])
        deal = pipeline_repo.add_deal("Won", company_id=acme, created_at=CREATED)
        pipeline_repo.add_history(deal, StoredStage.WON, CREATED + timedelta(days=3))

        report = await engine.report(catalog, Q1)

        assert report.velocity.deals_won == 0
        assert "won_durations" not in pipeline_repo.calls
