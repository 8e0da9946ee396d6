"""Pipeline reporting: stage totals, monthly forecast, win velocity.

All three sections are derived for deals whose close_date falls inside an
inclusive DateRange. The forecast series is densified so every calendar month
in the range is present, and velocity uses nearest-rank percentiles over the
days each deal took from creation to its first win.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

import structlog

from src.app.pipeline.catalog import StageCatalog, expected_value
from src.app.pipeline.errors import ValidationFailedError
from src.app.pipeline.schemas import (
    DateRange,
    ForecastPoint,
    ForecastRow,
    PipelineReport,
    ReportStageTotal,
    VelocityStats,
)

logger = structlog.get_logger(__name__)


# ── Pure Helpers ────────────────────────────────────────────────────────────


def month_starts(start: date, end: date) -> list[date]:
    """First day of every calendar month from start's month to end's month."""
    months = []
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        months.append(date(year, month, 1))
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return months


def period_label(month_start: date) -> str:
    return f"{month_start.year:04d}-{month_start.month:02d}"


def densify_months(
    start: date,
    end: date,
    rows: Iterable[ForecastRow],
    catalog: StageCatalog,
) -> list[ForecastPoint]:
    """One ForecastPoint per month in range, zero-filled where no deals close.

    Expected value is computed per (month, stage) row with that stage's
    probability, then summed into the month.
    """
    buckets: dict[tuple[int, int], ForecastPoint] = {
        (m.year, m.month): ForecastPoint(period=period_label(m))
        for m in month_starts(start, end)
    }
    for row in rows:
        point = buckets.get((row.month.year, row.month.month))
        if point is None:
            continue
        point.amount_cents += row.amount_cents
        point.expected_cents += expected_value(
            row.amount_cents, catalog.probability(row.stage_key)
        )
        point.deals += row.count
    return list(buckets.values())


def nearest_rank(sorted_values: list[float], percentile: float) -> float:
    """Nearest-rank percentile of an ascending list (0.0 for an empty list)."""
    n = len(sorted_values)
    if n == 0:
        return 0.0
    rank = min(max(math.ceil(percentile * n), 1), n)
    return sorted_values[rank - 1]


def velocity(durations: Iterable[float]) -> VelocityStats:
    """Count, mean, p50 and p90 of days-to-win; all zero without samples."""
    samples = sorted(durations)
    if not samples:
        return VelocityStats()
    return VelocityStats(
        deals_won=len(samples),
        avg_days_to_win=sum(samples) / len(samples),
        p50_days_to_win=nearest_rank(samples, 0.5),
        p90_days_to_win=nearest_rank(samples, 0.9),
    )


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


# ── Engine ──────────────────────────────────────────────────────────────────


class ReportEngine:
    """Builds PipelineReport from grouped repository queries.

    Args:
        repository: Provides report_stage_totals, report_forecast_rows and
            won_durations.
    """

    def __init__(self, repository: Any) -> None:
        self._repository = repository

    async def report(
        self,
        catalog: StageCatalog,
        date_range: DateRange,
        include_lost: bool = False,
    ) -> PipelineReport:
        """Stage totals, forecast series and velocity for ``date_range``.

        Lost stages are left out of the totals and forecast unless
        ``include_lost``. Velocity always counts deals whose first move into
        the won stage happened inside the range.

        Raises:
            ValidationFailedError: If date_range.start is after date_range.end.
        """
        if date_range.start > date_range.end:
            raise ValidationFailedError(
                f"date range start {date_range.start} is after end {date_range.end}"
            )

        excluded = [] if include_lost else catalog.lost_keys()

        totals_by_key = {
            row.stage_key: row
            for row in await self._repository.report_stage_totals(date_range, excluded)
        }
        stage_totals = [
            ReportStageTotal(
                stage=stage,
                count=totals_by_key[stage.key].count,
                amount_cents=totals_by_key[stage.key].amount_cents,
                expected_cents=expected_value(
                    totals_by_key[stage.key].amount_cents, stage.probability
                ),
            )
            for stage in catalog
            if stage.key in totals_by_key and totals_by_key[stage.key].count > 0
        ]

        forecast_rows = await self._repository.report_forecast_rows(
            date_range, excluded
        )
        forecast = densify_months(
            date_range.start, date_range.end, forecast_rows, catalog
        )

        won = catalog.won_stage()
        if won is None:
            stats = VelocityStats()
        else:
            durations = await self._repository.won_durations(
                won.key,
                _day_start(date_range.start),
                _day_start(date_range.end + timedelta(days=1)),
            )
            stats = velocity(durations)

        logger.info(
            "pipeline.report_built",
            start=date_range.start.isoformat(),
            end=date_range.end.isoformat(),
            include_lost=include_lost,
            stages=len(stage_totals),
            periods=len(forecast),
            deals_won=stats.deals_won,
        )
        return PipelineReport(
            stage_totals=stage_totals, forecast=forecast, velocity=stats
        )
