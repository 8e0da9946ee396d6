"""SearchEngine -- validated, deterministic cross-kind search.

search() validates before any I/O, picks the ranking strategy from the query
text, asks the repository for the top ``offset + limit`` rows of every
effective kind, then merges them by (score desc, title asc) and slices the
requested page. Ties on both keys fall back to (kind, id) so repeated calls
over the same data always return the same order.

The suggest_* variants search a single kind and re-fetch the full rows,
restoring rank order after the unordered bulk lookup.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, TypeVar

import structlog

from src.app.core.monitoring import search_queries_total
from src.app.pipeline.errors import ValidationFailedError, validate_page_size
from src.app.pipeline.schemas import DealRead
from src.app.search.schemas import (
    CompanyRead,
    ContactRead,
    ScoredRow,
    SearchHit,
    SearchKind,
)
from src.app.search.strategies import choose_strategy

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def parse_kinds(kinds: Iterable[SearchKind | str]) -> list[SearchKind]:
    """Known kinds from ``kinds`` (case-insensitive); unknown names are dropped."""
    parsed: list[SearchKind] = []
    for kind in kinds:
        if isinstance(kind, SearchKind):
            parsed.append(kind)
            continue
        try:
            parsed.append(SearchKind(kind.strip().lower()))
        except ValueError:
            continue
    return parsed


def merge_ranked(rows: Iterable[ScoredRow], limit: int, offset: int) -> list[ScoredRow]:
    """Order rows by score desc then title asc and return one page."""
    ordered = sorted(rows, key=lambda r: (-r.score, r.title, r.kind.value, r.id))
    return ordered[offset : offset + limit]


def reorder_by_ids(items: Iterable[T], ids: list[str]) -> list[T]:
    """Return ``items`` in the order of ``ids``, dropping ids with no item."""
    by_id = {item.id: item for item in items}  # type: ignore[attr-defined]
    return [by_id[i] for i in ids if i in by_id]


class SearchEngine:
    """Cross-kind relevance search.

    Args:
        repository: Provides ranked() and the *_by_ids bulk lookups.
        enabled_kinds: Kinds this deployment allows to be searched.
        default_limit: Page size used when the caller does not pass one.
        max_limit: Page size ceiling; larger requests raise LimitExceededError.
    """

    def __init__(
        self,
        repository: Any,
        enabled_kinds: Iterable[SearchKind | str] = tuple(SearchKind),
        default_limit: int = 20,
        max_limit: int = 100,
    ) -> None:
        self._repository = repository
        self._enabled = set(parse_kinds(enabled_kinds))
        self._default_limit = default_limit
        self._max_limit = max_limit

    def effective_kinds(
        self, kinds: Iterable[SearchKind | str] | None
    ) -> list[SearchKind]:
        """Requested kinds intersected with enabled kinds, in declaration order."""
        requested = set(SearchKind) if kinds is None else set(parse_kinds(kinds))
        return [k for k in SearchKind if k in requested and k in self._enabled]

    def _validate(self, query: str, limit: int, offset: int) -> str:
        trimmed = (query or "").strip()
        if not trimmed:
            raise ValidationFailedError("search query must not be empty")
        validate_page_size("limit", limit, self._max_limit)
        if offset < 0:
            raise ValidationFailedError(f"offset must not be negative, got {offset}")
        return trimmed

    async def _ranked_rows(
        self,
        query: str,
        kinds: Iterable[SearchKind | str] | None,
        limit: int | None,
        offset: int,
    ) -> list[ScoredRow]:
        limit = self._default_limit if limit is None else limit
        trimmed = self._validate(query, limit, offset)

        effective = self.effective_kinds(kinds)
        if not effective:
            return []

        strategy = choose_strategy(trimmed)
        search_queries_total.labels(strategy=strategy.value).inc()
        rows = await self._repository.ranked(
            trimmed, effective, strategy, offset + limit
        )
        page = merge_ranked(rows, limit, offset)
        logger.debug(
            "search.executed",
            strategy=strategy.value,
            kinds=[k.value for k in effective],
            candidates=len(rows),
            returned=len(page),
        )
        return page

    async def search(
        self,
        query: str,
        kinds: Iterable[SearchKind | str] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[SearchHit]:
        """Ranked hits across the requested kinds.

        Args:
            query: Free text; trimmed before use.
            kinds: Kinds to search; None means every enabled kind. Unknown or
                disabled kinds are ignored, and an empty result set of kinds
                returns [] without querying.
            limit: Page size (default from settings).
            offset: Rows to skip in the merged ranking.

        Raises:
            ValidationFailedError: Empty query, non-positive limit, negative offset.
            LimitExceededError: If limit is above the ceiling.
        """
        rows = await self._ranked_rows(query, kinds, limit, offset)
        return [SearchHit.from_row(row) for row in rows]

    async def suggest_companies(
        self, query: str, limit: int | None = None
    ) -> list[CompanyRead]:
        rows = await self._ranked_rows(query, [SearchKind.COMPANY], limit, 0)
        ids = [row.id for row in rows]
        return reorder_by_ids(await self._repository.companies_by_ids(ids), ids)

    async def suggest_contacts(
        self, query: str, limit: int | None = None
    ) -> list[ContactRead]:
        rows = await self._ranked_rows(query, [SearchKind.CONTACT], limit, 0)
        ids = [row.id for row in rows]
        return reorder_by_ids(await self._repository.contacts_by_ids(ids), ids)

    async def suggest_deals(self, query: str, limit: int | None = None) -> list[DealRead]:
        rows = await self._ranked_rows(query, [SearchKind.DEAL], limit, 0)
        ids = [row.id for row in rows]
        return reorder_by_ids(await self._repository.deals_by_ids(ids), ids)
