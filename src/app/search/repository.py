"""Search repository -- executes ranked statements and bulk re-fetches rows.

The ranked statement comes from SearchQueryBuilder as raw parameterized SQL
(full-text and trigram primitives have no ORM expression worth the
indirection); the re-fetch lookups use ordinary ORM selects by id.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from typing import Any

import structlog
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.database import open_session
from src.app.pipeline.errors import PersistenceError
from src.app.pipeline.models import CompanyModel, ContactModel, DealModel
from src.app.pipeline.repository import model_to_deal
from src.app.pipeline.schemas import DealRead
from src.app.search.query_builder import SearchQueryBuilder
from src.app.search.schemas import CompanyRead, ContactRead, ScoredRow, SearchKind
from src.app.search.strategies import RankingStrategy

logger = structlog.get_logger(__name__)


def _parse_ids(ids: list[str]) -> list[uuid.UUID]:
    return [uuid.UUID(i) for i in ids]


class SearchRepository:
    """SQL access for SearchEngine.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        builder: Renders the per-kind UNION ALL statement.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        builder: SearchQueryBuilder,
    ) -> None:
        self._session_factory = session_factory
        self._builder = builder

    async def _all(self, stmt: Any, params: dict[str, Any] | None = None) -> list[Any]:
        async with open_session(self._session_factory) as session:
            try:
                result = await session.execute(stmt, params or {})
                return list(result.all())
            except SQLAlchemyError as exc:
                logger.error("search.query_failed", error=str(exc))
                raise PersistenceError(f"search query failed: {exc}") from exc

    async def ranked(
        self,
        query: str,
        kinds: list[SearchKind],
        strategy: RankingStrategy,
        cap: int,
    ) -> list[ScoredRow]:
        """Top ``cap`` rows per kind, unordered across kinds."""
        statement = self._builder.build(query, kinds, strategy, cap)
        if statement is None:
            return []
        rows = await self._all(text(statement.sql), statement.params)
        return [
            ScoredRow(
                kind=SearchKind(row.kind),
                id=row.id,
                title=row.title or "",
                subtitle=row.subtitle,
                score=float(row.score or 0.0),
            )
            for row in rows
        ]

    async def companies_by_ids(self, ids: list[str]) -> list[CompanyRead]:
        if not ids:
            return []
        rows = await self._all(
            select(CompanyModel).where(CompanyModel.id.in_(_parse_ids(ids)))
        )
        return [
            CompanyRead(
                id=str(m.id),
                name=m.name,
                website=m.website,
                phone=m.phone,
                created_at=m.created_at,
                updated_at=m.updated_at,
            )
            for (m,) in rows
        ]

    async def contacts_by_ids(self, ids: list[str]) -> list[ContactRead]:
        if not ids:
            return []
        rows = await self._all(
            select(ContactModel).where(ContactModel.id.in_(_parse_ids(ids)))
        )
        return [
            ContactRead(
                id=str(m.id),
                email=m.email,
                first_name=m.first_name,
                last_name=m.last_name,
                phone=m.phone,
                company_id=str(m.company_id) if m.company_id else None,
                created_at=m.created_at,
                updated_at=m.updated_at,
            )
            for (m,) in rows
        ]

    async def deals_by_ids(self, ids: list[str]) -> list[DealRead]:
        if not ids:
            return []
        rows = await self._all(select(DealModel).where(DealModel.id.in_(_parse_ids(ids))))
        return [model_to_deal(m) for (m,) in rows]
