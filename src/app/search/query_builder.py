"""Composable UNION ALL search statement.

Each enabled kind contributes one KindClause: a parenthesised sub-query that
projects ``(kind, id, title, subtitle, score)``, ordered by score then title
and capped at ``offset + limit``. SearchQueryBuilder joins the clauses with
UNION ALL and collects the bind parameters. Nothing here touches a database,
so clause composition can be tested on the rendered text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from src.app.core.database import escape_like
from src.app.search.schemas import SearchKind
from src.app.search.strategies import RankingStrategy

# ts_rank weights for D, C, B, A labels.
TS_RANK_WEIGHTS = "{0.1, 0.2, 0.4, 1.0}"

TSQUERY = "websearch_to_tsquery('simple', :q)"


@dataclass(frozen=True)
class KindSpec:
    """How one entity table is projected into search rows."""

    kind: SearchKind
    from_clause: str
    title_sql: str
    subtitle_sql: str
    fuzzy_fields: tuple[str, ...]

    @property
    def primary_field(self) -> str:
        return self.fuzzy_fields[0]


KIND_SPECS: dict[SearchKind, KindSpec] = {
    SearchKind.COMPANY: KindSpec(
        kind=SearchKind.COMPANY,
        from_clause="company t",
        title_sql="t.name",
        subtitle_sql="t.website",
        fuzzy_fields=("t.name", "t.website"),
    ),
    SearchKind.CONTACT: KindSpec(
        kind=SearchKind.CONTACT,
        from_clause="contact t",
        title_sql=(
            "coalesce(nullif(trim(concat_ws(' ', t.first_name, t.last_name)), ''), t.email)"
        ),
        subtitle_sql="t.email",
        fuzzy_fields=("t.email", "t.first_name", "t.last_name"),
    ),
    SearchKind.DEAL: KindSpec(
        kind=SearchKind.DEAL,
        from_clause="deal t LEFT JOIN company c ON c.id = t.company_id",
        title_sql="t.title",
        subtitle_sql="c.name",
        fuzzy_fields=("t.title",),
    ),
}


@dataclass(frozen=True)
class KindClause:
    """One kind's ranked sub-query for a given strategy."""

    spec: KindSpec
    strategy: RankingStrategy

    def score_sql(self) -> str:
        if self.strategy is RankingStrategy.TOKEN:
            rank = (
                f"GREATEST(ts_rank('{TS_RANK_WEIGHTS}'::float4[], t.tsv, {TSQUERY}), "
                f"similarity(coalesce({self.spec.primary_field}, ''), :q))"
            )
        else:
            similarities = ", ".join(
                f"similarity(coalesce({f}, ''), :q)" for f in self.spec.fuzzy_fields
            )
            rank = f"GREATEST({similarities})"
        return f"LEAST(1.0, {rank})::float8"

    def where_sql(self) -> str:
        if self.strategy is RankingStrategy.TOKEN:
            return (
                f"t.tsv @@ {TSQUERY} OR "
                f"similarity(coalesce({self.spec.primary_field}, ''), :q) > :threshold"
            )
        predicates = [
            f"similarity(coalesce({f}, ''), :q) > :threshold"
            for f in self.spec.fuzzy_fields
        ]
        predicates += [
            f"{f} ILIKE :pattern ESCAPE '\\'" for f in self.spec.fuzzy_fields
        ]
        return " OR ".join(predicates)

    def render(self) -> str:
        return (
            f"(SELECT '{self.spec.kind.value}' AS kind, t.id::text AS id, "
            f"{self.spec.title_sql} AS title, {self.spec.subtitle_sql} AS subtitle, "
            f"{self.score_sql()} AS score "
            f"FROM {self.spec.from_clause} "
            f"WHERE {self.where_sql()} "
            f"ORDER BY score DESC, title ASC "
            f"LIMIT :cap)"
        )


@dataclass
class SearchStatement:
    """Rendered SQL text plus its bind parameters."""

    sql: str
    params: dict[str, Any] = field(default_factory=dict)
    kinds: tuple[SearchKind, ...] = ()


class SearchQueryBuilder:
    """Builds the UNION ALL statement for the enabled kinds.

    Args:
        trgm_threshold: Minimum pg_trgm similarity for a fuzzy match.
    """

    def __init__(self, trgm_threshold: float = 0.2) -> None:
        self._threshold = trgm_threshold

    def clauses(
        self, kinds: list[SearchKind], strategy: RankingStrategy
    ) -> list[KindClause]:
        """One clause per kind, in SearchKind declaration order, duplicates dropped."""
        wanted = set(kinds)
        return [
            KindClause(spec=KIND_SPECS[kind], strategy=strategy)
            for kind in SearchKind
            if kind in wanted
        ]

    def build(
        self,
        query: str,
        kinds: list[SearchKind],
        strategy: RankingStrategy,
        cap: int,
    ) -> SearchStatement | None:
        """Render the statement, or None when no kind contributes a clause."""
        clauses = self.clauses(kinds, strategy)
        if not clauses:
            return None

        params: dict[str, Any] = {"q": query, "cap": cap, "threshold": self._threshold}
        if strategy is RankingStrategy.FUZZY:
            params["pattern"] = f"%{escape_like(query)}%"

        return SearchStatement(
            sql=" UNION ALL ".join(clause.render() for clause in clauses),
            params=params,
            kinds=tuple(clause.spec.kind for clause in clauses),
        )
